"""Test fixtures for flux-kcl."""

from collections.abc import Generator
from pathlib import Path

import pytest

from flux_kcl.task import TaskService, task_service_context

from tests.common import FakeClock, FakeRenderer, FaultyClusterClient, config_map


@pytest.fixture(name="task_service", autouse=True)
def task_service_fixture() -> Generator[TaskService, None, None]:
    """Create a task service for testing."""
    with task_service_context() as service:
        yield service


@pytest.fixture(name="cluster")
def cluster_fixture() -> FaultyClusterClient:
    """Create an in-memory cluster whose failures can be injected."""
    return FaultyClusterClient()


@pytest.fixture(name="renderer")
def renderer_fixture() -> FakeRenderer:
    """Create a renderer returning two ConfigMaps."""
    return FakeRenderer([config_map("cm-a"), config_map("cm-b")])


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    """Create a fixed clock."""
    return FakeClock()


@pytest.fixture(name="repo_dir")
def repo_dir_fixture(tmp_path: Path) -> Path:
    """Create a source checkout containing a module directory `app`."""
    repo_dir = tmp_path / "repo"
    (repo_dir / "app").mkdir(parents=True)
    (repo_dir / "app" / "main.k").write_text("items = []\n", encoding="utf-8")
    return repo_dir
