"""Orchestrator for flux-kcl.

This module provides the orchestration used by the command line tool,
including the orchestrator and resource loader.
"""

from .loader import LoadOptions, ResourceLoader
from .orchestrator import BootstrapOptions, Orchestrator, OrchestratorConfig

__all__ = [
    "Orchestrator",
    "OrchestratorConfig",
    "BootstrapOptions",
    "ResourceLoader",
    "LoadOptions",
]
