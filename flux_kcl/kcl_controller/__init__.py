"""The KclInstance controller module.

This module provides the controller reconciling KclInstance resources into
the cluster resources rendered from their KCL module.
"""

from .controller import KclControllerConfig, KclInstanceController, ReconcileOutcome

__all__ = [
    "KclControllerConfig",
    "KclInstanceController",
    "ReconcileOutcome",
]
