"""
Control Plane Core

Core reconciliation components: models, ref resolution, build jobs, queue, controller.
"""

from .models import BuildState, GitRef, RefKind, ReconcileAction, StaticSite, StaticSiteSpec
from .errors import ClusterApiError, GazerError, ReconcileError
from .kube import KubeClients
from .queue_manager import QueueManager
from .ref_resolver import RefResolver, select_target
from .job_orchestrator import JobOrchestrator
from .reconciler import Reconciler
from .controller import SiteController

__all__ = [
    "BuildState",
    "GitRef",
    "RefKind",
    "ReconcileAction",
    "StaticSite",
    "StaticSiteSpec",
    "ClusterApiError",
    "GazerError",
    "ReconcileError",
    "KubeClients",
    "QueueManager",
    "RefResolver",
    "select_target",
    "JobOrchestrator",
    "Reconciler",
    "SiteController",
]
