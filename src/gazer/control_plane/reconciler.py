"""
Reconciler

Per-site control loop step. Each call looks at the site's build Job, moves it
one step through not-started -> running -> complete -> cleaned-up, and says
when the site should be looked at again.
"""
import logging

from .errors import ClusterApiError, GazerError, NoValidRefError
from .job_orchestrator import JobOrchestrator
from .models import BuildState, ReconcileAction, StaticSite
from .ref_resolver import RefResolver, select_target

logger = logging.getLogger(__name__)

SHORT_REQUEUE_SECONDS = 60
LONG_REQUEUE_SECONDS = 360


class Reconciler:
    """
    Drives one StaticSite towards its declared state.

    Holds no per-site state; concurrent calls for different sites are safe.
    Callers must not run two reconciliations of the same site at once.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        resolver: RefResolver,
        short_requeue_seconds: float = SHORT_REQUEUE_SECONDS,
        long_requeue_seconds: float = LONG_REQUEUE_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.short_requeue = ReconcileAction(requeue_after=short_requeue_seconds)
        self.long_requeue = ReconcileAction(requeue_after=long_requeue_seconds)

    async def reconcile(self, site: StaticSite) -> ReconcileAction:
        """
        Run one reconciliation cycle.

        Raises:
            ClusterApiError: a Kubernetes call failed
            ReconcileError: the site cannot be built right now
        """
        namespace, name = site.key
        state = await self.orchestrator.get_build_status(namespace, name)

        if state in (BuildState.PENDING, BuildState.RUNNING):
            logger.debug(f"Build for {namespace}/{name} is {state.value}")
            return self.short_requeue

        if state in (BuildState.COMPLETED, BuildState.FAILED):
            if state is BuildState.FAILED:
                logger.warning(f"Build for {namespace}/{name} failed, cleaning up for retry")
            await self.orchestrator.delete_build(namespace, name)
            logger.info(f"Reconciled {namespace}/{name} (build {state.value})")
            return self.long_requeue

        refs = await self.resolver.resolve_refs(site.spec.git, site.spec.git_credentials, namespace)
        policy = site.spec.selection_policy
        target = select_target(policy, refs)
        if target is None:
            raise NoValidRefError(
                f"No valid ref found for {namespace}/{name} ({policy.mode.value}"
                f"{': ' + policy.branch if policy.branch else ''}) in {site.spec.git}"
            )

        await self.orchestrator.submit_build(site, target)
        return self.short_requeue

    def error_policy(self, site: StaticSite, error: Exception) -> ReconcileAction:
        """Report a failed cycle and schedule the retry."""
        namespace, name = site.key
        if isinstance(error, ClusterApiError):
            logger.warning(f"Reconcile of {namespace}/{name} failed (cluster API {error.status}): {error}")
        elif isinstance(error, GazerError):
            logger.warning(f"Reconcile of {namespace}/{name} failed: {error}")
        else:
            logger.error(f"Reconcile of {namespace}/{name} crashed: {error!r}", exc_info=error)
        return self.long_requeue
