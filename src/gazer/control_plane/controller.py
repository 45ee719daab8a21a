"""
Site Controller

Feeds StaticSite keys into the work queue and runs the workers that
reconcile them. A watch stream queues sites as soon as they are created or
changed; every `resync_seconds` the full list is read again to catch anything
the stream missed. Sites whose generation is unchanged come back after the
requeue interval their last reconciliation asked for.
"""
import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
import urllib3
from kubernetes import watch
from kubernetes.client import ApiException
from pydantic import ValidationError

from .crd import GROUP, PLURAL, VERSION
from .errors import ClusterApiError
from .kube import KubeClients, call_api
from .models import StaticSite
from .queue_manager import QueueManager
from .reconciler import Reconciler

logger = structlog.get_logger(__name__)

SiteKey = Tuple[str, str]


def site_key(obj: Dict[str, Any]) -> SiteKey:
    metadata = obj.get("metadata", {})
    return metadata.get("namespace", "default"), metadata["name"]


class SiteController:
    """Dispatches reconciliations for every StaticSite in scope."""

    def __init__(
        self,
        kube: KubeClients,
        reconciler: Reconciler,
        queue: Optional[QueueManager] = None,
        worker_count: int = 3,
        resync_seconds: float = 30,
        namespace: Optional[str] = None,
        watch_timeout_seconds: int = 30,
    ):
        self.kube = kube
        self.reconciler = reconciler
        self.queue = queue or QueueManager()
        self.worker_count = worker_count
        self.resync_seconds = resync_seconds
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds

        self._generations: Dict[SiteKey, Optional[int]] = {}
        self._workers: List[asyncio.Task] = []
        self._resync_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        # Shared with the watch thread
        self._stop_streaming = threading.Event()
        self._watcher: Optional[watch.Watch] = None
        self._watcher_lock = threading.Lock()

    async def verify_crd(self) -> None:
        """
        Fail fast when the StaticSite CRD is not installed.

        Raises:
            ClusterApiError: the site API cannot be listed
        """
        try:
            await self._list_sites(limit=1)
        except ClusterApiError as e:
            if e.not_found:
                raise ClusterApiError(
                    f"{PLURAL}.{GROUP} CRD is not installed", status=e.status, reason=e.reason
                ) from e
            raise

    async def start(self) -> None:
        """Run an initial resync and start the watch, the resync loop and workers."""
        await self.resync()
        self._stop_streaming.clear()
        self._watch_task = asyncio.create_task(self._watch_loop())
        self._resync_task = asyncio.create_task(self._resync_loop())
        for i in range(self.worker_count):
            worker_id = f"worker-{i + 1}"
            self._workers.append(asyncio.create_task(self.start_worker(worker_id)))
        logger.info("controller_started", workers=self.worker_count, namespace=self.namespace or "*")

    async def resync(self) -> None:
        """List sites; queue new or changed ones and forget deleted ones."""
        items = (await self._list_sites()).get("items", [])
        seen = {self._observe(obj) for obj in items}

        for key in [k for k in self._generations if k not in seen]:
            self._forget(key)

    def handle_event(self, event_type: Optional[str], obj: Any) -> None:
        """Apply one watch event to the queue."""
        if not isinstance(obj, dict) or "name" not in obj.get("metadata", {}):
            logger.debug("watch_event_ignored", event_type=event_type)
            return
        if event_type in ("ADDED", "MODIFIED"):
            self._observe(obj)
        elif event_type == "DELETED":
            self._forget(site_key(obj))

    async def start_worker(self, worker_id: str) -> None:
        """Process keys from the queue until shutdown."""
        logger.info("worker_started", worker_id=worker_id)

        while not self._shutdown_event.is_set():
            try:
                key = await self.queue.dequeue(timeout=5.0)
                if key is None:
                    continue
                # Kept if process() raises, so the site is only delayed
                requeue_after = self.reconciler.long_requeue.requeue_after
                try:
                    requeue_after = await self.process(key)
                finally:
                    self.queue.done(key, requeue_after=requeue_after)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_error", worker_id=worker_id, error=str(e))
                await asyncio.sleep(5)

        logger.info("worker_stopped", worker_id=worker_id)

    async def process(self, key: SiteKey) -> Optional[float]:
        """
        Reconcile one site.

        Returns:
            Seconds until the site should be reconciled again, or None when
            the site no longer exists
        """
        namespace, name = key
        try:
            obj = await call_api(
                self.kube.custom.get_namespaced_custom_object, GROUP, VERSION, namespace, PLURAL, name
            )
        except ClusterApiError as e:
            if e.not_found:
                self._forget(key)
                return None
            logger.warning("site_fetch_failed", namespace=namespace, name=name, error=str(e))
            return self.reconciler.long_requeue.requeue_after

        try:
            site = StaticSite.from_object(obj)
        except ValidationError as e:
            logger.warning("site_invalid", namespace=namespace, name=name, error=str(e))
            return self.reconciler.long_requeue.requeue_after

        try:
            action = await self.reconciler.reconcile(site)
        except Exception as e:
            logger.warning("reconcile_failed", namespace=namespace, name=name, error=str(e))
            action = self.reconciler.error_policy(site, e)
        else:
            logger.info("reconciled", namespace=namespace, name=name, requeue_after=action.requeue_after)
        return action.requeue_after

    def get_stats(self) -> Dict[str, Any]:
        """Get controller statistics."""
        return {
            "queue": self.queue.get_stats(),
            "sites": len(self._generations),
            "workers": len(self._workers),
        }

    async def shutdown(self) -> None:
        """Stop the watch, the resync loop and workers."""
        logger.info("controller_shutting_down")
        self._shutdown_event.set()
        self._stop_streaming.set()
        with self._watcher_lock:
            if self._watcher is not None:
                self._watcher.stop()

        tasks = list(self._workers)
        for task in (self._resync_task, self._watch_task):
            if task is not None:
                tasks.append(task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._resync_task = None
        self._watch_task = None

        logger.info("controller_stopped")

    async def _resync_loop(self) -> None:
        while not self._shutdown_event.is_set():
            await asyncio.sleep(self.resync_seconds)
            try:
                await self.resync()
            except ClusterApiError as e:
                logger.warning("resync_failed", error=str(e))

    async def _watch_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._shutdown_event.is_set():
            try:
                await asyncio.to_thread(self._stream_sites, loop)
            except (ApiException, urllib3.exceptions.HTTPError) as e:
                logger.warning("watch_failed", error=str(e))
                await asyncio.sleep(self.resync_seconds)

    def _stream_sites(self, loop: asyncio.AbstractEventLoop) -> None:
        """Blocking: hand watch events to the loop until the server closes the stream."""
        watcher = watch.Watch()
        with self._watcher_lock:
            if self._stop_streaming.is_set():
                return
            self._watcher = watcher
        fn, args = self._list_call()
        try:
            for event in watcher.stream(fn, *args, timeout_seconds=self.watch_timeout_seconds):
                if self._stop_streaming.is_set():
                    break
                loop.call_soon_threadsafe(self.handle_event, event.get("type"), event.get("object"))
        finally:
            with self._watcher_lock:
                self._watcher = None

    async def _list_sites(self, **kwargs: Any) -> Dict[str, Any]:
        fn, args = self._list_call()
        return await call_api(fn, *args, **kwargs)

    def _list_call(self) -> Tuple[Callable[..., Any], Tuple[str, ...]]:
        if self.namespace:
            return self.kube.custom.list_namespaced_custom_object, (GROUP, VERSION, self.namespace, PLURAL)
        return self.kube.custom.list_cluster_custom_object, (GROUP, VERSION, PLURAL)

    def _observe(self, obj: Dict[str, Any]) -> SiteKey:
        key = site_key(obj)
        generation = obj.get("metadata", {}).get("generation")
        if key not in self._generations or self._generations[key] != generation:
            self._generations[key] = generation
            self.queue.enqueue(key)
        return key

    def _forget(self, key: SiteKey) -> None:
        self._generations.pop(key, None)
        self.queue.remove(key)
        logger.info("site_forgotten", namespace=key[0], name=key[1])
