"""
Cluster Client

Kubernetes client construction and the uniform call wrapper used by every
control plane component. The client bundle is passed explicitly; there is no
process-wide client handle.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from ..config import GazerSettings
from .errors import ClusterApiError

logger = structlog.get_logger(__name__)


@dataclass
class KubeClients:
    """
    Kubernetes API handles used during reconciliation.

    Built from kubeconfig / in-cluster config by `load`, or assembled directly
    from test doubles.
    """

    core: Any
    batch: Any
    custom: Any
    api_client: Optional[Any] = None

    @classmethod
    def load(cls, settings: GazerSettings) -> "KubeClients":
        """
        Load cluster configuration and build API handles.

        in_cluster=None tries the service account first and falls back to
        kubeconfig.
        """
        if settings.in_cluster is True:
            k8s_config.load_incluster_config()
            source = "in_cluster"
        elif settings.in_cluster is False:
            k8s_config.load_kube_config(config_file=settings.kubeconfig)
            source = "kubeconfig"
        else:
            try:
                k8s_config.load_incluster_config()
                source = "in_cluster"
            except ConfigException:
                k8s_config.load_kube_config(config_file=settings.kubeconfig)
                source = "kubeconfig"

        api_client = k8s_client.ApiClient()
        logger.info("kube_client_loaded", source=source)
        return cls(
            core=k8s_client.CoreV1Api(api_client),
            batch=k8s_client.BatchV1Api(api_client),
            custom=k8s_client.CustomObjectsApi(api_client),
            api_client=api_client,
        )

    def dispose(self) -> None:
        """Close pooled connections."""
        if self.api_client is not None:
            self.api_client.close()


async def call_api(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    Run a blocking Kubernetes client call off the event loop.

    Raises:
        ClusterApiError: on any API or transport failure
    """
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except ApiException as e:
        raise ClusterApiError(
            f"{getattr(fn, '__name__', 'kubernetes call')} failed: {e.status} {e.reason}",
            status=e.status,
            reason=e.reason,
        ) from e
    except urllib3.exceptions.HTTPError as e:
        raise ClusterApiError(f"Kubernetes API unreachable: {e}") from e
