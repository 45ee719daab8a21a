# src/gazer/control_plane/job_orchestrator.py
import base64
import json
import logging
from typing import Any, Dict, List, Optional

from .credentials import resolve_credentials
from .errors import ClusterApiError
from .kube import KubeClients, call_api
from .models import BuildState, OciRepo, PlainTextCredentials, ResolvedTarget, StaticSite

logger = logging.getLogger(__name__)

DEFAULT_JOB_PREFIX = "gazer-build"
DEFAULT_BUILDER_IMAGE = "gcr.io/kaniko-project/executor:latest"
DOCKER_CONFIG_KEY = ".dockerconfigjson"
DOCKER_CONFIG_MOUNT = "/kaniko/.docker/"
NO_PUSH_ARG = "--no-push"
SITE_LABEL = "realliance.net/site"


def strip_http_scheme(source_url: str) -> str:
    """Drop a leading https:// or http:// (the git build context wants host/path)."""
    for scheme in ("https://", "http://"):
        if source_url.startswith(scheme):
            return source_url[len(scheme):]
    return source_url


def build_context(source_url: str, full_ref: str) -> str:
    """Kaniko context locator: clone `full_ref` of the repository."""
    return "".join(["--context=", "git://", strip_http_scheme(source_url), "#", full_ref])


def destination_arg(oci_repo: OciRepo, build_tag: str) -> str:
    """`--destination=<pushUrl>/<repo>:<tag>`, or --no-push when there is nowhere to push."""
    destination = oci_repo.push_destination(build_tag)
    if destination is None:
        return NO_PUSH_ARG
    return f"--destination={destination}"


def docker_config(oci_repo: OciRepo, credentials: Optional[PlainTextCredentials]) -> Dict[str, Any]:
    """Registry auth material in docker config.json form."""
    if credentials is None:
        return {}
    auth_url = oci_repo.auth_url
    if auth_url is None:
        return {}
    auth = base64.b64encode(f"{credentials.username}:{credentials.password}".encode("utf-8")).decode("ascii")
    return {"auths": {auth_url: {"auth": auth}}}


def project_status(job: Any) -> BuildState:
    """Map a V1Job onto the build lifecycle."""
    status = job.status
    if status is None:
        return BuildState.PENDING
    if status.completion_time is not None:
        return BuildState.COMPLETED
    for condition in status.conditions or []:
        if condition.status != "True":
            continue
        if condition.type == "Complete":
            return BuildState.COMPLETED
        if condition.type == "Failed":
            return BuildState.FAILED
    if status.active:
        return BuildState.RUNNING
    return BuildState.PENDING


class JobOrchestrator:
    """
    Owns the per-site build Job and its registry credentials Secret.

    Both objects are named deterministically from the site name, so a site
    never has more than one of each. Objects are always replaced, never
    patched.
    """

    def __init__(
        self,
        kube: KubeClients,
        job_prefix: str = DEFAULT_JOB_PREFIX,
        builder_image: str = DEFAULT_BUILDER_IMAGE,
    ):
        self.kube = kube
        self.job_prefix = job_prefix
        self.builder_image = builder_image

    def job_name(self, name: str) -> str:
        return f"{self.job_prefix}-{name}"

    def worker_secret_name(self, name: str) -> str:
        return f"{self.job_name(name)}-worker"

    async def submit_build(self, site: StaticSite, target: ResolvedTarget) -> None:
        """
        Create the credentials Secret and the build Job for a site.

        Args:
            site: The StaticSite being reconciled
            target: Reference to build and tag to push under

        Raises:
            ClusterApiError: a create/delete call failed
            UnsupportedCredentialsError: registry credentials could not be resolved
        """
        credentials = await resolve_credentials(site.spec.oci_credentials, site.namespace, self.kube)
        config = docker_config(site.spec.oci_repo, credentials)

        context = build_context(site.spec.git, target.full_ref)
        destination = destination_arg(site.spec.oci_repo, target.build_tag)
        if destination == NO_PUSH_ARG:
            logger.warning(f"Site {site.namespace}/{site.name} has no push destination, building with {NO_PUSH_ARG}")

        await self._replace_secret(site.namespace, self._secret_manifest(site, config))
        try:
            await call_api(
                self.kube.batch.create_namespaced_job,
                site.namespace,
                self._job_manifest(site, [context, destination]),
            )
        except ClusterApiError as e:
            if not e.conflict:
                raise
            # An earlier submit for this site is still live; never start a second build
            logger.info(f"Build job {site.namespace}/{self.job_name(site.name)} already exists")
            return

        logger.info(
            f"Created build job {site.namespace}/{self.job_name(site.name)} "
            f"for {target.full_ref} (tag {target.build_tag})"
        )

    async def get_build_status(self, namespace: str, name: str) -> BuildState:
        """Get the build state of a site's Job (NOT_FOUND if there is none)."""
        try:
            job = await call_api(self.kube.batch.read_namespaced_job_status, self.job_name(name), namespace)
        except ClusterApiError as e:
            if e.not_found:
                return BuildState.NOT_FOUND
            raise
        return project_status(job)

    async def delete_build(self, namespace: str, name: str) -> bool:
        """
        Delete a site's Job, cascading to its pods in the background.

        Returns:
            True if the Job was deleted, False if it did not exist
        """
        job_name = self.job_name(name)
        try:
            await call_api(
                self.kube.batch.delete_namespaced_job,
                job_name,
                namespace,
                propagation_policy="Background",
            )
        except ClusterApiError as e:
            if e.not_found:
                return False
            raise
        logger.info(f"Deleted build job {namespace}/{job_name}")
        return True

    async def _replace_secret(self, namespace: str, secret: Dict[str, Any]) -> None:
        """Delete any existing Secret of the same name, then create it fresh."""
        name = secret["metadata"]["name"]
        try:
            await call_api(self.kube.core.read_namespaced_secret, name, namespace)
        except ClusterApiError as e:
            if not e.not_found:
                raise
        else:
            try:
                await call_api(self.kube.core.delete_namespaced_secret, name, namespace)
            except ClusterApiError as e:
                if not e.not_found:
                    raise
            logger.debug(f"Removed stale secret {namespace}/{name}")

        await call_api(self.kube.core.create_namespaced_secret, namespace, secret)

    def _metadata(self, site: StaticSite, name: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": name,
            "labels": {
                "app.kubernetes.io/managed-by": "gazer",
                SITE_LABEL: site.name,
            },
        }
        if site.metadata.uid:
            metadata["ownerReferences"] = [{
                "apiVersion": site.api_version,
                "kind": site.kind,
                "name": site.name,
                "uid": site.metadata.uid,
            }]
        return metadata

    def _secret_manifest(self, site: StaticSite, config: Dict[str, Any]) -> Dict[str, Any]:
        encoded = base64.b64encode(json.dumps(config).encode("utf-8")).decode("ascii")
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(site, self.worker_secret_name(site.name)),
            "type": "kubernetes.io/dockerconfigjson",
            "data": {DOCKER_CONFIG_KEY: encoded},
        }

    def _job_manifest(self, site: StaticSite, args: List[str]) -> Dict[str, Any]:
        secret_name = self.worker_secret_name(site.name)
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": self._metadata(site, self.job_name(site.name)),
            "spec": {
                # Failed builds are retried by the controller, not the Job
                "backoffLimit": 0,
                "template": {
                    "metadata": {
                        "name": secret_name,
                        "labels": {SITE_LABEL: site.name},
                    },
                    "spec": {
                        "containers": [{
                            "name": "kaniko",
                            "image": self.builder_image,
                            "args": args,
                            "volumeMounts": [{
                                "name": "docker-config",
                                "mountPath": DOCKER_CONFIG_MOUNT,
                            }],
                        }],
                        "restartPolicy": "Never",
                        "volumes": [{
                            "name": "docker-config",
                            "secret": {
                                "secretName": secret_name,
                                "items": [{"key": DOCKER_CONFIG_KEY, "path": "config.json"}],
                            },
                        }],
                    },
                },
            },
        }
