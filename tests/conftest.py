"""Shared fixtures: in-memory Kubernetes API doubles and StaticSite factories."""

from __future__ import annotations

import copy
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from kubernetes.client import (
    ApiException,
    V1Job,
    V1JobCondition,
    V1JobStatus,
    V1ObjectMeta,
    V1Secret,
)

from gazer.control_plane.kube import KubeClients
from gazer.control_plane.models import StaticSite
from gazer.control_plane.ref_resolver import RefResolver


def _not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def _conflict() -> ApiException:
    return ApiException(status=409, reason="Conflict")


class FakeCoreV1Api:
    """Secrets only."""

    def __init__(self):
        self.secrets: Dict[tuple, Dict[str, Any]] = {}
        self.created = 0
        self.deleted = 0

    def read_namespaced_secret(self, name, namespace):
        body = self.secrets.get((namespace, name))
        if body is None:
            raise _not_found()
        return V1Secret(metadata=V1ObjectMeta(name=name, namespace=namespace), data=body.get("data"))

    def create_namespaced_secret(self, namespace, body):
        key = (namespace, body["metadata"]["name"])
        if key in self.secrets:
            raise _conflict()
        self.secrets[key] = copy.deepcopy(body)
        self.created += 1
        return body

    def delete_namespaced_secret(self, name, namespace):
        if (namespace, name) not in self.secrets:
            raise _not_found()
        del self.secrets[(namespace, name)]
        self.deleted += 1


class FakeBatchV1Api:
    """Jobs with a settable status."""

    def __init__(self):
        self.jobs: Dict[tuple, Dict[str, Any]] = {}
        self.statuses: Dict[tuple, V1JobStatus] = {}
        self.created = 0
        self.max_live = 0
        self.delete_calls = []

    def read_namespaced_job_status(self, name, namespace):
        key = (namespace, name)
        if key not in self.jobs:
            raise _not_found()
        return V1Job(metadata=V1ObjectMeta(name=name, namespace=namespace), status=self.statuses[key])

    def create_namespaced_job(self, namespace, body):
        key = (namespace, body["metadata"]["name"])
        if key in self.jobs:
            raise _conflict()
        self.jobs[key] = copy.deepcopy(body)
        self.statuses[key] = V1JobStatus(active=1)
        self.created += 1
        self.max_live = max(self.max_live, len(self.jobs))
        return body

    def delete_namespaced_job(self, name, namespace, propagation_policy=None):
        self.delete_calls.append((namespace, name, propagation_policy))
        key = (namespace, name)
        if key not in self.jobs:
            raise _not_found()
        del self.jobs[key]
        del self.statuses[key]

    def complete(self, namespace, name):
        self.statuses[(namespace, name)] = V1JobStatus(
            succeeded=1,
            completion_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

    def fail(self, namespace, name):
        self.statuses[(namespace, name)] = V1JobStatus(
            failed=1,
            conditions=[V1JobCondition(type="Failed", status="True")],
        )


class FakeCustomObjectsApi:
    """StaticSite objects, plus the events a watch on them would see."""

    def __init__(self):
        self.sites: Dict[tuple, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.crd_installed = True

    def add(self, obj: Dict[str, Any]) -> None:
        metadata = obj["metadata"]
        self.sites[(metadata["namespace"], metadata["name"])] = obj

    def emit(self, event_type: str, obj: Dict[str, Any]) -> None:
        metadata = obj["metadata"]
        if event_type == "DELETED":
            self.sites.pop((metadata["namespace"], metadata["name"]), None)
        else:
            self.add(obj)
        self.events.append({"type": event_type, "object": obj})

    def list_cluster_custom_object(self, group, version, plural, **kwargs):
        if not self.crd_installed:
            raise _not_found()
        return {"items": list(self.sites.values())}

    def list_namespaced_custom_object(self, group, version, namespace, plural, **kwargs):
        if not self.crd_installed:
            raise _not_found()
        return {"items": [obj for (ns, _), obj in self.sites.items() if ns == namespace]}

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        obj = self.sites.get((namespace, name))
        if obj is None:
            raise _not_found()
        return obj


class FakeWatch:
    """Stands in for kubernetes.watch.Watch, replaying FakeCustomObjectsApi.events."""

    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True

    def stream(self, func, *args, timeout_seconds=None, **kwargs):
        custom = func.__self__
        deadline = time.monotonic() + (timeout_seconds or 1)
        while not self.stopped and time.monotonic() < deadline:
            if custom.events:
                yield custom.events.pop(0)
            else:
                time.sleep(0.01)


class StaticRefResolver(RefResolver):
    """RefResolver answering from a fixed advertisement instead of the network."""

    def __init__(self, advertised: Dict[str, str], kube: Optional[KubeClients] = None, timeout_seconds: float = 5.0):
        super().__init__(kube, timeout_seconds=timeout_seconds)
        self.advertised = advertised
        self.calls = []

    def _ls_remote(self, url, auth):
        self.calls.append((url, auth))
        return dict(self.advertised)


ADVERTISED = {
    "HEAD": "a" * 40,
    "refs/heads/main": "a" * 40,
    "refs/heads/feature/x": "b" * 40,
    "refs/pull/42/head": "c" * 40,
    "refs/tags/v1.2.0": "d" * 40,
    "refs/tags/v1.10.0": "e" * 40,
    "refs/tags/v1.10.0^{}": "f" * 40,
}


def site_object(
    name: str = "blog",
    namespace: str = "web",
    generation: int = 1,
    uid: Optional[str] = "0b7c-uid",
    **spec: Any,
) -> Dict[str, Any]:
    body = {
        "git": "https://github.com/realliance/blog",
        "ociRepo": {"provider": "docker", "repo": "realliance/blog"},
    }
    body.update(spec)
    return {
        "apiVersion": "realliance.net/v1",
        "kind": "StaticSite",
        "metadata": {"name": name, "namespace": namespace, "generation": generation, "uid": uid},
        "spec": body,
    }


@pytest.fixture
def kube():
    return KubeClients(core=FakeCoreV1Api(), batch=FakeBatchV1Api(), custom=FakeCustomObjectsApi())


@pytest.fixture
def make_site():
    def _make(**kwargs: Any) -> StaticSite:
        return StaticSite.from_object(site_object(**kwargs))
    return _make
