"""Tests for build job and credential secret management."""

import base64
import json

import pytest
from kubernetes.client import V1Job, V1JobCondition, V1JobStatus

from gazer.control_plane.errors import ClusterApiError, UnsupportedCredentialsError
from gazer.control_plane.job_orchestrator import (
    NO_PUSH_ARG,
    JobOrchestrator,
    build_context,
    destination_arg,
    docker_config,
    project_status,
    strip_http_scheme,
)
from gazer.control_plane.models import (
    BuildState,
    OciRepo,
    OciRepoProvider,
    PlainTextCredentials,
    ResolvedTarget,
)

TARGET = ResolvedTarget(full_ref="refs/heads/main", build_tag="main")


def _decoded_config(secret_body):
    return json.loads(base64.b64decode(secret_body["data"][".dockerconfigjson"]))


class TestBuildArguments:

    def test_strip_http_scheme(self):
        assert strip_http_scheme("https://github.com/a/b") == "github.com/a/b"
        assert strip_http_scheme("http://github.com/a/b") == "github.com/a/b"
        assert strip_http_scheme("github.com/a/b") == "github.com/a/b"

    def test_only_leading_scheme_is_stripped(self):
        assert strip_http_scheme("git.example.com/mirror/https://x") == "git.example.com/mirror/https://x"

    def test_context(self):
        assert build_context("https://github.com/realliance/blog", "refs/tags/v1.0.0") == (
            "--context=git://github.com/realliance/blog#refs/tags/v1.0.0"
        )

    def test_destination(self):
        repo = OciRepo(provider=OciRepoProvider.DOCKER, repo="realliance/blog")
        assert destination_arg(repo, "v1.0.0") == "--destination=docker.io/realliance/blog:v1.0.0"

    def test_no_push_fallback(self):
        assert destination_arg(OciRepo(repo="realliance/blog"), "main") == NO_PUSH_ARG == "--no-push"


class TestDockerConfig:

    def test_plaintext_credentials(self):
        repo = OciRepo(provider=OciRepoProvider.DOCKER, repo="r")
        config = docker_config(repo, PlainTextCredentials(username="bot", password="pw"))
        assert config == {
            "auths": {"https://index.docker.io/v1/": {"auth": base64.b64encode(b"bot:pw").decode()}}
        }

    def test_custom_auth_endpoint(self):
        repo = OciRepo.model_validate({"custom": {"authUrl": "reg.local", "pushUrl": "reg.local:5000"}, "repo": "r"})
        config = docker_config(repo, PlainTextCredentials(username="a", password="b"))
        assert list(config["auths"]) == ["reg.local"]

    def test_no_credentials(self):
        assert docker_config(OciRepo(provider=OciRepoProvider.QUAY, repo="r"), None) == {}

    def test_no_auth_endpoint(self):
        assert docker_config(OciRepo(repo="r"), PlainTextCredentials(username="a", password="b")) == {}


class TestProjectStatus:

    @pytest.mark.parametrize("status,expected", [
        (None, BuildState.PENDING),
        (V1JobStatus(), BuildState.PENDING),
        (V1JobStatus(active=1), BuildState.RUNNING),
        (V1JobStatus(succeeded=1, completion_time="2024-01-01T00:00:00Z"), BuildState.COMPLETED),
        (V1JobStatus(conditions=[V1JobCondition(type="Complete", status="True")]), BuildState.COMPLETED),
        (V1JobStatus(failed=1, conditions=[V1JobCondition(type="Failed", status="True")]), BuildState.FAILED),
        (V1JobStatus(active=1, conditions=[V1JobCondition(type="Failed", status="False")]), BuildState.RUNNING),
    ])
    def test_projection(self, status, expected):
        assert project_status(V1Job(status=status)) is expected


class TestSubmitBuild:

    @pytest.mark.asyncio
    async def test_creates_secret_and_job(self, kube, make_site):
        site = make_site(ociCredentials={"plaintext": {"username": "bot", "password": "pw"}})
        await JobOrchestrator(kube).submit_build(site, TARGET)

        secret = kube.core.secrets[("web", "gazer-build-blog-worker")]
        assert secret["type"] == "kubernetes.io/dockerconfigjson"
        assert _decoded_config(secret) == {
            "auths": {"https://index.docker.io/v1/": {"auth": base64.b64encode(b"bot:pw").decode()}}
        }

        job = kube.batch.jobs[("web", "gazer-build-blog")]
        pod = job["spec"]["template"]["spec"]
        container = pod["containers"][0]
        assert container["image"] == "gcr.io/kaniko-project/executor:latest"
        assert container["args"] == [
            "--context=git://github.com/realliance/blog#refs/heads/main",
            "--destination=docker.io/realliance/blog:main",
        ]
        assert container["volumeMounts"][0]["mountPath"] == "/kaniko/.docker/"
        assert pod["restartPolicy"] == "Never"
        assert job["spec"]["backoffLimit"] == 0
        assert pod["volumes"][0]["secret"]["secretName"] == "gazer-build-blog-worker"
        assert pod["volumes"][0]["secret"]["items"] == [{"key": ".dockerconfigjson", "path": "config.json"}]

    @pytest.mark.asyncio
    async def test_owner_reference_and_labels(self, kube, make_site):
        await JobOrchestrator(kube).submit_build(make_site(), TARGET)
        metadata = kube.batch.jobs[("web", "gazer-build-blog")]["metadata"]
        assert metadata["labels"]["realliance.net/site"] == "blog"
        assert metadata["ownerReferences"] == [{
            "apiVersion": "realliance.net/v1",
            "kind": "StaticSite",
            "name": "blog",
            "uid": "0b7c-uid",
        }]

    @pytest.mark.asyncio
    async def test_no_owner_reference_without_uid(self, kube, make_site):
        await JobOrchestrator(kube).submit_build(make_site(uid=None), TARGET)
        assert "ownerReferences" not in kube.batch.jobs[("web", "gazer-build-blog")]["metadata"]

    @pytest.mark.asyncio
    async def test_no_push_without_destination(self, kube, make_site):
        site = make_site(ociRepo={"repo": "realliance/blog"})
        await JobOrchestrator(kube).submit_build(site, TARGET)
        args = kube.batch.jobs[("web", "gazer-build-blog")]["spec"]["template"]["spec"]["containers"][0]["args"]
        assert args[1] == "--no-push"
        assert _decoded_config(kube.core.secrets[("web", "gazer-build-blog-worker")]) == {}

    @pytest.mark.asyncio
    async def test_secret_is_replaced_not_duplicated(self, kube, make_site):
        orchestrator = JobOrchestrator(kube)
        site = make_site(ociCredentials={"plaintext": {"username": "bot", "password": "pw"}})
        await orchestrator.submit_build(site, TARGET)
        await orchestrator.delete_build("web", "blog")

        rotated = make_site(ociCredentials={"plaintext": {"username": "bot", "password": "new"}})
        await orchestrator.submit_build(rotated, TARGET)

        assert list(kube.core.secrets) == [("web", "gazer-build-blog-worker")]
        assert kube.core.created == 2
        assert kube.core.deleted == 1
        auth = _decoded_config(kube.core.secrets[("web", "gazer-build-blog-worker")])["auths"]
        assert auth["https://index.docker.io/v1/"]["auth"] == base64.b64encode(b"bot:new").decode()

    @pytest.mark.asyncio
    async def test_retried_submit_keeps_one_secret(self, kube, make_site):
        orchestrator = JobOrchestrator(kube)
        await orchestrator.submit_build(make_site(), TARGET)
        await orchestrator.submit_build(make_site(), TARGET)

        assert list(kube.core.secrets) == [("web", "gazer-build-blog-worker")]
        assert kube.core.created == 2
        assert kube.batch.created == 1
        assert len(kube.batch.jobs) == 1

    @pytest.mark.asyncio
    async def test_registry_credentials_from_secret(self, kube, make_site):
        kube.core.secrets[("web", "registry")] = {"data": {
            "user": base64.b64encode(b"robot").decode(),
            "token": base64.b64encode(b"t0ken").decode(),
        }}
        site = make_site(ociCredentials={
            "fromSecret": {"secretName": "registry", "usernameEntry": "user", "passwordEntry": "token"}
        })
        await JobOrchestrator(kube).submit_build(site, TARGET)
        auth = _decoded_config(kube.core.secrets[("web", "gazer-build-blog-worker")])["auths"]
        assert auth["https://index.docker.io/v1/"]["auth"] == base64.b64encode(b"robot:t0ken").decode()

    @pytest.mark.asyncio
    async def test_unresolvable_registry_secret(self, kube, make_site):
        site = make_site(ociCredentials={
            "fromSecret": {"secretName": "missing", "usernameEntry": "u", "passwordEntry": "p"}
        })
        with pytest.raises(UnsupportedCredentialsError):
            await JobOrchestrator(kube).submit_build(site, TARGET)
        assert kube.batch.jobs == {}

    @pytest.mark.asyncio
    async def test_custom_prefix_and_image(self, kube, make_site):
        orchestrator = JobOrchestrator(kube, job_prefix="site", builder_image="kaniko:v1")
        await orchestrator.submit_build(make_site(), TARGET)
        job = kube.batch.jobs[("web", "site-blog")]
        assert job["spec"]["template"]["spec"]["containers"][0]["image"] == "kaniko:v1"
        assert ("web", "site-blog-worker") in kube.core.secrets


class TestStatusAndDelete:

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, kube, make_site):
        orchestrator = JobOrchestrator(kube)
        assert await orchestrator.get_build_status("web", "blog") is BuildState.NOT_FOUND

        await orchestrator.submit_build(make_site(), TARGET)
        assert await orchestrator.get_build_status("web", "blog") is BuildState.RUNNING

        kube.batch.complete("web", "gazer-build-blog")
        assert await orchestrator.get_build_status("web", "blog") is BuildState.COMPLETED

    @pytest.mark.asyncio
    async def test_delete_uses_background_propagation(self, kube, make_site):
        orchestrator = JobOrchestrator(kube)
        await orchestrator.submit_build(make_site(), TARGET)
        assert await orchestrator.delete_build("web", "blog") is True
        assert kube.batch.delete_calls == [("web", "gazer-build-blog", "Background")]
        assert kube.batch.jobs == {}

    @pytest.mark.asyncio
    async def test_delete_missing_job_reports_not_found(self, kube):
        assert await JobOrchestrator(kube).delete_build("web", "blog") is False

    @pytest.mark.asyncio
    async def test_other_api_errors_propagate(self, kube):
        from kubernetes.client import ApiException

        def forbidden(name, namespace):
            raise ApiException(status=403, reason="Forbidden")

        kube.batch.read_namespaced_job_status = forbidden
        with pytest.raises(ClusterApiError) as exc:
            await JobOrchestrator(kube).get_build_status("web", "blog")
        assert exc.value.status == 403
