"""
Control Plane Data Models

Defines the StaticSite resource model (the declared desired state, owned by
the cluster API) and the ephemeral types the reconciliation engine passes
between its components.
"""
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Base for resource models: camelCase on the wire, snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class OciRepoProvider(str, PyEnum):
    """Well-known registry providers."""
    DOCKER = "docker"
    QUAY = "quay"

    @property
    def auth_url(self) -> str:
        if self is OciRepoProvider.DOCKER:
            return "https://index.docker.io/v1/"
        return "quay.io"

    @property
    def push_url(self) -> str:
        if self is OciRepoProvider.DOCKER:
            return "docker.io"
        return "quay.io"


class CustomOciDestination(_CamelModel):
    auth_url: str = Field(description="Registry authentication endpoint (key in the docker config auths map)")
    push_url: str = Field(description="Registry host used as the push destination prefix")


class OciRepo(_CamelModel):
    """
    Destination registry for the built image.

    A provider takes precedence over a custom destination. With neither set
    the build runs without pushing.
    """
    provider: Optional[OciRepoProvider] = Field(default=None, description="Well-known registry provider")
    custom: Optional[CustomOciDestination] = Field(default=None, description="Custom registry endpoints")
    repo: str = Field(description="Repository path inside the registry")

    @property
    def auth_url(self) -> Optional[str]:
        if self.provider is not None:
            return self.provider.auth_url
        if self.custom is not None:
            return self.custom.auth_url
        return None

    def push_destination(self, tag: str) -> Optional[str]:
        """Get `<pushUrl>/<repo>:<tag>`, or None when nothing to push to."""
        if self.provider is not None:
            push_url = self.provider.push_url
        elif self.custom is not None:
            push_url = self.custom.push_url
        else:
            return None
        return f"{push_url}/{self.repo}:{tag}"


class PlainTextCredentials(_CamelModel):
    username: str
    password: str


class FromSecret(_CamelModel):
    secret_name: str = Field(description="Secret in the site's namespace")
    username_entry: str = Field(description="Key holding the username")
    password_entry: str = Field(description="Key holding the password")


class CredentialKind(str, PyEnum):
    NONE = "none"
    PLAINTEXT = "plaintext"
    FROM_SECRET = "fromSecret"


class Credentials(_CamelModel):
    """Either plaintext credentials or a reference to a Secret. Plaintext wins if both are set."""
    plaintext: Optional[PlainTextCredentials] = None
    from_secret: Optional[FromSecret] = None

    @property
    def kind(self) -> CredentialKind:
        if self.plaintext is not None:
            return CredentialKind.PLAINTEXT
        if self.from_secret is not None:
            return CredentialKind.FROM_SECRET
        return CredentialKind.NONE


class IngressConfig(_CamelModel):
    """Ingress settings. Carried on the resource, not acted upon by the controller."""
    ingress_class: Optional[str] = None
    annotations: Optional[str] = None


class SelectionMode(str, PyEnum):
    SEMVER = "semver"
    BRANCH = "branch"
    HEAD = "head"


@dataclass(frozen=True)
class SelectionPolicy:
    mode: SelectionMode
    branch: Optional[str] = None


class StaticSiteSpec(_CamelModel):
    """Spec for the StaticSite custom resource."""
    git: str = Field(description="Source repository URL")
    branch: Optional[str] = Field(default=None, description="Branch to build (ignored when useSemver is true)")
    use_semver: Optional[bool] = Field(default=None, description="Build the highest semantic-version tag")
    git_credentials: Optional[Credentials] = Field(default=None, description="Credentials for the source repository")
    namespace: Optional[str] = None
    multi_site: Optional[bool] = None
    oci_repo: OciRepo = Field(description="Destination registry")
    oci_credentials: Optional[Credentials] = Field(default=None, description="Credentials for the destination registry")
    ingress: Optional[IngressConfig] = None

    @property
    def selection_policy(self) -> SelectionPolicy:
        if self.use_semver:
            return SelectionPolicy(SelectionMode.SEMVER)
        if self.branch:
            return SelectionPolicy(SelectionMode.BRANCH, branch=self.branch)
        return SelectionPolicy(SelectionMode.HEAD)


class ObjectMeta(_CamelModel):
    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    generation: Optional[int] = None
    resource_version: Optional[str] = None


class StaticSite(_CamelModel):
    """A StaticSite object as returned by the cluster API."""
    api_version: str = "realliance.net/v1"
    kind: str = "StaticSite"
    metadata: ObjectMeta
    spec: StaticSiteSpec

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "StaticSite":
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> Tuple[str, str]:
        return (self.metadata.namespace, self.metadata.name)


class RefKind(str, PyEnum):
    BRANCH = "branch"
    TAG = "tag"
    PULL_REQUEST = "pull_request"
    HEAD = "head"


@dataclass(frozen=True)
class GitRef:
    """A single advertised reference. Produced fresh on every resolution."""
    kind: RefKind
    full_ref: str
    revision_id: str
    short_name: str


@dataclass(frozen=True)
class ResolvedTarget:
    """The reference to build and the tag the image is pushed under."""
    full_ref: str
    build_tag: str


class BuildState(str, PyEnum):
    """Thin projection of a build Job's status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ReconcileAction:
    requeue_after: float
