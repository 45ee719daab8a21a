"""
Ref Resolver

Lists a remote repository's references through the git reference
advertisement (no objects are fetched) and selects the one a StaticSite
should be built from.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import semver
import urllib3
from dulwich.client import HTTPUnauthorized, default_urllib3_manager, get_transport_and_path
from dulwich.errors import GitProtocolError, NotGitRepository

from .credentials import resolve_credentials
from .errors import (
    RefClassificationError,
    RemoteAuthError,
    RemoteError,
    RemoteNotFoundError,
    RemoteTimeoutError,
    UnsupportedCredentialsError,
)
from .kube import KubeClients
from .models import (
    Credentials,
    GitRef,
    PlainTextCredentials,
    RefKind,
    ResolvedTarget,
    SelectionMode,
    SelectionPolicy,
)

logger = logging.getLogger(__name__)

HEAD = "HEAD"
PEELED_SUFFIX = "^{}"

# Checked in order
_REF_PREFIXES = (
    ("refs/heads/", RefKind.BRANCH),
    ("refs/pull/", RefKind.PULL_REQUEST),
    ("refs/tags/", RefKind.TAG),
)


def classify_ref(full_ref: str) -> RefKind:
    """
    Classify a reference by its path prefix.

    Raises:
        RefClassificationError: the reference matches no known shape
    """
    for prefix, kind in _REF_PREFIXES:
        if full_ref.startswith(prefix):
            return kind
    if full_ref == HEAD:
        return RefKind.HEAD
    raise RefClassificationError(full_ref)


def short_name(full_ref: str) -> str:
    """Strip the first two path segments: refs/heads/feature/x -> feature/x."""
    parts = full_ref.split("/", 2)
    if len(parts) < 3:
        return full_ref
    return parts[2]


def refs_from_advertisement(advertised: Mapping[str, str]) -> List[GitRef]:
    """
    Build GitRefs from (name -> revision) pairs in advertisement order.

    Pull request refs and peeled tag entries are dropped. Entries with an
    unrecognized shape are logged and skipped; the rest still resolve.
    """
    refs: List[GitRef] = []
    for full_ref, revision_id in advertised.items():
        if full_ref.endswith(PEELED_SUFFIX):
            continue
        try:
            kind = classify_ref(full_ref)
        except RefClassificationError as e:
            logger.warning(f"Skipping advertised reference: {e}")
            continue
        if kind is RefKind.PULL_REQUEST:
            continue
        refs.append(GitRef(
            kind=kind,
            full_ref=full_ref,
            revision_id=revision_id,
            short_name=short_name(full_ref),
        ))
    return refs


def parse_semver_tag(name: str) -> Optional[semver.Version]:
    """Parse a tag name as a semantic version, allowing one leading 'v'."""
    candidate = name[1:] if name.startswith("v") else name
    try:
        return semver.Version.parse(candidate)
    except ValueError:
        return None


def _highest_semver_tag(refs: Iterable[GitRef]) -> Optional[GitRef]:
    candidates: List[Tuple[semver.Version, str, GitRef]] = []
    for ref in refs:
        if ref.kind is not RefKind.TAG:
            continue
        version = parse_semver_tag(ref.short_name)
        if version is None:
            continue
        candidates.append((version, ref.short_name, ref))

    if not candidates:
        return None
    # Equal versions (v1.0.0 / 1.0.0) fall back to the lexically greatest tag name
    return max(candidates, key=lambda c: (c[0], c[1]))[2]


def select_target(policy: SelectionPolicy, refs: Iterable[GitRef]) -> Optional[ResolvedTarget]:
    """
    Pick the reference to build.

    - semver: highest semantic-version tag, tagged with its own name
    - branch: the named branch, tagged with the branch name
    - head: the remote HEAD, tagged with its revision id

    Returns:
        ResolvedTarget, or None when nothing satisfies the policy
    """
    refs = list(refs)

    if policy.mode is SelectionMode.SEMVER:
        best = _highest_semver_tag(refs)
        if best is None:
            return None
        return ResolvedTarget(full_ref=best.full_ref, build_tag=best.short_name)

    if policy.mode is SelectionMode.BRANCH:
        for ref in refs:
            if ref.kind is RefKind.BRANCH and ref.short_name == policy.branch:
                return ResolvedTarget(full_ref=ref.full_ref, build_tag=ref.short_name)
        return None

    for ref in refs:
        if ref.kind is RefKind.HEAD:
            return ResolvedTarget(full_ref=ref.full_ref, build_tag=ref.revision_id)
    return None


def remote_url(source_url: str) -> str:
    """Address used for reference listing; bare host/path locations default to https."""
    if "://" in source_url or ":" in source_url.split("/", 1)[0]:
        return source_url
    return f"https://{source_url}"


class RefResolver:
    """
    Resolves the references a remote repository advertises.

    One instance is shared by all reconciliations; it holds no per-site state.
    """

    def __init__(self, kube: Optional[KubeClients] = None, timeout_seconds: float = 30.0):
        """
        Args:
            kube: Cluster handles, used to resolve fromSecret credentials
            timeout_seconds: Bound on the remote reference exchange
        """
        self.kube = kube
        self.timeout_seconds = timeout_seconds

    async def resolve_refs(
        self,
        source_url: str,
        credentials: Optional[Credentials] = None,
        namespace: str = "default",
    ) -> List[GitRef]:
        """
        List the buildable references of a remote repository.

        Raises:
            RemoteTimeoutError: the exchange exceeded timeout_seconds
            RemoteNotFoundError: no repository at source_url
            RemoteAuthError: credentials rejected
            UnsupportedCredentialsError: credentials unusable for this remote
            RemoteError: any other transport or protocol failure
        """
        auth = await resolve_credentials(credentials, namespace, self.kube)
        url = remote_url(source_url)

        try:
            advertised = await asyncio.wait_for(
                asyncio.to_thread(self._ls_remote, url, auth),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(
                f"Listing references of {url} timed out after {self.timeout_seconds}s"
            ) from e

        refs = refs_from_advertisement(advertised)
        logger.debug(f"Resolved {len(refs)} references from {url}")
        return refs

    def _ls_remote(self, url: str, auth: Optional[PlainTextCredentials]) -> Dict[str, str]:
        """Blocking reference advertisement exchange."""
        http = url.startswith(("http://", "https://"))
        kwargs = {}
        if auth is not None:
            if not http:
                raise UnsupportedCredentialsError(
                    f"Username/password credentials are only supported for http(s) remotes, not {url}"
                )
            kwargs = {"username": auth.username, "password": auth.password}
        if http:
            # Socket-level bound, so the thread ends once the wait gives up
            kwargs["pool_manager"] = default_urllib3_manager(
                None, base_url=url, timeout=self.timeout_seconds
            )

        try:
            client, path = get_transport_and_path(url, **kwargs)
            result = client.get_refs(path)
        except HTTPUnauthorized as e:
            raise RemoteAuthError(f"Remote {url} rejected the supplied credentials") from e
        except NotGitRepository as e:
            raise RemoteNotFoundError(f"No git repository at {url}") from e
        except (GitProtocolError, urllib3.exceptions.HTTPError, OSError, ValueError) as e:
            if _timed_out(e):
                raise RemoteTimeoutError(
                    f"Listing references of {url} timed out after {self.timeout_seconds}s"
                ) from e
            raise RemoteError(f"Could not list references of {url}: {e}") from e

        # Newer dulwich wraps the ref mapping in a result object
        refs = getattr(result, "refs", result)
        advertised = {}
        for name, sha in refs.items():
            if sha is None:
                continue
            try:
                advertised[name.decode("utf-8")] = sha.decode("ascii")
            except UnicodeDecodeError:
                logger.warning(f"Skipping undecodable reference {name!r} from {url}")
        return advertised


def _timed_out(error: BaseException) -> bool:
    """Whether a transport failure was caused by a socket timeout."""
    while error is not None:
        if isinstance(error, (TimeoutError, urllib3.exceptions.TimeoutError)):
            return True
        if isinstance(error, urllib3.exceptions.MaxRetryError) and isinstance(
            error.reason, urllib3.exceptions.TimeoutError
        ):
            return True
        error = error.__cause__ or error.__context__
    return False
