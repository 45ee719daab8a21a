"""
Control Plane Errors

Two failure families reach the reconciliation engine:
- ClusterApiError: anything the Kubernetes API rejected or failed to answer
- ReconcileError: domain failures (remote repository, credentials, ref selection)

Both are handled the same way by the controller's error policy: log, then
requeue the site after the long interval.
"""
from typing import Optional


class GazerError(Exception):
    """Base exception for gazer."""
    pass


class ClusterApiError(GazerError):
    """
    Kubernetes API call failed.

    Wraps kubernetes.client.ApiException as well as transport failures
    (connection refused, TLS errors) so callers only deal with one type.
    """

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def conflict(self) -> bool:
        return self.status == 409


class ReconcileError(GazerError):
    """Domain-level reconciliation failure."""
    pass


class RemoteError(ReconcileError):
    """Remote repository could not be opened or queried."""
    pass


class RemoteNotFoundError(RemoteError):
    """Remote repository does not exist (or is hidden from these credentials)."""
    pass


class RemoteTimeoutError(RemoteError):
    """Reference listing exceeded its bounded wait. Transient."""
    pass


class UnsupportedCredentialsError(ReconcileError):
    """Credential shape is invalid, unsupported for the transport, or unresolvable."""
    pass


class RemoteAuthError(UnsupportedCredentialsError):
    """Remote rejected the supplied credentials."""
    pass


class NoValidRefError(ReconcileError):
    """No advertised reference satisfies the site's selection policy."""
    pass


class RefClassificationError(ReconcileError):
    """
    Advertised reference has an unrecognized shape.

    Raised per entry; the resolver logs and skips the entry instead of
    aborting the whole listing.
    """

    def __init__(self, full_ref: str):
        super().__init__(f"Unrecognized reference: {full_ref}")
        self.full_ref = full_ref
