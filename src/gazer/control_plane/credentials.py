"""
Credential Resolution

Turns a site's Credentials union into usable username/password pairs.
Plaintext credentials pass straight through; fromSecret credentials are read
from a Secret in the site's namespace.
"""
import base64
import binascii
import logging
from typing import Optional

from .errors import ClusterApiError, UnsupportedCredentialsError
from .kube import KubeClients, call_api
from .models import CredentialKind, Credentials, PlainTextCredentials

logger = logging.getLogger(__name__)


async def resolve_credentials(
    credentials: Optional[Credentials],
    namespace: str,
    kube: Optional[KubeClients] = None,
) -> Optional[PlainTextCredentials]:
    """
    Resolve credentials to a username/password pair.

    Args:
        credentials: The credentials block from the site spec (may be None)
        namespace: Namespace to look up fromSecret references in
        kube: Cluster handles; required for fromSecret credentials

    Returns:
        PlainTextCredentials, or None when no credentials are configured

    Raises:
        UnsupportedCredentialsError: secret reference cannot be resolved
        ClusterApiError: secret lookup failed for another reason
    """
    if credentials is None or credentials.kind is CredentialKind.NONE:
        return None

    if credentials.kind is CredentialKind.PLAINTEXT:
        return credentials.plaintext

    ref = credentials.from_secret
    if kube is None:
        raise UnsupportedCredentialsError(
            f"Credentials from secret '{ref.secret_name}' need a cluster connection to resolve"
        )

    try:
        secret = await call_api(kube.core.read_namespaced_secret, ref.secret_name, namespace)
    except ClusterApiError as e:
        if e.not_found:
            raise UnsupportedCredentialsError(
                f"Secret {namespace}/{ref.secret_name} not found"
            ) from e
        raise

    data = secret.data or {}
    return PlainTextCredentials(
        username=_decode_entry(data, ref.username_entry, ref.secret_name),
        password=_decode_entry(data, ref.password_entry, ref.secret_name),
    )


def _decode_entry(data: dict, key: str, secret_name: str) -> str:
    if key not in data:
        raise UnsupportedCredentialsError(f"Secret '{secret_name}' has no entry '{key}'")
    try:
        return base64.b64decode(data[key]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise UnsupportedCredentialsError(
            f"Secret '{secret_name}' entry '{key}' is not valid base64 text"
        ) from e
