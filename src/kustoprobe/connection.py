"""
Connection descriptor and SDK client factories.

`build_descriptor` is pure: it validates and freezes the endpoint/credential
pair. The SDK connection-string builder and clients are only created by the
factories below, so the descriptor can be shared by the ingest and query sides.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

import structlog
from azure.kusto.data import KustoClient, KustoConnectionStringBuilder

from kustoprobe.auth import AuthMode, Credential
from kustoprobe.errors import ClusterConnectionError

log = structlog.get_logger()

_INGEST_PREFIX = "ingest-"


def _normalize_endpoint(endpoint: str) -> str:
    url = str(endpoint or "").strip().rstrip("/")
    parts = urlsplit(url)
    if parts.scheme != "https" or not parts.hostname:
        raise ClusterConnectionError(f"invalid cluster endpoint {endpoint!r} (expected https://<host>)")
    return url


def ingest_endpoint_for(endpoint: str) -> str:
    """
    Derive the managed-ingestion endpoint: https://ingest-<cluster host>.
    """
    url = _normalize_endpoint(endpoint)
    parts = urlsplit(url)
    host = parts.netloc
    if host.lower().startswith(_INGEST_PREFIX):
        return url
    return f"{parts.scheme}://{_INGEST_PREFIX}{host}"


@dataclass(frozen=True)
class ConnectionDescriptor:
    endpoint: str
    credential: Credential
    ingest_endpoint: str

    @property
    def auth_mode(self) -> AuthMode:
        return self.credential.mode


def build_descriptor(endpoint: str, credential: Credential, *, ingest_endpoint: str | None = None) -> ConnectionDescriptor:
    """Combine endpoint and credential into an immutable descriptor (no I/O)."""
    url = _normalize_endpoint(endpoint)
    ingest_url = _normalize_endpoint(ingest_endpoint) if ingest_endpoint else ingest_endpoint_for(url)
    return ConnectionDescriptor(endpoint=url, credential=credential, ingest_endpoint=ingest_url)


def connection_string(descriptor: ConnectionDescriptor, endpoint: str | None = None) -> KustoConnectionStringBuilder:
    """
    Map the descriptor's credential onto a KustoConnectionStringBuilder for `endpoint`
    (defaults to the query endpoint).
    """
    url = endpoint or descriptor.endpoint
    cred = descriptor.credential
    if cred.mode is AuthMode.TOKEN:
        return KustoConnectionStringBuilder.with_aad_user_token_authentication(url, cred.token)
    if cred.mode is AuthMode.AMBIENT:
        return KustoConnectionStringBuilder.with_azure_token_credential(url, cred.token_credential)
    raise ClusterConnectionError(f"unsupported auth mode: {cred.mode!r}")


def make_query_client(descriptor: ConnectionDescriptor) -> KustoClient:
    try:
        client = KustoClient(connection_string(descriptor))
    except ClusterConnectionError:
        raise
    except Exception as e:
        raise ClusterConnectionError("error creating query client", cause=e) from e
    log.debug("connection.query_client_ready", endpoint=descriptor.endpoint)
    return client
