# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Kinto Sync Client - ETag-guarded access to a Kinto record store.

Usage:
    from kinto_sync import ClientAuth, Delete, ResourceRef, SyncClient, Update

    client = SyncClient.connect(ClientAuth.with_endpoint("http://localhost:8888/v1"))
    record = client.create("blog", "articles", {"id": "hello", "title": "Hi"})

    # Guarded by the token cached on create
    ref = ResourceRef("blog", "articles", "hello")
    record = client.update(ref, {"title": "Hello"})

    # Many operations, one request
    result = client.batch([Update(ref, {"views": 1}), Delete(other_ref)])

    for article in client.list("blog", "articles", page_size=50):
        ...
"""

from .client import (
    # Config
    ClientAuth,
    ProtocolProfile,
    KINTO_PROFILE,
    DEFAULT_SERVER_URL,
    # Paths
    ResourceRef,
    buckets_path,
    collections_path,
    records_path,
    # Data structures
    Record,
    Operation,
    Create,
    CreateResource,
    Update,
    Upsert,
    Delete,
    Read,
    Intent,
    # Exceptions
    KintoSyncError,
    TransportError,
    ConflictError,
    NotFoundError,
    ValidationError,
    InvalidReferenceError,
    ServerError,
    # Components
    VersionTokenStore,
    PreparedRequest,
    build_request,
    conditional_headers,
    BatchOrchestrator,
    BatchResult,
    BatchItem,
    PageWalker,
    PageCursor,
    WalkerState,
    # Interface
    TransportAdapter,
    TransportResponse,
    # Client
    SyncClient,
)
from .transport import RequestsTransport

__all__ = [
    "ClientAuth",
    "ProtocolProfile",
    "KINTO_PROFILE",
    "DEFAULT_SERVER_URL",
    "ResourceRef",
    "buckets_path",
    "collections_path",
    "records_path",
    "Record",
    "Operation",
    "Create",
    "CreateResource",
    "Update",
    "Upsert",
    "Delete",
    "Read",
    "Intent",
    "KintoSyncError",
    "TransportError",
    "ConflictError",
    "NotFoundError",
    "ValidationError",
    "InvalidReferenceError",
    "ServerError",
    "VersionTokenStore",
    "PreparedRequest",
    "build_request",
    "conditional_headers",
    "BatchOrchestrator",
    "BatchResult",
    "BatchItem",
    "PageWalker",
    "PageCursor",
    "WalkerState",
    "TransportAdapter",
    "TransportResponse",
    "SyncClient",
    "RequestsTransport",
]

__version__ = "1.0.0"
