# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Sync client implementation."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8888/v1"
BATCH_PATH = "/batch"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


# --- Configuration ---


@dataclass(frozen=True)
class ProtocolProfile:
    """Header names and status codes of the remote protocol."""

    etag_header: str = "ETag"
    if_match_header: str = "If-Match"
    if_none_match_header: str = "If-None-Match"
    create_only_value: str = "*"
    # If-Match value requiring that the resource already exists
    exists_value: str = "*"
    next_page_header: str = "Next-Page"
    page_size_param: str = "_limit"
    batch_path: str = BATCH_PATH
    conflict_statuses: tuple[int, ...] = (409, 412)
    not_found_statuses: tuple[int, ...] = (404,)
    validation_statuses: tuple[int, ...] = (400, 422)
    # Fall back to the body's last_modified when a response has no ETag
    token_from_body: bool = True


KINTO_PROFILE = ProtocolProfile()


@dataclass
class ClientAuth:
    """Server location and credentials."""

    server_url: str = DEFAULT_SERVER_URL
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    io_timeout_secs: int = 30

    @classmethod
    def with_endpoint(
        cls,
        server_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
        io_timeout_secs: int = 30,
    ) -> ClientAuth:
        return cls(
            server_url=server_url.rstrip("/") or DEFAULT_SERVER_URL,
            username=username,
            password=password,
            token=token,
            io_timeout_secs=io_timeout_secs,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> ClientAuth:
        """Build credentials from KINTO_* environment variables."""
        env = os.environ if environ is None else environ
        return cls.with_endpoint(
            env.get("KINTO_SERVER_URL", DEFAULT_SERVER_URL),
            username=env.get("KINTO_USERNAME"),
            password=env.get("KINTO_PASSWORD"),
            token=env.get("KINTO_TOKEN"),
            io_timeout_secs=int(env.get("KINTO_TIMEOUT", "30")),
        )

    @property
    def basic(self) -> Optional[tuple[str, str]]:
        if self.username is None:
            return None
        return self.username, self.password or ""


# --- Exceptions ---


class KintoSyncError(Exception):
    def __init__(
        self,
        message: str = "",
        status: Optional[int] = None,
        body: Any = None,
        ref: Optional[ResourceRef] = None,
    ):
        self.status, self.body, self.ref = status, body, ref
        super().__init__(message)


class TransportError(KintoSyncError):
    pass


class InvalidReferenceError(KintoSyncError, ValueError):
    pass


class NotFoundError(KintoSyncError):
    pass


class ValidationError(KintoSyncError):
    pass


class ServerError(KintoSyncError):
    pass


class ConflictError(KintoSyncError):
    """Version mismatch or create on an existing resource.

    ``current_token`` is the server's token for the resource when it reported
    one, so the caller can re-read and retry.
    """

    def __init__(
        self,
        message: str = "",
        current_token: Optional[str] = None,
        existing: Optional[dict] = None,
        **kwargs: Any,
    ):
        self.current_token, self.existing = current_token, existing
        super().__init__(message, **kwargs)


# --- Resource Paths ---


def _check_segment(kind: str, value: Optional[str]) -> str:
    if not value or not isinstance(value, str) or not _SEGMENT_RE.match(value):
        raise InvalidReferenceError(f"Invalid {kind} id: {value!r}")
    return value


@dataclass(frozen=True)
class ResourceRef:
    """A bucket, a collection or a record, addressed by its id chain."""

    bucket: str
    collection: Optional[str] = None
    record: Optional[str] = None

    def __post_init__(self):
        if self.record is not None and self.collection is None:
            raise InvalidReferenceError(
                f"Record {self.record!r} requires a collection id"
            )
        _check_segment("bucket", self.bucket)
        if self.collection is not None:
            _check_segment("collection", self.collection)
        if self.record is not None:
            _check_segment("record", self.record)

    @classmethod
    def for_bucket(cls, bucket: str) -> ResourceRef:
        return cls(bucket)

    @classmethod
    def for_collection(cls, bucket: str, collection: str) -> ResourceRef:
        return cls(bucket, collection)

    @classmethod
    def for_record(cls, bucket: str, collection: str, record: str) -> ResourceRef:
        return cls(bucket, collection, record)

    @property
    def kind(self) -> str:
        if self.record is not None:
            return "record"
        if self.collection is not None:
            return "collection"
        return "bucket"

    @property
    def path(self) -> str:
        path = f"/buckets/{self.bucket}"
        if self.collection is not None:
            path += f"/collections/{self.collection}"
        if self.record is not None:
            path += f"/records/{self.record}"
        return path

    def child(self, record_id: str) -> ResourceRef:
        return ResourceRef(self.bucket, self.collection, record_id)


def buckets_path() -> str:
    return "/buckets"


def collections_path(bucket: str) -> str:
    return f"/buckets/{_check_segment('bucket', bucket)}/collections"


def records_path(bucket: str, collection: str) -> str:
    return f"{ResourceRef(bucket, collection).path}/records"


def _with_query(
    path: str, params: Optional[Union[Mapping[str, Any], Sequence[tuple[str, str]]]]
) -> str:
    if not params:
        return path
    return f"{path}?{urlencode(params, doseq=True)}"


# --- Data Classes ---


@dataclass(frozen=True)
class Record:
    """A stored object as last seen on the server."""

    id: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)
    token: Optional[str] = None
    permissions: Mapping[str, Any] = field(default_factory=dict)

    @property
    def last_modified(self) -> Optional[int]:
        return self.data.get("last_modified")

    def with_data(self, **changes: Any) -> Record:
        return replace(self, data={**self.data, **changes})

    @classmethod
    def from_response(cls, body: Any, token: Optional[str]) -> Record:
        body = body if isinstance(body, dict) else {}
        data = dict(body.get("data") or {})
        return cls(
            id=data.get("id"),
            data=data,
            token=token,
            permissions=dict(body.get("permissions") or {}),
        )


class Intent(Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """Base class of the logical operations accepted by ``batch``."""


@dataclass(frozen=True)
class Create(Operation):
    bucket: str
    collection: str
    record: Record
    permissions: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class CreateResource(Operation):
    """Create a bucket or a collection."""

    ref: ResourceRef
    data: Optional[Mapping[str, Any]] = None
    permissions: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Update(Operation):
    ref: ResourceRef
    patch: Mapping[str, Any]
    expected_token: Optional[str] = None
    replace: bool = False
    permissions: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Upsert(Operation):
    """Write a resource whether or not it exists."""

    ref: ResourceRef
    data: Mapping[str, Any]
    expected_token: Optional[str] = None
    permissions: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Delete(Operation):
    ref: ResourceRef
    expected_token: Optional[str] = None


@dataclass(frozen=True)
class Read(Operation):
    ref: ResourceRef


# --- Version Token Store ---


class VersionTokenStore:
    """Last-known version token per resource.

    Refs are spread over a fixed pool of locks, so operations on different
    refs rarely wait on each other and the pool never grows. Absence of a
    token means "unknown", not "does not exist".
    """

    def __init__(self, lock_count: int = 64):
        self._tokens: dict[ResourceRef, str] = {}
        self._locks = [threading.Lock() for _ in range(max(1, lock_count))]

    def _lock(self, ref: ResourceRef) -> threading.Lock:
        return self._locks[hash(ref) % len(self._locks)]

    def get(self, ref: ResourceRef) -> Optional[str]:
        with self._lock(ref):
            return self._tokens.get(ref)

    def set(self, ref: ResourceRef, token: str) -> None:
        with self._lock(ref):
            self._tokens[ref] = token

    def clear(self, ref: ResourceRef) -> None:
        with self._lock(ref):
            self._tokens.pop(ref, None)

    def clear_tree(self, ref: ResourceRef) -> None:
        """Clear ``ref`` and every cached ref below it."""
        self.clear(ref)
        if ref.kind == "record":
            return
        prefix = ref.path + "/"
        for known in list(self._tokens):
            if known.path.startswith(prefix):
                self.clear(known)

    def clear_all(self) -> None:
        for ref in list(self._tokens):
            self.clear(ref)

    def apply(self, updates: Iterable[tuple[ResourceRef, Optional[str]]]) -> None:
        """Set each token, or clear the ref (and what lies below it) when None."""
        for ref, token in updates:
            if token is None:
                self.clear_tree(ref)
            else:
                self.set(ref, token)

    def __contains__(self, ref: ResourceRef) -> bool:
        return self.get(ref) is not None

    def __len__(self) -> int:
        return len(self._tokens)


# --- Transport Interface ---


@dataclass
class TransportResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


class TransportAdapter(ABC):
    """Sends one HTTP request. Raise TransportError on network failure."""

    @abstractmethod
    def send(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = None,
    ) -> TransportResponse: ...

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


# --- Request Builder ---


def conditional_headers(
    intent: Intent,
    expected_token: Optional[str] = None,
    cached_token: Optional[str] = None,
    profile: ProtocolProfile = KINTO_PROFILE,
) -> dict[str, str]:
    """Headers guarding a write against concurrent remote changes."""
    if intent is Intent.CREATE:
        return {profile.if_none_match_header: profile.create_only_value}
    if intent in (Intent.UPDATE, Intent.DELETE):
        token = expected_token or cached_token
        if token:
            return {profile.if_match_header: token}
    return {}


@dataclass
class PreparedRequest:
    """One HTTP exchange, built without touching the network."""

    method: str
    path: str
    headers: dict[str, str]
    body: Optional[Any]
    intent: Intent
    ref: Optional[ResourceRef] = None
    # Collection receiving a POST; the record id comes back in the response
    parent: Optional[ResourceRef] = None
    # Sent with If-Match: *; a failed precondition means the resource is gone
    must_exist: bool = False

    def target(self, body: Any) -> Optional[ResourceRef]:
        if self.ref is not None:
            return self.ref
        data = body.get("data") if isinstance(body, dict) else None
        if self.parent is not None and isinstance(data, dict) and data.get("id"):
            return self.parent.child(data["id"])
        return None

    def encoded_body(self) -> Optional[bytes]:
        if self.body is None:
            return None
        return json.dumps(self.body).encode()

    def to_subrequest(self) -> dict:
        sub: dict = {"method": self.method, "path": self.path}
        if self.headers:
            sub["headers"] = dict(self.headers)
        if self.body is not None:
            sub["body"] = self.body
        return sub


def _payload(data: Any, permissions: Optional[Mapping[str, Any]]) -> dict:
    if isinstance(data, Mapping):
        data = {k: v for k, v in data.items() if k != "last_modified"}
    body: dict = {}
    if data is not None:
        body["data"] = data
    if permissions:
        body["permissions"] = dict(permissions)
    return body


def build_request(
    operation: Operation,
    store: VersionTokenStore,
    profile: ProtocolProfile = KINTO_PROFILE,
) -> PreparedRequest:
    """Translate an operation into method, path, conditional headers and body."""
    if isinstance(operation, Create):
        record = operation.record
        body = _payload(record.data, operation.permissions or record.permissions)
        headers = conditional_headers(Intent.CREATE, profile=profile)
        record_id = record.id or record.data.get("id")
        if record_id:
            ref = ResourceRef(operation.bucket, operation.collection, record_id)
            return PreparedRequest("PUT", ref.path, headers, body, Intent.CREATE, ref)
        parent = ResourceRef(operation.bucket, operation.collection)
        return PreparedRequest(
            "POST",
            records_path(operation.bucket, operation.collection),
            headers,
            body,
            Intent.CREATE,
            parent=parent,
        )

    if isinstance(operation, CreateResource):
        headers = conditional_headers(Intent.CREATE, profile=profile)
        body = _payload(operation.data or {}, operation.permissions)
        return PreparedRequest(
            "PUT", operation.ref.path, headers, body, Intent.CREATE, operation.ref
        )

    if isinstance(operation, Update):
        headers = conditional_headers(
            Intent.UPDATE,
            operation.expected_token,
            store.get(operation.ref),
            profile,
        )
        method = "PATCH"
        must_exist = False
        if operation.replace:
            method = "PUT"
            # A bare PUT would create a missing resource
            if not headers:
                headers = {profile.if_match_header: profile.exists_value}
                must_exist = True
        body = _payload(operation.patch, operation.permissions)
        return PreparedRequest(
            method,
            operation.ref.path,
            headers,
            body,
            Intent.UPDATE,
            operation.ref,
            must_exist=must_exist,
        )

    if isinstance(operation, Upsert):
        headers = {}
        if operation.expected_token:
            headers[profile.if_match_header] = operation.expected_token
        body = _payload(operation.data, operation.permissions)
        return PreparedRequest(
            "PUT", operation.ref.path, headers, body, Intent.UPDATE, operation.ref
        )

    if isinstance(operation, Delete):
        headers = conditional_headers(
            Intent.DELETE,
            operation.expected_token,
            store.get(operation.ref),
            profile,
        )
        return PreparedRequest(
            "DELETE", operation.ref.path, headers, None, Intent.DELETE, operation.ref
        )

    if isinstance(operation, Read):
        return PreparedRequest(
            "GET", operation.ref.path, {}, None, Intent.READ, operation.ref
        )

    raise TypeError(f"Unsupported operation: {operation!r}")


# --- Response Interpretation ---


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _decode_json(raw: Optional[bytes]) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _body_token(data: Any) -> Optional[str]:
    if isinstance(data, dict) and data.get("last_modified") is not None:
        return f'"{data["last_modified"]}"'
    return None


def _extract_token(
    headers: Mapping[str, str], body: Any, profile: ProtocolProfile
) -> Optional[str]:
    token = _header(headers, profile.etag_header)
    if token:
        return token
    if profile.token_from_body and isinstance(body, dict):
        return _body_token(body.get("data"))
    return None


def _error_for(
    status: int,
    headers: Mapping[str, str],
    body: Any,
    ref: Optional[ResourceRef],
    profile: ProtocolProfile,
    must_exist: bool = False,
) -> Optional[KintoSyncError]:
    """
    Map a non-2xx answer to its error kind; None for success.

    With ``must_exist`` the request was sent with ``If-Match: *``; a failed
    precondition with no existing resource means it was not found.
    """
    if 200 <= status < 300:
        return None
    message = body.get("message") if isinstance(body, dict) else None
    where = ref.path if ref is not None else "request"
    detail = message or f"HTTP {status}"

    if status in profile.conflict_statuses:
        existing = None
        if isinstance(body, dict) and isinstance(body.get("details"), dict):
            existing = body["details"].get("existing")
        current = _header(headers, profile.etag_header) or _body_token(existing)
        if must_exist and existing is None and current is None:
            return NotFoundError(f"Not found: {where}", status=status, body=body, ref=ref)
        return ConflictError(
            f"Conflict on {where}: {detail}",
            current_token=current,
            existing=existing,
            status=status,
            body=body,
            ref=ref,
        )
    if status in profile.not_found_statuses:
        return NotFoundError(f"Not found: {where}", status=status, body=body, ref=ref)
    if status in profile.validation_statuses:
        return ValidationError(
            f"Invalid request on {where}: {detail}", status=status, body=body, ref=ref
        )
    return ServerError(f"{detail} on {where}", status=status, body=body, ref=ref)


# --- Batch Orchestrator ---


@dataclass
class BatchItem:
    """Outcome of one operation inside a batch."""

    operation: Operation
    status: int
    record: Optional[Record] = None
    error: Optional[KintoSyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    """Per-operation outcomes, in submission order."""

    items: list[BatchItem] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def __getitem__(self, index: int) -> BatchItem:
        return self.items[index]

    @property
    def ok(self) -> bool:
        return all(item.ok for item in self.items)

    @property
    def errors(self) -> list[tuple[int, KintoSyncError]]:
        return [(i, item.error) for i, item in enumerate(self.items) if item.error]


class BatchOrchestrator:
    """Runs many operations as one request to the batch endpoint."""

    def __init__(
        self,
        transport: TransportAdapter,
        store: VersionTokenStore,
        profile: ProtocolProfile = KINTO_PROFILE,
    ):
        self.transport = transport
        self.store = store
        self.profile = profile

    def submit(self, operations: Iterable[Operation]) -> BatchResult:
        operations = list(operations)
        if not operations:
            return BatchResult()

        prepared = [build_request(op, self.store, self.profile) for op in operations]
        envelope = {"requests": [p.to_subrequest() for p in prepared]}
        logger.debug(f"Submitting batch of {len(prepared)} requests")

        response = self.transport.send(
            "POST",
            self.profile.batch_path,
            {"Content-Type": "application/json"},
            json.dumps(envelope).encode(),
        )
        responses = self._unpack(response, len(prepared))

        # Zip by position: two operations may target the same resource
        items: list[BatchItem] = []
        updates: list[tuple[ResourceRef, Optional[str]]] = []
        for operation, request, sub in zip(operations, prepared, responses):
            item, update = self._demux(operation, request, sub)
            items.append(item)
            if update is not None:
                updates.append(update)

        self.store.apply(updates)
        result = BatchResult(items)
        if not result.ok:
            logger.info(
                f"Batch finished with {len(result.errors)}/{len(result)} failed items"
            )
        return result

    def _unpack(self, response: TransportResponse, expected: int) -> list:
        try:
            body = _decode_json(response.body)
        except ValueError:
            body = None

        if not 200 <= response.status < 300:
            if not isinstance(body, dict):
                raise TransportError(
                    f"Batch request failed with HTTP {response.status}",
                    status=response.status,
                )
            raise _error_for(
                response.status, response.headers, body, None, self.profile
            )

        responses = body.get("responses") if isinstance(body, dict) else None
        if not isinstance(responses, list) or len(responses) != expected:
            count = len(responses) if isinstance(responses, list) else 0
            logger.warning(f"Malformed batch response: {count}/{expected} responses")
            raise TransportError(
                f"Batch response has {count} sub-responses for {expected} requests",
                status=response.status,
                body=body,
            )
        return responses

    def _demux(
        self, operation: Operation, request: PreparedRequest, sub: Any
    ) -> tuple[BatchItem, Optional[tuple[ResourceRef, Optional[str]]]]:
        sub = sub if isinstance(sub, dict) else {}
        status = int(sub.get("status", 0))
        headers = sub.get("headers") or {}
        body = sub.get("body")
        ref = request.target(body)

        error = _error_for(
            status, headers, body, ref, self.profile, request.must_exist
        )
        if error is not None:
            # Conflicts leave the store as it was; the server token rides on the error
            forget = isinstance(error, NotFoundError) and ref is not None
            return BatchItem(operation, status, error=error), (
                (ref, None) if forget else None
            )

        if request.intent is Intent.DELETE:
            return BatchItem(operation, status), (ref, None)

        token = _extract_token(headers, body, self.profile)
        record = Record.from_response(body, token)
        update = (ref, token) if ref is not None and token else None
        return BatchItem(operation, status, record=record), update


# --- Pagination ---


class WalkerState(Enum):
    IDLE = "idle"
    HAS_CURSOR = "has_cursor"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class PageCursor:
    """Query of the next page, as announced by the server."""

    params: Sequence[tuple[str, str]]
    query: Mapping[str, Any]


PageParams = Union[Mapping[str, Any], Sequence[tuple[str, str]]]
PageFetcher = Callable[
    [PageParams], "tuple[list[Record], Optional[Sequence[tuple[str, str]]]]"
]


class PageWalker:
    """
    Lazy, forward-only iterator over a paginated list.

    Nothing is fetched until the walker is advanced. Once the server stops
    announcing a next page the walker is EXHAUSTED and issues no more calls.
    """

    def __init__(self, fetch: PageFetcher, query: Optional[Mapping[str, Any]] = None):
        self._fetch = fetch
        self.query = dict(query or {})
        self.state = WalkerState.IDLE
        self.cursor: Optional[PageCursor] = None
        self.pages_fetched = 0
        self._buffer: deque[Record] = deque()

    def __iter__(self):
        return self

    def __next__(self) -> Record:
        while not self._buffer:
            if self.state is WalkerState.EXHAUSTED:
                raise StopIteration
            self._buffer.extend(self.fetch_page())
        return self._buffer.popleft()

    @property
    def exhausted(self) -> bool:
        return self.state is WalkerState.EXHAUSTED and not self._buffer

    def fetch_page(self) -> list[Record]:
        """Return the next page of records, or [] once exhausted."""
        if self._buffer:
            page = list(self._buffer)
            self._buffer.clear()
            return page
        if self.state is WalkerState.EXHAUSTED:
            return []

        params = self.cursor.params if self.cursor is not None else self.query
        records, next_params = self._fetch(params)
        self.pages_fetched += 1

        if next_params is None:
            self.state, self.cursor = WalkerState.EXHAUSTED, None
        else:
            self.state = WalkerState.HAS_CURSOR
            self.cursor = PageCursor(next_params, self.query)
        return records


# --- Sync Client ---


RecordLike = Union[Record, Mapping[str, Any]]


class SyncClient:
    """Main sync client."""

    def __init__(
        self,
        transport: TransportAdapter,
        store: Optional[VersionTokenStore] = None,
        profile: ProtocolProfile = KINTO_PROFILE,
    ):
        self.transport = transport
        self.store = store if store is not None else VersionTokenStore()
        self.profile = profile

    @classmethod
    def connect(
        cls,
        auth: Optional[ClientAuth] = None,
        store: Optional[VersionTokenStore] = None,
        profile: ProtocolProfile = KINTO_PROFILE,
        session: Any = None,
    ) -> SyncClient:
        """Client talking HTTP through requests."""
        from .transport import RequestsTransport

        transport = RequestsTransport(auth or ClientAuth.from_env(), session)
        return cls(transport, store, profile)

    def close(self):
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # Single operations

    def create(
        self,
        bucket: str,
        collection: str,
        record: RecordLike,
        permissions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """Create a record; raises ConflictError if it already exists."""
        if not isinstance(record, Record):
            record = Record(id=record.get("id"), data=dict(record))
        return self._run(Create(bucket, collection, record, permissions))

    def create_bucket(
        self,
        bucket: str,
        data: Optional[Mapping[str, Any]] = None,
        permissions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        return self._run(CreateResource(ResourceRef(bucket), data, permissions))

    def create_collection(
        self,
        bucket: str,
        collection: str,
        data: Optional[Mapping[str, Any]] = None,
        permissions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        return self._run(
            CreateResource(ResourceRef(bucket, collection), data, permissions)
        )

    def read(self, ref: ResourceRef) -> Record:
        """Fetch the current state; raises NotFoundError."""
        return self._run(Read(ref))

    def update(
        self,
        ref: ResourceRef,
        patch: Mapping[str, Any],
        expected_token: Optional[str] = None,
        replace: bool = False,
        permissions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """
        Merge ``patch`` into the resource (or replace it with ``replace=True``).

        Guarded by ``expected_token``, else by the cached token, else sent
        unconditionally. Raises ConflictError or NotFoundError; never retries.
        """
        return self._run(Update(ref, patch, expected_token, replace, permissions))

    def upsert(
        self,
        ref: ResourceRef,
        data: Mapping[str, Any],
        expected_token: Optional[str] = None,
        permissions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """Create or replace the resource; only guarded by ``expected_token``."""
        return self._run(Upsert(ref, data, expected_token, permissions))

    def delete(self, ref: ResourceRef, expected_token: Optional[str] = None) -> None:
        """Delete under the same guard rules as update."""
        self._run(Delete(ref, expected_token))

    def batch(self, operations: Iterable[Operation]) -> BatchResult:
        return BatchOrchestrator(self.transport, self.store, self.profile).submit(
            operations
        )

    # Plural endpoints

    def list(
        self,
        bucket: str,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        page_size: Optional[int] = None,
    ) -> PageWalker:
        return self._walk(records_path(bucket, collection), filters, page_size)

    def list_collections(
        self, bucket: str, page_size: Optional[int] = None
    ) -> PageWalker:
        return self._walk(collections_path(bucket), None, page_size)

    def list_buckets(self, page_size: Optional[int] = None) -> PageWalker:
        return self._walk(buckets_path(), None, page_size)

    def delete_records(
        self,
        bucket: str,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> list[str]:
        """Delete every (matching) record of a collection; returns their ids."""
        parent = ResourceRef(bucket, collection)
        return self._delete_all(records_path(bucket, collection), parent.child, filters)

    def delete_collections(self, bucket: str) -> list[str]:
        """Delete every collection of a bucket, records included."""
        return self._delete_all(
            collections_path(bucket), partial(ResourceRef, bucket), None
        )

    def delete_buckets(self) -> list[str]:
        """Delete every bucket the caller may delete."""
        return self._delete_all(buckets_path(), ResourceRef, None)

    # Internals

    def _delete_all(
        self,
        path: str,
        ref_for: Callable[[str], ResourceRef],
        filters: Optional[Mapping[str, Any]],
    ) -> list[str]:
        request = PreparedRequest(
            "DELETE", _with_query(path, filters), {}, None, Intent.DELETE
        )
        _, body = self._execute(request)
        deleted = [
            item["id"]
            for item in (body or {}).get("data", [])
            if isinstance(item, dict) and item.get("id")
        ]
        for object_id in deleted:
            self.store.clear_tree(ref_for(object_id))
        logger.debug(f"Deleted {len(deleted)} objects under {path}")
        return deleted

    def _walk(
        self,
        path: str,
        filters: Optional[Mapping[str, Any]],
        page_size: Optional[int],
    ) -> PageWalker:
        query = dict(filters or {})
        if page_size is not None:
            query[self.profile.page_size_param] = page_size
        return PageWalker(partial(self._fetch_page, path), query)

    def _fetch_page(
        self, path: str, params: PageParams
    ) -> tuple[list[Record], Optional[list[tuple[str, str]]]]:
        request = PreparedRequest(
            "GET", _with_query(path, params), {}, None, Intent.READ
        )
        headers, body = self._execute(request)
        items = (body or {}).get("data", []) if isinstance(body, dict) else []
        records = [
            Record(
                id=item.get("id"),
                data=dict(item),
                token=_body_token(item) if self.profile.token_from_body else None,
            )
            for item in items
        ]
        next_url = _header(headers, self.profile.next_page_header)
        if not next_url:
            return records, None
        query = urlsplit(next_url).query
        # Pairs, not a dict: repeated keys must survive
        return records, parse_qsl(query, keep_blank_values=True)

    def _run(self, operation: Operation) -> Optional[Record]:
        request = build_request(operation, self.store, self.profile)
        headers, body = self._execute(request)
        ref = request.target(body)

        if request.intent is Intent.DELETE:
            if ref is not None:
                self.store.clear_tree(ref)
            return None

        token = _extract_token(headers, body, self.profile)
        if ref is not None and token:
            self.store.set(ref, token)
        return Record.from_response(body, token)

    def _execute(self, request: PreparedRequest) -> tuple[Mapping[str, str], Any]:
        headers = dict(request.headers)
        if request.body is not None:
            headers["Content-Type"] = "application/json"
        logger.debug(f"{request.method} {request.path}")

        response = self.transport.send(
            request.method, request.path, headers, request.encoded_body()
        )
        try:
            body = _decode_json(response.body)
        except ValueError as e:
            if 200 <= response.status < 300:
                raise TransportError(
                    f"Unreadable response from {request.path}",
                    status=response.status,
                ) from e
            body = None

        ref = request.target(body)
        error = _error_for(
            response.status,
            response.headers,
            body,
            ref,
            self.profile,
            request.must_exist,
        )
        if error is not None:
            if isinstance(error, NotFoundError) and ref is not None:
                self.store.clear_tree(ref)
            logger.info(f"{request.method} {request.path} failed: {error}")
            raise error
        return response.headers, body
