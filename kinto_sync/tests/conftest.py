# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared test utilities and configuration for sync client tests.
"""

import json
import os
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

import pytest

from .. import (
    ClientAuth,
    SyncClient,
    TransportAdapter,
    TransportResponse,
    VersionTokenStore,
)

# Live server configuration (can be overridden via environment variables)
ENDPOINT = os.getenv("KINTO_SERVER_URL", "")
USERNAME = os.getenv("KINTO_USERNAME", "user")
PASSWORD = os.getenv("KINTO_PASSWORD", "pass")

FAKE_ROOT = "http://localhost:8888/v1"


@dataclass
class Call:
    method: str
    path: str
    headers: dict
    body: Optional[dict]


def _get(headers: dict, name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


class FakeKintoServer(TransportAdapter):
    """In-memory stand-in for a Kinto server behind the transport interface."""

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.calls: list[Call] = []
        self.fail_with: Optional[Exception] = None
        self.batch_reply: Optional[TransportResponse] = None
        self._clock = 1000

    # Transport

    def send(self, method, path, headers, body=None):
        payload = json.loads(body) if body else None
        self.calls.append(Call(method, path, dict(headers), payload))
        if self.fail_with is not None:
            raise self.fail_with

        if method == "POST" and path == "/batch":
            if self.batch_reply is not None:
                return self.batch_reply
            responses = []
            for sub in payload["requests"]:
                status, hdrs, out = self.handle(
                    sub["method"], sub["path"], sub.get("headers") or {}, sub.get("body")
                )
                responses.append(
                    {"status": status, "path": "/v1" + sub["path"], "headers": hdrs, "body": out}
                )
            return TransportResponse(200, {}, json.dumps({"responses": responses}).encode())

        status, hdrs, out = self.handle(method, path, headers, payload)
        raw = json.dumps(out).encode() if out is not None else None
        return TransportResponse(status, hdrs, raw)

    # Helpers for tests

    def tick(self) -> int:
        self._clock += 1
        return self._clock

    def put_object(self, path: str, data: dict, permissions: Optional[dict] = None) -> dict:
        """Store an object directly, bypassing preconditions."""
        data = dict(data, id=path.rsplit("/", 1)[-1], last_modified=self.tick())
        self.objects[path] = {"data": data, "permissions": permissions or {}}
        return data

    def touch(self, path: str, **changes) -> str:
        """Simulate a concurrent remote change; returns the new ETag."""
        obj = self.objects[path]
        obj["data"] = dict(obj["data"], **changes, last_modified=self.tick())
        return self.etag(obj)

    def count(self, method: Optional[str] = None) -> int:
        return sum(1 for c in self.calls if method is None or c.method == method)

    @staticmethod
    def etag(obj: dict) -> str:
        return f'"{obj["data"]["last_modified"]}"'

    # Request handling

    def handle(self, method, full_path, headers, payload):
        parts = urlsplit(full_path)
        path, params = parts.path, dict(parse_qsl(parts.query))
        if len(path.strip("/").split("/")) % 2:
            return self._plural(method, path, params, headers, payload)
        return self._single(method, path, headers, payload)

    def _error(self, status, message, **extra):
        body = {"code": status, "errno": 0, "error": message, "message": message}
        body.update(extra)
        return status, {}, body

    def _single(self, method, path, headers, payload):
        obj = self.objects.get(path)
        if obj is None and method in ("GET", "PATCH", "DELETE"):
            return self._error(404, "Not Found")

        if payload is not None and not isinstance(payload.get("data", {}), dict):
            return self._error(400, "data is not an object")

        conflict = self._precondition(obj, headers)
        if conflict:
            return conflict

        if method == "GET":
            return 200, {"ETag": self.etag(obj)}, obj
        if method == "DELETE":
            del self.objects[path]
            gone = {"id": obj["data"]["id"], "last_modified": self.tick(), "deleted": True}
            return 200, {}, {"data": gone}
        if method in ("PUT", "PATCH"):
            data = dict((payload or {}).get("data") or {})
            if method == "PATCH" and obj is not None:
                data = {**obj["data"], **data}
            permissions = (payload or {}).get("permissions")
            if permissions is None:
                permissions = obj["permissions"] if obj else {}
            created = obj is None
            self.put_object(path, data, permissions)
            obj = self.objects[path]
            return (201 if created else 200), {"ETag": self.etag(obj)}, obj
        return self._error(405, "Method Not Allowed")

    def _precondition(self, obj, headers):
        if_none = _get(headers, "If-None-Match")
        if_match = _get(headers, "If-Match")
        failed = (if_none == "*" and obj is not None) or (
            if_match is not None
            and (obj is None or if_match not in ("*", self.etag(obj)))
        )
        if not failed:
            return None
        status, _, body = self._error(
            412,
            "Resource was modified meanwhile",
            details={"existing": obj["data"] if obj else None},
        )
        return status, ({"ETag": self.etag(obj)} if obj else {}), body

    def _children(self, path, params):
        depth = path.count("/") + 1
        matches = [
            obj
            for key, obj in self.objects.items()
            if key.startswith(path + "/") and key.count("/") == depth
        ]
        filters = {k: v for k, v in params.items() if not k.startswith("_")}
        matches = [
            o for o in matches if all(str(o["data"].get(k)) == v for k, v in filters.items())
        ]
        return sorted(matches, key=lambda o: o["data"]["id"])

    def _plural(self, method, path, params, headers, payload):
        if method == "POST":
            data = dict((payload or {}).get("data") or {})
            record_id = data.get("id") or uuid.uuid4().hex
            return self._single("PUT", f"{path}/{record_id}", headers, payload)

        matches = self._children(path, params)
        if method == "DELETE":
            for obj in matches:
                root = f"{path}/{obj['data']['id']}"
                for key in [k for k in self.objects if k == root or k.startswith(root + "/")]:
                    del self.objects[key]
            stamp = self.tick()
            gone = [{"id": o["data"]["id"], "deleted": True, "last_modified": stamp} for o in matches]
            return 200, {}, {"data": gone}
        if method != "GET":
            return self._error(405, "Method Not Allowed")

        offset = int(params.get("_token", 0))
        limit = int(params.get("_limit", len(matches) or 1))
        page = matches[offset : offset + limit]
        headers = {"Total-Records": str(len(matches))}
        if offset + limit < len(matches):
            next_params = dict(params, _token=str(offset + limit))
            headers["Next-Page"] = f"{FAKE_ROOT}{path}?{urlencode(next_params)}"
        return 200, headers, {"data": [o["data"] for o in page]}


@pytest.fixture
def server():
    return FakeKintoServer()


@pytest.fixture
def store():
    return VersionTokenStore()


@pytest.fixture
def client(server, store):
    return SyncClient(server, store)


@pytest.fixture
def articles(server):
    """A blog/articles collection holding one record 'hello'."""
    server.put_object("/buckets/blog", {})
    server.put_object("/buckets/blog/collections/articles", {})
    server.put_object("/buckets/blog/collections/articles/records/hello", {"title": "Hi"})
    server.calls.clear()
    return server


def seed_records(server: FakeKintoServer, count: int, collection: str = "articles"):
    for i in range(count):
        server.put_object(
            f"/buckets/blog/collections/{collection}/records/rec-{i:03d}",
            {"n": i, "even": i % 2 == 0},
        )
    server.calls.clear()


def live_auth() -> ClientAuth:
    return ClientAuth.with_endpoint(ENDPOINT, username=USERNAME, password=PASSWORD)
