# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
RequestsTransport - HTTP transport for SyncClient built on requests.

This module provides the concrete TransportAdapter used by
SyncClient.connect(). It owns connection handling only; status codes and
bodies are interpreted by the client.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Mapping, Optional

from .client import ClientAuth, TransportAdapter, TransportError, TransportResponse

if TYPE_CHECKING:
    import requests
else:
    try:
        import requests
    except ImportError:
        requests = None

logger = logging.getLogger(__name__)


def _check_deps():
    if requests is None:
        raise ImportError("requests required: pip install requests")


class RequestsTransport(TransportAdapter):
    """Sends requests to a Kinto server below ``auth.server_url``."""

    def __init__(
        self,
        auth: Optional[ClientAuth] = None,
        session: Optional[requests.Session] = None,
    ):
        _check_deps()
        self.auth = auth or ClientAuth()
        self.server_url = self.auth.server_url.rstrip("/")
        self.io_timeout = self.auth.io_timeout_secs
        self._session = session
        self._owns_session = session is None

    def close(self):
        if self._owns_session and self._session:
            self._session.close()
            self._session = None

    def _headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        out = {"Accept": "application/json"}
        if self.auth.token:
            out["Authorization"] = f"Bearer {self.auth.token}"
        out.update(headers)
        return out

    def send(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = None,
    ) -> TransportResponse:
        if self._session is None:
            self._session = requests.Session()

        try:
            resp = self._session.request(
                method,
                f"{self.server_url}{path}",
                data=body,
                headers=self._headers(headers),
                auth=self.auth.basic,
                timeout=self.io_timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e

        logger.debug(f"{method} {path} -> {resp.status_code}")
        return TransportResponse(resp.status_code, resp.headers, resp.content or None)
