"""HTTP client for the remote store.

Three synchronous calls mirror the store protocol: Insert, Find and
PreFind. A non-"Ok" status becomes StoreRejected (the store answered and
applied nothing); a transport failure or timeout becomes a plain RemoteError
or OperationCancelled, after which the request may or may not have landed.
"""

from __future__ import annotations

import logging

import httpx

from chronoseal.errors import DecodeError, OperationCancelled, RemoteError, StoreRejected
from chronoseal.models.store import STATUS_OK
from chronoseal.utils.encoding import b64d, b64e

logger = logging.getLogger(__name__)


class RemoteStoreClient:
    """Store client over JSON/HTTP.

    Pass ``client`` to reuse an existing ``httpx.Client`` (for example a
    FastAPI TestClient); it is then not closed by ``close()``.
    """

    INSERT_PATH = "/api/store/insert"
    FIND_PATH = "/api/store/find"
    PREFIND_PATH = "/api/store/prefind"

    def __init__(
        self,
        server_addr: str = "",
        *,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.server_addr = server_addr
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=server_addr, timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> RemoteStoreClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _post(self, path: str, payload: dict, timeout: float | None) -> dict:
        try:
            response = self._client.post(
                path,
                json=payload,
                timeout=timeout if timeout is not None else self._timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise OperationCancelled(f"Remote store request timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise RemoteError(
                f"Remote store returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteError(f"Cannot reach remote store at {self.server_addr}: {exc}") from exc
        except ValueError as exc:
            raise RemoteError(f"Remote store sent a non-JSON response: {exc}") from exc

        if not isinstance(body, dict):
            raise RemoteError("Remote store sent an unexpected response")
        msg = body.get("msg")
        if msg != STATUS_OK:
            logger.error("Remote store rejected %s: %s", path, msg)
            raise StoreRejected(str(msg))
        return body

    @staticmethod
    def _blobs(body: dict, key: str) -> list[bytes]:
        try:
            return [b64d(item) for item in body.get(key) or []]
        except ValueError as exc:
            raise DecodeError(f"Remote store sent malformed {key}: {exc}") from exc

    def insert(
        self, docs: list[bytes], tokens: list[bytes], *, timeout: float | None = None
    ) -> None:
        self._post(
            self.INSERT_PATH,
            {"docs": [b64e(d) for d in docs], "tkns": [b64e(t) for t in tokens]},
            timeout,
        )

    def find(
        self, fields: list[str], tokens: list[bytes], *, timeout: float | None = None
    ) -> list[bytes]:
        body = self._post(
            self.FIND_PATH,
            {"fields": list(fields), "tkns": [b64e(t) for t in tokens]},
            timeout,
        )
        return self._blobs(body, "docs")

    def prefind(self, tokens: list[bytes], *, timeout: float | None = None) -> list[bytes]:
        body = self._post(self.PREFIND_PATH, {"tkns": [b64e(t) for t in tokens]}, timeout)
        return self._blobs(body, "tkns")
