"""HTTP remote store speaking a small REST protocol.

Endpoints, relative to REMOTE_STORE_URL:

    HEAD /books/<hash>            200 if stored, 404 otherwise
    GET  /books/<hash>            book content (Content-Length, Last-Modified)
    PUT  /books/<hash>            one chunk per request, with Content-Range
    GET  /books/<hash>/progress   reading progress JSON
    PUT  /books/<hash>/progress   reading progress JSON

Uploads are sent chunk by chunk so that progress can be reported and the
upload can be abandoned between chunks.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Iterator, Optional

import requests

from shelfsync.core.config import config
from shelfsync.core.errors import (
    AuthorizationRejected,
    PermanentTransferError,
    QuotaExceeded,
    RemoteNotFound,
    TransientTransferError,
)
from shelfsync.core.interfaces import AuthProvider, RemoteFetch, RemoteStore
from shelfsync.core.logger import setup_logger
from shelfsync.core.models import ReadingProgress

logger = setup_logger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
QUOTA_STATUS_CODES = {413, 507}


def _raise_for_status(response: requests.Response, book_hash: str) -> None:
    """Map HTTP failures onto the transfer error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    detail = f"HTTP {status} for {book_hash}"
    if status in (401, 403):
        raise AuthorizationRejected(detail)
    if status == 404:
        raise RemoteNotFound(detail)
    if status in QUOTA_STATUS_CODES:
        raise QuotaExceeded(detail)
    if status in TRANSIENT_STATUS_CODES:
        raise TransientTransferError(detail)
    raise PermanentTransferError(detail)


def _parse_last_modified(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Last-Modified header: {value!r}")
        return None
    # "-0000" dates parse as naive
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class HttpRemoteStore(RemoteStore):
    """RemoteStore backed by a requests.Session shared across workers."""

    def __init__(
        self,
        auth: AuthProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        base_url = base_url if base_url is not None else config.get("REMOTE_STORE_URL", "")
        if not base_url:
            raise ValueError("REMOTE_STORE_URL is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout if timeout is not None else config.get("REMOTE_TIMEOUT", 30.0))
        self.chunk_size = int(chunk_size if chunk_size is not None else config.get("REMOTE_CHUNK_SIZE", 65536))
        self.auth = auth
        self._session = session or requests.Session()

    def _url(self, book_hash: str, suffix: str = "") -> str:
        return f"{self.base_url}/books/{book_hash}{suffix}"

    def _headers(self) -> Dict[str, str]:
        session = self.auth.get_session()
        if session is None:
            raise AuthorizationRejected("Session ended during transfer")
        return {"Authorization": f"Bearer {session.token}"}

    def _request(self, method: str, url: str, book_hash: str, **kwargs) -> requests.Response:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            return self._session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientTransferError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

    def exists(self, book_hash: str) -> bool:
        response = self._request("HEAD", self._url(book_hash), book_hash)
        if response.status_code == 404:
            return False
        _raise_for_status(response, book_hash)
        return True

    def put(self, book_hash: str, content: bytes) -> Iterator[float]:
        total = len(content)
        if total == 0:
            raise PermanentTransferError(f"Refusing to upload empty content for {book_hash}")

        offset = 0
        while offset < total:
            chunk = content[offset:offset + self.chunk_size]
            end = offset + len(chunk) - 1
            response = self._request(
                "PUT",
                self._url(book_hash),
                book_hash,
                data=chunk,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Range": f"bytes {offset}-{end}/{total}",
                },
            )
            _raise_for_status(response, book_hash)
            offset = end + 1
            yield offset * 100.0 / total

        logger.debug(f"Uploaded {total} bytes for {book_hash}")

    def get(self, book_hash: str) -> RemoteFetch:
        response = self._request("GET", self._url(book_hash), book_hash, stream=True)
        try:
            _raise_for_status(response, book_hash)
        except Exception:
            response.close()
            raise

        length = response.headers.get("Content-Length")
        total_size = int(length) if length and length.isdigit() else None

        def chunks() -> Iterator[bytes]:
            try:
                yield from response.iter_content(chunk_size=self.chunk_size)
            except (requests.ConnectionError, requests.Timeout,
                    requests.exceptions.ChunkedEncodingError) as e:
                raise TransientTransferError(f"Download of {book_hash} interrupted: {e}") from e

        return RemoteFetch(
            chunks(),
            total_size=total_size,
            last_modified=_parse_last_modified(response.headers.get("Last-Modified")),
            on_close=response.close,
        )

    def get_progress(self, book_hash: str) -> Optional[ReadingProgress]:
        response = self._request("GET", self._url(book_hash, "/progress"), book_hash)
        if response.status_code == 404:
            return None
        _raise_for_status(response, book_hash)
        try:
            return ReadingProgress.from_dict(response.json())
        except ValueError as e:
            logger.warning(f"Malformed reading progress for {book_hash}: {e}")
            return None

    def put_progress(self, book_hash: str, progress: ReadingProgress) -> None:
        response = self._request("PUT", self._url(book_hash, "/progress"), book_hash, json=progress.to_dict())
        _raise_for_status(response, book_hash)
