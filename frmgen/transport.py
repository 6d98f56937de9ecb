"""HTTP transport for long-running generation calls.

One :class:`Transport` serves one logical call: its session holds a single
keep-alive connection that is reused across retries of that call. Each
exchange runs in a worker thread so the event loop keeps running while a
generation takes tens of minutes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Any, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import NameResolutionError

from .errors import ProviderProtocolError, TransportError, TransportErrorKind, excerpt
from .provider.base import RequestDescriptor

_LOGGER = logging.getLogger(__name__)
_DEFAULT_CONNECT_TIMEOUT_S = 30.0


def _walk_causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (current.__cause__, current.__context__, getattr(current, "reason", None)):
            if isinstance(linked, BaseException):
                stack.append(linked)
        for arg in getattr(current, "args", ()):
            if isinstance(arg, BaseException):
                stack.append(arg)


def classify_exception(exc: BaseException) -> TransportErrorKind:
    """Map a requests/urllib3/socket failure onto a transport error kind."""

    if isinstance(exc, requests.exceptions.Timeout):
        return TransportErrorKind.TIMEOUT
    for cause in _walk_causes(exc):
        if isinstance(cause, (socket.timeout, TimeoutError)):
            return TransportErrorKind.TIMEOUT
        if isinstance(cause, (NameResolutionError, socket.gaierror)):
            return TransportErrorKind.DNS
        if isinstance(cause, ConnectionRefusedError):
            return TransportErrorKind.REFUSED
        if isinstance(cause, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
            return TransportErrorKind.RESET
    if isinstance(exc, requests.exceptions.ChunkedEncodingError):
        return TransportErrorKind.RESET
    return TransportErrorKind.GENERIC


def format_http_error(response: Optional[requests.Response]) -> str:
    if response is None:
        return "no response payload"
    detail: Optional[str] = None
    try:
        data = response.json()
        if isinstance(data, dict):
            error_obj = data.get("error")
            if isinstance(error_obj, dict):
                message = error_obj.get("message")
                status = error_obj.get("status") or error_obj.get("type")
                detail = str(message or status)
            elif data.get("message"):
                detail = str(data["message"])
            if not detail:
                detail = json.dumps(data)[:500]
    except ValueError:
        pass
    if not detail:
        text = (response.text or "").strip()
        detail = text[:500] if text else "no body"
    return detail


class Transport:
    """Executes one HTTP exchange per :meth:`send` over a pooled session."""

    def __init__(
        self,
        *,
        timeout_s: float,
        connect_timeout_s: float = _DEFAULT_CONNECT_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._timeout = (min(connect_timeout_s, timeout_s), timeout_s)
        self._session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=1, max_retries=0)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.headers["Connection"] = "keep-alive"
        return session

    @property
    def timeout(self) -> tuple[float, float]:
        return self._timeout

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    async def send(self, request: RequestDescriptor) -> Any:
        """POST ``request`` and return the decoded JSON body."""

        return await asyncio.to_thread(self._send_blocking, request)

    def _send_blocking(self, request: RequestDescriptor) -> Any:
        try:
            response = self._session.post(
                request.url,
                json=request.body,
                headers=request.headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            kind = classify_exception(exc)
            _LOGGER.debug("Transport failure kind=%s url=%s: %s", kind.value, request.url, exc)
            raise TransportError(
                f"HTTP request to {request.url} failed ({kind.value}): {exc.__class__.__name__}",
                kind=kind,
                detail=str(exc),
            ) from exc

        status = response.status_code
        if not 200 <= status < 300:
            detail = format_http_error(response)
            raise TransportError(
                f"Provider request failed (HTTP {status}): {detail}",
                kind=TransportErrorKind.GENERIC,
                status_code=status,
                detail=detail,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderProtocolError(
                f"Provider returned a non-JSON payload: {excerpt((response.text or '').strip())}"
            ) from exc


__all__ = ["Transport", "classify_exception", "format_http_error"]
