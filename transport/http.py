"""Shared async HTTP plumbing for the remote service clients.

Both services answer with a JSON envelope::

    {"success": true,  "data": {...}}
    {"status": "success", "data": {...}}
    {"status": "error", "error": "..."}

Some backend builds emit the key ``"status:"`` instead of ``"status"``; it is
accepted as an alias.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from .errors import (
    ErrorKind,
    PermanentServiceError,
    ResourceLockedError,
    ServiceUnavailableError,
    TransientServiceError,
    classify_message,
    error_for_status,
)

__all__ = [
    'Envelope',
    'JsonServiceClient',
    'parse_envelope',
]

logger = logging.getLogger(__name__)

OK_STATUSES = frozenset({'success', 'ok', 'completed', 'accepted', 'processing'})


@dataclass
class Envelope:
    """Decoded response envelope."""

    status: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status in OK_STATUSES


def parse_envelope(body: Any) -> Envelope:
    """Decode a ``{success|status, data|error}`` envelope.

    Raises:
        PermanentServiceError: If the body is not a JSON object.
    """
    if not isinstance(body, dict):
        raise PermanentServiceError(f"Malformed response envelope: {type(body).__name__}")

    status = body.get('status', body.get('status:'))
    if status is None:
        success = body.get('success')
        if success is None:
            # Bare payload without envelope
            return Envelope(status='success', data=body)
        status = 'success' if success else 'error'

    status = str(status).lower()
    data = body.get('data')
    if data is None:
        data = {k: v for k, v in body.items() if k not in ('status', 'status:', 'success', 'error')}
    error = body.get('error')
    if status not in OK_STATUSES and not error:
        error = body.get('message') or body.get('detail')
        code = data.get('code') if isinstance(data, dict) else None
        if not error:
            error = f"Service reported status '{status}'"
        if code is not None:
            error = f"{error} (code {code})"
    if error is not None and not isinstance(error, str):
        error = str(error)
    return Envelope(status=status, data=data if isinstance(data, dict) else {'items': data}, error=error)


def _raise_for_message(message: str, status_code: Optional[int] = None) -> None:
    kind = classify_message(message)
    if kind is ErrorKind.LOCKED:
        raise ResourceLockedError(message, status_code)
    if kind is ErrorKind.TRANSIENT:
        raise TransientServiceError(message, status_code)
    raise PermanentServiceError(message, status_code)


class JsonServiceClient:
    """Thin async JSON client. Handles transport only - no business logic."""

    DEFAULT_TIMEOUT = 30.0
    DEFAULT_POOL_SIZE = 10

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        pool_size: int = DEFAULT_POOL_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: Service root URL
            token: Optional bearer token
            timeout: Request timeout in seconds
            pool_size: HTTP connection pool size
            transport: Optional custom transport (used by tests)
        """
        headers = {'Content-Type': 'application/json'}
        if token:
            headers['Authorization'] = f'Bearer {token}'

        self.base_url = base_url.rstrip('/')
        limits = httpx.Limits(max_connections=pool_size, max_keepalive_connections=pool_size)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

    async def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Envelope:
        """Send a request and decode the envelope.

        Raises:
            ServiceError: Classified failure (transport, HTTP status or envelope error)
        """
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.ConnectError as e:
            raise ServiceUnavailableError(f"Cannot reach {self.base_url}: {e}") from e
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransientServiceError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

        body: Any = None
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = ''
            if isinstance(body, dict):
                message = str(body.get('error') or body.get('message') or '')
            message = message or response.reason_phrase or f'HTTP {response.status_code}'
            error = error_for_status(response.status_code, message)
            # A 4xx whose body says "locked" or "busy" is a business lock, not a bad request
            if isinstance(error, PermanentServiceError) and classify_message(message) is ErrorKind.LOCKED:
                error = ResourceLockedError(message, response.status_code)
            raise error

        if body is None:
            raise PermanentServiceError(f"{method} {path} returned a non-JSON body", response.status_code)

        envelope = parse_envelope(body)
        if not envelope.ok:
            _raise_for_message(envelope.error or 'Unknown service error', response.status_code)
        return envelope

    async def close(self) -> None:
        """Release pooled connections."""
        await self._client.aclose()

    async def __aenter__(self) -> 'JsonServiceClient':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
