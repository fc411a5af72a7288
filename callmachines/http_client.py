"""
HTTP collaborator used by external-call actions.

The runtime only depends on :class:`HttpCollaborator`; the default
implementation sends requests through ``httpx.AsyncClient``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from . import __version__
from .errors import ExternalCallError
from .monitoring import get_logger, track_async_operation

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 5000


@dataclass
class HttpResponse:
    """A successful HTTP response with its decoded body."""
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class HttpCollaborator(ABC):
    """Interface for issuing outbound HTTP requests."""

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> HttpResponse:
        """
        Send a request and return the decoded response.

        Raises:
            ExternalCallError: On transport errors, timeouts and non-2xx statuses.
        """
        pass


def _decode_body(response: httpx.Response) -> Any:
    """Decode a response body as JSON when possible, else text."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpxCollaborator(HttpCollaborator):
    """
    HTTP collaborator backed by ``httpx.AsyncClient``.

    Args:
        client: Existing client to use. When omitted, one is created and
                owned by this collaborator (closed by :meth:`close`).
        transport: Optional transport for the owned client (tests pass
                   ``httpx.MockTransport`` here).
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            headers={"User-Agent": f"callmachines/{__version__}"},
        )

    async def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> HttpResponse:
        method = (method or "GET").upper()
        kwargs: Dict[str, Any] = {}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        async with track_async_operation("external_call", method=method):
            try:
                response = await self._client.request(
                    method,
                    url,
                    headers=headers or None,
                    timeout=timeout_ms / 1000,
                    **kwargs,
                )
            except httpx.TimeoutException as e:
                raise ExternalCallError(f"{method} {url} timed out after {timeout_ms} ms") from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise ExternalCallError(f"{method} {url} failed: {e}") from e

        decoded = _decode_body(response)
        if not response.is_success:
            logger.error(f"{method} {url} returned status {response.status_code}: {decoded}")
            raise ExternalCallError(
                f"{method} {url} returned status {response.status_code}",
                status_code=response.status_code,
                response_body=decoded,
            )

        logger.debug(f"{method} {url} -> {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            body=decoded,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxCollaborator":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "HttpResponse",
    "HttpCollaborator",
    "HttpxCollaborator",
]
