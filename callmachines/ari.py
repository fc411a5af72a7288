"""
Asterisk REST Interface (ARI) support.

- :class:`AriClient` implements :class:`ControlClient` over the ARI REST
  API using ``httpx`` with basic auth.
- :func:`parse_ari_event` turns ARI websocket event JSON into session
  events. The websocket transport itself is left to the embedding
  application.
"""

from typing import Any, Dict, Optional

import httpx

from . import __version__
from .control import ControlClient
from .errors import ControlProtocolError
from .events import SessionEnd, SessionEvent, SessionInput, SessionStart
from .monitoring import get_logger

logger = get_logger(__name__)


class AriClient(ControlClient):
    """
    Call-control client for the ARI REST API.

    Args:
        base_url: Asterisk HTTP base URL, e.g. ``http://pbx:8088``
        username: ARI user
        password: ARI password
        app_name: Stasis application name used for originated channels
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use ``MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        app_name: str = "callmachines",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_name = app_name
        self._closed = False
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/ari",
            auth=httpx.BasicAuth(username, password),
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": f"callmachines/{__version__}"},
        )

    @property
    def available(self) -> bool:
        return not self._closed

    async def _call(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.request(method, path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ControlProtocolError(
                f"ARI {method} {path} returned status {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise ControlProtocolError(f"ARI {method} {path} failed: {e}") from e

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def answer(self, channel_id: str) -> None:
        await self._call("POST", f"/channels/{channel_id}/answer")

    async def hangup(self, channel_id: str) -> None:
        await self._call("DELETE", f"/channels/{channel_id}")

    async def play(self, channel_id: str, media: str) -> Dict[str, Any]:
        return await self._call("POST", f"/channels/{channel_id}/play", {"media": media}) or {}

    async def get_variable(self, channel_id: str, variable: str) -> Any:
        result = await self._call("GET", f"/channels/{channel_id}/variable", {"variable": variable}) or {}
        return result.get("value")

    async def set_variable(self, channel_id: str, variable: str, value: Any) -> None:
        await self._call("POST", f"/channels/{channel_id}/variable", {"variable": variable, "value": value})

    async def originate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {
            "endpoint": params["endpoint"],
            "app": params.get("app", self.app_name),
        }
        for name in ("context", "extension", "priority", "callerId", "timeout"):
            if params.get(name) is not None:
                query[name] = params[name]
        if params.get("appArgs") is not None:
            app_args = params["appArgs"]
            query["appArgs"] = ",".join(app_args) if isinstance(app_args, list) else app_args
        return await self._call("POST", "/channels", query) or {}

    async def close(self) -> None:
        self._closed = True
        await self._client.aclose()


def parse_ari_event(event: Dict[str, Any]) -> Optional[SessionEvent]:
    """
    Translate an ARI event into a session event.

    Handles ``StasisStart``, ``StasisEnd`` and ``ChannelDtmfReceived``;
    other event types return None.
    """
    event_type = event.get("type")
    channel = event.get("channel") or {}
    channel_id = channel.get("id")
    if not channel_id:
        return None

    if event_type == "StasisStart":
        dialplan = channel.get("dialplan") or {}
        return SessionStart(
            session_id=channel_id,
            caller_id=(channel.get("caller") or {}).get("number"),
            dialplan={
                "context": dialplan.get("context"),
                "exten": dialplan.get("exten"),
                "priority": dialplan.get("priority"),
            },
            args=list(event.get("args") or []),
            raw=event,
        )
    if event_type == "StasisEnd":
        return SessionEnd(session_id=channel_id, raw=event)
    if event_type == "ChannelDtmfReceived":
        return SessionInput(session_id=channel_id, value=str(event.get("digit", "")), raw=event)

    logger.debug(f"Ignoring ARI event type {event_type}")
    return None


__all__ = [
    "AriClient",
    "parse_ari_event",
]
