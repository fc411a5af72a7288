"""
Call-control collaborator.

``ControlClient`` is the transport-facing interface (implemented over ARI
in :mod:`callmachines.ari`). ``ControlDispatcher`` maps the named operations
used by machine definitions onto that interface and enforces their
required parameters.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .errors import ActionConfigError, ControlProtocolError
from .monitoring import get_logger, track_async_operation

logger = get_logger(__name__)


class ControlClient(ABC):
    """Interface to a call-control protocol (ARI)."""

    @property
    def available(self) -> bool:
        """Whether the client is connected and can accept operations."""
        return True

    @abstractmethod
    async def answer(self, channel_id: str) -> None:
        pass

    @abstractmethod
    async def hangup(self, channel_id: str) -> None:
        pass

    @abstractmethod
    async def play(self, channel_id: str, media: str) -> Dict[str, Any]:
        """Start playback; returns the playback record (with ``id``)."""
        pass

    @abstractmethod
    async def get_variable(self, channel_id: str, variable: str) -> Any:
        pass

    @abstractmethod
    async def set_variable(self, channel_id: str, variable: str, value: Any) -> None:
        pass

    @abstractmethod
    async def originate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new outbound channel; returns the channel record."""
        pass


# Originate fields forwarded to the client when present
ORIGINATE_FIELDS = ("endpoint", "context", "extension", "priority", "callerId", "appArgs", "timeout")
# Seconds to wait for the originated channel to answer
DEFAULT_ORIGINATE_TIMEOUT = 30


class ControlDispatcher:
    """
    Performs named control operations against a :class:`ControlClient`.

    Supported operations and their required parameters:

    ============== ====================
    answer
    hangup
    playAudio      media
    getVariable    variable
    setVariable    variable, value
    getData        media (prompt only; digits arrive as input events)
    originateCall  endpoint (no session)
    ============== ====================
    """

    CHANNELLESS_OPERATIONS = frozenset({"originateCall"})

    def __init__(self, client: Optional[ControlClient] = None, app_name: str = "callmachines"):
        self.client = client
        self.app_name = app_name
        self._operations = {
            "answer": self._answer,
            "hangup": self._hangup,
            "playAudio": self._play_audio,
            "getVariable": self._get_variable,
            "setVariable": self._set_variable,
            "getData": self._get_data,
            "originateCall": self._originate_call,
        }

    @property
    def operations(self):
        return sorted(self._operations)

    async def perform(
        self,
        operation: str,
        params: Optional[Dict[str, Any]],
        session_id: Optional[str],
    ) -> Dict[str, Any]:
        """
        Run one control operation.

        Args:
            operation: Operation name (``playAudio``, ``hangup``, ...)
            params: Resolved parameters
            session_id: Target channel id; may be None for ``originateCall``

        Raises:
            ActionConfigError: Unsupported operation or missing parameter
            ControlProtocolError: Client unavailable or the operation failed
        """
        handler = self._operations.get(operation)
        if handler is None:
            raise ActionConfigError(f"Unsupported control operation: {operation}", action_type="ari")

        if self.client is None or not self.client.available:
            logger.warning(f"Control client not available; cannot perform '{operation}'")
            raise ControlProtocolError("Control client not available", operation=operation)

        if not session_id and operation not in self.CHANNELLESS_OPERATIONS:
            raise ActionConfigError(f"No session id available for control operation '{operation}'", action_type="ari")

        params = params or {}
        logger.info(f"Control '{operation}' on session {session_id or 'N/A'} with params {params}")

        async with track_async_operation("control_operation", operation=operation):
            try:
                return await handler(session_id, params)
            except (ActionConfigError, ControlProtocolError):
                raise
            except Exception as e:
                logger.error(f"Control operation '{operation}' on session {session_id or 'N/A'} failed: {e}")
                raise ControlProtocolError(f"Control operation '{operation}' failed: {e}", operation=operation) from e

    @staticmethod
    def _require(params: Dict[str, Any], operation: str, *names: str) -> None:
        missing = [name for name in names if params.get(name) is None]
        if missing:
            raise ActionConfigError(
                f"Missing parameter(s) {', '.join(missing)} for control operation '{operation}'",
                action_type="ari",
            )

    async def _answer(self, session_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.client.answer(session_id)
        return {"success": True, "message": "Channel answered"}

    async def _hangup(self, session_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.client.hangup(session_id)
        return {"success": True, "message": "Channel hung up"}

    async def _play_audio(self, session_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self._require(params, "playAudio", "media")
        playback = await self.client.play(session_id, params["media"])
        return {"success": True, "playbackId": (playback or {}).get("id"), "message": "Playback started"}

    async def _get_variable(self, session_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self._require(params, "getVariable", "variable")
        value = await self.client.get_variable(session_id, params["variable"])
        return {"success": True, "value": value}

    async def _set_variable(self, session_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self._require(params, "setVariable", "variable", "value")
        await self.client.set_variable(session_id, params["variable"], params["value"])
        return {"success": True}

    async def _get_data(self, session_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self._require(params, "getData", "media")
        playback = await self.client.play(session_id, params["media"])
        return {"success": True, "playbackId": (playback or {}).get("id"), "message": "Prompt playback started"}

    async def _originate_call(self, session_id: Optional[str], params: Dict[str, Any]) -> Dict[str, Any]:
        self._require(params, "originateCall", "endpoint")
        request = {name: params[name] for name in ORIGINATE_FIELDS if params.get(name) is not None}
        request.setdefault("timeout", DEFAULT_ORIGINATE_TIMEOUT)
        request["app"] = self.app_name
        channel = await self.client.originate(request) or {}
        return {
            "success": True,
            "channelId": channel.get("id"),
            "name": channel.get("name"),
            "state": channel.get("state"),
        }


__all__ = [
    "ControlClient",
    "ControlDispatcher",
]
