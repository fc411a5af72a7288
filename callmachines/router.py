"""
Session event router.

Binds each live session (telephone channel) to one machine instance and
turns transport events into transitions:

- session start: pick a machine, create and bind an instance, answer the
  channel, fire the start transition
- input (DTMF): fire ``input_<digit>``, else the generic input
  transition, else the invalid-input transition
- session end: fire the disconnect transition in the background, unbind
  and discard the instance
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .ari import parse_ari_event
from .control import ControlClient, ControlDispatcher
from .errors import CallMachinesError, ControlProtocolError, DefinitionError, SessionBindingMissing
from .events import SessionEnd, SessionEvent, SessionInput, SessionStart
from .instance import MachineInstance, TransitionResult
from .monitoring import get_logger
from .registry import MachineRegistry

logger = get_logger(__name__)


@dataclass
class RouterSettings:
    """Transition and state names the router relies on."""
    start_transition: str = "startCall"
    input_prefix: str = "input_"
    generic_input: str = "handleDtmf"
    invalid_input: str = "invalid_input"
    disconnect_transition: str = "disconnect"
    terminal_states: Tuple[str, ...] = ("call_ended",)
    default_machine: str = "ari_example_ivr"
    machine_variable: Optional[str] = None
    dialplan_map: Dict[str, str] = field(default_factory=dict)


@dataclass
class SessionBinding:
    session_id: str
    machine_id: str
    instance: MachineInstance
    event: SessionStart


class MachineSelector:
    """
    Chooses the machine for a new session. In order:

    1. The first Stasis application argument, if it names a known machine
    2. A channel variable (``machine_variable``) read through the control client
    3. ``dialplan_map`` keyed by ``"context/exten"``, then ``"context"``
    4. ``default_machine``
    """

    def __init__(
        self,
        default_machine: str,
        machine_variable: Optional[str] = None,
        dialplan_map: Optional[Dict[str, str]] = None,
        control: Optional[ControlClient] = None,
    ):
        self.default_machine = default_machine
        self.machine_variable = machine_variable
        self.dialplan_map = dict(dialplan_map or {})
        self.control = control

    @classmethod
    def from_settings(cls, settings: RouterSettings, control: Optional[ControlClient] = None) -> "MachineSelector":
        return cls(
            default_machine=settings.default_machine,
            machine_variable=settings.machine_variable,
            dialplan_map=settings.dialplan_map,
            control=control,
        )

    @staticmethod
    async def _is_stored(machine_id: Any, registry: MachineRegistry) -> bool:
        # Not cached yet, or invalidated by an edit: ask storage
        if not isinstance(machine_id, str) or not machine_id:
            return False
        if machine_id in registry:
            return True
        try:
            await registry.load(machine_id)
        except DefinitionError:
            return False
        return True

    async def select(self, event: SessionStart, registry: MachineRegistry) -> str:
        if event.args and await self._is_stored(event.args[0], registry):
            return event.args[0]

        if self.machine_variable and self.control is not None and self.control.available:
            try:
                value = await self.control.get_variable(event.session_id, self.machine_variable)
            except ControlProtocolError as e:
                logger.warning(f"Could not read {self.machine_variable} on {event.session_id}: {e}")
                value = None
            if value:
                return str(value)

        context = event.dialplan.get("context")
        exten = event.dialplan.get("exten")
        for key in (f"{context}/{exten}", f"{context}"):
            if key in self.dialplan_map:
                return self.dialplan_map[key]

        return self.default_machine


class SessionRouter:
    """
    Routes session events onto machine instances.

    Args:
        registry: Source of machine instances
        settings: Transition names and machine selection settings
        selector: Custom machine selector
    """

    def __init__(
        self,
        registry: MachineRegistry,
        settings: Optional[RouterSettings] = None,
        selector: Optional[MachineSelector] = None,
    ):
        self.registry = registry
        self.settings = settings or RouterSettings()
        self.selector = selector or MachineSelector.from_settings(self.settings, self.control.client)
        self._bindings: Dict[str, SessionBinding] = {}
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def control(self) -> ControlDispatcher:
        return self.registry.runtime.control

    @property
    def sessions(self) -> List[str]:
        return list(self._bindings)

    def binding(self, session_id: str) -> Optional[SessionBinding]:
        return self._bindings.get(session_id)

    def require_binding(self, session_id: str) -> SessionBinding:
        binding = self._bindings.get(session_id)
        if binding is None:
            raise SessionBindingMissing(session_id)
        return binding

    def is_terminal(self, instance: MachineInstance) -> bool:
        return instance.state in self.settings.terminal_states or instance.is_terminal

    # ─────────────────────────────────────────────────────────────────────
    # Event handlers
    # ─────────────────────────────────────────────────────────────────────

    async def handle_session_start(self, event: SessionStart) -> Optional[MachineInstance]:
        """
        Bind a new session to a machine instance and start it.

        Any failure hangs up the channel and leaves the session unbound.
        """
        session_id = event.session_id
        if session_id in self._bindings:
            logger.warning(f"Session {session_id} is already bound; ignoring duplicate start")
            return None

        logger.info(
            f"Session start {session_id}: caller={event.caller_id} "
            f"context={event.dialplan.get('context')} exten={event.dialplan.get('exten')}"
        )
        seed = {
            "channelId": session_id,
            "callerId": event.caller_id,
            "dialplan": dict(event.dialplan),
            "args": list(event.args),
        }

        try:
            machine_id = await self.selector.select(event, self.registry)
            instance = await self.registry.get(machine_id, seed)
            self._bindings[session_id] = SessionBinding(session_id, machine_id, instance, event)
            logger.info(f"Session {session_id} bound to machine '{machine_id}'")

            await self.control.perform("answer", {}, session_id)

            start = self.settings.start_transition
            if instance.can(start):
                await instance.fire(start, {"eventData": event.raw})
            else:
                logger.info(f"Start transition '{start}' not available in machine '{machine_id}'")
            return instance
        except Exception as e:
            logger.error(f"Error starting session {session_id}: {e}", exc_info=True)
            await self._hangup(session_id)
            binding = self._bindings.pop(session_id, None)
            if binding is not None:
                binding.instance.discard()
            return None

    async def handle_input(self, event: SessionInput) -> Optional[TransitionResult]:
        """Fire exactly one transition for an input digit; errors are logged."""
        binding = self._bindings.get(event.session_id)
        if binding is None:
            logger.warning(f"No machine bound to session {event.session_id}; dropping input {event.value!r}")
            return None

        instance = binding.instance
        payload = {"digit": event.value, "eventData": event.raw}
        candidates = (
            f"{self.settings.input_prefix}{event.value}",
            self.settings.generic_input,
            self.settings.invalid_input,
        )
        for name in candidates:
            if not instance.can(name):
                continue
            logger.info(f"Input {event.value!r} on {event.session_id}: firing '{name}' from '{instance.state}'")
            try:
                return await instance.fire(name, payload)
            except Exception as e:
                logger.error(f"Error processing input {event.value!r} on session {event.session_id}: {e}")
                return None

        logger.warning(
            f"No transition for input {event.value!r} from state '{instance.state}' on session "
            f"{event.session_id}, and no '{self.settings.invalid_input}' fallback"
        )
        return None

    async def handle_session_end(self, event: SessionEnd) -> None:
        """Unbind a session; the disconnect transition runs in the background."""
        binding = self._bindings.pop(event.session_id, None)
        if binding is None:
            logger.debug(f"Session end for unbound session {event.session_id}")
            return

        instance = binding.instance
        disconnect = self.settings.disconnect_transition
        if instance.can(disconnect) and not self.is_terminal(instance):
            logger.info(f"Session {event.session_id} ended; firing '{disconnect}' from '{instance.state}'")
            task = asyncio.create_task(self._disconnect(instance, event))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        instance.discard()
        logger.info(f"Session {event.session_id} unbound from machine '{binding.machine_id}'")

    async def dispatch(self, event: SessionEvent) -> Any:
        if isinstance(event, SessionStart):
            return await self.handle_session_start(event)
        if isinstance(event, SessionInput):
            return await self.handle_input(event)
        if isinstance(event, SessionEnd):
            return await self.handle_session_end(event)
        raise TypeError(f"Unsupported session event: {type(event).__name__}")

    async def handle_ari_event(self, raw: Dict[str, Any]) -> Any:
        """Decode a raw ARI event and dispatch it; unknown types are ignored."""
        event = parse_ari_event(raw)
        if event is None:
            return None
        return await self.dispatch(event)

    async def close(self) -> None:
        """Wait for background disconnect transitions to finish."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    # ─────────────────────────────────────────────────────────────────────

    async def _disconnect(self, instance: MachineInstance, event: SessionEnd) -> None:
        try:
            await instance.fire(self.settings.disconnect_transition, {"eventData": event.raw})
        except Exception as e:
            logger.error(f"Error during disconnect transition for session {event.session_id}: {e}")

    async def _hangup(self, session_id: str) -> None:
        try:
            await self.control.perform("hangup", {}, session_id)
        except CallMachinesError as e:
            logger.error(f"Failed to hang up session {session_id}: {e}")


__all__ = [
    "RouterSettings",
    "SessionBinding",
    "MachineSelector",
    "SessionRouter",
]
