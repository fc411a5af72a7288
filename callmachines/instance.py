"""
Machine instances: one per live session.

An instance owns its current state, its session data and a queue of
follow-up transitions. One transition may be in flight at a time; the
state only changes after every hook of a transition has succeeded.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple, TYPE_CHECKING

from .actions import ActionExecutor, ActionRuntime
from .errors import PendingTransitionConflict
from .hooks import MachineHooks, run_hook
from .monitoring import get_logger, track_async_operation

if TYPE_CHECKING:
    from .compiler import CompiledMachine, CompiledTransition
    from .definition import MachineDefinition

logger = get_logger(__name__)


@dataclass
class TransitionResult:
    """
    Outcome of :meth:`MachineInstance.fire`.

    A refused transition (not executable from the current state) is a
    normal result with ``accepted=False``; ``available`` lists the
    transitions that could fire instead.
    """
    transition: str
    accepted: bool
    from_state: str
    state: str
    available: List[str] = field(default_factory=list)
    follow_ups: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transition": self.transition,
            "accepted": self.accepted,
            "fromState": self.from_state,
            "state": self.state,
            "availableTransitions": list(self.available),
            "followUps": list(self.follow_ups),
        }


class MachineInstance:
    """
    A running machine bound to one session.

    Args:
        machine: Compiled machine this instance runs
        data: Session fields (``channelId``, ``callerId``, ...)
        runtime: Collaborators for actions
        hooks: Observer hooks
    """

    def __init__(
        self,
        machine: "CompiledMachine",
        data: Optional[Dict[str, Any]] = None,
        runtime: Optional[ActionRuntime] = None,
        hooks: Optional[MachineHooks] = None,
    ):
        self.machine = machine
        self.state: str = machine.initial
        self.data: Dict[str, Any] = dict(data or {})
        self.runtime = runtime or ActionRuntime()
        self.executor = ActionExecutor(self.runtime)
        self.hooks = hooks or MachineHooks()

        self._pending: Optional[str] = None
        self._follow_ups: Deque[Tuple[str, Dict[str, Any]]] = deque()
        self._discarded = False

    @property
    def id(self) -> str:
        return self.machine.id

    @property
    def definition(self) -> "MachineDefinition":
        return self.machine.definition

    @property
    def session_id(self) -> Optional[str]:
        return self.data.get("channelId")

    @property
    def pending(self) -> Optional[str]:
        """Name of the transition in flight, if any."""
        return self._pending

    @property
    def discarded(self) -> bool:
        return self._discarded

    @property
    def is_terminal(self) -> bool:
        return self.state in self.machine.terminal_states

    def can(self, name: str, state: Optional[str] = None) -> bool:
        """Whether ``name`` is executable from ``state`` (default: current state)."""
        return self.machine.can(self.state if state is None else state, name)

    def transitions(self) -> List[str]:
        """Transitions executable from the current state."""
        return self.machine.transitions_from(self.state)

    def template_view(self) -> Dict[str, Any]:
        """Session fields plus ``state`` and ``id``, as templates see them."""
        return {**self.data, "state": self.state, "id": self.id}

    def schedule(self, name: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Queue a follow-up transition to run after the current one settles.

        Returns:
            False when the instance has been discarded
        """
        if self._discarded:
            logger.debug(f"Instance for session {self.session_id} discarded; dropping follow-up '{name}'")
            return False
        self._follow_ups.append((name, dict(payload or {})))
        return True

    def discard(self) -> None:
        """Detach the instance from its session; queued follow-ups are dropped."""
        self._discarded = True
        self._follow_ups.clear()

    def _refusal(self, name: str) -> TransitionResult:
        return TransitionResult(
            transition=name,
            accepted=False,
            from_state=self.state,
            state=self.state,
            available=self.transitions(),
        )

    async def fire(self, name: str, payload: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """
        Fire a transition by name and wait until it and its follow-ups settle.

        Returns:
            TransitionResult; ``accepted`` is False when ``name`` cannot
            fire from the current state.

        Raises:
            PendingTransitionConflict: Another transition is in flight
            ActionFailure: A hook failed; the state is unchanged
        """
        if self._pending is not None:
            raise PendingTransitionConflict(self.id, self.state, name, self._pending)

        transition = self.machine.find_transition(self.state, name)
        if transition is None:
            logger.info(f"Transition '{name}' refused in state '{self.state}' of machine '{self.id}'")
            return self._refusal(name)

        from_state = self.state
        follow_ups: List[str] = []
        self._pending = name
        try:
            try:
                await self._run(transition, payload)
            finally:
                await self._drain(follow_ups)
        finally:
            self._pending = None

        return TransitionResult(
            transition=name,
            accepted=True,
            from_state=from_state,
            state=self.state,
            available=self.transitions(),
            follow_ups=follow_ups,
        )

    async def _run(self, transition: "CompiledTransition", payload: Optional[Dict[str, Any]]) -> None:
        from_state = self.state
        to_state = transition.spec.destination(from_state)
        lifecycle = {"transition": transition.name, "from": from_state, "to": to_state}
        payload = dict(payload or {})

        logger.debug(f"[{self.session_id}] {transition.name}: {from_state} -> {to_state}")
        async with track_async_operation("transition", machine=self.id, transition=transition.name):
            try:
                for hook in self.machine.hooks_for(transition, from_state, to_state):
                    await hook(self, lifecycle, payload)
            except Exception as e:
                await run_hook(self.hooks, "on_error", self, lifecycle, e)
                raise

        self.state = to_state
        await run_hook(self.hooks, "on_state_exit", self, from_state)
        await run_hook(self.hooks, "on_transition", self, lifecycle)
        await run_hook(self.hooks, "on_state_enter", self, to_state)

    async def _drain(self, fired: List[str]) -> None:
        """Run queued follow-ups in order; their errors are logged."""
        while self._follow_ups and not self._discarded:
            name, payload = self._follow_ups.popleft()
            transition = self.machine.find_transition(self.state, name)
            if transition is None:
                logger.debug(f"Follow-up '{name}' no longer executable from '{self.state}'; skipping")
                continue
            self._pending = name
            fired.append(name)
            try:
                await self._run(transition, payload)
            except Exception as e:
                logger.error(
                    f"Follow-up transition '{name}' failed on machine '{self.id}' "
                    f"(session {self.session_id}): {e}"
                )

    def __repr__(self) -> str:
        return f"MachineInstance(id={self.id!r}, state={self.state!r}, session={self.session_id!r})"


__all__ = [
    "TransitionResult",
    "MachineInstance",
]
