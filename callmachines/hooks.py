"""
MachineHooks - observer callbacks for machine instances.

Hooks are notified at key points of a transition:
- Leaving and entering states
- Committed transitions
- Transitions aborted by an error

These are runtime observers supplied in code, separate from the
``methods`` and ``onEntry``/``onExit`` hooks a definition declares.
Any hook method may be a coroutine. Includes LoggingHooks, MetricsHooks
and CompositeHooks.
"""

import asyncio
import logging
from abc import ABC
from typing import Any, Dict, TYPE_CHECKING

from .monitoring import get_logger

if TYPE_CHECKING:
    from .instance import MachineInstance

logger = get_logger(__name__)


class MachineHooks(ABC):
    """
    Base class for machine observer hooks.

    Override methods to observe instance behavior. All methods default to
    doing nothing.

    Example:
        from callmachines import get_logger
        logger = get_logger(__name__)

        class AuditHooks(MachineHooks):
            def on_transition(self, instance, lifecycle):
                logger.info(f"{instance.session_id}: {lifecycle['transition']}")

        registry = MachineRegistry(store, runtime, hooks=AuditHooks())
    """

    def on_state_exit(self, instance: "MachineInstance", state_name: str) -> None:
        """Called after an instance left a state (transition committed)."""
        pass

    def on_transition(self, instance: "MachineInstance", lifecycle: Dict[str, Any]) -> None:
        """
        Called once a transition has committed.

        Args:
            instance: The machine instance, already in the new state
            lifecycle: ``{"transition", "from", "to"}``
        """
        pass

    def on_state_enter(self, instance: "MachineInstance", state_name: str) -> None:
        """Called after an instance entered a state."""
        pass

    def on_error(self, instance: "MachineInstance", lifecycle: Dict[str, Any], error: Exception) -> None:
        """Called when a hook aborted a transition, before the error propagates."""
        pass


class LoggingHooks(MachineHooks):
    """Hooks that log all state changes."""

    def __init__(self, log_level: int = logging.INFO):
        self.log_level = log_level

    def on_state_exit(self, instance, state_name):
        logger.log(self.log_level, f"[{instance.session_id}] Exiting state: {state_name}")

    def on_transition(self, instance, lifecycle):
        logger.log(
            self.log_level,
            f"[{instance.session_id}] Transition {lifecycle['transition']}: "
            f"{lifecycle['from']} -> {lifecycle['to']}",
        )

    def on_state_enter(self, instance, state_name):
        logger.log(self.log_level, f"[{instance.session_id}] Entering state: {state_name}")

    def on_error(self, instance, lifecycle, error):
        logger.log(
            self.log_level,
            f"[{instance.session_id}] Transition {lifecycle['transition']} aborted in "
            f"{lifecycle['from']}: {error}",
        )


class MetricsHooks(MachineHooks):
    """Hooks that count states, transitions and errors."""

    def __init__(self):
        self.state_counts: Dict[str, int] = {}
        self.transition_counts: Dict[str, int] = {}
        self.total_transitions = 0
        self.error_count = 0

    def on_state_enter(self, instance, state_name):
        self.state_counts[state_name] = self.state_counts.get(state_name, 0) + 1

    def on_transition(self, instance, lifecycle):
        key = f"{lifecycle['from']}->{lifecycle['to']}"
        self.transition_counts[key] = self.transition_counts.get(key, 0) + 1
        self.total_transitions += 1

    def on_error(self, instance, lifecycle, error):
        self.error_count += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get collected metrics."""
        return {
            "state_counts": self.state_counts,
            "transition_counts": self.transition_counts,
            "total_transitions": self.total_transitions,
            "error_count": self.error_count,
        }


class CompositeHooks(MachineHooks):
    """Compose multiple hooks together; coroutine hooks are awaited in order."""

    def __init__(self, *hooks: MachineHooks):
        self.hooks = list(hooks)

    async def _each(self, method_name: str, *args) -> None:
        for hook in self.hooks:
            await run_hook(hook, method_name, *args)

    async def on_state_exit(self, instance, state_name):
        await self._each("on_state_exit", instance, state_name)

    async def on_transition(self, instance, lifecycle):
        await self._each("on_transition", instance, lifecycle)

    async def on_state_enter(self, instance, state_name):
        await self._each("on_state_enter", instance, state_name)

    async def on_error(self, instance, lifecycle, error):
        await self._each("on_error", instance, lifecycle, error)


async def run_hook(hooks: MachineHooks, method_name: str, *args) -> Any:
    """Run a hook method, awaiting if it's a coroutine."""
    method = getattr(hooks, method_name)
    result = method(*args)
    if asyncio.iscoroutine(result):
        return await result
    return result


__all__ = [
    "MachineHooks",
    "LoggingHooks",
    "MetricsHooks",
    "CompositeHooks",
    "run_hook",
]
