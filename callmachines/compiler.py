"""
Machine compiler.

``compile_machine`` turns a :class:`MachineDefinition` into a
:class:`CompiledMachine`: action lists are parsed, inline scripts are
checked, and every hook is placed in a table keyed by ``(phase, name)``.
Method names are matched against declared transitions and states once,
here, so firing a transition never inspects method names.

Method name conventions (first letter of the declared name capitalised):

==================== ============================
``on<Transition>``   (TRANSITION, transition)
``onLeave<State>``   (LEAVE_STATE, state)
``onEnter<State>``   (ENTER_STATE, state)
``onTransition``     (TRANSITION, "*")
``onLeaveState``     (LEAVE_STATE, "*")
``onEnterState``     (ENTER_STATE, "*")
==================== ============================
"""

import logging
from collections import ChainMap
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .actions import Action, ActionRuntime, parse_action, parse_actions
from .definition import MachineDefinition, TransitionSpec
from .expressions import Script, ScriptEngine
from .hooks import MachineHooks
from .instance import MachineInstance
from .monitoring import get_logger, track_operation

logger = get_logger(__name__)

GENERIC = "*"


class HookPhase(str, Enum):
    LEAVE_STATE = "leaveState"
    TRANSITION = "transition"
    ENTER_STATE = "enterState"


HookKey = Tuple[HookPhase, str]


def _capitalize(name: str) -> str:
    return name[:1].upper() + name[1:]


@dataclass
class Hook:
    """Actions followed by an optional script, bound to one hook key."""
    name: str
    actions: List[Action] = field(default_factory=list)
    script: Optional[Script] = None

    async def __call__(self, instance: MachineInstance, lifecycle: Dict[str, Any], payload: Dict[str, Any]) -> None:
        await instance.executor.run(self.actions, instance, lifecycle, payload)
        if self.script is not None:
            variables = {
                "fsm": ChainMap(instance.data, {"state": instance.state, "id": instance.id}),
                "event": dict(lifecycle),
                "payload": payload,
            }
            functions = _script_capabilities(instance, lifecycle, payload)
            await instance.runtime.scripts.run(self.script, variables, functions)


def _script_capabilities(
    instance: MachineInstance,
    lifecycle: Dict[str, Any],
    payload: Dict[str, Any],
) -> Dict[str, Callable]:
    """Functions a script may call, bound to the current invocation."""

    async def external_call(request, store_as=None, on_success=None, on_failure=None):
        action = parse_action({
            "type": "externalApi",
            "request": request,
            "storeResponseAs": store_as,
            "onSuccess": on_success,
            "onFailure": on_failure,
        })
        return await instance.executor.execute(action, instance, lifecycle, payload)

    async def control(operation, **parameters):
        action = parse_action({"type": "ari", "operation": operation, "parameters": parameters})
        return await instance.executor.execute(action, instance, lifecycle, payload)

    def fire(transition, payload=None):
        if not instance.can(transition, state=lifecycle.get("to")):
            logger.debug(f"Script fire('{transition}') is not executable from '{lifecycle.get('to')}'")
            return False
        return instance.schedule(transition, payload or {})

    def log(message, level="info"):
        logger.log(
            _LOG_LEVELS.get(str(level).lower(), logging.INFO),
            f"[{instance.id}:{instance.session_id}] {message}",
        )

    return {"external_call": external_call, "control": control, "fire": fire, "log": log}


_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class CompiledTransition:
    """A transition descriptor with its parsed action list."""
    spec: TransitionSpec
    actions: List[Action] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.spec.name


class CompiledMachine:
    """
    Runnable form of a definition; a factory for instances.

    Lookups are by current state only: ``can`` never depends on data or
    on whether a transition is in flight.
    """

    def __init__(
        self,
        definition: MachineDefinition,
        transitions: List[CompiledTransition],
        hooks: Dict[HookKey, Hook],
        states: Dict[str, Dict[str, Any]],
    ):
        self.definition = definition
        self.transitions = transitions
        self.hooks = hooks
        self.states = states
        self.terminal_states = frozenset(definition.terminal)

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def initial(self) -> str:
        return self.definition.initial

    def find_transition(self, state: str, name: str) -> Optional[CompiledTransition]:
        """The transition ``name`` executable from ``state``; exact source beats ``*``."""
        wildcard = None
        for transition in self.transitions:
            if transition.name != name:
                continue
            if transition.spec.matches(state, exact=True):
                return transition
            if wildcard is None and transition.spec.is_wildcard:
                wildcard = transition
        return wildcard

    def can(self, state: str, name: str) -> bool:
        return self.find_transition(state, name) is not None

    def transitions_from(self, state: str) -> List[str]:
        """Names of every transition executable from ``state``."""
        return [
            name for name in dict.fromkeys(t.name for t in self.transitions)
            if self.can(state, name)
        ]

    def hooks_for(self, transition: CompiledTransition, from_state: str, to_state: str) -> List[Hook]:
        """Hooks to run for one firing, in order: leave, transition, enter."""
        ordered: List[Hook] = []

        def add(key: HookKey) -> None:
            hook = self.hooks.get(key)
            if hook is not None:
                ordered.append(hook)

        add((HookPhase.LEAVE_STATE, GENERIC))
        add((HookPhase.LEAVE_STATE, from_state))
        add((HookPhase.TRANSITION, GENERIC))
        if transition.actions:
            ordered.append(Hook(name=f"transition:{transition.name}", actions=transition.actions))
        add((HookPhase.TRANSITION, transition.name))
        add((HookPhase.ENTER_STATE, GENERIC))
        add((HookPhase.ENTER_STATE, to_state))
        return ordered

    def create(
        self,
        data: Optional[Dict[str, Any]] = None,
        runtime: Optional[ActionRuntime] = None,
        hooks: Optional[MachineHooks] = None,
    ) -> MachineInstance:
        """Create a fresh instance in the initial state."""
        return MachineInstance(self, data=data, runtime=runtime, hooks=hooks)

    def __repr__(self) -> str:
        return f"CompiledMachine(id={self.id!r}, transitions={len(self.transitions)})"


def _method_table(definition: MachineDefinition) -> Dict[str, HookKey]:
    """Map every recognised method name to its hook key."""
    table: Dict[str, HookKey] = {
        "onLeaveState": (HookPhase.LEAVE_STATE, GENERIC),
        "onEnterState": (HookPhase.ENTER_STATE, GENERIC),
        "onTransition": (HookPhase.TRANSITION, GENERIC),
    }

    def claim(method_name: str, key: HookKey) -> None:
        if method_name in table and table[method_name] != key:
            logger.warning(
                f"Method name '{method_name}' in machine '{definition.id}' matches both "
                f"{table[method_name]} and {key}; using {key}"
            )
        table[method_name] = key

    for state in definition.state_names:
        claim(f"onLeave{_capitalize(state)}", (HookPhase.LEAVE_STATE, state))
        claim(f"onEnter{_capitalize(state)}", (HookPhase.ENTER_STATE, state))
    for name in definition.transition_names:
        claim(f"on{_capitalize(name)}", (HookPhase.TRANSITION, name))
    return table


def compile_machine(
    definition: Union[MachineDefinition, Dict[str, Any]],
    scripts: Optional[ScriptEngine] = None,
) -> CompiledMachine:
    """
    Compile a definition into a runnable machine.

    Args:
        definition: Parsed definition or the raw mapping
        scripts: Engine used to check inline scripts

    Raises:
        DefinitionError: On malformed definitions or invalid scripts
    """
    if not isinstance(definition, MachineDefinition):
        definition = MachineDefinition.from_dict(definition)
    scripts = scripts or ScriptEngine()

    with track_operation("compile", machine=definition.id):
        hooks: Dict[HookKey, Hook] = {}

        def hook_for(key: HookKey, label: str) -> Hook:
            if key not in hooks:
                hooks[key] = Hook(name=label)
            return hooks[key]

        # State onEntry/onExit action lists
        states: Dict[str, Dict[str, Any]] = {}
        for state in definition.states.values():
            states[state.name] = dict(state.description)
            if state.on_exit:
                hook_for((HookPhase.LEAVE_STATE, state.name), f"onExit:{state.name}").actions.extend(
                    parse_actions(state.on_exit, f"{definition.id}.states.{state.name}.onExit")
                )
            if state.on_entry:
                hook_for((HookPhase.ENTER_STATE, state.name), f"onEntry:{state.name}").actions.extend(
                    parse_actions(state.on_entry, f"{definition.id}.states.{state.name}.onEntry")
                )

        # Methods, matched once against declared names
        table = _method_table(definition)
        for method_name, method in definition.methods.items():
            key = table.get(method_name)
            if key is None:
                logger.info(
                    f"Method '{method_name}' in machine '{definition.id}' does not match any "
                    f"transition or state hook and will not run"
                )
                continue
            hook = hook_for(key, method_name)
            if isinstance(method, str):
                hook.script = scripts.compile(method, name=f"{definition.id}.{method_name}")
            else:
                hook.actions.extend(parse_actions(method, f"{definition.id}.methods.{method_name}"))

        transitions = [
            CompiledTransition(
                spec=spec,
                actions=parse_actions(list(spec.actions), f"{definition.id}.transitions.{spec.name}"),
            )
            for spec in definition.transitions
        ]

    logger.info(
        f"Compiled machine '{definition.id}': {len(transitions)} transitions, {len(hooks)} hooks"
    )
    return CompiledMachine(definition, transitions, hooks, states)


__all__ = [
    "GENERIC",
    "HookPhase",
    "Hook",
    "CompiledTransition",
    "CompiledMachine",
    "compile_machine",
]
