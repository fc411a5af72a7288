"""
Machine definitions.

A definition is plain data (JSON or YAML):

.. code-block:: json

    {
      "id": "ivr_demo",
      "initial": "new_call",
      "transitions": [
        {"name": "startCall", "from": "new_call", "to": "main_menu",
         "actions": [{"type": "ari", "operation": "playAudio",
                      "parameters": {"media": "sound:welcome"}}]},
        {"name": "disconnect", "from": "*", "to": "call_ended"}
      ],
      "states": {"main_menu": {"onEntry": []}},
      "methods": {"onEnterMainMenu": "log('menu ' + fsm.callerId)"},
      "externalApis": {"lookup": {"url": "https://crm/{{fsm.callerId}}"}},
      "ariActions": {"welcome": {"operation": "playAudio",
                                 "parameters": {"media": "sound:welcome"}}}
    }

``MachineDefinition.from_dict`` checks the invariants execution relies on
(id, initial state, unique transition names per source). Everything else
is checked by the warn-only schema validation.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import DefinitionError
from .validation import validate_definition

WILDCARD = "*"


@dataclass(frozen=True)
class TransitionSpec:
    """One transition descriptor. ``to`` of None loops on the source."""
    name: str
    sources: Tuple[str, ...]
    to: Optional[str] = None
    actions: Tuple[Any, ...] = ()

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.sources

    def matches(self, state: str, exact: bool = False) -> bool:
        if state in self.sources:
            return True
        return not exact and self.is_wildcard

    def destination(self, state: str) -> str:
        return self.to if self.to is not None else state


@dataclass
class StateSpec:
    """A declared state; ``description`` holds everything but the hooks."""
    name: str
    on_entry: List[Any] = field(default_factory=list)
    on_exit: List[Any] = field(default_factory=list)
    description: Dict[str, Any] = field(default_factory=dict)


def _as_action_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def _parse_transition(raw: Any, index: int, machine_id: str) -> TransitionSpec:
    if not isinstance(raw, dict):
        raise DefinitionError(f"Transition #{index} of machine '{machine_id}' must be an object", machine_id)

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise DefinitionError(f"Transition #{index} of machine '{machine_id}' is missing a name", machine_id)

    sources = raw.get("from")
    if isinstance(sources, str):
        sources = (sources,)
    elif isinstance(sources, list) and sources and all(isinstance(s, str) for s in sources):
        sources = tuple(sources)
    else:
        raise DefinitionError(
            f"Transition '{name}' of machine '{machine_id}' needs 'from' (a state, a list of states or '*')",
            machine_id,
        )

    to = raw.get("to")
    if to is not None and not isinstance(to, str):
        raise DefinitionError(f"Transition '{name}' of machine '{machine_id}' has a non-string 'to'", machine_id)

    actions = raw.get("actions")
    if actions is None and raw.get("action") is not None:
        actions = raw["action"]
    return TransitionSpec(name=name, sources=sources, to=to, actions=tuple(_as_action_list(actions)))


def _parse_states(raw: Any, machine_id: str) -> Dict[str, StateSpec]:
    states: Dict[str, StateSpec] = {}
    if raw is None:
        return states

    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if isinstance(entry, str):
                items.append((entry, {}))
            elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
                items.append((entry["name"], {k: v for k, v in entry.items() if k != "name"}))
            else:
                raise DefinitionError(f"Invalid state entry in machine '{machine_id}': {entry!r}", machine_id)
    else:
        raise DefinitionError(f"'states' of machine '{machine_id}' must be an object or a list", machine_id)

    for name, config in items:
        config = dict(config or {})
        on_entry = _as_action_list(config.pop("onEntry", None))
        on_exit = _as_action_list(config.pop("onExit", None))
        states[name] = StateSpec(name=name, on_entry=on_entry, on_exit=on_exit, description=config)
    return states


@dataclass
class MachineDefinition:
    """A parsed machine definition. Treat as immutable once loaded."""
    id: str
    initial: str
    transitions: List[TransitionSpec] = field(default_factory=list)
    states: Dict[str, StateSpec] = field(default_factory=dict)
    methods: Dict[str, Any] = field(default_factory=dict)
    external_apis: Dict[str, Any] = field(default_factory=dict)
    ari_actions: Dict[str, Any] = field(default_factory=dict)
    terminal: Tuple[str, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, raw: Any, validate: bool = True) -> "MachineDefinition":
        """
        Parse a definition mapping.

        Args:
            raw: Decoded JSON/YAML document
            validate: Run warn-only schema validation first

        Raises:
            DefinitionError: If ``id`` or ``initial`` is missing, a
                transition is malformed or duplicated, or the initial state
                is unknown.
        """
        if not isinstance(raw, dict):
            raise DefinitionError("Machine definition must be an object")

        if validate:
            validate_definition(raw)

        machine_id = raw.get("id")
        if not isinstance(machine_id, str) or not machine_id:
            raise DefinitionError("Machine definition must have an 'id'")

        initial = raw.get("initial")
        if not isinstance(initial, str) or not initial:
            raise DefinitionError(f"Machine '{machine_id}' must declare an 'initial' state", machine_id)

        transitions_raw = raw.get("transitions") or []
        if not isinstance(transitions_raw, list):
            raise DefinitionError(f"'transitions' of machine '{machine_id}' must be a list", machine_id)
        transitions = [_parse_transition(t, i, machine_id) for i, t in enumerate(transitions_raw)]

        seen = set()
        for transition in transitions:
            for source in transition.sources:
                key = (transition.name, source)
                if key in seen:
                    raise DefinitionError(
                        f"Duplicate transition '{transition.name}' from '{source}' in machine '{machine_id}'",
                        machine_id,
                    )
                seen.add(key)

        methods = raw.get("methods") or {}
        if not isinstance(methods, dict):
            raise DefinitionError(f"'methods' of machine '{machine_id}' must be an object", machine_id)
        for method_name, method in methods.items():
            if not isinstance(method, (str, list, dict)):
                raise DefinitionError(
                    f"Method '{method_name}' of machine '{machine_id}' must be a script or an action list",
                    machine_id,
                )

        terminal = raw.get("terminal") or ()
        if isinstance(terminal, str):
            terminal = (terminal,)

        definition = cls(
            id=machine_id,
            initial=initial,
            transitions=transitions,
            states=_parse_states(raw.get("states"), machine_id),
            methods=dict(methods),
            external_apis=dict(raw.get("externalApis") or {}),
            ari_actions=dict(raw.get("ariActions") or {}),
            terminal=tuple(terminal),
            raw=copy.deepcopy(raw),
        )

        # A wildcard transition can leave any state, the initial one included
        anchored = any(t.is_wildcard for t in definition.transitions)
        if (definition.states or definition.transitions) and not anchored and initial not in definition._referenced_states():
            raise DefinitionError(f"Initial state '{initial}' of machine '{machine_id}' is not a known state", machine_id)

        return definition

    def _referenced_states(self) -> Dict[str, None]:
        names: Dict[str, None] = dict.fromkeys(self.states)
        for transition in self.transitions:
            for source in transition.sources:
                if source != WILDCARD:
                    names.setdefault(source, None)
            if transition.to is not None:
                names.setdefault(transition.to, None)
        return names

    @property
    def state_names(self) -> List[str]:
        """The initial state, declared states and every state a transition names."""
        return list(dict.fromkeys([self.initial, *self._referenced_states()]))

    @property
    def transition_names(self) -> List[str]:
        return list(dict.fromkeys(t.name for t in self.transitions))

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.raw)


__all__ = [
    "WILDCARD",
    "TransitionSpec",
    "StateSpec",
    "MachineDefinition",
]
