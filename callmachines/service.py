"""
Control surface over stored machines: drive a transition on a throwaway
instance, list and inspect definitions, render DOT graphs and edit
definitions. HTTP routing and authentication belong to the embedding
application.
"""

from typing import Any, Dict, List, Optional

from .compiler import compile_machine
from .definition import MachineDefinition
from .errors import DefinitionError
from .monitoring import get_logger
from .registry import MachineRegistry
from .storage import dump_definition, parse_definition

logger = get_logger(__name__)


def _dot_id(name: str) -> str:
    return '"' + str(name).replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_dot(definition: MachineDefinition, name: Optional[str] = None) -> str:
    """
    Render a definition as a Graphviz DOT digraph.

    A pseudo-state ``none`` points at the initial state. Wildcard sources
    expand to every known state; transitions without ``to`` loop.
    """
    states = definition.state_names
    lines = [
        f"digraph {_dot_id(name or definition.id)} {{",
        "  rankdir=LR;",
        '  "none" [shape=point];',
    ]
    for state in states:
        attrs = " [shape=doublecircle]" if state in definition.terminal else ""
        lines.append(f"  {_dot_id(state)}{attrs};")

    lines.append(f'  "none" -> {_dot_id(definition.initial)} [ label=" init " ];')
    for transition in definition.transitions:
        sources = states if transition.is_wildcard else list(transition.sources)
        for source in sources:
            target = transition.destination(source)
            lines.append(f"  {_dot_id(source)} -> {_dot_id(target)} [ label={_dot_id(' ' + transition.name + ' ')} ];")
    lines.append("}")
    return "\n".join(lines) + "\n"


class MachineService:
    """
    Operations behind an HTTP API or CLI.

    Args:
        registry: Registry whose store holds the definitions
    """

    def __init__(self, registry: MachineRegistry):
        self.registry = registry

    @property
    def store(self):
        return self.registry.store

    async def run_transition(
        self,
        machine_id: str,
        transition: str,
        current_state: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        initial_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Fire one transition on a fresh instance placed in ``current_state``.

        Awaits the transition and its follow-ups. A refusal is returned
        as a result (``accepted`` False) with the executable transitions.

        Raises:
            DefinitionError: Unknown machine
            ActionFailure: A hook of the transition failed
        """
        instance = await self.registry.get(machine_id, initial_data or {})
        if current_state:
            instance.state = current_state

        result = await instance.fire(transition, payload or {})
        response = {
            "machineId": machine_id,
            "accepted": result.accepted,
            "possibleTransitions": result.available,
        }
        if result.accepted:
            response.update({
                "newState": result.state,
                "followUps": result.follow_ups,
                "message": f"Transition '{transition}' successful.",
            })
        else:
            response.update({
                "currentState": result.state,
                "error": f"Transition '{transition}' is not possible from state '{result.state}'.",
            })
        return response

    async def list_machines(self) -> List[str]:
        return await self.store.list()

    async def get_definition(self, machine_id: str) -> Dict[str, Any]:
        raw = await self.store.read(machine_id)
        if raw is None:
            raise DefinitionError(f"Machine definition '{machine_id}' not found", machine_id)
        return parse_definition(raw, self.store.format_of(machine_id))

    async def graph(self, machine_id: str) -> str:
        """DOT representation of a stored machine."""
        document = await self.get_definition(machine_id)
        definition = MachineDefinition.from_dict(document, validate=False)
        return render_dot(definition, name=machine_id)

    async def save_definition(self, machine_id: str, definition: Any) -> Dict[str, Any]:
        """
        Validate and store a definition, then refresh the registry.

        Args:
            machine_id: Storage key; must equal the definition's ``id``
            definition: Mapping, or JSON text

        Raises:
            DefinitionError: Unparseable, invalid, or id mismatch
        """
        if isinstance(definition, (str, bytes)):
            definition = parse_definition(definition if isinstance(definition, bytes) else definition.encode("utf-8"))
        if not isinstance(definition, dict):
            raise DefinitionError("Invalid machine definition payload", machine_id)
        if definition.get("id") != machine_id:
            raise DefinitionError(
                f"Machine id in definition ('{definition.get('id')}') must match '{machine_id}'",
                machine_id,
            )
        # Scripts and action lists must compile before anything is persisted
        compile_machine(MachineDefinition.from_dict(definition), self.registry.scripts)

        await self.store.write(machine_id, dump_definition(definition, self.store.format_of(machine_id)))
        self.registry.invalidate(machine_id)
        await self.registry.load(machine_id)
        logger.info(f"Saved machine definition '{machine_id}'")
        return definition

    async def delete_definition(self, machine_id: str) -> bool:
        deleted = await self.store.delete(machine_id)
        self.registry.invalidate(machine_id)
        if deleted:
            logger.info(f"Deleted machine definition '{machine_id}'")
        return deleted

    # ─────────────────────────────────────────────────────────────────────
    # Incremental edits
    # ─────────────────────────────────────────────────────────────────────

    async def add_state(self, machine_id: str, name: str) -> Dict[str, Any]:
        if not isinstance(name, str) or not name.strip():
            raise DefinitionError("State name is required and must be a non-empty string", machine_id)
        definition = await self.get_definition(machine_id)
        states = definition.get("states")
        if states is None:
            states = definition["states"] = []

        if isinstance(states, dict):
            if name in states:
                raise DefinitionError(f"State '{name}' already exists", machine_id)
            states[name] = {}
        else:
            existing = {s if isinstance(s, str) else s.get("name") for s in states}
            if name in existing:
                raise DefinitionError(f"State '{name}' already exists", machine_id)
            states.append({"name": name})
        return await self.save_definition(machine_id, definition)

    async def add_transition(self, machine_id: str, name: str, source: Any, target: Optional[str] = None) -> Dict[str, Any]:
        if not name or not source:
            raise DefinitionError("Transition name and source state are required", machine_id)
        definition = await self.get_definition(machine_id)
        transition = {"name": name, "from": source}
        if target:
            transition["to"] = target
        definition.setdefault("transitions", []).append(transition)
        return await self.save_definition(machine_id, definition)

    async def set_initial(self, machine_id: str, initial: str) -> Dict[str, Any]:
        if not initial:
            raise DefinitionError("Initial state name is required", machine_id)
        definition = await self.get_definition(machine_id)
        definition["initial"] = initial
        return await self.save_definition(machine_id, definition)


__all__ = [
    "render_dot",
    "MachineService",
]
