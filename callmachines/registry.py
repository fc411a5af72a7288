"""
Machine registry: loads, compiles and caches definitions, and creates
instances from them.
"""

from typing import Any, Dict, List, Optional

from .actions import ActionRuntime
from .compiler import CompiledMachine, compile_machine
from .definition import MachineDefinition
from .errors import DefinitionError
from .expressions import ScriptEngine
from .hooks import MachineHooks
from .instance import MachineInstance
from .monitoring import get_logger
from .storage import DefinitionStore, parse_definition

logger = get_logger(__name__)


class MachineRegistry:
    """
    Cache of compiled machines keyed by storage id.

    Lifecycle is explicit: call :meth:`init` once to load everything in
    storage, :meth:`invalidate` after a definition changes. Ids missing
    from the cache are reloaded once on demand.

    Args:
        store: Definition storage
        runtime: Collaborators handed to every instance
        hooks: Observer hooks handed to every instance
        validate: Run warn-only schema validation on load
    """

    def __init__(
        self,
        store: DefinitionStore,
        runtime: Optional[ActionRuntime] = None,
        hooks: Optional[MachineHooks] = None,
        validate: bool = True,
    ):
        self.store = store
        self.runtime = runtime or ActionRuntime()
        self.hooks = hooks
        self.validate = validate
        self._compiled: Dict[str, CompiledMachine] = {}

    @property
    def scripts(self) -> ScriptEngine:
        return self.runtime.scripts

    async def init(self) -> List[str]:
        """
        Load and compile every stored definition.

        Definitions that fail to load are logged and skipped.

        Returns:
            Ids loaded successfully
        """
        self._compiled = {}
        for machine_id in await self.store.list():
            try:
                await self._load(machine_id)
            except DefinitionError as e:
                logger.error(f"Failed to load machine definition '{machine_id}': {e}")
        logger.info(f"Loaded {len(self._compiled)} machine definition(s): {', '.join(self._compiled) or '-'}")
        return self.list()

    async def _load(self, machine_id: str) -> Optional[CompiledMachine]:
        raw = await self.store.read(machine_id)
        if raw is None:
            self._compiled.pop(machine_id, None)
            return None

        document = parse_definition(raw, self.store.format_of(machine_id))
        definition = MachineDefinition.from_dict(document, validate=self.validate)
        if definition.id != machine_id:
            logger.warning(
                f"Machine id '{definition.id}' does not match its storage key '{machine_id}'; "
                f"registering it as '{machine_id}'"
            )
        compiled = compile_machine(definition, self.scripts)
        self._compiled[machine_id] = compiled
        return compiled

    async def load(self, machine_id: str) -> CompiledMachine:
        """
        Return the compiled machine for an id, loading it when not cached.

        Raises:
            DefinitionError: Not found after one reload attempt, or invalid
        """
        compiled = self._compiled.get(machine_id)
        if compiled is not None:
            return compiled

        logger.info(f"Machine '{machine_id}' not cached; attempting reload")
        compiled = await self._load(machine_id)
        if compiled is None:
            raise DefinitionError(f"State machine with id '{machine_id}' not found", machine_id)
        return compiled

    async def get(self, machine_id: str, data: Optional[Dict[str, Any]] = None) -> MachineInstance:
        """Create a new instance of a machine, seeded with ``data``."""
        compiled = await self.load(machine_id)
        return compiled.create(data=data, runtime=self.runtime, hooks=self.hooks)

    def invalidate(self, machine_id: str) -> None:
        """Drop a cached machine; the next use reloads it from storage."""
        if self._compiled.pop(machine_id, None) is not None:
            logger.info(f"Invalidated cached machine '{machine_id}'")

    def get_compiled(self, machine_id: str) -> Optional[CompiledMachine]:
        return self._compiled.get(machine_id)

    def list(self) -> List[str]:
        """Ids of cached machines."""
        return sorted(self._compiled)

    def __contains__(self, machine_id: str) -> bool:
        return machine_id in self._compiled


__all__ = ["MachineRegistry"]
