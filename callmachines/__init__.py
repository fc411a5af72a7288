__version__ = "0.1.0"

from .errors import (
    CallMachinesError,
    DefinitionError,
    PendingTransitionConflict,
    ActionFailure,
    ExternalDependencyError,
    ExternalCallError,
    ControlProtocolError,
    ActionConfigError,
    ScriptError,
    SessionBindingMissing,
)
from .monitoring import (
    setup_logging,
    get_logger,
    get_meter,
    track_operation,
    track_async_operation,
)
from .templates import resolve, resolve_structure, render_value
from .expressions import Script, ScriptEngine
from .http_client import HttpResponse, HttpCollaborator, HttpxCollaborator
from .control import ControlClient, ControlDispatcher
from .actions import (
    ActionRuntime,
    Action,
    ExternalCallAction,
    ControlAction,
    AssignAction,
    ActionExecutor,
    register_action_type,
    parse_action,
)
from .definition import MachineDefinition, TransitionSpec, StateSpec
from .hooks import MachineHooks, LoggingHooks, MetricsHooks, CompositeHooks
from .instance import MachineInstance, TransitionResult
from .compiler import HookPhase, CompiledMachine, compile_machine
from .storage import (
    DefinitionStore,
    LocalDefinitionStore,
    MemoryDefinitionStore,
    parse_definition,
)
from .registry import MachineRegistry
from .events import SessionStart, SessionInput, SessionEnd
from .ari import AriClient, parse_ari_event
from .router import RouterSettings, MachineSelector, SessionRouter
from .service import MachineService, render_dot
from .config import RuntimeSettings, load_settings
from .validation import ValidationWarning, validate_definition, get_definition_schema

__all__ = [
    "__version__",
    # Errors
    "CallMachinesError",
    "DefinitionError",
    "PendingTransitionConflict",
    "ActionFailure",
    "ExternalDependencyError",
    "ExternalCallError",
    "ControlProtocolError",
    "ActionConfigError",
    "ScriptError",
    "SessionBindingMissing",
    # Logging and metrics
    "setup_logging",
    "get_logger",
    "get_meter",
    "track_operation",
    "track_async_operation",
    # Templates and scripts
    "resolve",
    "resolve_structure",
    "render_value",
    "Script",
    "ScriptEngine",
    # Collaborators
    "HttpResponse",
    "HttpCollaborator",
    "HttpxCollaborator",
    "ControlClient",
    "ControlDispatcher",
    "AriClient",
    "parse_ari_event",
    # Actions
    "ActionRuntime",
    "Action",
    "ExternalCallAction",
    "ControlAction",
    "AssignAction",
    "ActionExecutor",
    "register_action_type",
    "parse_action",
    # Machines
    "MachineDefinition",
    "TransitionSpec",
    "StateSpec",
    "HookPhase",
    "CompiledMachine",
    "compile_machine",
    "MachineInstance",
    "TransitionResult",
    "MachineHooks",
    "LoggingHooks",
    "MetricsHooks",
    "CompositeHooks",
    # Storage and registry
    "DefinitionStore",
    "LocalDefinitionStore",
    "MemoryDefinitionStore",
    "parse_definition",
    "MachineRegistry",
    # Sessions
    "SessionStart",
    "SessionInput",
    "SessionEnd",
    "RouterSettings",
    "MachineSelector",
    "SessionRouter",
    # Control surface and settings
    "MachineService",
    "render_dot",
    "RuntimeSettings",
    "load_settings",
    # Validation
    "ValidationWarning",
    "validate_definition",
    "get_definition_schema",
]
