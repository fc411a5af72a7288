"""
Declarative actions and the pipeline executor that runs them.

An action is one entry of a transition's ``actions`` list or a state's
``onEntry``/``onExit`` list, tagged by its ``type`` field:

- ``externalApi`` (alias ``externalCall``): HTTP request through the
  HTTP collaborator.
- ``ari`` (alias ``controlProtocolCall``): call-control operation through
  the control collaborator.
- ``assign``: store rendered values on the machine instance.

External and control actions may name follow-up transitions
(``onSuccess``/``onFailure``). Follow-ups are queued on the instance and
run after the current transition settles, never inside the hook.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, TYPE_CHECKING, Union

from jinja2 import TemplateError

from .control import ControlClient, ControlDispatcher
from .errors import ActionConfigError, ActionFailure, ControlProtocolError, ExternalCallError
from .expressions import ScriptEngine
from .http_client import DEFAULT_TIMEOUT_MS, HttpCollaborator
from .monitoring import get_logger
from .templates import render_value, render_variables, resolve, resolve_structure

if TYPE_CHECKING:
    from .instance import MachineInstance

logger = get_logger(__name__)


class ActionRuntime:
    """
    Collaborators shared by the actions of every instance.

    Args:
        http: HTTP collaborator for external calls
        control: Control dispatcher, or a bare client to wrap in one
        default_timeout_ms: Timeout for external calls that set none
        scripts: Script engine for inline ``methods``
    """

    def __init__(
        self,
        http: Optional[HttpCollaborator] = None,
        control: Union[ControlDispatcher, ControlClient, None] = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        scripts: Optional[ScriptEngine] = None,
    ):
        self.http = http
        if isinstance(control, ControlDispatcher):
            self.control = control
        else:
            self.control = ControlDispatcher(control)
        self.default_timeout_ms = default_timeout_ms
        self.scripts = scripts or ScriptEngine()


# ─────────────────────────────────────────────────────────────────────────────
# Action types
# ─────────────────────────────────────────────────────────────────────────────

_ACTION_TYPES: Dict[str, type] = {}


def register_action_type(*names: str):
    """Decorator to register an action class under one or more type names."""
    def decorator(cls):
        for name in names:
            _ACTION_TYPES[name] = cls
        return cls
    return decorator


def parse_action(config: Any, where: str = "") -> Optional["Action"]:
    """
    Build an action from its definition entry.

    Entries without a known ``type`` are skipped with a warning.
    """
    if not isinstance(config, dict) or not config.get("type"):
        logger.warning(f"Skipping action without a type{f' in {where}' if where else ''}: {config!r}")
        return None

    type_name = config["type"]
    cls = _ACTION_TYPES.get(type_name)
    if cls is None:
        logger.warning(f"Skipping action with unsupported type '{type_name}'{f' in {where}' if where else ''}")
        return None
    return cls.from_config(config)


def parse_actions(configs: Any, where: str = "") -> List["Action"]:
    """Parse an action list (a single action entry is accepted too)."""
    if configs is None:
        return []
    if not isinstance(configs, list):
        configs = [configs]
    actions = []
    for config in configs:
        action = parse_action(config, where)
        if action is not None:
            actions.append(action)
    return actions


class Action(ABC):
    """Base class for declarative actions."""

    type_name = ""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Action":
        return cls(config)

    @abstractmethod
    async def execute(
        self,
        runtime: ActionRuntime,
        instance: "MachineInstance",
        lifecycle: Dict[str, Any],
        payload: Dict[str, Any],
    ) -> Any:
        """Run the action; raising aborts the containing transition."""
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.config!r})"


class _FollowUpMixin:
    """Shared storeResponseAs / onSuccess / onFailure handling."""

    config: Dict[str, Any]

    def _on_success(self, instance: "MachineInstance", lifecycle: Dict[str, Any], result: Any) -> None:
        store_as = self.config.get("storeResponseAs")
        if store_as:
            instance.data[store_as] = result
            logger.debug(f"Stored response in fsm.{store_as}")
        # Checked against the state the instance holds once this transition commits
        self._follow_up(instance, self.config.get("onSuccess"), lifecycle.get("to"), {"apiResponse": result})

    def _on_failure(self, instance: "MachineInstance", lifecycle: Dict[str, Any], error: Exception) -> None:
        # A failed action aborts the transition, so the instance stays in "from"
        self._follow_up(instance, self.config.get("onFailure"), lifecycle.get("from"), {"apiError": str(error)})

    @staticmethod
    def _follow_up(
        instance: "MachineInstance",
        transition: Optional[str],
        state: Optional[str],
        payload: Dict[str, Any],
    ) -> None:
        if not transition:
            return
        if instance.can(transition, state=state):
            logger.info(f"Scheduling follow-up transition '{transition}' on machine '{instance.id}'")
            instance.schedule(transition, payload)
        else:
            logger.debug(f"Follow-up '{transition}' not executable from state '{state}'; ignoring")


@register_action_type("externalApi", "externalCall")
class ExternalCallAction(_FollowUpMixin, Action):
    """HTTP request described by a named ``externalApis`` entry or inline."""

    type_name = "externalApi"

    def _request_template(self, instance: "MachineInstance") -> Dict[str, Any]:
        request = self.config.get("request")
        if isinstance(request, str):
            template = instance.definition.external_apis.get(request)
            if not isinstance(template, dict):
                raise ActionConfigError(
                    f"API call configuration '{request}' not found in machine '{instance.id}'",
                    action_type=self.type_name,
                )
            return template
        if isinstance(request, dict) and request.get("url"):
            return request
        raise ActionConfigError(
            "External call needs 'request' naming an externalApis entry or an object with a 'url'",
            action_type=self.type_name,
        )

    def _timeout_ms(self, template: Dict[str, Any], runtime: "ActionRuntime") -> int:
        timeout = template.get("timeout")
        if timeout is None:
            return runtime.default_timeout_ms
        try:
            timeout_ms = int(timeout)
        except (TypeError, ValueError):
            timeout_ms = 0
        if isinstance(timeout, bool) or timeout_ms <= 0:
            raise ActionConfigError(
                f"External call timeout must be a positive number of milliseconds, got {timeout!r}",
                action_type=self.type_name,
            )
        return timeout_ms

    async def execute(self, runtime, instance, lifecycle, payload):
        request = self.config.get("request")
        call_name = request if isinstance(request, str) else "inline_request"

        try:
            template = self._request_template(instance)
            if runtime.http is None:
                raise ActionConfigError("No HTTP collaborator configured", action_type=self.type_name)

            url = resolve(template["url"], instance, lifecycle, payload)
            method = resolve(template.get("method") or "GET", instance, lifecycle, payload)
            body = resolve_structure(template.get("body"), instance, lifecycle, payload)
            headers = {
                key: resolve(value, instance, lifecycle, payload)
                for key, value in (template.get("headers") or {}).items()
            }
            timeout_ms = self._timeout_ms(template, runtime)

            logger.info(f"External API call '{call_name}': {method} {url}")
            try:
                response = await runtime.http.request(method, url, body, headers, timeout_ms)
            except ActionFailure:
                raise
            except Exception as e:
                raise ExternalCallError(f"{method} {url} failed: {type(e).__name__}: {e}") from e
        except ActionFailure as e:
            logger.error(f"External API call '{call_name}' failed: {e}")
            self._on_failure(instance, lifecycle, e)
            raise

        logger.info(f"External API call '{call_name}' succeeded with status {response.status}")
        self._on_success(instance, lifecycle, response.body)
        return response.body


@register_action_type("ari", "controlProtocolCall")
class ControlAction(_FollowUpMixin, Action):
    """Call-control operation, inline or via a named ``ariActions`` template."""

    type_name = "ari"

    def _operation(self, instance: "MachineInstance"):
        operation = self.config.get("operation")
        parameters = dict(self.config.get("parameters") or {})

        template_name = self.config.get("action")
        if template_name and not operation:
            template = instance.definition.ari_actions.get(template_name)
            if not isinstance(template, dict):
                raise ActionConfigError(
                    f"Control action template '{template_name}' not found in machine '{instance.id}'",
                    action_type=self.type_name,
                )
            operation = template.get("operation")
            parameters = {**(template.get("parameters") or {}), **parameters}

        if not operation:
            raise ActionConfigError("Control action is missing 'operation'", action_type=self.type_name)
        return operation, parameters

    async def execute(self, runtime, instance, lifecycle, payload):
        try:
            operation, parameters = self._operation(instance)
            params = resolve_structure(parameters, instance, lifecycle, payload)
            session_id = params.get("channelId") or instance.session_id
            result = await runtime.control.perform(operation, params, session_id)
        except (ActionConfigError, ControlProtocolError) as e:
            self._on_failure(instance, lifecycle, e)
            raise

        self._on_success(instance, lifecycle, result)
        return result


@register_action_type("assign")
class AssignAction(Action):
    """Render ``values`` with Jinja2 and store them on the instance."""

    type_name = "assign"

    async def execute(self, runtime, instance, lifecycle, payload):
        values = self.config.get("values")
        if not isinstance(values, dict):
            raise ActionConfigError("Assign action needs a 'values' mapping", action_type=self.type_name)

        variables = render_variables(instance, lifecycle, payload)
        for key, template in values.items():
            try:
                value = render_value(template, variables)
            except TemplateError as e:
                raise ActionConfigError(f"Cannot render value for '{key}': {e}", action_type=self.type_name) from e
            instance.data[key] = value
            variables["fsm"][key] = value
        return values


# ─────────────────────────────────────────────────────────────────────────────
# Executor
# ─────────────────────────────────────────────────────────────────────────────

class ActionExecutor:
    """Runs action lists strictly in order against one runtime."""

    def __init__(self, runtime: ActionRuntime):
        self.runtime = runtime

    async def execute(
        self,
        action: Action,
        instance: "MachineInstance",
        lifecycle: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await action.execute(self.runtime, instance, lifecycle, payload or {})

    async def run(
        self,
        actions: List[Action],
        instance: "MachineInstance",
        lifecycle: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Run each action in turn. The first failure stops the list and
        propagates to the caller.
        """
        for action in actions:
            await self.execute(action, instance, lifecycle, payload)


__all__ = [
    "ActionRuntime",
    "Action",
    "ExternalCallAction",
    "ControlAction",
    "AssignAction",
    "ActionExecutor",
    "register_action_type",
    "parse_action",
    "parse_actions",
]
