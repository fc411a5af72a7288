"""
Template resolution for machine definitions.

Two renderers live here:

- ``resolve`` / ``resolve_structure``: placeholder substitution used by
  request templates and control-protocol parameters. Placeholders look like
  ``{{fsm.callerId}}``, ``{{event.to}}`` or ``{{payload.digit}}``. A
  placeholder whose path cannot be walked is left verbatim.
- ``render_value``: Jinja2 rendering used by ``assign`` actions, where
  filters and expressions are useful (``{{ payload.digit | int }}``).
"""

import json
import re
from collections.abc import Mapping
from typing import Any, Dict, Optional

from jinja2 import Environment

from .monitoring import get_logger

logger = get_logger(__name__)

# Placeholder source -> context slot
SOURCE_ALIASES = {
    "fsm": "instance",
    "instance": "instance",
    "event": "lifecycle",
    "lifecycle": "lifecycle",
    "payload": "payload",
    "eventPayload": "payload",
}

_PLACEHOLDER = re.compile(
    r"\{\{(" + "|".join(SOURCE_ALIASES) + r")\.([A-Za-z0-9_.\-]+)\}\}"
)

_MISSING = object()


def _instance_view(instance: Any) -> Optional[Mapping]:
    """Return the mapping placeholders walk for an instance."""
    if instance is None:
        return None
    if hasattr(instance, "template_view"):
        return instance.template_view()
    if isinstance(instance, Mapping):
        return instance
    return None


def _walk(root: Any, path: str) -> Any:
    value = root
    for segment in path.split("."):
        if isinstance(value, Mapping) and segment in value:
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            return _MISSING
    return value


def stringify(value: Any) -> str:
    """Convert a resolved value to its placeholder text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def resolve(
    template: Any,
    instance: Any = None,
    lifecycle: Optional[Mapping] = None,
    payload: Optional[Mapping] = None,
) -> Any:
    """
    Substitute ``{{source.path}}`` placeholders in a template string.

    Args:
        template: Template text. Non-string values are returned unchanged.
        instance: Machine instance (or a plain mapping) for ``fsm.*``
        lifecycle: Lifecycle record for ``event.*`` (transition, from, to)
        payload: Transition payload for ``payload.*``

    Returns:
        The resolved string. Unresolvable placeholders stay verbatim.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    roots = {
        "instance": _instance_view(instance),
        "lifecycle": lifecycle,
        "payload": payload,
    }

    def _replace(match: "re.Match[str]") -> str:
        source, path = match.group(1), match.group(2)
        root = roots[SOURCE_ALIASES[source]]
        value = _walk(root, path) if root is not None else _MISSING
        if value is _MISSING:
            logger.warning(f"Placeholder {match.group(0)} could not be resolved; leaving it as is")
            return match.group(0)
        return stringify(value)

    return _PLACEHOLDER.sub(_replace, template)


def resolve_structure(
    value: Any,
    instance: Any = None,
    lifecycle: Optional[Mapping] = None,
    payload: Optional[Mapping] = None,
) -> Any:
    """
    Recursively resolve every string value inside dicts and lists.

    Leaves are resolved in place, so a placeholder yields a string leaf and
    dict keys are kept as written.
    """
    if isinstance(value, str):
        return resolve(value, instance, lifecycle, payload)
    if isinstance(value, Mapping):
        return {
            key: resolve_structure(item, instance, lifecycle, payload)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [resolve_structure(item, instance, lifecycle, payload) for item in value]
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Jinja2 rendering (assign actions)
# ─────────────────────────────────────────────────────────────────────────────

def _json_finalize(value):
    """Render lists and dicts as JSON so the output can be parsed back."""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class _ItemFirstEnvironment(Environment):
    """Dotted access on mappings looks up keys before attributes.

    Plain Jinja2 resolves ``payload.items`` to ``dict.items``; call data
    routinely uses keys such as ``items``, ``keys`` or ``values``.
    """

    def getattr(self, obj, attribute):
        if isinstance(obj, Mapping):
            try:
                return obj[attribute]
            except (KeyError, TypeError):
                pass
        return super().getattr(obj, attribute)


_jinja_env = _ItemFirstEnvironment(finalize=_json_finalize)
_jinja_env.filters['fromjson'] = json.loads

# Bare path references: fsm.foo, payload.digit, event.to
_PATH_PATTERN = re.compile(r'^(fsm|event|payload)(\.[a-zA-Z_][a-zA-Z0-9_]*)+$')


def render_variables(
    instance: Any,
    lifecycle: Optional[Mapping],
    payload: Optional[Mapping],
) -> Dict[str, Any]:
    """Variables exposed to Jinja2 templates and inline scripts."""
    return {
        "fsm": dict(_instance_view(instance) or {}),
        "event": dict(lifecycle or {}),
        "payload": dict(payload or {}),
    }


def render_value(template: Any, variables: Dict[str, Any]) -> Any:
    """Render a Jinja2 template string or resolve a bare path reference."""
    if not isinstance(template, str):
        return template

    if '{{' not in template and '{%' not in template:
        # "payload.digit" passes the value through without string conversion
        stripped = template.strip()
        if _PATH_PATTERN.match(stripped):
            value = variables
            for part in stripped.split('.'):
                value = value.get(part) if isinstance(value, Mapping) else None
            return value
        return template

    result = _jinja_env.from_string(template).render(**variables)

    try:
        return json.loads(result)
    except (json.JSONDecodeError, TypeError):
        return result


__all__ = [
    "resolve",
    "resolve_structure",
    "stringify",
    "render_variables",
    "render_value",
]
