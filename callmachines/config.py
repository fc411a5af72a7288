"""
Runtime settings.

Settings come from an optional YAML/JSON file, overlaid with environment
variables:

==================================== ==============================
CALLMACHINES_DEFINITIONS_DIR         definitions_dir
CALLMACHINES_DEFAULT_MACHINE         default_machine
CALLMACHINES_HTTP_TIMEOUT_MS         http_timeout_ms
CALLMACHINES_MACHINE_VARIABLE        machine_variable
ASTERISK_URL                         asterisk_url
ASTERISK_USERNAME                    asterisk_username
ASTERISK_PASSWORD                    asterisk_password
ASTERISK_APP_NAME                    asterisk_app_name
==================================== ==============================
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .http_client import DEFAULT_TIMEOUT_MS
from .monitoring import get_logger
from .router import RouterSettings

logger = get_logger(__name__)

ENV_VARS = {
    "CALLMACHINES_DEFINITIONS_DIR": "definitions_dir",
    "CALLMACHINES_DEFAULT_MACHINE": "default_machine",
    "CALLMACHINES_HTTP_TIMEOUT_MS": "http_timeout_ms",
    "CALLMACHINES_MACHINE_VARIABLE": "machine_variable",
    "ASTERISK_URL": "asterisk_url",
    "ASTERISK_USERNAME": "asterisk_username",
    "ASTERISK_PASSWORD": "asterisk_password",
    "ASTERISK_APP_NAME": "asterisk_app_name",
}


@dataclass
class RuntimeSettings:
    definitions_dir: str = "fsm_definitions"
    default_machine: str = "ari_example_ivr"
    http_timeout_ms: int = DEFAULT_TIMEOUT_MS
    machine_variable: Optional[str] = None
    dialplan_map: Dict[str, str] = field(default_factory=dict)
    asterisk_url: Optional[str] = None
    asterisk_username: Optional[str] = None
    asterisk_password: Optional[str] = None
    asterisk_app_name: Optional[str] = None
    # Overrides for RouterSettings transition names
    router: Dict[str, Any] = field(default_factory=dict)

    @property
    def ari_configured(self) -> bool:
        return all((self.asterisk_url, self.asterisk_username, self.asterisk_password, self.asterisk_app_name))

    def router_settings(self) -> RouterSettings:
        overrides = dict(self.router)
        if "terminal_states" in overrides:
            overrides["terminal_states"] = tuple(overrides["terminal_states"])
        return RouterSettings(
            default_machine=self.default_machine,
            machine_variable=self.machine_variable,
            dialplan_map=dict(self.dialplan_map),
            **overrides,
        )


def _coerce(name: str, value: Any) -> Any:
    if name == "http_timeout_ms":
        try:
            timeout = int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"http_timeout_ms must be an integer, got {value!r}") from e
        if timeout <= 0:
            raise ValueError(f"http_timeout_ms must be positive, got {timeout}")
        return timeout
    if name in ("router", "dialplan_map"):
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ValueError(f"{name} must be a mapping, got {type(value).__name__}")
        return dict(value)
    return value


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> RuntimeSettings:
    """
    Build settings from an optional file and the environment.

    Args:
        path: YAML or JSON settings file
        env: Environment mapping (defaults to ``os.environ``)

    Raises:
        ValueError: Malformed file or invalid values
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(RuntimeSettings)}
    values: Dict[str, Any] = {}

    if path:
        with open(Path(path), "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
        if not isinstance(document, dict):
            raise ValueError(f"Settings file {path} must contain a mapping")
        for key, value in document.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting '{key}' in {path}")
                continue
            values[key] = value

    for var, name in ENV_VARS.items():
        if env.get(var):
            values[name] = env[var]

    values = {name: _coerce(name, value) for name, value in values.items()}
    router_names = {f.name for f in fields(RouterSettings)} - {"default_machine", "machine_variable", "dialplan_map"}
    unknown_router = set(values.get("router") or {}) - router_names
    if unknown_router:
        raise ValueError(f"Unknown router setting(s): {', '.join(sorted(unknown_router))}")
    return RuntimeSettings(**values)


__all__ = [
    "ENV_VARS",
    "RuntimeSettings",
    "load_settings",
]
