"""
Schema validation for machine definitions.

Uses JSON Schema validation against the bundled schema.
Validation errors are warnings by default so that definitions which
execute fine keep loading; ``MachineDefinition.from_dict`` enforces the
invariants execution actually needs.
"""

import json
import warnings
from importlib.resources import files
from typing import Any, Dict, List, Optional

import jsonschema

_ASSETS = files("callmachines.assets")

SCHEMA_FILE = "callmachine.schema.json"


class ValidationWarning(UserWarning):
    """Warning for schema validation issues."""


def _load_schema(filename: str) -> Optional[Dict[str, Any]]:
    try:
        content = (_ASSETS / filename).read_text()
        return json.loads(content)
    except FileNotFoundError:
        return None


def _validate_with_jsonschema(definition: Dict[str, Any], schema: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    validator = jsonschema.Draft7Validator(schema)
    for error in validator.iter_errors(definition):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors


def validate_definition(
    definition: Dict[str, Any],
    warn: bool = True,
    strict: bool = False,
) -> List[str]:
    """
    Validate a machine definition against the bundled schema.

    Args:
        definition: Decoded definition document
        warn: Emit a ``ValidationWarning`` listing the problems
        strict: Raise ``ValueError`` instead of warning

    Returns:
        The list of problems found (empty when valid)
    """
    schema = _load_schema(SCHEMA_FILE)
    if schema is None:
        return []

    errors = _validate_with_jsonschema(definition, schema)

    if errors:
        machine_id = definition.get("id", "<unnamed>") if isinstance(definition, dict) else "<unnamed>"
        if strict:
            raise ValueError(
                f"Machine definition '{machine_id}' failed validation:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
        if warn:
            warnings.warn(
                f"Machine definition '{machine_id}' has validation issues:\n"
                + "\n".join(f"  - {e}" for e in errors),
                ValidationWarning,
                stacklevel=3,
            )

    return errors


def get_definition_schema() -> Optional[Dict[str, Any]]:
    """Get the bundled machine definition JSON schema."""
    return _load_schema(SCHEMA_FILE)


__all__ = [
    "ValidationWarning",
    "validate_definition",
    "get_definition_schema",
]
