"""
Error types raised by the callmachines runtime.

``ActionFailure`` is split so callers can tell an external dependency that
failed (HTTP endpoint, ARI) apart from a programming or configuration error
in a machine definition.
"""

from typing import Optional


class CallMachinesError(Exception):
    """Base class for all runtime errors."""


class DefinitionError(CallMachinesError):
    """A machine definition is missing, unreadable or malformed."""

    def __init__(self, message: str, machine_id: Optional[str] = None):
        super().__init__(message)
        self.machine_id = machine_id


class PendingTransitionConflict(CallMachinesError):
    """A transition was requested while another one is still in flight."""

    def __init__(self, machine_id: str, state: str, transition: str, pending: Optional[str] = None):
        super().__init__(
            f"Transition '{transition}' requested on machine '{machine_id}' while "
            f"transition '{pending}' is pending (state: '{state}')"
        )
        self.machine_id = machine_id
        self.state = state
        self.transition = transition
        self.pending = pending


class ActionFailure(CallMachinesError):
    """An action aborted the transition that contained it."""

    def __init__(self, message: str, action_type: Optional[str] = None):
        super().__init__(message)
        self.action_type = action_type


class ExternalDependencyError(ActionFailure):
    """An external collaborator failed (transport error, timeout, bad status)."""


class ExternalCallError(ExternalDependencyError):
    """The HTTP collaborator failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body=None):
        super().__init__(message, action_type="externalApi")
        self.status_code = status_code
        self.response_body = response_body


class ControlProtocolError(ExternalDependencyError):
    """The call-control client is unavailable or an operation failed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, action_type="ari")
        self.operation = operation


class ActionConfigError(ActionFailure):
    """An action is misconfigured: unknown API, unsupported operation, missing parameter."""


class ScriptError(ActionConfigError):
    """An inline hook script failed while running."""

    def __init__(self, message: str):
        super().__init__(message, action_type="script")


class SessionBindingMissing(CallMachinesError):
    """An event arrived for a session that has no machine bound to it."""

    def __init__(self, session_id: str):
        super().__init__(f"No machine bound to session '{session_id}'")
        self.session_id = session_id


__all__ = [
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
]
