"""
Session transport events.

Transport adapters (ARI, tests) translate their notifications into these
objects and hand them to :meth:`SessionRouter.dispatch`.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class SessionStart:
    """A channel entered the application."""
    session_id: str
    caller_id: Optional[str] = None
    dialplan: Dict[str, Any] = field(default_factory=dict)
    args: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionInput:
    """In-band input (a DTMF digit) on a channel."""
    session_id: str
    value: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionEnd:
    """A channel left the application."""
    session_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


SessionEvent = Union[SessionStart, SessionInput, SessionEnd]


__all__ = [
    "SessionStart",
    "SessionInput",
    "SessionEnd",
    "SessionEvent",
]
