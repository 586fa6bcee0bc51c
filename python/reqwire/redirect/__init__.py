"""Redirect policies and the redirect state machine."""

from reqwire.redirect._engine import REDIRECT_STATUSES, Hop, RedirectEngine
from reqwire.redirect.policy import (
    DEFAULT_SENSITIVE_HEADERS,
    Action,
    ActionKind,
    Attempt,
    Policy,
    SensitiveHeaders,
)

__all__ = [
    "DEFAULT_SENSITIVE_HEADERS",
    "REDIRECT_STATUSES",
    "Action",
    "ActionKind",
    "Attempt",
    "Hop",
    "Policy",
    "RedirectEngine",
    "SensitiveHeaders",
]
