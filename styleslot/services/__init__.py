"""Service package public API definitions.

The service implementations import ``styleslot.clients.api``, which in turn
imports ``styleslot.services.exceptions``. Importing the implementations
eagerly here would make that a circular import, so they are only loaded when
first accessed.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

__all__ = [
    "AppointmentLifecycle",
    "AppointmentService",
    "ConversationService",
    "ConversationSession",
    "ConversationSync",
    "MessageLog",
]

_SERVICE_MODULES = {
    "AppointmentLifecycle": "lifecycle",
    "AppointmentService": "appointment",
    "ConversationService": "conversation",
    "ConversationSession": "conversation",
    "ConversationSync": "conversation",
    "MessageLog": "conversation",
}


def __getattr__(name: str) -> Any:
    if name not in _SERVICE_MODULES:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module = import_module(f".{_SERVICE_MODULES[name]}", __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .appointment import AppointmentService as AppointmentService
    from .conversation import ConversationService as ConversationService
    from .conversation import ConversationSession as ConversationSession
    from .conversation import ConversationSync as ConversationSync
    from .conversation import MessageLog as MessageLog
    from .lifecycle import AppointmentLifecycle as AppointmentLifecycle
