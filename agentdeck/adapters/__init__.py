"""Adapters package - stream event model and permission persistence.

Bridges the engine's typed stream events to the HTTP layer and the
terminal client.
"""
from __future__ import annotations

__all__ = [
    "PermissionStore",
    "StreamEvent",
    "dict_to_event",
    "event_to_dict",
]

from agentdeck.adapters.events import StreamEvent, dict_to_event, event_to_dict
from agentdeck.adapters.permission_store import PermissionStore
