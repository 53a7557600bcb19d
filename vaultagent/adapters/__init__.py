"""Adapters package - events, the per-turn event stream, and
always-allowed tool persistence shared by front ends.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "PermissionStore",
    "event_to_dict",
    "dict_to_event",
]

from vaultagent.adapters.event_bus import EventBus
from vaultagent.adapters.events import dict_to_event, event_to_dict
from vaultagent.adapters.permission_store import PermissionStore
