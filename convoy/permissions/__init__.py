"""Permission broker, durable rules and the transports requests arrive on."""
from __future__ import annotations

__all__ = [
    "PermissionBroker",
    "PermissionRuleStore",
    "PermissionFileStore",
    "RequestState",
    "match_rules",
]

from convoy.permissions.broker import PermissionBroker
from convoy.permissions.lifecycle import RequestState
from convoy.permissions.rules import PermissionRuleStore, match_rules
from convoy.permissions.store import PermissionFileStore
