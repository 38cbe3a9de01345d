"""Automation rules engine + contact manager."""

from .contacts import ContactManager, contact_matches_segment
from .engine import AutomationEngine, AutomationError
from .models import AutomationFlow, AutomationResult, Contact, ContactSegment, PendingReply, UserContext
from .store import DatabaseStore, MemoryStore, RedisStore, StateStore, build_state_store

__all__ = [
    "AutomationEngine",
    "AutomationError",
    "AutomationFlow",
    "AutomationResult",
    "Contact",
    "ContactManager",
    "ContactSegment",
    "DatabaseStore",
    "MemoryStore",
    "PendingReply",
    "RedisStore",
    "StateStore",
    "UserContext",
    "build_state_store",
    "contact_matches_segment",
]
