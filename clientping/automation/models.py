"""Automation domain types.

Everything here round-trips through plain dicts (``to_dict``/``from_dict``) so the same
objects can be stored in any :class:`~clientping.automation.store.StateStore` and
returned from the HTTP API unchanged. ``from_dict`` accepts both snake_case and the
camelCase keys used by the dashboard (``timeDelay``, ``flowId``, ``useAI`` ...).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

TRIGGER_TYPES = ("keyword", "welcome", "time", "event", "sequence")
ACTION_TYPES = ("send_message", "add_tag", "update_segment", "trigger_flow", "ai_response")
CUSTOM_FIELD_OPERATORS = ("equals", "contains", "greater", "less")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_dt(value: Any) -> Optional[datetime]:
    """Parse ISO strings / epoch seconds / datetimes into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in data and data[k] is not None:
            return data[k]
    return default


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(x).strip() for x in value if str(x or "").strip()]


def _drop_none(d: dict) -> dict:
    return {k: v for k, v in d.items() if v is not None}


# ── Flows ─────────────────────────────────────────────────────────

@dataclass
class TriggerConditions:
    keywords: List[str] = field(default_factory=list)
    time_delay: Optional[int] = None  # seconds
    event_type: Optional[str] = None
    user_segment: Optional[str] = None
    previous_message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "TriggerConditions":
        data = data or {}
        delay = _pick(data, "time_delay", "timeDelay")
        return cls(
            keywords=_str_list(data.get("keywords")),
            time_delay=int(delay) if delay is not None else None,
            event_type=_pick(data, "event_type", "eventType"),
            user_segment=_pick(data, "user_segment", "userSegment"),
            previous_message=_pick(data, "previous_message", "previousMessage"),
        )

    def to_dict(self) -> dict:
        return _drop_none({
            "keywords": list(self.keywords) if self.keywords else None,
            "time_delay": self.time_delay,
            "event_type": self.event_type,
            "user_segment": self.user_segment,
            "previous_message": self.previous_message,
        })


@dataclass
class AutomationTrigger:
    id: str
    type: str
    conditions: TriggerConditions = field(default_factory=TriggerConditions)
    priority: int = 1  # 1-10, higher wins
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "AutomationTrigger":
        ttype = str(data.get("type") or "").strip().lower()
        if ttype not in TRIGGER_TYPES:
            raise ValueError(f"Unknown trigger type: {ttype or '<empty>'}")
        return cls(
            id=str(data.get("id") or f"{ttype}-trigger"),
            type=ttype,
            conditions=TriggerConditions.from_dict(data.get("conditions")),
            priority=int(data["priority"]) if data.get("priority") is not None else 1,
            active=bool(data.get("active", True)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "conditions": self.conditions.to_dict(),
            "priority": self.priority,
            "active": self.active,
        }


@dataclass
class ActionConfig:
    message: Optional[str] = None
    use_ai: Optional[bool] = None
    ai_prompt: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    segment: Optional[str] = None
    flow_id: Optional[str] = None
    delay: Optional[int] = None  # milliseconds

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ActionConfig":
        data = data or {}
        delay = data.get("delay")
        use_ai = _pick(data, "use_ai", "useAI")
        return cls(
            message=data.get("message"),
            use_ai=bool(use_ai) if use_ai is not None else None,
            ai_prompt=_pick(data, "ai_prompt", "aiPrompt"),
            tags=_str_list(data.get("tags")),
            segment=data.get("segment"),
            flow_id=_pick(data, "flow_id", "flowId"),
            delay=int(delay) if delay is not None else None,
        )

    def to_dict(self) -> dict:
        return _drop_none({
            "message": self.message,
            "use_ai": self.use_ai,
            "ai_prompt": self.ai_prompt,
            "tags": list(self.tags) if self.tags else None,
            "segment": self.segment,
            "flow_id": self.flow_id,
            "delay": self.delay,
        })


@dataclass
class AutomationAction:
    id: str
    type: str
    config: ActionConfig = field(default_factory=ActionConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "AutomationAction":
        atype = str(data.get("type") or "").strip().lower()
        if not atype:
            raise ValueError("Action type is required")
        # Unknown types are kept (and skipped at run time) so dashboards can round-trip them.
        return cls(
            id=str(data.get("id") or atype),
            type=atype,
            config=ActionConfig.from_dict(data.get("config")),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "config": self.config.to_dict()}


@dataclass
class FlowStats:
    triggered: int = 0
    completed: int = 0
    last_triggered: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "FlowStats":
        data = data or {}
        return cls(
            triggered=int(data.get("triggered") or 0),
            completed=int(data.get("completed") or 0),
            last_triggered=parse_dt(_pick(data, "last_triggered", "lastTriggered")),
        )

    def to_dict(self) -> dict:
        return {
            "triggered": self.triggered,
            "completed": self.completed,
            "last_triggered": to_iso(self.last_triggered),
        }


@dataclass
class AutomationFlow:
    id: str
    name: str
    description: str = ""
    triggers: List[AutomationTrigger] = field(default_factory=list)
    actions: List[AutomationAction] = field(default_factory=list)
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    stats: FlowStats = field(default_factory=FlowStats)

    @classmethod
    def from_dict(cls, data: dict) -> "AutomationFlow":
        now = utcnow()
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            description=str(data.get("description") or ""),
            triggers=[AutomationTrigger.from_dict(t) for t in (data.get("triggers") or [])],
            actions=[AutomationAction.from_dict(a) for a in (data.get("actions") or [])],
            active=bool(data.get("active", True)),
            created_at=parse_dt(_pick(data, "created_at", "createdAt")) or now,
            updated_at=parse_dt(_pick(data, "updated_at", "updatedAt")) or now,
            stats=FlowStats.from_dict(data.get("stats")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "triggers": [t.to_dict() for t in self.triggers],
            "actions": [a.to_dict() for a in self.actions],
            "active": self.active,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "stats": self.stats.to_dict(),
        }

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "stats": self.stats.to_dict(),
            "trigger_count": len(self.triggers),
            "action_count": len(self.actions),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


# ── Per-chat conversation state ───────────────────────────────────

@dataclass
class UserContext:
    chat_id: str
    user_id: str
    name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    segment: str = "new"
    last_message: Optional[str] = None
    message_history: List[str] = field(default_factory=list)
    joined_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)
    flow_state: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "UserContext":
        now = utcnow()
        return cls(
            chat_id=str(data["chat_id"]),
            user_id=str(data.get("user_id") or data["chat_id"]),
            name=data.get("name"),
            tags=_str_list(data.get("tags")),
            segment=str(data.get("segment") or "new"),
            last_message=data.get("last_message"),
            message_history=[str(m) for m in (data.get("message_history") or [])],
            joined_at=parse_dt(data.get("joined_at")) or now,
            last_active=parse_dt(data.get("last_active")) or now,
            flow_state=dict(data.get("flow_state") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "name": self.name,
            "tags": list(self.tags),
            "segment": self.segment,
            "last_message": self.last_message,
            "message_history": list(self.message_history),
            "joined_at": to_iso(self.joined_at),
            "last_active": to_iso(self.last_active),
            "flow_state": dict(self.flow_state),
        }


@dataclass
class PendingReply:
    """A reply the caller must deliver. ``kind`` is ``text`` or ``ai``."""

    kind: str
    text: Optional[str] = None
    prompt: Optional[str] = None
    action_id: Optional[str] = None

    def to_dict(self) -> dict:
        return _drop_none({
            "kind": self.kind,
            "text": self.text,
            "prompt": self.prompt,
            "action_id": self.action_id,
        })


@dataclass
class AutomationResult:
    triggered: bool
    flow_id: Optional[str] = None
    actions_taken: List[str] = field(default_factory=list)
    user_updated: bool = False
    error: Optional[str] = None
    replies: List[PendingReply] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "triggered": self.triggered,
            "flow_id": self.flow_id,
            "actions_taken": list(self.actions_taken),
            "user_updated": self.user_updated,
            "error": self.error,
            "replies": [r.to_dict() for r in self.replies],
        }


# ── Contacts & segments ───────────────────────────────────────────

@dataclass
class Contact:
    id: str
    chat_id: str
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    segment: str = "new"
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    joined_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)
    message_count: int = 0
    is_blocked: bool = False
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Contact":
        now = utcnow()
        chat_id = str(_pick(data, "chat_id", "chatId"))
        return cls(
            id=str(data.get("id") or ""),
            chat_id=chat_id,
            user_id=str(_pick(data, "user_id", "userId", default=chat_id)),
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            tags=_str_list(data.get("tags")),
            segment=str(data.get("segment") or "new"),
            custom_fields=dict(_pick(data, "custom_fields", "customFields", default={}) or {}),
            joined_at=parse_dt(_pick(data, "joined_at", "joinedAt")) or now,
            last_active=parse_dt(_pick(data, "last_active", "lastActive")) or now,
            message_count=int(_pick(data, "message_count", "messageCount", default=0) or 0),
            is_blocked=bool(_pick(data, "is_blocked", "isBlocked", default=False)),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "tags": list(self.tags),
            "segment": self.segment,
            "custom_fields": dict(self.custom_fields),
            "joined_at": to_iso(self.joined_at),
            "last_active": to_iso(self.last_active),
            "message_count": self.message_count,
            "is_blocked": self.is_blocked,
            "notes": self.notes,
        }


@dataclass
class CustomFieldCondition:
    field: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict) -> "CustomFieldCondition":
        op = str(data.get("operator") or "equals").strip().lower()
        if op not in CUSTOM_FIELD_OPERATORS:
            raise ValueError(f"Unknown custom field operator: {op}")
        return cls(field=str(data["field"]), operator=op, value=data.get("value"))

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass
class SegmentConditions:
    tags: List[str] = field(default_factory=list)
    joined_after: Optional[datetime] = None
    joined_before: Optional[datetime] = None
    message_count_min: Optional[int] = None
    message_count_max: Optional[int] = None
    last_active_after: Optional[datetime] = None
    last_active_before: Optional[datetime] = None
    custom_field: Optional[CustomFieldCondition] = None
    # Relative windows, evaluated against "now" at match time.
    joined_within_days: Optional[float] = None
    active_within_days: Optional[float] = None
    inactive_for_days: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SegmentConditions":
        data = data or {}

        def _int(*keys):
            v = _pick(data, *keys)
            return int(v) if v is not None else None

        def _float(*keys):
            v = _pick(data, *keys)
            return float(v) if v is not None else None

        cf = _pick(data, "custom_field", "customField")
        return cls(
            tags=_str_list(data.get("tags")),
            joined_after=parse_dt(_pick(data, "joined_after", "joinedAfter")),
            joined_before=parse_dt(_pick(data, "joined_before", "joinedBefore")),
            message_count_min=_int("message_count_min", "messageCountMin"),
            message_count_max=_int("message_count_max", "messageCountMax"),
            last_active_after=parse_dt(_pick(data, "last_active_after", "lastActiveAfter")),
            last_active_before=parse_dt(_pick(data, "last_active_before", "lastActiveBefore")),
            custom_field=CustomFieldCondition.from_dict(cf) if isinstance(cf, dict) else None,
            joined_within_days=_float("joined_within_days", "joinedWithinDays"),
            active_within_days=_float("active_within_days", "activeWithinDays"),
            inactive_for_days=_float("inactive_for_days", "inactiveForDays"),
        )

    def to_dict(self) -> dict:
        return _drop_none({
            "tags": list(self.tags) if self.tags else None,
            "joined_after": to_iso(self.joined_after),
            "joined_before": to_iso(self.joined_before),
            "message_count_min": self.message_count_min,
            "message_count_max": self.message_count_max,
            "last_active_after": to_iso(self.last_active_after),
            "last_active_before": to_iso(self.last_active_before),
            "custom_field": self.custom_field.to_dict() if self.custom_field else None,
            "joined_within_days": self.joined_within_days,
            "active_within_days": self.active_within_days,
            "inactive_for_days": self.inactive_for_days,
        })


@dataclass
class ContactSegment:
    id: str
    name: str
    description: str = ""
    conditions: SegmentConditions = field(default_factory=SegmentConditions)
    contact_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "ContactSegment":
        now = utcnow()
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            description=str(data.get("description") or ""),
            conditions=SegmentConditions.from_dict(data.get("conditions")),
            contact_count=int(_pick(data, "contact_count", "contactCount", default=0) or 0),
            created_at=parse_dt(_pick(data, "created_at", "createdAt")) or now,
            updated_at=parse_dt(_pick(data, "updated_at", "updatedAt")) or now,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "conditions": self.conditions.to_dict(),
            "contact_count": self.contact_count,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
