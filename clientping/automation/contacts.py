from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .models import Contact, ContactSegment, SegmentConditions, utcnow
from .store import StateStore

log = logging.getLogger(__name__)

CONTACTS_NS = "contacts"
SEGMENTS_NS = "segments"

# Automatic segment assignment only considers these; custom segments rank 0 and are never
# picked as a contact's primary segment.
SEGMENT_PRIORITIES = {
    "engaged": 4,
    "active": 3,
    "new": 2,
    "inactive": 1,
}
DEFAULT_SEGMENT = "new"

# Fields the admin API may change on a contact.
CONTACT_UPDATABLE_FIELDS = (
    "name",
    "email",
    "phone",
    "notes",
    "custom_fields",
    "tags",
    "segment",
    "is_blocked",
)

# Contact field -> accepted import row keys.
_IMPORT_KEYS = {
    "user_id": ("user_id", "userId"),
    "name": ("name",),
    "email": ("email",),
    "phone": ("phone",),
    "tags": ("tags",),
    "segment": ("segment",),
    "custom_fields": ("custom_fields", "customFields"),
    "joined_at": ("joined_at", "joinedAt"),
    "last_active": ("last_active", "lastActive"),
    "message_count": ("message_count", "messageCount"),
    "is_blocked": ("is_blocked", "isBlocked"),
    "notes": ("notes",),
}


def default_segments() -> List[ContactSegment]:
    return [
        ContactSegment(
            id="new",
            name="New Users",
            description="Users who joined in the last 7 days",
            conditions=SegmentConditions(joined_within_days=7),
        ),
        ContactSegment(
            id="active",
            name="Active Users",
            description="Users active in the last 24 hours",
            conditions=SegmentConditions(active_within_days=1),
        ),
        ContactSegment(
            id="engaged",
            name="Engaged Users",
            description="Users with 10+ messages",
            conditions=SegmentConditions(message_count_min=10),
        ),
        ContactSegment(
            id="inactive",
            name="Inactive Users",
            description="Users inactive for 7+ days",
            conditions=SegmentConditions(inactive_for_days=7),
        ),
    ]


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def contact_matches_segment(contact: Contact, segment: ContactSegment, now: Optional[datetime] = None) -> bool:
    """Pure predicate: does ``contact`` satisfy every condition set on ``segment``?"""
    cond = segment.conditions
    now = now or utcnow()

    if cond.tags and not any(tag in contact.tags for tag in cond.tags):
        return False

    if cond.joined_after is not None and contact.joined_at < cond.joined_after:
        return False
    if cond.joined_before is not None and contact.joined_at > cond.joined_before:
        return False

    if cond.message_count_min is not None and contact.message_count < cond.message_count_min:
        return False
    if cond.message_count_max is not None and contact.message_count > cond.message_count_max:
        return False

    if cond.last_active_after is not None and contact.last_active < cond.last_active_after:
        return False
    if cond.last_active_before is not None and contact.last_active > cond.last_active_before:
        return False

    if cond.joined_within_days is not None and contact.joined_at < now - timedelta(days=cond.joined_within_days):
        return False
    if cond.active_within_days is not None and contact.last_active < now - timedelta(days=cond.active_within_days):
        return False
    if cond.inactive_for_days is not None and contact.last_active > now - timedelta(days=cond.inactive_for_days):
        return False

    if cond.custom_field is not None:
        cf = cond.custom_field
        actual = contact.custom_fields.get(cf.field)
        if cf.operator == "equals":
            if actual != cf.value:
                return False
        elif cf.operator == "contains":
            if actual is None or str(cf.value) not in str(actual):
                return False
        elif cf.operator in ("greater", "less"):
            a, b = _as_number(actual), _as_number(cf.value)
            if a is None or b is None:
                return False
            if cf.operator == "greater" and not a > b:
                return False
            if cf.operator == "less" and not a < b:
                return False

    return True


def best_segment_for(contact: Contact, segments: Iterable[ContactSegment], now: Optional[datetime] = None) -> str:
    best, best_rank = DEFAULT_SEGMENT, 0
    for segment in segments:
        rank = SEGMENT_PRIORITIES.get(segment.id, 0)
        if rank > best_rank and contact_matches_segment(contact, segment, now):
            best, best_rank = segment.id, rank
    return best


def _new_contact_id() -> str:
    return f"contact_{uuid.uuid4().hex[:12]}"


class ContactManager:
    """Contact book + segmentation on top of a :class:`StateStore`."""

    def __init__(self, store: StateStore):
        self.store = store

    async def initialize(self) -> None:
        if await self.store.count(SEGMENTS_NS) == 0:
            for segment in default_segments():
                await self.store.put(SEGMENTS_NS, segment.id, segment.to_dict())
            log.info("Seeded %d default contact segments", len(SEGMENT_PRIORITIES))
        await self.refresh_segment_counts()

    # ── contacts ──
    async def get_contact(self, chat_id: str) -> Optional[Contact]:
        raw = await self.store.get(CONTACTS_NS, str(chat_id))
        return Contact.from_dict(raw) if raw else None

    async def get_all_contacts(self) -> List[Contact]:
        return [Contact.from_dict(c) for c in await self.store.values(CONTACTS_NS)]

    async def _save(self, contact: Contact) -> None:
        await self.store.put(CONTACTS_NS, contact.chat_id, contact.to_dict())

    async def create_contact(self, chat_id: str, user_id: str, name: Optional[str] = None) -> Contact:
        contact = Contact(id=_new_contact_id(), chat_id=str(chat_id), user_id=str(user_id), name=name)
        await self._save(contact)
        await self.refresh_segment_counts()
        return contact

    async def get_or_create_contact(self, chat_id: str, user_id: str, name: Optional[str] = None) -> tuple[Contact, bool]:
        existing = await self.get_contact(chat_id)
        if existing:
            return existing, False
        return await self.create_contact(chat_id, user_id, name), True

    async def update_contact(self, chat_id: str, updates: Dict[str, Any]) -> bool:
        contact = await self.get_contact(chat_id)
        if not contact:
            return False
        for key in CONTACT_UPDATABLE_FIELDS:
            if key in updates and updates[key] is not None:
                value = updates[key]
                if key == "tags":
                    value = [str(t) for t in value]
                elif key == "custom_fields":
                    value = dict(value)
                elif key == "is_blocked":
                    value = bool(value)
                setattr(contact, key, value)
        await self._save(contact)
        await self.refresh_segment_counts()
        return True

    async def add_contact_tag(self, chat_id: str, tag: str) -> bool:
        contact = await self.get_contact(chat_id)
        if not contact:
            return False
        if tag not in contact.tags:
            contact.tags.append(tag)
            await self._save(contact)
            await self.refresh_segment_counts()
        return True

    async def remove_contact_tag(self, chat_id: str, tag: str) -> bool:
        contact = await self.get_contact(chat_id)
        if not contact:
            return False
        if tag in contact.tags:
            contact.tags.remove(tag)
            await self._save(contact)
            await self.refresh_segment_counts()
        return True

    async def increment_message_count(self, chat_id: str) -> bool:
        contact = await self.get_contact(chat_id)
        if not contact:
            return False
        contact.message_count += 1
        contact.last_active = utcnow()
        contact.segment = best_segment_for(contact, await self.get_all_segments())
        await self._save(contact)
        await self.refresh_segment_counts()
        return True

    async def _set_blocked(self, chat_id: str, blocked: bool) -> bool:
        contact = await self.get_contact(chat_id)
        if not contact:
            return False
        contact.is_blocked = blocked
        await self._save(contact)
        await self.refresh_segment_counts()
        return True

    async def block_contact(self, chat_id: str) -> bool:
        return await self._set_blocked(chat_id, True)

    async def unblock_contact(self, chat_id: str) -> bool:
        return await self._set_blocked(chat_id, False)

    # ── segments ──
    async def create_segment(
        self,
        segment_id: str,
        name: str,
        description: str = "",
        conditions: Optional[dict] = None,
    ) -> ContactSegment:
        segment = ContactSegment(
            id=str(segment_id),
            name=name,
            description=description or "",
            conditions=SegmentConditions.from_dict(conditions),
        )
        await self.store.put(SEGMENTS_NS, segment.id, segment.to_dict())
        await self.refresh_segment_counts()
        return (await self.get_segment(segment.id)) or segment

    async def get_segment(self, segment_id: str) -> Optional[ContactSegment]:
        raw = await self.store.get(SEGMENTS_NS, str(segment_id))
        return ContactSegment.from_dict(raw) if raw else None

    async def get_all_segments(self) -> List[ContactSegment]:
        return [ContactSegment.from_dict(s) for s in await self.store.values(SEGMENTS_NS)]

    async def update_segment(self, segment_id: str, updates: Dict[str, Any]) -> bool:
        segment = await self.get_segment(segment_id)
        if not segment:
            return False
        if updates.get("name") is not None:
            segment.name = str(updates["name"])
        if updates.get("description") is not None:
            segment.description = str(updates["description"])
        if updates.get("conditions") is not None:
            segment.conditions = SegmentConditions.from_dict(updates["conditions"])
        segment.updated_at = utcnow()
        await self.store.put(SEGMENTS_NS, segment.id, segment.to_dict())
        await self.refresh_segment_counts()
        return True

    async def delete_segment(self, segment_id: str) -> bool:
        return await self.store.delete(SEGMENTS_NS, str(segment_id))

    async def get_contacts_in_segment(self, segment_id: str) -> List[Contact]:
        segment = await self.get_segment(segment_id)
        if not segment:
            return []
        now = utcnow()
        return [c for c in await self.get_all_contacts() if contact_matches_segment(c, segment, now)]

    async def refresh_segment_counts(self) -> None:
        """Recount every segment against every contact (O(contacts x segments))."""
        segments = await self.get_all_segments()
        if not segments:
            return
        contacts = await self.get_all_contacts()
        now = utcnow()
        for segment in segments:
            count = sum(1 for c in contacts if contact_matches_segment(c, segment, now))
            if count != segment.contact_count:
                segment.contact_count = count
                await self.store.put(SEGMENTS_NS, segment.id, segment.to_dict())

    # ── analytics ──
    async def get_contact_stats(self) -> dict:
        now = utcnow()
        one_day_ago = now - timedelta(days=1)
        one_week_ago = now - timedelta(days=7)

        contacts = await self.get_all_contacts()
        total = len(contacts)
        active = sum(1 for c in contacts if c.last_active > one_day_ago)
        new = sum(1 for c in contacts if c.joined_at > one_week_ago)
        blocked = sum(1 for c in contacts if c.is_blocked)

        segment_counts = Counter(c.segment for c in contacts)
        tag_counts = Counter(tag for c in contacts for tag in c.tags)

        return {
            "total_contacts": total,
            "active_contacts": active,
            "new_contacts": new,
            "blocked_contacts": blocked,
            "segment_breakdown": [
                {
                    "segment": seg,
                    "count": count,
                    "percentage": (count / total) * 100 if total else 0,
                }
                for seg, count in segment_counts.items()
            ],
            "top_tags": [{"tag": tag, "count": count} for tag, count in tag_counts.most_common(10)],
        }

    async def search_contacts(self, query: str) -> List[Contact]:
        q = (query or "").lower()

        def _hit(c: Contact) -> bool:
            if c.name and q in c.name.lower():
                return True
            if c.email and q in c.email.lower():
                return True
            if any(q in t.lower() for t in c.tags):
                return True
            return bool(c.notes and q in c.notes.lower())

        return [c for c in await self.get_all_contacts() if _hit(c)]

    async def export_contacts(self, segment_id: Optional[str] = None) -> List[Contact]:
        if segment_id:
            return await self.get_contacts_in_segment(segment_id)
        return await self.get_all_contacts()

    async def import_contacts(self, rows: List[dict]) -> dict:
        imported = 0
        errors: List[str] = []
        for row in rows or []:
            if not isinstance(row, dict):
                errors.append("Invalid contact row: expected an object")
                continue
            chat_id = row.get("chat_id") or row.get("chatId")
            user_id = row.get("user_id") or row.get("userId")
            if not chat_id or not user_id:
                errors.append("Missing required fields: chat_id and user_id")
                continue
            try:
                existing = await self.get_contact(str(chat_id))
                if existing:
                    # rows only overwrite the fields they actually carry
                    merged = existing.to_dict()
                    incoming = Contact.from_dict(row).to_dict()
                    for key, raw_keys in _IMPORT_KEYS.items():
                        if any(k in row for k in raw_keys):
                            merged[key] = incoming[key]
                    contact = Contact.from_dict(merged)
                else:
                    contact = Contact.from_dict(row)
                    if not contact.id:
                        contact.id = _new_contact_id()
                await self._save(contact)
                imported += 1
            except (KeyError, TypeError, ValueError) as exc:
                errors.append(f"Error importing contact {chat_id}: {exc}")
        await self.refresh_segment_counts()
        return {"imported": imported, "errors": errors}
