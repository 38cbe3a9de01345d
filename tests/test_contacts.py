import asyncio
from datetime import datetime, timedelta, timezone

from clientping.automation import Contact, ContactManager, ContactSegment, contact_matches_segment
from clientping.automation.contacts import SEGMENTS_NS, best_segment_for, default_segments
from clientping.automation.models import SegmentConditions

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _contact(**kw):
    base = {"id": "c1", "chat_id": "1", "user_id": "u1", "joined_at": NOW, "last_active": NOW}
    base.update(kw)
    return Contact(**base)


def _segment(**conditions):
    return ContactSegment(id="custom", name="Custom", conditions=SegmentConditions.from_dict(conditions))


def test_initialize_seeds_default_segments_once(contacts, store):
    segments = {s.id for s in asyncio.run(contacts.get_all_segments())}
    assert segments == {"new", "active", "engaged", "inactive"}

    asyncio.run(contacts.delete_segment("inactive"))
    asyncio.run(contacts.initialize())
    # existing segments are never re-seeded
    assert asyncio.run(store.count(SEGMENTS_NS)) == 3


def test_get_or_create_contact(contacts):
    contact, created = asyncio.run(contacts.get_or_create_contact("55", "u55", "Ana"))
    assert created is True
    assert contact.id.startswith("contact_")
    assert contact.segment == "new"
    assert contact.message_count == 0

    again, created = asyncio.run(contacts.get_or_create_contact("55", "u55", "Other"))
    assert created is False
    assert again.id == contact.id
    assert again.name == "Ana"


def test_tags_are_unique_and_unknown_contacts_report_false(contacts):
    asyncio.run(contacts.create_contact("1", "u1"))
    assert asyncio.run(contacts.add_contact_tag("1", "vip")) is True
    assert asyncio.run(contacts.add_contact_tag("1", "vip")) is True
    assert asyncio.run(contacts.get_contact("1")).tags == ["vip"]

    assert asyncio.run(contacts.remove_contact_tag("1", "vip")) is True
    assert asyncio.run(contacts.get_contact("1")).tags == []

    assert asyncio.run(contacts.add_contact_tag("nope", "vip")) is False
    assert asyncio.run(contacts.remove_contact_tag("nope", "vip")) is False
    assert asyncio.run(contacts.block_contact("nope")) is False
    assert asyncio.run(contacts.increment_message_count("nope")) is False


def test_message_count_drives_segment(contacts):
    asyncio.run(contacts.create_contact("1", "u1"))
    asyncio.run(contacts.increment_message_count("1"))
    contact = asyncio.run(contacts.get_contact("1"))
    assert contact.message_count == 1
    assert contact.segment == "active"

    for _ in range(9):
        asyncio.run(contacts.increment_message_count("1"))
    contact = asyncio.run(contacts.get_contact("1"))
    assert contact.message_count == 10
    assert contact.segment == "engaged"


def test_update_contact_applies_only_given_fields(contacts):
    asyncio.run(contacts.create_contact("1", "u1", "Ana"))
    ok = asyncio.run(contacts.update_contact("1", {"email": "ana@example.com", "name": None, "chat_id": "hijack"}))
    assert ok is True
    contact = asyncio.run(contacts.get_contact("1"))
    assert contact.email == "ana@example.com"
    assert contact.name == "Ana"
    assert contact.chat_id == "1"
    assert asyncio.run(contacts.update_contact("missing", {"name": "x"})) is False


def test_block_and_unblock(contacts):
    asyncio.run(contacts.create_contact("1", "u1"))
    assert asyncio.run(contacts.block_contact("1")) is True
    assert asyncio.run(contacts.get_contact("1")).is_blocked is True
    assert asyncio.run(contacts.unblock_contact("1")) is True
    assert asyncio.run(contacts.get_contact("1")).is_blocked is False


def test_tags_condition_is_any_of():
    seg = _segment(tags=["vip", "premium"])
    assert contact_matches_segment(_contact(tags=["premium"]), seg, NOW)
    assert not contact_matches_segment(_contact(tags=["other"]), seg, NOW)
    assert not contact_matches_segment(_contact(), seg, NOW)


def test_zero_bounds_are_enforced():
    seg = _segment(message_count_max=0)
    assert contact_matches_segment(_contact(message_count=0), seg, NOW)
    assert not contact_matches_segment(_contact(message_count=1), seg, NOW)


def test_absolute_date_conditions():
    seg = _segment(joined_after="2024-05-01T00:00:00Z", last_active_before="2024-06-01T00:00:00Z")
    assert not contact_matches_segment(_contact(), seg, NOW)
    assert contact_matches_segment(_contact(last_active=NOW - timedelta(days=2)), seg, NOW)
    assert not contact_matches_segment(_contact(joined_at=datetime(2024, 1, 1, tzinfo=timezone.utc)), seg, NOW)


def test_relative_windows_follow_now():
    new, active, _engaged, inactive = default_segments()
    old = _contact(joined_at=NOW - timedelta(days=30), last_active=NOW - timedelta(days=10))
    assert not contact_matches_segment(old, new, NOW)
    assert not contact_matches_segment(old, active, NOW)
    assert contact_matches_segment(old, inactive, NOW)
    # an hour after joining it still counted as new
    then = NOW - timedelta(days=29, hours=23)
    assert contact_matches_segment(old, new, then)


def test_custom_field_operators():
    c = _contact(custom_fields={"plan": "pro-annual", "seats": "12"})
    assert contact_matches_segment(c, _segment(custom_field={"field": "plan", "operator": "contains", "value": "pro"}), NOW)
    assert not contact_matches_segment(c, _segment(custom_field={"field": "plan", "operator": "equals", "value": "pro"}), NOW)
    assert contact_matches_segment(c, _segment(custom_field={"field": "seats", "operator": "greater", "value": 10}), NOW)
    assert not contact_matches_segment(c, _segment(custom_field={"field": "seats", "operator": "less", "value": 10}), NOW)
    # non-numeric operands never satisfy numeric comparisons
    assert not contact_matches_segment(c, _segment(custom_field={"field": "plan", "operator": "greater", "value": 1}), NOW)
    assert not contact_matches_segment(c, _segment(custom_field={"field": "missing", "operator": "contains", "value": "x"}), NOW)


def test_best_segment_ignores_custom_segments():
    segments = default_segments() + [_segment()]
    stale = _contact(joined_at=NOW - timedelta(days=30), last_active=NOW - timedelta(days=10))
    assert best_segment_for(stale, segments, NOW) == "inactive"
    # "custom" matches everything but carries no rank
    lurker = _contact(joined_at=NOW - timedelta(days=30), last_active=NOW - timedelta(days=3))
    assert best_segment_for(lurker, segments, NOW) == "new"


def test_segment_crud_and_counts(contacts):
    asyncio.run(contacts.create_contact("1", "u1"))
    asyncio.run(contacts.create_contact("2", "u2"))
    asyncio.run(contacts.add_contact_tag("2", "vip"))

    seg = asyncio.run(contacts.create_segment("vips", "VIPs", "Tagged vip", {"tags": ["vip"]}))
    assert seg.contact_count == 1
    assert [c.chat_id for c in asyncio.run(contacts.get_contacts_in_segment("vips"))] == ["2"]
    assert asyncio.run(contacts.get_segment("new")).contact_count == 2

    asyncio.run(contacts.add_contact_tag("1", "vip"))
    assert asyncio.run(contacts.get_segment("vips")).contact_count == 2

    assert asyncio.run(contacts.update_segment("vips", {"conditions": {"tags": ["gold"]}, "name": None})) is True
    seg = asyncio.run(contacts.get_segment("vips"))
    assert seg.name == "VIPs"
    assert seg.contact_count == 0
    assert asyncio.run(contacts.update_segment("missing", {"name": "x"})) is False

    assert asyncio.run(contacts.delete_segment("vips")) is True
    assert asyncio.run(contacts.delete_segment("vips")) is False
    assert asyncio.run(contacts.get_contacts_in_segment("vips")) == []


def test_contact_stats(contacts):
    asyncio.run(contacts.create_contact("1", "u1"))
    asyncio.run(contacts.create_contact("2", "u2"))
    asyncio.run(contacts.add_contact_tag("1", "vip"))
    asyncio.run(contacts.add_contact_tag("2", "vip"))
    asyncio.run(contacts.add_contact_tag("2", "beta"))
    asyncio.run(contacts.block_contact("2"))

    stats = asyncio.run(contacts.get_contact_stats())
    assert stats["total_contacts"] == 2
    assert stats["active_contacts"] == 2
    assert stats["new_contacts"] == 2
    assert stats["blocked_contacts"] == 1
    assert stats["segment_breakdown"] == [{"segment": "new", "count": 2, "percentage": 100.0}]
    assert stats["top_tags"][0] == {"tag": "vip", "count": 2}


def test_empty_stats(contacts):
    stats = asyncio.run(contacts.get_contact_stats())
    assert stats["total_contacts"] == 0
    assert stats["segment_breakdown"] == []


def test_search_contacts(contacts):
    asyncio.run(contacts.create_contact("1", "u1", "Ana Lopez"))
    asyncio.run(contacts.create_contact("2", "u2", "Bob"))
    asyncio.run(contacts.update_contact("2", {"notes": "Wants the ANA plan", "tags": ["lead"]}))
    asyncio.run(contacts.create_contact("3", "u3"))

    assert sorted(c.chat_id for c in asyncio.run(contacts.search_contacts("ana"))) == ["1", "2"]
    assert [c.chat_id for c in asyncio.run(contacts.search_contacts("LEAD"))] == ["2"]
    assert asyncio.run(contacts.search_contacts("zzz")) == []


def test_import_contacts(contacts):
    existing = asyncio.run(contacts.create_contact("1", "u1", "Ana"))
    asyncio.run(contacts.increment_message_count("1"))

    result = asyncio.run(contacts.import_contacts([
        {"chatId": "1", "userId": "u1", "email": "ana@example.com"},
        {"chat_id": "2", "user_id": "u2", "name": "Bob", "tags": ["imported"]},
        {"chat_id": "3"},
        "garbage",
    ]))
    assert result["imported"] == 2
    assert len(result["errors"]) == 2

    updated = asyncio.run(contacts.get_contact("1"))
    assert updated.id == existing.id
    assert updated.email == "ana@example.com"
    assert updated.name == "Ana"
    assert updated.message_count == 1
    bob = asyncio.run(contacts.get_contact("2"))
    assert bob.id.startswith("contact_")
    assert bob.tags == ["imported"]


def test_export_contacts(contacts):
    asyncio.run(contacts.create_contact("1", "u1"))
    asyncio.run(contacts.create_contact("2", "u2"))
    for _ in range(10):
        asyncio.run(contacts.increment_message_count("2"))
    assert len(asyncio.run(contacts.export_contacts())) == 2
    assert [c.chat_id for c in asyncio.run(contacts.export_contacts("engaged"))] == ["2"]


def test_contact_manager_on_fresh_store():
    from clientping.automation import MemoryStore

    cm = ContactManager(MemoryStore())
    # usable before initialize(); segment lookups just come back empty
    asyncio.run(cm.create_contact("1", "u1"))
    assert asyncio.run(cm.get_all_segments()) == []
    asyncio.run(cm.increment_message_count("1"))
    assert asyncio.run(cm.get_contact("1")).segment == "new"
