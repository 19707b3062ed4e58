"""Unit tests for roster_watch.changes (snapshot diff)."""

from __future__ import annotations

from datetime import datetime, timezone

from roster_watch.changes import build_person_map, compare_person, diff_snapshots
from roster_watch.identity import person_fingerprint
from roster_watch.models import Category, Member, Snapshot

T0 = datetime(2024, 4, 1, tzinfo=timezone.utc)
T1 = datetime(2024, 5, 1, tzinfo=timezone.utc)

ALICE_FP = person_fingerprint({"email": "alice@x.com"})
BOB_FP = person_fingerprint({"name": "Bob"})


def _member(fp, name, title=None, emails=(), phones=(), category=None, profile_url=None):
    return Member(
        fingerprint=fp,
        name=name,
        title=title,
        emails=list(emails),
        phones=list(phones),
        category=category,
        profile_url=profile_url,
    )


def _snapshot(sid, categories, captured_at=T0):
    return Snapshot(
        id=sid,
        target_url="https://example.org/staff",
        captured_at=captured_at,
        run_id=None,
        content_hash="0" * 64,
        fetch_path="primary",
        extractor="heading_table",
        categories=[Category(name=name, members=members) for name, members in categories],
    )


def _alice_bob_pair():
    prev = _snapshot("prev", [
        ("Engineering", [
            _member(ALICE_FP, "Alice", "Software Engineer", ["alice@x.com"], category="Engineering"),
            _member(BOB_FP, "Bob", "DevOps Engineer", phones=["+15550000001"], category="Engineering"),
        ]),
    ])
    alice_new = dict(title="Engineering Manager", emails=["alice@x.com", "alice.m@x.com"])
    curr = _snapshot("curr", [
        ("Leadership", [
            _member(ALICE_FP, "Alice", category="Leadership", **alice_new),
        ]),
        ("Engineering", [
            _member(ALICE_FP, "Alice", category="Engineering", **alice_new),
            _member(BOB_FP, "Bob", "Senior DevOps Engineer", phones=["+15550000002"],
                    category="Engineering"),
        ]),
    ], captured_at=T1)
    return prev, curr


class TestCategoryMove:
    def test_counts(self):
        prev, curr = _alice_bob_pair()
        changes = diff_snapshots(prev, curr)
        assert changes.summary() == {"added": 0, "removed": 0, "updated": 2}

    def test_alice_diff_fields(self):
        prev, curr = _alice_bob_pair()
        updates = {u.fingerprint: u for u in diff_snapshots(prev, curr).updated}
        alice = updates[ALICE_FP]
        assert {"title", "emails", "categories"} <= set(alice.diffs)
        assert alice.diffs["categories"] == {
            "before": ["Engineering"],
            "after": ["Engineering", "Leadership"],
        }

    def test_bob_diff_fields(self):
        prev, curr = _alice_bob_pair()
        updates = {u.fingerprint: u for u in diff_snapshots(prev, curr).updated}
        bob = updates[BOB_FP]
        assert set(bob.diffs) == {"title", "phones"}
        assert bob.diffs["title"] == {"before": "DevOps Engineer", "after": "Senior DevOps Engineer"}


class TestPersonMap:
    def test_merges_categories_and_keeps_first_instance(self):
        _, curr = _alice_bob_pair()
        people = build_person_map(curr)
        assert list(people) == [ALICE_FP, BOB_FP]
        assert people[ALICE_FP].categories == ["Engineering", "Leadership"]
        assert people[ALICE_FP].data.category == "Leadership"


class TestAddRemove:
    def test_added_and_removed(self):
        carol_fp = person_fingerprint({"email": "carol@x.com"})
        prev = _snapshot("p", [("Staff", [_member(BOB_FP, "Bob", category="Staff")])])
        curr = _snapshot("c", [("Staff", [_member(carol_fp, "Carol", category="Staff")])])
        changes = diff_snapshots(prev, curr)
        assert [p.fingerprint for p in changes.added] == [carol_fp]
        assert [p.fingerprint for p in changes.removed] == [BOB_FP]
        assert changes.updated == []

    def test_identical_snapshots_produce_empty_changeset(self):
        prev, _ = _alice_bob_pair()
        again, _ = _alice_bob_pair()
        assert diff_snapshots(prev, again).is_empty


class TestComparisonRules:
    def _pair(self, before: Member, after: Member):
        prev = build_person_map(_snapshot("p", [("Staff", [before])]))
        curr = build_person_map(_snapshot("c", [("Staff", [after])]))
        return prev[before.fingerprint], curr[after.fingerprint]

    def test_case_and_whitespace_are_not_changes(self):
        a, b = self._pair(
            _member(BOB_FP, "Bob", "Head Coach"),
            _member(BOB_FP, "  bob ", "head coach "),
        )
        assert compare_person(a, b) == {}

    def test_none_and_blank_are_equal(self):
        a, b = self._pair(_member(BOB_FP, "Bob", None), _member(BOB_FP, "Bob", "   "))
        assert compare_person(a, b) == {}

    def test_list_order_is_not_a_change(self):
        a, b = self._pair(
            _member(BOB_FP, "Bob", phones=["+1", "+2"]),
            _member(BOB_FP, "Bob", phones=["+2", "+1"]),
        )
        assert compare_person(a, b) == {}

    def test_profile_url_change(self):
        a, b = self._pair(
            _member(BOB_FP, "Bob", profile_url="https://x/bob"),
            _member(BOB_FP, "Bob", profile_url="https://x/staff/bob"),
        )
        assert set(compare_person(a, b)) == {"profile_url"}
