"""roster_watch.changes

Three-way diff between two snapshots of the same target.

People are keyed by fingerprint. A person listed under several categories of
one snapshot is a single PersonView whose ``categories`` is the sorted set of
those labels, so moving between categories shows up as an update of the
``categories`` field rather than as a removal plus an addition.
"""

from __future__ import annotations

from typing import Any

from roster_watch.models import ChangeSet, MemberUpdate, PersonView, Snapshot
from roster_watch.normalize import compare_scalar, compare_set

SCALAR_FIELDS = ("name", "title", "profile_url")
LIST_FIELDS = ("emails", "phones")
# Order in which diff keys are reported.
COMPARED_FIELDS = ("name", "title", "emails", "phones", "profile_url")


def build_person_map(snapshot: Snapshot) -> dict[str, PersonView]:
    """fingerprint → PersonView, first member instance supplies the data."""
    people: dict[str, PersonView] = {}
    category_sets: dict[str, set[str]] = {}
    for category_name, member in snapshot.iter_members():
        fp = member.fingerprint
        if fp not in people:
            people[fp] = PersonView(
                fingerprint=fp,
                name=member.name,
                categories=[],
                data=member,
            )
            category_sets[fp] = set()
        category_sets[fp].add(category_name)
    for fp, person in people.items():
        person.categories = sorted(category_sets[fp])
    return people


def _field_changed(field_name: str, before: Any, after: Any) -> bool:
    if field_name in LIST_FIELDS or field_name == "categories":
        return compare_set(before) != compare_set(after)
    return compare_scalar(before) != compare_scalar(after)


def compare_person(prev: PersonView, curr: PersonView) -> dict[str, dict[str, Any]]:
    """Return {field: {before, after}} for every field whose normalized value differs."""
    diffs: dict[str, dict[str, Any]] = {}
    for field_name in COMPARED_FIELDS:
        before = getattr(prev.data, field_name)
        after = getattr(curr.data, field_name)
        if _field_changed(field_name, before, after):
            diffs[field_name] = {"before": before, "after": after}
    if _field_changed("categories", prev.categories, curr.categories):
        diffs["categories"] = {"before": prev.categories, "after": curr.categories}
    return diffs


def diff_snapshots(prev: Snapshot, curr: Snapshot) -> ChangeSet:
    """Compute added / removed / updated people between two snapshots."""
    prev_people = build_person_map(prev)
    curr_people = build_person_map(curr)
    changes = ChangeSet()

    for fp, person in curr_people.items():
        if fp not in prev_people:
            changes.added.append(person)

    for fp, person in prev_people.items():
        if fp not in curr_people:
            changes.removed.append(person)

    for fp, curr_person in curr_people.items():
        prev_person = prev_people.get(fp)
        if prev_person is None:
            continue
        diffs = compare_person(prev_person, curr_person)
        if diffs:
            changes.updated.append(
                MemberUpdate(
                    fingerprint=fp,
                    name=curr_person.name,
                    before=prev_person,
                    after=curr_person,
                    diffs=diffs,
                )
            )

    return changes
