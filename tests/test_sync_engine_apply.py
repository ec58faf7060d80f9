import unittest
from datetime import date

from birthdaycal.codec import decode, encode_event
from birthdaycal.identity import event_href, identify
from birthdaycal.models import Contact, EventConfig, ManagedEvent
from birthdaycal.reconciler import build_plan
from birthdaycal.sync_engine import apply_plan, take_snapshot
from tests.fake_store import COLLECTION_URL, FakeDAVStore


ALICE = Contact("Alice", "Archer", "Alice", date(1980, 1, 1))
BOB = Contact("Bob", "Baker", "Bob", date(1975, 6, 15))
CAROL = Contact("Carol", "Cook", "Carol", date(1990, 3, 3))


def encoder(contact: Contact) -> str:
    return encode_event(contact, EventConfig(), "Birthday", "-//test//EN")


def seeded_store(*contacts: Contact) -> FakeDAVStore:
    store = FakeDAVStore()
    for contact in contacts:
        store.add(event_href(COLLECTION_URL, identify(contact)), encoder(contact))
    return store


def with_override(uid: str) -> str:
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//user//EN\r\n"
        f"BEGIN:VEVENT\r\nUID:{uid}\r\nDTSTAMP:20260101T000000Z\r\nDTSTART;VALUE=DATE:19800101\r\n"
        "RRULE:FREQ=YEARLY;BYMONTH=1;BYMONTHDAY=1\r\nCATEGORIES:Birthday\r\nSUMMARY:Alice\r\nEND:VEVENT\r\n"
        f"BEGIN:VEVENT\r\nUID:{uid}\r\nDTSTAMP:20260101T000000Z\r\nRECURRENCE-ID;VALUE=DATE:20270101\r\n"
        "DTSTART;VALUE=DATE:20270102\r\nCATEGORIES:Birthday\r\nSUMMARY:Alice (party moved)\r\nEND:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )


class ApplyPlanTests(unittest.TestCase):
    def test_empty_plan_issues_no_remote_calls(self) -> None:
        store = FakeDAVStore()
        report = apply_plan(build_plan([], []), store, COLLECTION_URL, encoder)
        self.assertEqual(store.calls, [])
        self.assertTrue(report.ok)

    def test_materialized_contacts_are_idempotent(self) -> None:
        store = seeded_store(ALICE, BOB)
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        plan = build_plan([ALICE, BOB], snapshot.events)
        self.assertTrue(plan.is_empty)
        store.calls.clear()
        apply_plan(plan, store, COLLECTION_URL, encoder)
        self.assertEqual(store.calls, [])

    def test_bootstrap_then_second_run_is_a_no_op(self) -> None:
        store = FakeDAVStore()
        first = apply_plan(build_plan([ALICE, BOB], []), store, COLLECTION_URL, encoder)
        self.assertEqual(sorted(first.created), sorted([identify(ALICE), identify(BOB)]))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        self.assertTrue(build_plan([ALICE, BOB], snapshot.events).is_empty)

    def test_order_is_delete_replace_create(self) -> None:
        store = seeded_store(ALICE, BOB)
        moved_bob = Contact("Bob", "Baker", "Bob", date(1975, 7, 15))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        plan = build_plan([moved_bob, CAROL], snapshot.events)
        store.calls.clear()
        report = apply_plan(plan, store, COLLECTION_URL, encoder)

        alice_href = event_href(COLLECTION_URL, identify(ALICE))
        bob_href = event_href(COLLECTION_URL, identify(BOB))
        carol_href = event_href(COLLECTION_URL, identify(CAROL))
        self.assertEqual(
            store.mutations(),
            [("delete", alice_href), ("delete", bob_href), ("put", bob_href), ("put", carol_href)],
        )
        self.assertEqual(report.deleted, [identify(ALICE)])
        self.assertEqual(report.replaced, [identify(BOB)])
        self.assertEqual(report.created, [identify(CAROL)])
        self.assertEqual(decode(store.resources[bob_href][1]), (identify(BOB), date(1975, 7, 15)))

    def test_failed_delete_does_not_stop_siblings(self) -> None:
        store = seeded_store(ALICE, BOB)
        alice_href = event_href(COLLECTION_URL, identify(ALICE))
        bob_href = event_href(COLLECTION_URL, identify(BOB))
        store.fail("delete", alice_href)
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        report = apply_plan(build_plan([], snapshot.events), store, COLLECTION_URL, encoder)

        self.assertIn(("delete", alice_href), store.calls)
        self.assertIn(("delete", bob_href), store.calls)
        self.assertEqual(report.deleted, [identify(BOB)])
        self.assertEqual([(item.identifier, item.operation) for item in report.failures], [(identify(ALICE), "delete")])
        self.assertFalse(report.ok)

    def test_failed_replace_delete_skips_its_create(self) -> None:
        store = seeded_store(ALICE)
        alice_href = event_href(COLLECTION_URL, identify(ALICE))
        store.fail("delete", alice_href)
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        moved = Contact("Alice", "Archer", "Alice", date(1980, 2, 1))
        report = apply_plan(build_plan([moved, CAROL], snapshot.events), store, COLLECTION_URL, encoder)

        self.assertNotIn(("put", alice_href), store.calls)
        self.assertEqual(report.created, [identify(CAROL)])
        self.assertEqual([(item.identifier, item.operation) for item in report.failures], [(identify(ALICE), "replace")])

    def test_failed_create_after_delete_leaves_identifier_absent(self) -> None:
        store = seeded_store(ALICE)
        alice_href = event_href(COLLECTION_URL, identify(ALICE))
        store.fail("put", alice_href)
        moved = Contact("Alice", "Archer", "Alice", date(1980, 2, 1))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        report = apply_plan(build_plan([moved], snapshot.events), store, COLLECTION_URL, encoder)

        self.assertNotIn(alice_href, store.resources)
        self.assertEqual(len(report.failures), 1)
        store.failing.clear()
        next_plan = build_plan([moved], take_snapshot(store, COLLECTION_URL, "Birthday").events)
        self.assertEqual(next_plan.to_create, {identify(ALICE)})

    def test_replace_removes_resource_stored_under_foreign_name(self) -> None:
        store = FakeDAVStore()
        legacy_href = f"{COLLECTION_URL}legacy-name.ics"
        store.add(legacy_href, encoder(ALICE))
        moved = Contact("Alice", "Archer", "Alice", date(1980, 2, 1))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        apply_plan(build_plan([moved], snapshot.events), store, COLLECTION_URL, encoder)
        self.assertNotIn(legacy_href, store.resources)
        self.assertIn(event_href(COLLECTION_URL, identify(ALICE)), store.resources)

    def test_duplicates_are_deleted(self) -> None:
        store = FakeDAVStore()
        duplicate = ManagedEvent(identify(ALICE), ALICE.birthday, f"{COLLECTION_URL}copy.ics")
        store.add(duplicate.location, encoder(ALICE))
        report = apply_plan(build_plan([], []), store, COLLECTION_URL, encoder, duplicates=[duplicate])
        self.assertEqual(store.mutations(), [("delete", duplicate.location)])
        self.assertEqual(report.duplicates_removed, [identify(ALICE)])
        self.assertEqual(report.deleted, [])

    def test_orphan_with_duplicate_is_counted_once_per_kind(self) -> None:
        store = seeded_store(ALICE)
        store.add(f"{COLLECTION_URL}alice-copy.ics", encoder(ALICE))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        report = apply_plan(
            build_plan([], snapshot.events), store, COLLECTION_URL, encoder, duplicates=snapshot.duplicates
        )
        self.assertEqual(report.deleted, [identify(ALICE)])
        self.assertEqual(report.duplicates_removed, [identify(ALICE)])
        self.assertEqual(store.resources, {})

    def test_create_never_overwrites_an_undecodable_resource(self) -> None:
        store = FakeDAVStore()
        alice_href = event_href(COLLECTION_URL, identify(ALICE))
        store.add(alice_href, with_override(identify(ALICE)))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday", decode_policy="skip")
        self.assertEqual([href for href, _ in snapshot.skipped], [alice_href])

        plan = build_plan([ALICE, BOB], snapshot.events)
        report = apply_plan(
            plan,
            store,
            COLLECTION_URL,
            encoder,
            protected=[href for href, _ in snapshot.skipped],
        )
        self.assertNotIn(("put", alice_href), store.calls)
        self.assertEqual(store.resources[alice_href][1], with_override(identify(ALICE)).encode("utf-8"))
        self.assertEqual(report.held, [identify(ALICE)])
        self.assertEqual(report.created, [identify(BOB)])
        self.assertTrue(report.ok)

    def test_replace_is_held_when_its_target_is_undecodable(self) -> None:
        store = FakeDAVStore()
        legacy_href = f"{COLLECTION_URL}legacy-name.ics"
        alice_href = event_href(COLLECTION_URL, identify(ALICE))
        store.add(legacy_href, encoder(ALICE))
        store.add(alice_href, with_override(identify(ALICE)))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday", decode_policy="skip")

        moved = Contact("Alice", "Archer", "Alice", date(1980, 2, 1))
        report = apply_plan(
            build_plan([moved], snapshot.events),
            store,
            COLLECTION_URL,
            encoder,
            protected=[href for href, _ in snapshot.skipped],
        )
        self.assertEqual(store.mutations(), [])
        self.assertEqual(report.held, [identify(ALICE)])

    def test_other_categories_survive_teardown(self) -> None:
        store = seeded_store(ALICE)
        foreign_href = f"{COLLECTION_URL}anniversary.ics"
        store.add(foreign_href, encode_event(CAROL, EventConfig(), "Anniversary", "-//test//EN"))
        snapshot = take_snapshot(store, COLLECTION_URL, "Birthday")
        apply_plan(build_plan([], snapshot.events), store, COLLECTION_URL, encoder)
        self.assertIn(foreign_href, store.resources)
        self.assertNotIn(("delete", foreign_href), store.calls)


if __name__ == "__main__":
    unittest.main()
