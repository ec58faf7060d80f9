from __future__ import annotations

import logging
from typing import Iterable

from birthdaycal.identity import identify
from birthdaycal.models import Contact, ManagedEvent, ReconciliationPlan


logger = logging.getLogger(__name__)


def index_contacts(contacts: Iterable[Contact]) -> dict[str, Contact]:
    current: dict[str, Contact] = {}
    for contact in contacts:
        identifier = identify(contact)
        previous = current.get(identifier)
        if previous is not None and previous != contact:
            logger.warning(
                "Contacts %r and %r share identifier %s, keeping the latter.",
                previous.full_name,
                contact.full_name,
                identifier,
            )
        current[identifier] = contact
    return current


def build_plan(contacts: Iterable[Contact], snapshot: Iterable[ManagedEvent]) -> ReconciliationPlan:
    """Compute the operations that make the managed events match ``contacts``.

    Events whose contact vanished are deleted, events whose stored birthday no
    longer matches are replaced under the same identifier, and contacts without
    an event get one created. Unchanged events are left alone.
    """
    current = index_contacts(contacts)
    existing = {event.identifier: event for event in snapshot}

    to_delete = frozenset(identifier for identifier in existing if identifier not in current)
    to_create: set[str] = set()
    to_replace: set[str] = set()
    for identifier, contact in current.items():
        event = existing.get(identifier)
        if event is None:
            to_create.add(identifier)
        # Whole date, year included: the year shows up in the rendered description.
        elif event.birthday != contact.birthday:
            to_replace.add(identifier)

    plan = ReconciliationPlan(
        to_delete=to_delete,
        to_replace=frozenset(to_replace),
        to_create=frozenset(to_create),
        contacts=current,
        existing=existing,
    )
    plan.check()
    return plan
