from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any

import vobject

from birthdaycal.dav_client import DAVStore
from birthdaycal.models import Contact, ContactSourceError, DAVStoreError


logger = logging.getLogger(__name__)

BIRTHDAY_PATTERN = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})(?:T.*)?$")


def parse_birthday(value: str) -> date:
    text = str(value or "").strip()
    match = BIRTHDAY_PATTERN.match(text)
    if not match:
        raise ContactSourceError(f"Unsupported birthday value: {text!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ContactSourceError(f"Invalid birthday value: {text!r}") from exc


def _text(component: Any, name: str) -> str:
    if not hasattr(component, name):
        return ""
    return str(getattr(component, name).value or "").strip()


def _contact_from_vcard(vcard: Any) -> Contact | None:
    display_name = _text(vcard, "fn")
    if not hasattr(vcard, "bday"):
        logger.debug("No birthday found for %s", display_name or "<unnamed>")
        return None

    first_name = ""
    last_name = ""
    if hasattr(vcard, "n") and getattr(vcard.n, "value", None):
        first_name = str(getattr(vcard.n.value, "given", "") or "").strip()
        last_name = str(getattr(vcard.n.value, "family", "") or "").strip()
    if not first_name and not last_name:
        first_name = display_name
    if not display_name:
        display_name = " ".join(part for part in (first_name, last_name) if part)

    return Contact(
        first_name=first_name,
        last_name=last_name,
        display_name=display_name,
        birthday=parse_birthday(vcard.bday.value),
    )


def parse_vcards(vcf_content: str) -> list[Contact]:
    contacts: list[Contact] = []
    try:
        for vcard in vobject.readComponents(vcf_content):
            if vcard.name != "VCARD":
                continue
            contact = _contact_from_vcard(vcard)
            if contact is not None:
                contacts.append(contact)
    except ContactSourceError:
        raise
    except Exception as exc:
        raise ContactSourceError(f"Failed to parse vCard content: {exc}") from exc
    return contacts


class CardDAVContactSource:
    def __init__(self, store: DAVStore, card_url: str) -> None:
        self.store = store
        self.card_url = card_url

    def list_contacts_with_birthday(self) -> list[Contact]:
        try:
            entries = self.store.list(self.card_url)
        except DAVStoreError as exc:
            raise ContactSourceError(f"Address book unreachable: {exc}") from exc
        logger.info("Contacts found: %d", len(entries))

        contacts: list[Contact] = []
        for entry in entries:
            if entry.is_collection:
                continue
            try:
                raw = self.store.get(entry.href)
            except DAVStoreError as exc:
                raise ContactSourceError(f"Failed to fetch contact {entry.href}: {exc}") from exc
            contacts.extend(parse_vcards(raw.decode("utf-8", errors="replace")))
        logger.info("Contacts with birthday: %d", len(contacts))
        return contacts
