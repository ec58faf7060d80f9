from __future__ import annotations

import re
import uuid
from urllib.parse import quote

from birthdaycal.models import Contact


# Fixed namespace so identifiers stay stable across processes and releases.
BIRTHDAY_NAMESPACE = uuid.UUID("6f1b3c2e-5d0a-4b8e-9c47-0e2a9d7b1f35")
NAME_SEPARATOR = "|"


def _normalize_part(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def normalize_name(first_name: str, last_name: str) -> str:
    return f"{_normalize_part(first_name)}{NAME_SEPARATOR}{_normalize_part(last_name)}"


def identify(contact: Contact) -> str:
    """Return the event UID for ``contact``.

    Only first and last name take part, so two contacts sharing a normalized
    name map to the same identifier.
    """
    return str(uuid.uuid5(BIRTHDAY_NAMESPACE, normalize_name(contact.first_name, contact.last_name)))


def event_href(collection_url: str, identifier: str) -> str:
    base = collection_url if collection_url.endswith("/") else f"{collection_url}/"
    return f"{base}{quote(identifier, safe='')}.ics"
