from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

from icalendar import Alarm as ICAlarm
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vDuration

from birthdaycal.identity import identify
from birthdaycal.models import Contact, EventConfig, EventDecodeError


PLACEHOLDER_FIRST_NAME = "~first-name~"
PLACEHOLDER_LAST_NAME = "~last-name~"
PLACEHOLDER_DISPLAY_NAME = "~display-name~"
PLACEHOLDER_BIRTHDAY = "~birthday~"


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def parse_duration(text: str) -> timedelta:
    try:
        return vDuration.from_ical(str(text).strip())
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid alarm duration: {text!r}") from exc


def render_template(template: str, contact: Contact, date_format: str) -> str:
    return (
        template.replace(PLACEHOLDER_FIRST_NAME, contact.first_name)
        .replace(PLACEHOLDER_LAST_NAME, contact.last_name)
        .replace(PLACEHOLDER_DISPLAY_NAME, contact.display_name)
        .replace(PLACEHOLDER_BIRTHDAY, contact.birthday.strftime(date_format))
    )


def _build_alarm(trigger: timedelta, summary: str, description: str) -> ICAlarm:
    alarm = ICAlarm()
    alarm.add("TRIGGER", trigger, parameters={"VALUE": "DURATION"})
    alarm.add("ACTION", "DISPLAY")
    alarm.add("DESCRIPTION", description)
    alarm.add("SUMMARY", summary)
    return alarm


def build_event(
    contact: Contact,
    settings: EventConfig,
    category: str,
    stamp: datetime | None = None,
) -> ICEvent:
    summary = render_template(settings.summary, contact, settings.date_format)
    description = render_template(settings.description, contact, settings.date_format)

    vevent = ICEvent()
    vevent.add("UID", identify(contact))
    vevent.add("DTSTAMP", stamp or datetime.now(timezone.utc))
    vevent.add("DTSTART", contact.birthday)
    vevent.add("SUMMARY", summary)
    vevent.add(
        "RRULE",
        {"FREQ": "YEARLY", "BYMONTH": contact.birthday.month, "BYMONTHDAY": contact.birthday.day},
    )
    if settings.alarm_duration:
        vevent.add_component(_build_alarm(parse_duration(settings.alarm_duration), summary, description))
    vevent.add("CATEGORIES", [category])
    vevent.add("TRANSP", "TRANSPARENT")
    vevent.add("DESCRIPTION", description)
    vevent.add("STATUS", "CONFIRMED")
    return vevent


def encode_event(
    contact: Contact,
    settings: EventConfig,
    category: str,
    product_id: str,
    stamp: datetime | None = None,
) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", product_id)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add_component(build_event(contact, settings, category, stamp=stamp))
    return calendar_obj.to_ical().decode("utf-8")


def parse_event(raw_data: Any) -> ICEvent | None:
    """Parse a calendar resource into its single VEVENT.

    Resources holding more than one component (timezones aside) are rejected,
    a single non-event component (e.g. a VTODO) yields ``None``.
    """
    raw_ical = _decode_raw_ical(raw_data)
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except (ValueError, KeyError, IndexError) as exc:
        raise EventDecodeError(f"Unparseable calendar resource: {exc}") from exc
    if calendar_obj.name != "VCALENDAR":
        raise EventDecodeError(f"Unexpected top-level component: {calendar_obj.name}")

    components = [item for item in calendar_obj.subcomponents if item.name != "VTIMEZONE"]
    if len(components) != 1:
        raise EventDecodeError(f"Unexpected number of calendar components: {len(components)} (expected: 1)")
    component = components[0]
    if component.name != "VEVENT":
        return None
    return component


def event_categories(vevent: ICEvent) -> set[str]:
    raw = vevent.get("CATEGORIES")
    if raw is None:
        return set()
    entries = raw if isinstance(raw, list) else [raw]
    categories: set[str] = set()
    for entry in entries:
        cats = getattr(entry, "cats", None)
        if cats is None:
            cats = str(entry).split(",")
        categories.update(str(cat).strip() for cat in cats if str(cat).strip())
    return categories


def _as_list(values: Any) -> list[Any]:
    if values is None:
        return []
    if isinstance(values, (list, tuple)):
        return list(values)
    return [values]


def _first_int(values: Any) -> int | None:
    items = _as_list(values)
    if len(items) != 1:
        return None
    try:
        return int(items[0])
    except (TypeError, ValueError):
        return None


def decode_event(vevent: ICEvent) -> tuple[str, date]:
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        raise EventDecodeError("Birthday event without UID.")

    rrule = vevent.get("RRULE")
    if isinstance(rrule, list):
        rrule = rrule[0] if len(rrule) == 1 else None
    if rrule is None:
        raise EventDecodeError(f"Birthday event {uid} has no single recurrence rule.")
    frequency = [str(item).upper() for item in _as_list(rrule.get("FREQ"))]
    if frequency != ["YEARLY"]:
        raise EventDecodeError(f"Birthday event {uid} does not recur yearly: {frequency}")

    if vevent.get("DTSTART") is None:
        raise EventDecodeError(f"Birthday event {uid} has no start date.")
    start = vevent.decoded("DTSTART")
    if isinstance(start, datetime):
        start = start.date()
    if not isinstance(start, date):
        raise EventDecodeError(f"Birthday event {uid} has an unrecognized start date.")

    month = _first_int(rrule.get("BYMONTH"))
    day = _first_int(rrule.get("BYMONTHDAY"))
    if month is None or day is None:
        return uid, start
    try:
        return uid, start.replace(month=month, day=day)
    except ValueError as exc:
        raise EventDecodeError(f"Birthday event {uid} has an invalid recurrence date: {exc}") from exc


def decode(raw_data: Any) -> tuple[str, date]:
    vevent = parse_event(raw_data)
    if vevent is None:
        raise EventDecodeError("Calendar resource does not hold an event.")
    return decode_event(vevent)
