from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable
from urllib.parse import unquote, urlsplit

from birthdaycal.codec import decode_event, encode_event, event_categories, parse_event
from birthdaycal.config_manager import ConfigManager
from birthdaycal.contacts import CardDAVContactSource
from birthdaycal.dav_client import CALENDAR_CONTENT_TYPE, DAVStore
from birthdaycal.identity import event_href
from birthdaycal.models import (
    AppConfig,
    ApplyReport,
    BirthdaySyncError,
    Contact,
    EventDecodeError,
    ManagedEvent,
    ReconciliationPlan,
    SnapshotResult,
    SyncResult,
)
from birthdaycal.preflight import ensure_reachable
from birthdaycal.reconciler import build_plan


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def take_snapshot(
    store: DAVStore,
    collection_url: str,
    category: str,
    decode_policy: str = "abort",
) -> SnapshotResult:
    """Collect the birthday events of ``category`` currently stored in the collection.

    Entries of other categories are ignored. A managed entry that cannot be
    decoded aborts the snapshot unless ``decode_policy`` is ``"skip"``, in
    which case it is reported in ``SnapshotResult.skipped`` and left untouched.
    """
    by_identifier: dict[str, ManagedEvent] = {}
    skipped: list[tuple[str, str]] = []
    duplicates: list[ManagedEvent] = []

    for entry in store.list(collection_url):
        if entry.is_collection or not entry.has_media_type(CALENDAR_CONTENT_TYPE):
            continue
        raw = store.get(entry.href)
        try:
            vevent = parse_event(raw)
            if vevent is None or category not in event_categories(vevent):
                continue
            identifier, birthday = decode_event(vevent)
        except EventDecodeError as exc:
            if decode_policy != "skip":
                raise EventDecodeError(f"{entry.href}: {exc}") from exc
            logger.warning("Skipping undecodable entry %s: %s", entry.href, exc)
            skipped.append((entry.href, str(exc)))
            continue

        managed = ManagedEvent(identifier=identifier, birthday=birthday, location=entry.href)
        previous = by_identifier.get(identifier)
        if previous is not None:
            logger.warning("Duplicate event %s at %s, dropping %s.", identifier, entry.href, previous.location)
            duplicates.append(previous)
        by_identifier[identifier] = managed

    logger.info("Managed birthday events found: %d", len(by_identifier))
    return SnapshotResult(events=tuple(by_identifier.values()), skipped=skipped, duplicates=duplicates)


def _resource_key(href: str) -> str:
    return unquote(urlsplit(href).path).rstrip("/")


def apply_plan(
    plan: ReconciliationPlan,
    store: DAVStore,
    collection_url: str,
    encoder: Callable[[Contact], str],
    duplicates: Iterable[ManagedEvent] = (),
    protected: Iterable[str] = (),
) -> ApplyReport:
    """Execute ``plan`` against the collection, one remote call per item.

    A failing item is recorded and does not stop its siblings. Nothing is
    written to an href listed in ``protected``; the identifier is reported as
    held instead.
    """
    report = ApplyReport()
    protected_keys = {_resource_key(href) for href in protected}

    def is_held(identifier: str) -> bool:
        href = event_href(collection_url, identifier)
        if _resource_key(href) not in protected_keys:
            return False
        logger.warning("Not writing %s: the resource there could not be decoded.", href)
        report.held.append(identifier)
        return True

    for event in duplicates:
        try:
            store.delete(event.location)
            report.duplicates_removed.append(event.identifier)
            logger.debug("Deleted duplicate event: %s", event.location)
        except Exception as exc:
            logger.error("Failed to delete duplicate event %s: %s", event.location, exc)
            report.record_failure(event.identifier, "delete", exc)

    for identifier in sorted(plan.to_delete):
        location = plan.existing[identifier].location
        try:
            store.delete(location)
            report.deleted.append(identifier)
            logger.debug("Deleted outdated event: %s", location)
        except Exception as exc:
            logger.error("Failed to delete outdated event %s: %s", location, exc)
            report.record_failure(identifier, "delete", exc)

    for identifier in sorted(plan.to_replace):
        if is_held(identifier):
            continue
        contact = plan.contacts[identifier]
        location = plan.existing[identifier].location
        try:
            store.delete(location)
            logger.debug("Deleted outdated event before add: %s", location)
        except Exception as exc:
            logger.error("Failed to delete event %s before replacing it: %s", location, exc)
            report.record_failure(identifier, "replace", exc)
            continue
        try:
            store.put(event_href(collection_url, identifier), encoder(contact))
            report.replaced.append(identifier)
            logger.info("Updated event for: %s", contact.full_name)
        except Exception as exc:
            logger.error("Failed to re-create event for %s: %s", contact.full_name, exc)
            report.record_failure(identifier, "replace", exc)

    for identifier in sorted(plan.to_create):
        if is_held(identifier):
            continue
        contact = plan.contacts[identifier]
        try:
            store.put(event_href(collection_url, identifier), encoder(contact))
            report.created.append(identifier)
            logger.info("Added event for: %s", contact.full_name)
        except Exception as exc:
            logger.error("Failed to create event for %s: %s", contact.full_name, exc)
            report.record_failure(identifier, "create", exc)

    return report


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_manager = config_manager
        self._sleep = sleep

    @staticmethod
    def _encoder(config: AppConfig) -> Callable[[Contact], str]:
        def encode(contact: Contact) -> str:
            return encode_event(contact, config.event, config.sync.category, config.sync.product_id)

        return encode

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        stage = "config"

        try:
            config = self.config_manager.load()
            if not config.dav.is_complete():
                message = "DAV config missing cal_url/card_url/user. Sync skipped."
                logger.warning(message)
                return SyncResult(
                    status="skipped",
                    message=message,
                    duration_ms=_elapsed_ms(started_at),
                    trigger=trigger,
                )

            stage = "connectivity"
            store = DAVStore(config.dav)
            ensure_reachable(
                store.probe,
                config.dav.base_url,
                config.dav.max_retries,
                config.dav.retry_delay_seconds,
                sleep=self._sleep,
            )

            stage = "contacts"
            contacts = CardDAVContactSource(store, config.dav.card_url).list_contacts_with_birthday()

            stage = "snapshot"
            logger.debug("Reading birthday calendar %s", config.dav.calendar_path)
            snapshot = take_snapshot(
                store,
                config.dav.cal_url,
                config.sync.category,
                decode_policy=config.sync.decode_policy,
            )

            stage = "plan"
            plan = build_plan(contacts, snapshot.events)
            logger.info("Syncing birthday events of %d contacts: %s", len(contacts), plan.summary())
            if plan.is_empty and not snapshot.duplicates:
                logger.info("No birthday events to update found.")

            stage = "apply"
            report = apply_plan(
                plan,
                store,
                config.dav.cal_url,
                self._encoder(config),
                duplicates=snapshot.duplicates,
                protected=[href for href, _ in snapshot.skipped],
            )
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            if isinstance(exc, BirthdaySyncError):
                logger.error("Sync aborted at stage %s: %s", stage, error_message)
            else:
                logger.exception("Unexpected error at stage %s", stage)
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=_elapsed_ms(started_at),
                trigger=trigger,
                stage=stage,
            )

        status = "success" if report.ok else "partial"
        message = (
            f"Processed {len(contacts)} contacts: created={len(report.created)} "
            f"replaced={len(report.replaced)} deleted={len(report.deleted)} failed={len(report.failures)}"
        )
        if report.duplicates_removed:
            message += f" duplicates_removed={len(report.duplicates_removed)}"
        if snapshot.skipped:
            message += f" skipped={len(snapshot.skipped)}"
        if report.held:
            message += f" held={len(report.held)}"
        logger.info("Sync %s (%s): %s", status, trigger, message)
        return SyncResult(
            status=status,
            message=message,
            duration_ms=_elapsed_ms(started_at),
            trigger=trigger,
            created=len(report.created),
            replaced=len(report.replaced),
            deleted=len(report.deleted),
            duplicates_removed=len(report.duplicates_removed),
            held=len(report.held),
            failed=len(report.failures),
        )
