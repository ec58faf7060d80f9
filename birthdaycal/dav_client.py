from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

import caldav
import requests
from caldav.davclient import requests as dav_http
from caldav.elements import dav
from caldav.elements.base import ValuedBaseElement
from caldav.lib import error as dav_error
from caldav.lib.namespace import ns
from caldav.lib.url import URL
from lxml import etree

from birthdaycal.models import DAVConfig, DAVStoreError


logger = logging.getLogger(__name__)

CALENDAR_CONTENT_TYPE = "text/calendar"
VCARD_CONTENT_TYPE = "text/vcard"


class GetContentType(ValuedBaseElement):
    tag = ns("D", "getcontenttype")


LISTING_PROPS = [dav.GetEtag(), GetContentType()]
LISTING_MULTI_PROPS = [dav.ResourceType()]
# caldav sends its traffic through niquests when installed, plain requests otherwise.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    requests.RequestException,
    dav_http.RequestException,
    dav_error.DAVError,
    etree.XMLSyntaxError,
)


@dataclass
class DAVEntry:
    href: str
    media_type: str = ""
    is_collection: bool = False
    etag: str = ""

    def has_media_type(self, media_type: str) -> bool:
        return self.media_type.split(";", 1)[0].strip().lower() == media_type.lower()


def _decode_body(raw_data: Any) -> bytes:
    if raw_data is None:
        return b""
    if isinstance(raw_data, bytes):
        return raw_data
    return str(raw_data).encode("utf-8")


def _listing_body() -> bytes:
    root = dav.Propfind() + [dav.Prop() + LISTING_PROPS + LISTING_MULTI_PROPS]
    return etree.tostring(root.xmlelement(), encoding="utf-8", xml_declaration=True)


def entries_from_response(response: Any, collection_url: str) -> list[DAVEntry]:
    """Turn a depth-1 PROPFIND response into the entries below ``collection_url``."""
    collection = URL.objectify(collection_url)
    collection_key = collection.canonical().strip_trailing_slash()
    properties = response.expand_simple_props(props=LISTING_PROPS, multi_value_props=LISTING_MULTI_PROPS)

    entries: list[DAVEntry] = []
    for path, props in properties.items():
        url = collection.join(quote(path))
        if url.canonical().strip_trailing_slash() == collection_key:
            continue
        resource_types = props.get(dav.ResourceType.tag) or []
        entries.append(
            DAVEntry(
                href=str(url),
                media_type=str(props.get(GetContentType.tag) or "").strip(),
                is_collection=dav.Collection.tag in resource_types,
                etag=str(props.get(dav.GetEtag.tag) or "").strip(),
            )
        )
    return entries


class DAVStore:
    """Plain WebDAV operations on top of an authenticated ``caldav.DAVClient``."""

    def __init__(self, config: DAVConfig) -> None:
        self.config = config
        self._client: Any = None

    def _connect(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.config.base_url or not self.config.user:
            raise RuntimeError("DAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.user,
            password=self.config.password,
            timeout=self.config.timeout_seconds,
        )
        return self._client

    def _perform(
        self,
        method: str,
        url: str,
        operation: Callable[[Any], Any],
        allowed: tuple[int, ...] = (),
    ) -> Any:
        client = self._connect()
        try:
            response = operation(client)
        except TRANSPORT_ERRORS as exc:
            raise DAVStoreError(method, url, reason=str(exc)) from exc
        status = int(getattr(response, "status", 0) or 0)
        if not 200 <= status < 300 and status not in allowed:
            raise DAVStoreError(method, url, status=status, reason=str(getattr(response, "reason", "") or ""))
        return response

    def _request(
        self,
        method: str,
        url: str,
        body: str | bytes = "",
        headers: dict[str, str] | None = None,
        allowed: tuple[int, ...] = (),
    ) -> Any:
        return self._perform(
            method,
            url,
            lambda client: client.request(url, method, body, headers or {}),
            allowed=allowed,
        )

    def list(self, collection_url: str) -> list[DAVEntry]:
        response = self._perform(
            "PROPFIND",
            collection_url,
            lambda client: client.propfind(collection_url, _listing_body(), depth=1),
        )
        try:
            entries = entries_from_response(response, collection_url)
        except (dav_error.DAVError, AssertionError, ValueError) as exc:
            raise DAVStoreError("PROPFIND", collection_url, reason=f"unexpected multistatus body: {exc!r}") from exc
        logger.debug("Listed %d entries in %s", len(entries), collection_url)
        return entries

    def get(self, href: str) -> bytes:
        response = self._request("GET", href)
        return _decode_body(response.raw)

    def put(self, href: str, payload: str | bytes) -> None:
        self._request(
            "PUT",
            href,
            _decode_body(payload),
            {"Content-Type": f"{CALENDAR_CONTENT_TYPE}; charset=utf-8"},
        )

    def delete(self, href: str) -> None:
        response = self._request("DELETE", href, allowed=(404,))
        if int(response.status) == 404:
            logger.debug("Resource already gone: %s", href)

    def probe(self, base_url: str) -> bool:
        try:
            response = requests.head(
                base_url,
                auth=(self.config.user, self.config.password),
                timeout=self.config.timeout_seconds,
                allow_redirects=True,
            )
        except requests.RequestException as exc:
            logger.debug("Probe of %s failed: %s", base_url, exc)
            return False
        return response.status_code < 500
