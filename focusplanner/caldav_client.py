from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin
from xml.sax.saxutils import escape

import requests
from requests.auth import HTTPBasicAuth

from focusplanner.errors import (
    AuthenticationError,
    CalDAVProtocolError,
    CalendarDiscoveryError,
    NoCalendarDataError,
)
from focusplanner.ical_decoder import IcalDecoder
from focusplanner.models import CalDAVConfig, CalendarEvent, PolicyConfig, dedupe_events

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
CALENDAR_MARKER = "BEGIN:VCALENDAR"
VCALENDAR_PATTERN = re.compile(r"BEGIN:VCALENDAR.*?END:VCALENDAR", re.DOTALL)
HREF_PATTERN = re.compile(r"<(?:[\w-]+:)?href>([^<]+)</(?:[\w-]+:)?href>", re.IGNORECASE)

PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal/>
  </d:prop>
</d:propfind>"""

CALENDAR_HOME_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set/>
  </d:prop>
</d:propfind>"""

CALENDAR_LIST_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:resourcetype/>
    <d:displayname/>
  </d:prop>
</d:propfind>"""

RESOURCE_LIST_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:getetag/>
    <d:getcontenttype/>
  </d:prop>
</d:propfind>"""

CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""

MULTIGET_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<C:calendar-multiget xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag/>
    <C:calendar-data/>
  </D:prop>
  {hrefs}
</C:calendar-multiget>"""


def format_caldav_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _local_name(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def _parse_xml(text: str) -> ET.Element | None:
    try:
        return ET.fromstring(text)
    except ET.ParseError:
        return None


def _find_all(element: ET.Element, name: str) -> list[ET.Element]:
    return [node for node in element.iter() if _local_name(node.tag) == name]


def _first_href(element: ET.Element | None) -> str:
    if element is None:
        return ""
    for node in _find_all(element, "href"):
        if node.text and node.text.strip():
            return node.text.strip()
    return ""


def extract_calendar_data(text: str) -> list[str]:
    """Collect the calendar payloads embedded in a multistatus body.

    ``calendar-data`` elements are matched by local name, so ``c:``, ``C:``,
    ``cal:`` or unprefixed variants are all accepted. Bodies that are not
    well-formed XML fall back to extracting raw VCALENDAR envelopes.
    """
    root = _parse_xml(text)
    if root is None:
        return VCALENDAR_PATTERN.findall(text)
    payloads = [
        node.text
        for node in _find_all(root, "calendar-data")
        if node.text and CALENDAR_MARKER in node.text
    ]
    if not payloads and CALENDAR_MARKER in text:
        payloads = VCALENDAR_PATTERN.findall("".join(root.itertext()))
    return payloads


def extract_hrefs(text: str) -> list[str]:
    root = _parse_xml(text)
    if root is None:
        return [match.strip() for match in HREF_PATTERN.findall(text)]
    hrefs: list[str] = []
    for response in _find_all(root, "response"):
        href = _first_href(response)
        if href:
            hrefs.append(href)
    return hrefs


class CalDAVTransport:
    def __init__(
        self,
        config: CalDAVConfig,
        decoder: IcalDecoder,
        policy: PolicyConfig,
        session: requests.Session | None = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        self.config = config
        self.decoder = decoder
        self.policy = policy
        self.timeout = timeout
        self.base_url = config.base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = HTTPBasicAuth(config.username, config.password)
        self.session.headers.update({"Content-Type": "application/xml; charset=utf-8"})

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        logger.debug("%s %s", method, url)
        response = self.session.request(method, url, **kwargs)
        logger.debug("%s %s -> %s", method, url, response.status_code)
        return response

    def _absolute(self, href: str) -> str:
        if href.startswith("http://") or href.startswith("https://"):
            return href
        return urljoin(self.base_url + "/", href)

    def _resource_hrefs(self, hrefs: list[str], calendar_url: str, ics_only: bool = False) -> list[str]:
        ics = [href for href in hrefs if href.lower().endswith(".ics")]
        if ics or ics_only:
            return ics
        # Listings may report paths while the calendar URL is absolute.
        base = calendar_url.rstrip("/")
        return [
            href
            for href in hrefs
            if self._absolute(href).rstrip("/") != base and len(self._absolute(href)) > len(calendar_url)
        ]

    def _discovery_request(self, stage: str, url: str, body: str, depth: str) -> requests.Response:
        try:
            response = self._request("PROPFIND", url, headers={"Depth": depth}, data=body)
        except requests.RequestException as exc:
            raise CalDAVProtocolError(stage, None, str(exc)) from exc
        if response.status_code == 401:
            raise AuthenticationError("CalDAV authentication failed: check username and password.")
        if response.status_code != 207:
            raise CalDAVProtocolError(stage, response.status_code, response.text[:200])
        return response

    def get_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        if not self.config.is_configured():
            raise AuthenticationError("CalDAV username and password are required.")
        calendar_url = self.discover_calendar()
        logger.info("Fetching CalDAV events from %s", calendar_url)
        events = self._fetch_events(calendar_url, start, end)
        unique = dedupe_events(events)
        logger.info("CalDAV returned %s events (%s after de-duplication)", len(events), len(unique))
        return unique

    def discover_calendar(self) -> str:
        principal_url = self._discover_principal()
        home_url = self._discover_calendar_home(principal_url)
        return self._resolve_default_calendar(home_url)

    def _discover_principal(self) -> str:
        response = self._discovery_request("principal discovery", self.base_url, PRINCIPAL_BODY, "0")
        root = _parse_xml(response.text)
        href = ""
        if root is not None:
            nodes = _find_all(root, "current-user-principal")
            href = _first_href(nodes[0]) if nodes else ""
        else:
            match = re.search(r"current-user-principal>.*?<(?:[\w-]+:)?href>([^<]+)<", response.text, re.S | re.I)
            href = match.group(1).strip() if match else ""
        if not href:
            raise CalendarDiscoveryError("CalDAV server did not report a current-user-principal.")
        return self._absolute(href)

    def _discover_calendar_home(self, principal_url: str) -> str:
        response = self._discovery_request("calendar home discovery", principal_url, CALENDAR_HOME_BODY, "0")
        root = _parse_xml(response.text)
        href = ""
        if root is not None:
            nodes = _find_all(root, "calendar-home-set")
            href = _first_href(nodes[0]) if nodes else ""
        else:
            match = re.search(r"calendar-home-set>.*?<(?:[\w-]+:)?href>([^<]+)<", response.text, re.S | re.I)
            href = match.group(1).strip() if match else ""
        if not href:
            raise CalendarDiscoveryError("No calendar home found for the CalDAV principal.")
        return self._absolute(href)

    def _resolve_default_calendar(self, home_url: str) -> str:
        try:
            response = self._request("PROPFIND", home_url, headers={"Depth": "1"}, data=CALENDAR_LIST_BODY)
        except requests.RequestException as exc:
            logger.warning("Calendar listing failed (%s); using calendar home directly", exc)
            return home_url
        if response.status_code != 207:
            logger.info("Calendar listing returned %s; using calendar home directly", response.status_code)
            return home_url

        root = _parse_xml(response.text)
        if root is None:
            return home_url
        home_path = home_url.rstrip("/")
        fallback = ""
        for item in _find_all(root, "response"):
            href = _first_href(item)
            if not href:
                continue
            url = self._absolute(href)
            if url.rstrip("/") == home_path:
                continue
            resource_types = _find_all(item, "resourcetype")
            if resource_types and any(_local_name(child.tag) == "calendar" for child in resource_types[0]):
                logger.info("Using calendar %s", url)
                return url
            if not fallback and url.startswith(home_path) and len(url) > len(home_url):
                fallback = url
        if fallback:
            logger.info("No calendar collection advertised; using %s", fallback)
            return fallback
        return home_url

    def _fetch_events(self, calendar_url: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        events = self._calendar_query(calendar_url, start, end)
        if events is not None:
            return events
        logger.info("calendar-query REPORT unavailable; falling back to resource listing")
        return self._fetch_via_listing(calendar_url, start, end)

    def _decode_payloads(self, payloads: list[str], start: datetime, end: datetime) -> list[CalendarEvent]:
        events: list[CalendarEvent] = []
        for payload in payloads:
            events.extend(self.decoder.decode(payload, start, end))
        return events

    def _calendar_query(self, calendar_url: str, start: datetime, end: datetime) -> list[CalendarEvent] | None:
        body = CALENDAR_QUERY_TEMPLATE.format(start=format_caldav_time(start), end=format_caldav_time(end))
        try:
            response = self._request("REPORT", calendar_url, headers={"Depth": "1"}, data=body)
        except requests.RequestException as exc:
            logger.warning("calendar-query REPORT failed: %s", exc)
            return None
        if response.status_code != 207:
            logger.info("calendar-query REPORT returned %s", response.status_code)
            return None

        payloads = extract_calendar_data(response.text)
        if payloads:
            return self._decode_payloads(payloads, start, end)

        hrefs = self._resource_hrefs(extract_hrefs(response.text), calendar_url, ics_only=True)
        if not hrefs:
            return []
        logger.info("calendar-query returned %s resource references without data", len(hrefs))
        return self._fetch_resources(calendar_url, hrefs, start, end)

    def _fetch_resources(
        self, calendar_url: str, hrefs: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        events = self._multiget(calendar_url, hrefs, start, end)
        if events is not None:
            return events
        logger.info("calendar-multiget unavailable; fetching resources individually")
        return self._fetch_individually(hrefs, start, end)

    def _multiget(
        self, calendar_url: str, hrefs: list[str], start: datetime, end: datetime
    ) -> list[CalendarEvent] | None:
        batch_size = self.policy.multiget_batch_size
        events: list[CalendarEvent] = []
        found_data = False
        for offset in range(0, len(hrefs), batch_size):
            batch = hrefs[offset : offset + batch_size]
            body = MULTIGET_TEMPLATE.format(hrefs="\n  ".join(f"<D:href>{escape(href)}</D:href>" for href in batch))
            try:
                response = self._request("REPORT", calendar_url, headers={"Depth": "1"}, data=body)
            except requests.RequestException as exc:
                logger.warning("calendar-multiget failed: %s", exc)
                return None
            if response.status_code != 207:
                logger.info("calendar-multiget returned %s", response.status_code)
                return None
            payloads = extract_calendar_data(response.text)
            found_data = found_data or bool(payloads)
            events.extend(self._decode_payloads(payloads, start, end))
        if not found_data:
            return None
        return events

    def _fetch_individually(self, hrefs: list[str], start: datetime, end: datetime) -> list[CalendarEvent]:
        limit = self.policy.max_individual_fetches
        if len(hrefs) > limit:
            logger.warning("Fetching only the first %s of %s calendar resources", limit, len(hrefs))
        events: list[CalendarEvent] = []
        for href in hrefs[:limit]:
            url = self._absolute(href)
            try:
                response = self._request("GET", url, headers={"Accept": "text/calendar"})
            except requests.RequestException as exc:
                logger.warning("Failed to fetch %s: %s", url, exc)
                continue
            if response.status_code != 200 or CALENDAR_MARKER not in response.text:
                logger.warning("Skipping %s (status %s)", url, response.status_code)
                continue
            events.extend(self.decoder.decode(response.text, start, end))
        return events

    def _fetch_via_listing(self, calendar_url: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        try:
            response = self._request("PROPFIND", calendar_url, headers={"Depth": "1"}, data=RESOURCE_LIST_BODY)
        except requests.RequestException as exc:
            logger.warning("Resource listing failed: %s", exc)
            response = None
        if response is not None and response.status_code == 207:
            hrefs = self._resource_hrefs(extract_hrefs(response.text), calendar_url)
            if hrefs:
                logger.info("Resource listing found %s resources", len(hrefs))
                return self._fetch_resources(calendar_url, hrefs, start, end)
        logger.info("Resource listing unavailable; trying calendar export URLs")
        return self._fetch_export(calendar_url, start, end)

    def _fetch_export(self, calendar_url: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        trimmed = calendar_url.rstrip("/")
        candidates = [trimmed + ".ics", trimmed + "/calendar.ics", calendar_url + "?export", calendar_url]
        for url in candidates:
            try:
                response = self._request("GET", url, headers={"Accept": "text/calendar, text/html, */*"})
            except requests.RequestException as exc:
                logger.debug("Export GET %s failed: %s", url, exc)
                continue
            if response.status_code == 200 and CALENDAR_MARKER in response.text:
                logger.info("Loaded calendar export from %s", url)
                return self.decoder.decode(response.text, start, end)
        raise NoCalendarDataError()
