"""
Decoders for the XML documents returned by S3-compatible services.

Every decoder is a forward-only state machine over the event stream of a
single document. Text is accumulated per field and a typed record is
emitted when the enclosing region closes. Decoders are single use: build a
fresh instance for each response body.
"""

import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, UTC
from typing import Dict, Iterator, List, Optional, Tuple

from .error import DecodeException
from .models import (
    ActiveUpload,
    Bucket,
    LifecycleRule,
    LifecycleTransition,
    ListPage,
    ObjectRecord,
    ObjectRetention,
    ObjectVersion,
    PartInfo,
    RetentionMode,
    VersionPage,
)

logger = logging.getLogger(__name__)

_FEED_SIZE = 64 * 1024
_TIMESTAMP_FORMATS = ("%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S.%fZ")
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")
ALL_USERS_URI = "http://acs.amazonaws.com/groups/global/AllUsers"


def _local(tag: str) -> str:
    return tag.split("}")[-1]


def iter_events(body: bytes) -> Iterator[Tuple[str, str, Optional[str]]]:
    """
    Yield ``(event, tag, text)`` for a document, tags stripped of namespaces.

    ``text`` is only set on ``end`` events of elements that carried text.
    """
    if isinstance(body, str):
        body = body.encode()
    parser = ET.XMLPullParser(events=("start", "end"))

    def drain():
        for event, elem in parser.read_events():
            if event == "start":
                yield event, _local(elem.tag), None
            else:
                yield event, _local(elem.tag), elem.text
                elem.clear()

    try:
        for offset in range(0, len(body), _FEED_SIZE):
            parser.feed(body[offset:offset + _FEED_SIZE])
            yield from drain()
        parser.close()
        yield from drain()
    except ET.ParseError as ex:
        raise DecodeException(f"Malformed XML response: {ex}") from ex


def parse_timestamp(value: str) -> datetime:
    """
    Parse an S3 timestamp, with or without fractional seconds.

    Other ISO-8601 shapes (numeric offsets, nanosecond fractions) are
    accepted too and normalized to UTC; fractions are cut to microseconds.
    Unparseable values become "now" so one bad entry does not fail a whole
    page; the substitution is logged as a warning.
    """
    cleaned = value.strip()
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(_EXCESS_FRACTION.sub(r"\1", cleaned))
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    logger.warning("[Decoder] Unparseable timestamp %r, substituting current time", value)
    return datetime.now(UTC)


def _parse_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return 0


def _optional_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value.strip()) if value else None
    except ValueError:
        return None


def parse_error_document(body: bytes) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(Code, Message)`` of an S3 error body, or ``(None, None)``."""
    if not body or not body.strip():
        return None, None
    decoder = _FieldDecoder(top_level=("Code", "Message"))
    try:
        decoder.run(body)
    except DecodeException:
        return None, None
    return decoder.top_level_value("Code"), decoder.top_level_value("Message")


class _FieldDecoder:
    """
    Shared accumulation machinery.

    Subclasses name the region elements they care about in ``regions`` and
    the document-level fields in ``top_level``; fragments of a field are
    concatenated, never overwritten.
    """

    regions: Tuple[str, ...] = ()
    top_level_fields: Tuple[str, ...] = ()

    def __init__(self, top_level: Tuple[str, ...] = ()):
        self._top_level_names = top_level or self.top_level_fields
        self._top_level: Dict[str, str] = {}
        self._region: Optional[str] = None
        self._fields: Dict[str, str] = {}
        self._used = False

    def run(self, body: bytes) -> List[object]:
        """Drive the state machine and collect what ``close_region`` emits."""
        return list(self.stream(body))

    def stream(self, body: bytes) -> Iterator[object]:
        self._claim()
        for event, tag, text in iter_events(body):
            if event == "start":
                if self._region is None and tag in self.regions:
                    self._region = tag
                    self._fields = {}
                continue
            if self._region is not None:
                if tag == self._region:
                    record = self.close_region(tag, self._fields)
                    self._region = None
                    if record is not None:
                        yield record
                elif text is not None:
                    self._fields[tag] = self._fields.get(tag, "") + text
            elif tag in self._top_level_names and text is not None:
                self._top_level[tag] = self._top_level.get(tag, "") + text
        yield from self.finish()

    def _claim(self) -> None:
        if self._used:
            raise RuntimeError(f"{type(self).__name__} instances decode a single document")
        self._used = True

    def close_region(self, region: str, fields: Dict[str, str]):
        return None

    def finish(self) -> Iterator[object]:
        return iter(())

    def top_level_value(self, name: str) -> Optional[str]:
        value = self._top_level.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def _is_truncated(self) -> bool:
        return (self.top_level_value("IsTruncated") or "").lower() == "true"


class ListingDecoder(_FieldDecoder):
    """
    Decodes a ListObjectsV2 page into :class:`ObjectRecord` values.

    Keys returned relative to ``prefix`` get the prefix re-attached. With
    ``exclude_self`` the record naming the queried prefix itself is
    dropped; recursive operations turn it off so the placeholder object is
    enumerated too. Folder records come from ``CommonPrefixes`` and are
    emitted after all object records, minus any key already seen as an
    object.
    """

    regions = ("Contents", "CommonPrefixes")
    top_level_fields = ("IsTruncated", "NextContinuationToken")

    def __init__(self, prefix: str = "", exclude_self: bool = True):
        super().__init__()
        self.prefix = prefix
        self.exclude_self = exclude_self
        self._object_keys = set()
        self._folders: List[ObjectRecord] = []

    def decode(self, body: bytes) -> ListPage:
        records = self.run(body)
        return ListPage(
            records=records,
            is_truncated=self._is_truncated(),
            continuation_token=self.top_level_value("NextContinuationToken"),
        )

    def iter_records(self, body: bytes) -> Iterator[ObjectRecord]:
        return self.stream(body)

    def close_region(self, region, fields):
        if region == "Contents":
            key = self._full_key(fields.get("Key", ""))
            if not key or self._is_self(key):
                return None
            self._object_keys.add(key)
            return ObjectRecord(
                key=key,
                size=_parse_int(fields.get("Size", "0")),
                last_modified=parse_timestamp(fields.get("LastModified", "")),
                etag=fields.get("ETag", "").strip().replace('"', "") or None,
                is_folder=False,
            )
        key = self._full_key(fields.get("Prefix", ""))
        if key and not self._is_self(key):
            self._folders.append(
                ObjectRecord(key=key, size=0, last_modified=datetime.now(UTC), is_folder=True)
            )
        return None

    def finish(self):
        seen = set(self._object_keys)
        for folder in self._folders:
            if folder.key in seen:
                continue
            seen.add(folder.key)
            yield folder

    def _full_key(self, raw: str) -> str:
        key = raw.strip("\r\n")
        if key and self.prefix and not key.startswith(self.prefix):
            key = self.prefix + key
        return key

    def _is_self(self, key: str) -> bool:
        return self.exclude_self and key.rstrip("/") == self.prefix.rstrip("/")


class VersionsDecoder(_FieldDecoder):
    """
    Decodes a ListObjectVersions page.

    The service answers a prefix query, so callers interested in one key
    must filter the result themselves.
    """

    regions = ("Version", "DeleteMarker")
    top_level_fields = ("IsTruncated", "NextKeyMarker", "NextVersionIdMarker")

    def decode(self, body: bytes) -> VersionPage:
        versions = self.run(body)
        return VersionPage(
            versions=versions,
            is_truncated=self._is_truncated(),
            next_key_marker=self.top_level_value("NextKeyMarker"),
            next_version_id_marker=self.top_level_value("NextVersionIdMarker"),
        )

    def close_region(self, region, fields):
        return ObjectVersion(
            key=fields.get("Key", "").strip("\r\n"),
            version_id=fields.get("VersionId", "").strip(),
            is_latest=fields.get("IsLatest", "").strip().lower() == "true",
            last_modified=parse_timestamp(fields.get("LastModified", "")),
            size=_parse_int(fields.get("Size", "0")),
            is_delete_marker=region == "DeleteMarker",
        )


class _SingleValueDecoder(_FieldDecoder):
    """Extracts the text of the first element named ``tag`` at any depth."""

    tag = ""

    def __init__(self):
        super().__init__()
        self._value: Optional[str] = None

    def decode(self, body: bytes) -> Optional[str]:
        self._claim()
        for event, tag, text in iter_events(body):
            if event == "end" and tag == self.tag and text and self._value is None:
                self._value = text.strip() or None
        return self._value


class MultipartInitDecoder(_SingleValueDecoder):
    """InitiateMultipartUploadResult -> UploadId."""
    tag = "UploadId"


class StatusDecoder(_SingleValueDecoder):
    """VersioningConfiguration / LegalHold -> Status."""
    tag = "Status"


class ObjectLockDecoder(_SingleValueDecoder):
    """ObjectLockConfiguration -> ObjectLockEnabled."""
    tag = "ObjectLockEnabled"


class ActiveUploadsDecoder(_FieldDecoder):
    """Decodes ListMultipartUploads into :class:`ActiveUpload` values."""

    regions = ("Upload",)
    top_level_fields = ("IsTruncated", "NextKeyMarker", "NextUploadIdMarker")

    def decode(self, body: bytes) -> List[ActiveUpload]:
        return self.run(body)

    @property
    def is_truncated(self) -> bool:
        return self._is_truncated()

    def close_region(self, region, fields):
        key = fields.get("Key", "").strip("\r\n")
        upload_id = fields.get("UploadId", "").strip()
        if not key or not upload_id:
            return None
        return ActiveUpload(
            key=key,
            upload_id=upload_id,
            initiated=parse_timestamp(fields.get("Initiated", "")),
        )


class PartsDecoder(_FieldDecoder):
    """
    Decodes ListParts into ``{part_number: PartInfo}``.

    A part is kept only when both its number and its ETag were present.
    """

    regions = ("Part",)
    top_level_fields = ("IsTruncated", "NextPartNumberMarker")

    def decode(self, body: bytes) -> Dict[int, PartInfo]:
        return dict(self.run(body))

    @property
    def is_truncated(self) -> bool:
        return self._is_truncated()

    def close_region(self, region, fields):
        number = fields.get("PartNumber", "").strip()
        etag = fields.get("ETag", "").strip().replace('"', "")
        if not number.isdigit() or not etag:
            return None
        return int(number), PartInfo(etag=etag, size=_parse_int(fields.get("Size", "0")))


class BucketsDecoder(_FieldDecoder):
    """Decodes ListAllMyBucketsResult."""

    regions = ("Bucket",)

    def decode(self, body: bytes) -> List[Bucket]:
        return self.run(body)

    def close_region(self, region, fields):
        name = fields.get("Name", "").strip()
        if not name:
            return None
        return Bucket(name=name, creation_date=parse_timestamp(fields.get("CreationDate", "")))


class AclDecoder(_FieldDecoder):
    """Reports whether an AccessControlPolicy grants READ to AllUsers."""

    regions = ("Grant",)

    def decode(self, body: bytes) -> bool:
        return any(self.run(body))

    def close_region(self, region, fields):
        return (
            fields.get("URI", "").strip() == ALL_USERS_URI
            and fields.get("Permission", "").strip() == "READ"
        )


class RetentionDecoder(_FieldDecoder):
    """Retention -> :class:`ObjectRetention`; an unknown mode decodes as ``None``."""

    regions = ("Retention",)

    def decode(self, body: bytes) -> Optional[ObjectRetention]:
        return next(iter(self.run(body)), None)

    def close_region(self, region, fields):
        try:
            mode = RetentionMode(fields.get("Mode", "").strip().upper())
        except ValueError:
            return None
        return ObjectRetention(mode=mode, retain_until=parse_timestamp(fields.get("RetainUntilDate", "")))


class LifecycleDecoder(_FieldDecoder):
    """
    Decodes a LifecycleConfiguration into :class:`LifecycleRule` values.

    ``Days`` occurs under both ``Expiration`` and ``Transition``, so values
    are routed by their parent element. The prefix is read from the rule
    itself or from its ``Filter``.
    """

    def decode(self, body: bytes) -> List[LifecycleRule]:
        self._claim()
        rules: List[LifecycleRule] = []
        rule: Optional[LifecycleRule] = None
        transition: Dict[str, str] = {}
        parents: List[str] = []

        for event, tag, text in iter_events(body):
            if event == "start":
                if tag == "Rule":
                    rule, parents = LifecycleRule(), []
                elif rule is not None:
                    if tag == "Transition":
                        transition = {}
                    parents.append(tag)
                continue
            if rule is None:
                continue
            if tag == "Rule":
                rules.append(rule)
                rule = None
                continue

            parents.pop()
            parent = parents[-1] if parents else "Rule"
            value = (text or "").strip("\r\n")
            if tag == "Transition":
                rule.transitions.append(LifecycleTransition(
                    storage_class=transition.get("StorageClass", "").strip(),
                    days=_optional_int(transition.get("Days")),
                ))
            elif parent == "Transition":
                transition[tag] = value
            elif tag == "ID":
                rule.id = value.strip()
            elif tag == "Status":
                rule.enabled = value.strip() == "Enabled"
            elif tag == "Prefix":
                rule.prefix = value
            elif tag == "Days" and parent == "Expiration":
                rule.expiration_days = _optional_int(value)
            elif tag == "DaysAfterInitiation":
                rule.abort_incomplete_upload_days = _optional_int(value)
        return rules
