"""
vCard parsing and generation.

Handles the vCard 3.0/4.0 text format used by CardDAV servers:
- Tolerant, line-unfolding parser that skips malformed lines
- Multi-valued properties with normalized TYPE parameters
- Generator with CRLF line endings and 75-octet line folding
"""

from __future__ import annotations

import io
import logging
import re
import uuid
from dataclasses import dataclass, field

from vobject.base import ParseError, getLogicalLines, parseLine

logger = logging.getLogger(__name__)

CRLF = "\r\n"
MAX_LINE_OCTETS = 75
DEFAULT_VERSION = "3.0"

# Extension properties are kept as custom fields
EXTENSION_PREFIX = "X-"

# Default TYPE for multi-valued properties that have one
DEFAULT_EMAIL_TYPE = "INTERNET"
DEFAULT_TEL_TYPE = "CELL"
DEFAULT_ADR_TYPE = "HOME"
DEFAULT_URL_TYPE = "HOME"


@dataclass
class VCardField:
    """A single value of a multi-valued property with its TYPE tag."""

    value: str
    type: str | None = None


@dataclass
class CustomField:
    """An extension (X-) property with its raw parameters."""

    key: str
    value: str
    params: list[str] = field(default_factory=list)


@dataclass
class VCardPhoto:
    """PHOTO property: opaque base64 (or data URI) plus its TYPE."""

    data: str
    type: str | None = None


@dataclass
class VCardData:
    """
    Structured view of one vCard document.

    The scalar email/tel/adr/url attributes mirror the first entry of the
    matching list for older consumers. Structured properties keep their
    vCard grammar: ``n`` is ``Family;Given;Additional;Prefix;Suffix`` and
    address values are ``PO;Extended;Street;City;Region;Postal;Country``.
    """

    uid: str | None = None
    version: str | None = None
    fn: str | None = None
    n: str | None = None
    nickname: str | None = None
    email: str | None = None
    tel: str | None = None
    adr: str | None = None
    url: str | None = None
    emails: list[VCardField] = field(default_factory=list)
    tels: list[VCardField] = field(default_factory=list)
    addresses: list[VCardField] = field(default_factory=list)
    urls: list[VCardField] = field(default_factory=list)
    labels: list[VCardField] = field(default_factory=list)
    logos: list[VCardField] = field(default_factory=list)
    sounds: list[VCardField] = field(default_factory=list)
    keys: list[VCardField] = field(default_factory=list)
    org: str | None = None
    org_units: list[str] = field(default_factory=list)
    title: str | None = None
    role: str | None = None
    mailer: str | None = None
    tz: str | None = None
    geo: str | None = None
    agent: str | None = None
    prodid: str | None = None
    rev: str | None = None
    sort_string: str | None = None
    vcard_class: str | None = None
    bday: str | None = None
    note: str | None = None
    categories: list[str] = field(default_factory=list)
    photo: VCardPhoto | None = None
    custom_fields: list[CustomField] = field(default_factory=list)


# =============================================================================
# Parsing
# =============================================================================

# Simple text properties: vCard name -> VCardData attribute
_SCALAR_PROPERTIES = {
    "VERSION": "version",
    "UID": "uid",
    "FN": "fn",
    "N": "n",
    "NICKNAME": "nickname",
    "TITLE": "title",
    "ROLE": "role",
    "MAILER": "mailer",
    "TZ": "tz",
    "GEO": "geo",
    "PRODID": "prodid",
    "REV": "rev",
    "SORT-STRING": "sort_string",
    "CLASS": "vcard_class",
    "BDAY": "bday",
}

# Multi-valued properties: vCard name -> (list attribute, default TYPE, unescape)
_LIST_PROPERTIES: dict[str, tuple[str, str | None, bool]] = {
    "EMAIL": ("emails", DEFAULT_EMAIL_TYPE, False),
    "TEL": ("tels", DEFAULT_TEL_TYPE, False),
    "ADR": ("addresses", DEFAULT_ADR_TYPE, False),
    "URL": ("urls", DEFAULT_URL_TYPE, False),
    "LABEL": ("labels", None, True),
    "LOGO": ("logos", None, True),
    "SOUND": ("sounds", None, True),
    "KEY": ("keys", None, True),
}


def unfold_lines(text: str) -> list[str]:
    """
    Split vCard text into logical lines.

    Continuation lines start with a space or tab and are appended to the
    previous logical line without that leading character. CRLF, LF and
    bare CR line endings are all accepted.
    """
    stream = io.StringIO(text, newline=None)
    return [line for line, _ in getLogicalLines(stream)]


def normalize_types(types: list[str]) -> str | None:
    """
    Normalize TYPE parameter values.

    Splits comma lists, strips quotes, upper-cases and removes duplicates
    while keeping first-seen order.

    Returns:
        Comma-joined type string, or None when no type was given
    """
    normalized: list[str] = []
    for raw in types:
        for part in raw.split(","):
            value = part.strip().strip('"').upper()
            if value and value not in normalized:
                normalized.append(value)
    return ",".join(normalized) if normalized else None


def escape_text(value: str) -> str:
    """
    Escape free text for a property value.

    Backslashes are doubled first, then newlines become the two-character
    sequence ``\\n``.
    """
    value = value.replace("\\", "\\\\")
    return value.replace("\r\n", "\\n").replace("\r", "\\n").replace("\n", "\\n")


_ESCAPES = {"\\": "\\", "n": "\n", "N": "\n"}
_ESCAPE_RE = re.compile(r"\\([\\nN])")


def unescape_text(value: str) -> str:
    """Decode ``\\\\``, ``\\n`` and ``\\N``; other backslashes are kept."""
    return _ESCAPE_RE.sub(lambda match: _ESCAPES[match.group(1)], value)


def parse(text: str) -> VCardData:
    """
    Parse vCard text into a VCardData record.

    Lines without a colon are skipped; unknown non-extension properties
    are ignored.

    Args:
        text: Raw vCard document

    Returns:
        Parsed VCardData
    """
    data = VCardData()
    for line in unfold_lines(text):
        _parse_line(line, data)

    if data.emails and not data.email:
        data.email = data.emails[0].value
    if data.tels and not data.tel:
        data.tel = data.tels[0].value
    if data.urls and not data.url:
        data.url = data.urls[0].value
    return data


def _format_param(param: list[str]) -> str:
    name, *values = param
    return f"{name}={','.join(values)}".upper() if values else name.upper()


def _parse_line(line: str, data: VCardData) -> None:
    try:
        name, param_list, value, _group = parseLine(line)
    except ParseError:
        logger.debug(f"Skipping malformed vCard line: {line[:40]!r}")
        return

    name = name.upper()
    if name in ("BEGIN", "END"):
        return

    type_parts: list[str] = []
    for param in param_list:
        if len(param) > 1:
            if param[0].lower() == "type":
                type_parts.extend(param[1:])
        elif param:
            # vCard 2.1 style bare types: TEL;WORK;VOICE
            type_parts.append(param[0])
    type_value = normalize_types(type_parts)
    params = [_format_param(param) for param in param_list if param]

    if name in _SCALAR_PROPERTIES:
        setattr(data, _SCALAR_PROPERTIES[name], value)
    elif name in _LIST_PROPERTIES:
        attr, default_type, unescape = _LIST_PROPERTIES[name]
        entry_value = unescape_text(value) if unescape else value
        getattr(data, attr).append(
            VCardField(value=entry_value, type=type_value or default_type)
        )
        if name == "ADR" and not data.adr:
            # Legacy scalar holds the street component
            adr_parts = value.split(";")
            data.adr = adr_parts[2] if len(adr_parts) > 2 and adr_parts[2] else value
    elif name == "ORG":
        if ";" in value:
            org_parts = value.split(";")
            data.org = org_parts[0]
            data.org_units = [unit for unit in org_parts[1:] if unit]
        else:
            data.org = value
    elif name == "AGENT":
        data.agent = unescape_text(value)
    elif name == "NOTE":
        data.note = unescape_text(value)
    elif name == "CATEGORIES":
        data.categories = [entry.strip() for entry in value.split(",") if entry.strip()]
    elif name == "PHOTO":
        data.photo = VCardPhoto(data=value, type=type_value)
    elif name.startswith(EXTENSION_PREFIX):
        data.custom_fields.append(
            CustomField(key=name, value=unescape_text(value), params=params)
        )


# =============================================================================
# Generation
# =============================================================================


def generate_uid() -> str:
    """Return a fresh unique identifier for a vCard UID."""
    return str(uuid.uuid4())


def fold_line(line: str) -> list[str]:
    """
    Fold a content line so no physical line exceeds 75 octets.

    Continuation lines are prefixed with a single space. Multi-byte UTF-8
    characters are never split.
    """
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return [line]

    folded: list[str] = []
    current = ""
    current_octets = 0
    limit = MAX_LINE_OCTETS
    for char in line:
        size = len(char.encode("utf-8"))
        if current_octets + size > limit:
            folded.append(current)
            current = " "
            current_octets = 1
        current += char
        current_octets += size
    folded.append(current)
    return folded


def format_address(value: str) -> str:
    """
    Coerce an address value into the 7-part ADR grammar.

    A 7-part value is kept as is. An 8-part value (street and extended
    street stored separately) is collapsed into 7 parts. Anything else is
    treated as a flat street string.
    """
    trimmed = value.strip()
    if not trimmed:
        return ""
    if ";" in trimmed:
        parts = trimmed.split(";")
        if len(parts) == 7:
            return trimmed
        if len(parts) >= 8:
            street = ", ".join(p for p in (parts[2], parts[3]) if p)
            return ";".join([parts[0], parts[1], street, *parts[4:8]])
    return f";;{trimmed};;;;"


def _typed(name: str, entry: VCardField, default_type: str | None) -> str:
    type_value = entry.type or default_type
    return f"{name};TYPE={type_value}" if type_value else name


def generate(data: VCardData) -> str:
    """
    Generate vCard text from a VCardData record.

    BEGIN, VERSION, UID and FN are always emitted; a missing UID is
    replaced by a fresh one. Output uses CRLF line endings and ends with
    END:VCARD.

    Args:
        data: Structured vCard content

    Returns:
        vCard document text
    """
    lines: list[str] = ["BEGIN:VCARD", f"VERSION:{data.version or DEFAULT_VERSION}"]
    lines.append(f"UID:{data.uid or generate_uid()}")
    lines.append(f"FN:{data.fn or 'Unknown'}")

    if data.n and data.n.replace(";", ""):
        name_parts = (data.n.split(";") + [""] * 5)[:5]
        lines.append("N:" + ";".join(name_parts))

    if data.nickname:
        lines.append(f"NICKNAME:{data.nickname}")

    if data.photo and data.photo.data:
        photo_type = (data.photo.type or "JPEG").upper()
        if data.photo.data.startswith("data:"):
            lines.append(f"PHOTO:{data.photo.data}")
        else:
            lines.append(f"PHOTO;ENCODING=b;TYPE={photo_type}:{data.photo.data}")

    emails = data.emails or (
        [VCardField(data.email, DEFAULT_EMAIL_TYPE)] if data.email else []
    )
    for entry in emails:
        if entry.value:
            lines.append(f"{_typed('EMAIL', entry, DEFAULT_EMAIL_TYPE)}:{entry.value}")

    tels = data.tels or ([VCardField(data.tel, DEFAULT_TEL_TYPE)] if data.tel else [])
    for entry in tels:
        if entry.value:
            lines.append(f"{_typed('TEL', entry, DEFAULT_TEL_TYPE)}:{entry.value}")

    units = [unit for unit in data.org_units if unit]
    if data.org or units:
        lines.append("ORG:" + ";".join([data.org or "", *units]))

    for prop, value in (
        ("TITLE", data.title),
        ("ROLE", data.role),
        ("MAILER", data.mailer),
        ("TZ", data.tz),
        ("GEO", data.geo),
    ):
        if value:
            lines.append(f"{prop}:{value}")
    if data.agent:
        lines.append(f"AGENT:{escape_text(data.agent)}")
    for prop, value in (
        ("PRODID", data.prodid),
        ("REV", data.rev),
        ("SORT-STRING", data.sort_string),
        ("CLASS", data.vcard_class),
    ):
        if value:
            lines.append(f"{prop}:{value}")

    addresses = data.addresses or (
        [VCardField(data.adr, DEFAULT_ADR_TYPE)] if data.adr else []
    )
    for entry in addresses:
        formatted = format_address(entry.value) if entry.value else ""
        if formatted:
            lines.append(f"{_typed('ADR', entry, DEFAULT_ADR_TYPE)}:{formatted}")

    if data.bday:
        lines.append(f"BDAY:{data.bday.replace('-', '')}")

    if data.urls:
        for entry in data.urls:
            if entry.value:
                lines.append(f"{_typed('URL', entry, DEFAULT_URL_TYPE)}:{entry.value}")
    elif data.url:
        lines.append(f"URL:{data.url}")

    if data.note:
        lines.append(f"NOTE:{escape_text(data.note)}")

    categories = [entry.strip() for entry in data.categories if entry.strip()]
    if categories:
        lines.append("CATEGORIES:" + ",".join(categories))

    for prop, entries in (
        ("LABEL", data.labels),
        ("LOGO", data.logos),
        ("SOUND", data.sounds),
        ("KEY", data.keys),
    ):
        for entry in entries:
            if entry.value:
                lines.append(f"{_typed(prop, entry, None)}:{escape_text(entry.value)}")

    for custom in data.custom_fields:
        if not custom.key or not custom.value:
            continue
        params = "".join(f";{param}" for param in custom.params)
        lines.append(f"{custom.key}{params}:{escape_text(custom.value)}")

    lines.append("END:VCARD")

    folded: list[str] = []
    for line in lines:
        folded.extend(fold_line(line))
    return CRLF.join(folded)


def parse_name(n_value: str) -> dict[str, str]:
    """Split an N value into its five named components."""
    parts = (n_value.split(";") + [""] * 5)[:5]
    return {
        "last_name": parts[0],
        "first_name": parts[1],
        "middle_name": parts[2],
        "prefix": parts[3],
        "suffix": parts[4],
    }


__all__ = [
    "VCardData",
    "VCardField",
    "VCardPhoto",
    "CustomField",
    "parse",
    "generate",
    "generate_uid",
    "fold_line",
    "unfold_lines",
    "normalize_types",
    "format_address",
    "parse_name",
    "escape_text",
    "unescape_text",
]
