"""
Contact data model for database/file synchronization.

Provides the database-side Contact record and the translation functions
between it and the vCard codec:
- ContactFields: the structured, user-editable content of a contact
- Contact: a stored row (content plus identity, timestamps, sync metadata)
- SyncMetadata: the watermark update written after each pass
- Mappers to and from VCardData
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from carddav_sync.sync import vcard
from carddav_sync.sync.photo import PhotoError, decode_photo, encode_photo
from carddav_sync.sync.vcard import CustomField, VCardData, VCardField, VCardPhoto

logger = logging.getLogger(__name__)

MAIDEN_NAME_PREFIX = "Maiden name: "
MAIDEN_NAME_PATTERN = re.compile(r"^Maiden name:\s*(.*)$", re.IGNORECASE)
BIRTHDAY_PATTERN = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")


class SyncOrigin(Enum):
    """Which writer last produced a contact's content."""

    DATABASE = "database"
    API = "api"
    FILE = "file"


@dataclass
class ContactField:
    """A typed value of a multi-valued contact field (email, phone, ...)."""

    value: str
    type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"value": self.value}
        if self.type:
            result["type"] = self.type
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContactField":
        return cls(value=data.get("value", ""), type=data.get("type"))


@dataclass
class ContactFields:
    """
    Structured content of a contact, as written by the façade or the
    inbound pass.

    The scalar email/phone/address/homepage attributes are legacy mirrors
    of the first list entry. ``vcard_data`` holds the raw vCard text last
    received from a client; when present it is preferred over regenerating
    the document.
    """

    vcard_id: Optional[str] = None
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    name_prefix: Optional[str] = None
    name_suffix: Optional[str] = None
    nickname: Optional[str] = None
    maiden_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    emails: list[ContactField] = field(default_factory=list)
    phones: list[ContactField] = field(default_factory=list)
    organization: Optional[str] = None
    org_units: list[str] = field(default_factory=list)
    job_title: Optional[str] = None
    role: Optional[str] = None
    address: Optional[str] = None
    address_street: Optional[str] = None
    address_extended: Optional[str] = None
    address_city: Optional[str] = None
    address_state: Optional[str] = None
    address_postal: Optional[str] = None
    address_country: Optional[str] = None
    addresses: list[ContactField] = field(default_factory=list)
    birthday: Optional[date] = None
    homepage: Optional[str] = None
    urls: list[ContactField] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    labels: list[ContactField] = field(default_factory=list)
    logos: list[ContactField] = field(default_factory=list)
    sounds: list[ContactField] = field(default_factory=list)
    keys: list[ContactField] = field(default_factory=list)
    mailer: Optional[str] = None
    time_zone: Optional[str] = None
    geo: Optional[str] = None
    agent: Optional[str] = None
    prod_id: Optional[str] = None
    revision: Optional[str] = None
    sort_string: Optional[str] = None
    vcard_class: Optional[str] = None
    custom_fields: list[CustomField] = field(default_factory=list)
    notes: Optional[str] = None
    photo_blob: Optional[bytes] = None
    photo_mime: Optional[str] = None
    photo_width: Optional[int] = None
    photo_height: Optional[int] = None
    photo_hash: Optional[str] = None
    vcard_data: Optional[str] = None

    @classmethod
    def field_names(cls) -> list[str]:
        """Names of all content fields, in declaration order."""
        return [f.name for f in fields(ContactFields)]

    def content_fields(self) -> "ContactFields":
        """Return a copy holding only the content attributes of this record."""
        return ContactFields(
            **{name: getattr(self, name) for name in ContactFields.field_names()}
        )

    def display_name(self) -> str:
        """Best human-readable name for logs and listings."""
        if self.full_name:
            return self.full_name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.vcard_id or "Unknown"


@dataclass
class Contact(ContactFields):
    """
    A stored contact row.

    Attributes:
        id: Opaque internal identifier
        created_at: Row creation time (UTC)
        updated_at: Last content change (UTC); not touched by sync metadata
        last_synced_to_file_at: Outbound watermark
        last_synced_from_file_at: Inbound watermark
        content_hash: Hash of the last known good file body
        file_mtime: Modification time of that file
        origin: Writer of the current content
        photo_updated_at: Last photo change (UTC)
    """

    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_synced_to_file_at: Optional[datetime] = None
    last_synced_from_file_at: Optional[datetime] = None
    content_hash: Optional[str] = None
    file_mtime: Optional[datetime] = None
    origin: Optional[SyncOrigin] = None
    photo_updated_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"Contact(id={self.id!r}, vcard_id={self.vcard_id!r}, "
            f"name={self.display_name()!r})"
        )


@dataclass
class SyncMetadata:
    """
    Watermark update for one contact.

    Attributes left as None are not changed.
    """

    last_synced_to_file_at: Optional[datetime] = None
    last_synced_from_file_at: Optional[datetime] = None
    content_hash: Optional[str] = None
    file_mtime: Optional[datetime] = None
    origin: Optional[SyncOrigin] = None

    def as_columns(self) -> dict[str, Any]:
        """Return the provided attributes as column -> value pairs."""
        columns: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            columns[f.name] = value.value if isinstance(value, SyncOrigin) else value
        return columns


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a vCard file body."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# =============================================================================
# Contact -> vCard
# =============================================================================


def _vcard_fields(entries: list[ContactField]) -> list[VCardField]:
    return [VCardField(value=e.value, type=e.type) for e in entries if e.value]


def _structured_address(contact: ContactFields) -> Optional[str]:
    # PO box;extended;street;city;region;postal code;country
    parts = [
        "",
        contact.address_extended,
        contact.address_street,
        contact.address_city,
        contact.address_state,
        contact.address_postal,
        contact.address_country,
    ]
    if not any(parts):
        return None
    return ";".join(p or "" for p in parts)


def vcard_data_from_contact(contact: ContactFields) -> VCardData:
    """
    Build the vCard representation of a contact.

    The maiden name is carried as a ``Maiden name: ...`` line of NOTE and
    the photo as base64 PHOTO.

    Args:
        contact: Contact content

    Returns:
        VCardData ready for vcard.generate()
    """
    data = VCardData(uid=contact.vcard_id)

    data.fn = contact.full_name or (
        " ".join(p for p in (contact.first_name, contact.last_name) if p) or None
    )
    name_parts = [
        contact.last_name,
        contact.first_name,
        contact.middle_name,
        contact.name_prefix,
        contact.name_suffix,
    ]
    if any(name_parts):
        data.n = ";".join(p or "" for p in name_parts)
    data.nickname = contact.nickname

    data.emails = _vcard_fields(contact.emails)
    if not data.emails and contact.email:
        data.emails = [VCardField(contact.email, vcard.DEFAULT_EMAIL_TYPE)]
    data.tels = _vcard_fields(contact.phones)
    if not data.tels and contact.phone:
        data.tels = [VCardField(contact.phone, vcard.DEFAULT_TEL_TYPE)]

    data.org = contact.organization
    data.org_units = list(contact.org_units)
    data.title = contact.job_title
    data.role = contact.role
    data.mailer = contact.mailer
    data.tz = contact.time_zone
    data.geo = contact.geo
    data.agent = contact.agent
    data.prodid = contact.prod_id
    data.rev = contact.revision
    data.sort_string = contact.sort_string
    data.vcard_class = contact.vcard_class

    data.addresses = _vcard_fields(contact.addresses)
    if not data.addresses:
        structured = _structured_address(contact)
        if structured:
            data.addresses = [VCardField(structured, vcard.DEFAULT_ADR_TYPE)]
        elif contact.address:
            data.adr = contact.address

    if contact.birthday:
        data.bday = contact.birthday.strftime("%Y%m%d")

    data.urls = _vcard_fields(contact.urls)
    if not data.urls and contact.homepage:
        data.url = contact.homepage

    note = contact.notes or ""
    if contact.maiden_name:
        maiden = f"{MAIDEN_NAME_PREFIX}{contact.maiden_name}"
        note = f"{note}\n{maiden}" if note else maiden
    data.note = note or None

    data.categories = list(contact.categories)
    data.labels = _vcard_fields(contact.labels)
    data.logos = _vcard_fields(contact.logos)
    data.sounds = _vcard_fields(contact.sounds)
    data.keys = _vcard_fields(contact.keys)
    data.custom_fields = [
        CustomField(key=c.key, value=c.value, params=list(c.params))
        for c in contact.custom_fields
    ]

    if contact.photo_blob:
        encoded, photo_type = encode_photo(contact.photo_blob, contact.photo_mime)
        data.photo = VCardPhoto(data=encoded, type=photo_type)

    return data


def render_vcard(contact: ContactFields) -> str:
    """
    Return the file body for a contact.

    Stored raw vCard text is preferred; otherwise the document is
    generated from the structured fields.
    """
    if contact.vcard_data:
        return contact.vcard_data
    return vcard.generate(vcard_data_from_contact(contact))


# =============================================================================
# vCard -> Contact
# =============================================================================


def parse_birthday(value: Optional[str]) -> Optional[date]:
    """
    Parse a BDAY value in ``YYYYMMDD`` or ``YYYY-MM-DD`` form.

    Values with a time part keep only the date. Anything else yields None.
    """
    if not value:
        return None
    match = BIRTHDAY_PATTERN.match(value.strip()[:10])
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def split_maiden_name(note: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """
    Extract a ``Maiden name: ...`` line from a note.

    Returns:
        Tuple of (remaining note or None, maiden name or None)
    """
    if not note:
        return None, None
    maiden_name = None
    kept: list[str] = []
    for line in note.split("\n"):
        match = MAIDEN_NAME_PATTERN.match(line.strip())
        if match and maiden_name is None:
            maiden_name = match.group(1).strip() or None
            continue
        kept.append(line)
    remaining = "\n".join(kept).strip("\n")
    return remaining or None, maiden_name


def _contact_fields(entries: list[VCardField]) -> list[ContactField]:
    return [ContactField(value=e.value, type=e.type) for e in entries if e.value]


def contact_fields_from_vcard(
    data: VCardData, raw_text: Optional[str] = None
) -> ContactFields:
    """
    Map a parsed vCard onto contact content.

    Args:
        data: Parsed vCard
        raw_text: Original file body, stored as ``vcard_data``

    Returns:
        ContactFields for a database create or update
    """
    name = vcard.parse_name(data.n) if data.n else {}
    first_name = name.get("first_name") or None
    last_name = name.get("last_name") or None
    full_name = data.fn or " ".join(p for p in (first_name, last_name) if p) or None

    notes, maiden_name = split_maiden_name(data.note)

    result = ContactFields(
        vcard_id=data.uid,
        full_name=full_name or "Unknown",
        first_name=first_name,
        last_name=last_name,
        middle_name=name.get("middle_name") or None,
        name_prefix=name.get("prefix") or None,
        name_suffix=name.get("suffix") or None,
        nickname=data.nickname,
        maiden_name=maiden_name,
        email=data.email,
        phone=data.tel,
        emails=_contact_fields(data.emails),
        phones=_contact_fields(data.tels),
        organization=data.org,
        org_units=list(data.org_units),
        job_title=data.title,
        role=data.role,
        address=data.adr,
        addresses=_contact_fields(data.addresses),
        birthday=parse_birthday(data.bday),
        homepage=data.url,
        urls=_contact_fields(data.urls),
        categories=list(data.categories),
        labels=_contact_fields(data.labels),
        logos=_contact_fields(data.logos),
        sounds=_contact_fields(data.sounds),
        keys=_contact_fields(data.keys),
        mailer=data.mailer,
        time_zone=data.tz,
        geo=data.geo,
        agent=data.agent,
        prod_id=data.prodid,
        revision=data.rev,
        sort_string=data.sort_string,
        vcard_class=data.vcard_class,
        custom_fields=list(data.custom_fields),
        notes=notes,
        vcard_data=raw_text,
    )

    if data.addresses:
        parts = (data.addresses[0].value.split(";") + [""] * 7)[:7]
        result.address_extended = parts[1] or None
        result.address_street = parts[2] or None
        result.address_city = parts[3] or None
        result.address_state = parts[4] or None
        result.address_postal = parts[5] or None
        result.address_country = parts[6] or None

    if data.photo and data.photo.data:
        try:
            photo = decode_photo(data.photo.data, data.photo.type)
        except PhotoError as e:
            logger.warning(f"Ignoring undecodable photo on {data.uid}: {e}")
        else:
            result.photo_blob = photo.blob
            result.photo_mime = photo.mime
            result.photo_width = photo.width
            result.photo_height = photo.height
            result.photo_hash = photo.hash

    return result
