"""
Conflict detection and resolution between a database contact and its file.

A conflict exists only when both sides changed since the last sync in the
relevant direction and the file body differs from the last known good
hash. Resolution is last-writer-wins on the two observed timestamps; the
tie winner is chosen by the caller because each pass has its own bias.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from carddav_sync.sync.contact import Contact


class SyncDirection(Enum):
    """Which pass is comparing; selects the database-side watermark."""

    OUTBOUND = "to_file"
    INBOUND = "from_file"


class ConflictSide(Enum):
    """Indicates which side won a conflict resolution."""

    DATABASE = "database"
    FILE = "file"


@dataclass
class ConflictInfo:
    """
    Outcome of one comparison. Never persisted.

    Attributes:
        has_conflict: Both sides changed and the contents differ
        db_newer: Database changed since the direction's watermark
        file_newer: File changed since the last inbound sync
        db_timestamp: Database modification time compared
        file_timestamp: File modification time compared
    """

    has_conflict: bool
    db_newer: bool
    file_newer: bool
    db_timestamp: Optional[datetime]
    file_timestamp: Optional[datetime]


@dataclass
class ConflictResult:
    """
    Resolution of a conflict.

    Attributes:
        winning_side: Side whose content is kept
        reason: Human-readable explanation for logs
    """

    winning_side: ConflictSide
    reason: str


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _changed_since(value: Optional[datetime], watermark: Optional[datetime]) -> bool:
    # A side that never synced counts as changed
    if watermark is None or value is None:
        return True
    return _aware(value) > _aware(watermark)


class ConflictResolver:
    """
    Detects and resolves divergence between a contact row and its file.

    Usage:
        resolver = ConflictResolver()
        info = resolver.detect(contact, snapshot.mtime, snapshot.hash,
                               SyncDirection.INBOUND)
        if info.has_conflict:
            result = resolver.resolve(info, tie_winner=ConflictSide.FILE)
    """

    def detect(
        self,
        contact: Contact,
        file_mtime: Optional[datetime],
        file_hash: Optional[str],
        direction: SyncDirection,
    ) -> ConflictInfo:
        """
        Classify the state of a contact against its file.

        Args:
            contact: Stored contact with sync metadata
            file_mtime: Current modification time of the file
            file_hash: Current content hash of the file
            direction: Pass doing the comparison

        Returns:
            ConflictInfo for the pair
        """
        if direction == SyncDirection.OUTBOUND:
            db_watermark = contact.last_synced_to_file_at
        else:
            db_watermark = contact.last_synced_from_file_at

        db_newer = _changed_since(contact.updated_at, db_watermark)
        file_newer = _changed_since(file_mtime, contact.last_synced_from_file_at)
        hash_differs = contact.content_hash != file_hash

        return ConflictInfo(
            has_conflict=db_newer and file_newer and hash_differs,
            db_newer=db_newer,
            file_newer=file_newer,
            db_timestamp=_aware(contact.updated_at),
            file_timestamp=_aware(file_mtime),
        )

    def resolve(self, info: ConflictInfo, tie_winner: ConflictSide) -> ConflictResult:
        """
        Pick the side with the strictly newer timestamp.

        Args:
            info: Output of detect()
            tie_winner: Side that wins equal (or both missing) timestamps

        Returns:
            ConflictResult naming the winner
        """
        db_time = info.db_timestamp or _EPOCH
        file_time = info.file_timestamp or _EPOCH

        if db_time > file_time:
            return ConflictResult(
                winning_side=ConflictSide.DATABASE,
                reason=f"Database is newer ({db_time} > {file_time})",
            )
        if file_time > db_time:
            return ConflictResult(
                winning_side=ConflictSide.FILE,
                reason=f"File is newer ({file_time} > {db_time})",
            )
        return ConflictResult(
            winning_side=tie_winner,
            reason=f"Equal timestamps ({db_time}), {tie_winner.value} wins the tie",
        )
