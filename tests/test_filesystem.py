"""
Unit tests for the contact file store.

Tests master and fan-out writes, deletion, enumeration in legacy and
multi-book layouts, book resolution from paths, and account seeding.
"""

import json
import os

import pytest

from carddav_sync.auth.errors import FileSystemError
from carddav_sync.storage.filesystem import (
    MARKER_FILE,
    ContactFileStore,
    file_name_for,
    is_vcard_file,
)
from carddav_sync.sync.address_book import LEGACY_BOOK, AddressBook
from carddav_sync.sync.contact import content_hash

BOOK_A = AddressBook(id="0f8fad5b-d9cb-469f-a165-70867728950e", name="Team", slug="team")
BOOK_B = AddressBook(
    id="7c9e6679-7425-40de-944b-e07fc1f90ae7", name="Family", slug="family", is_public=False
)
TEXT = "BEGIN:VCARD\r\nVERSION:3.0\r\nUID:c1\r\nFN:Jane\r\nEND:VCARD"


@pytest.fixture
def files(tmp_path):
    return ContactFileStore(tmp_path)


def _put(directory, name, text=TEXT):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(text)
    return path


class TestHelpers:
    """Tests for module helpers."""

    def test_file_name_replaces_separators(self):
        """Test path separators cannot escape the directory."""
        assert file_name_for("a/b") == "a_b.vcf"
        assert file_name_for("uid-1") == "uid-1.vcf"

    def test_is_vcard_file(self, tmp_path):
        """Test hidden and non-vcf files are ignored."""
        assert is_vcard_file(tmp_path / "x.vcf")
        assert is_vcard_file(tmp_path / "x.VCF")
        assert not is_vcard_file(tmp_path / ".x.vcf.tmp")
        assert not is_vcard_file(tmp_path / ".hidden.vcf")
        assert not is_vcard_file(tmp_path / MARKER_FILE)


class TestCollections:
    """Tests for collection markers."""

    def test_marker_written_once(self, files, tmp_path):
        """Test an existing marker is never overwritten."""
        directory = tmp_path / "collection-root" / "x"
        files.ensure_collection(directory, "First")
        files.ensure_collection(directory, "Second")
        marker = json.loads((directory / MARKER_FILE).read_text())
        assert marker["tag"] == "VADDRESSBOOK"
        assert marker["D:displayname"] == "First"


class TestWriteDelete:
    """Tests for writing and deleting contact files."""

    def test_write_master_and_fanout(self, files):
        """Test the master copy and every fan-out copy are written."""
        result = files.write(BOOK_A, "c1", TEXT, ["alice-x", "bob-x"])
        assert result.ok
        assert len(result.succeeded) == 3
        for directory in (
            files.master_dir(BOOK_A),
            files.account_dir("alice-x"),
            files.account_dir("bob-x"),
        ):
            assert (directory / "c1.vcf").exists()
            assert (directory / MARKER_FILE).exists()

    def test_write_keeps_crlf(self, files):
        """Test the body is written byte for byte."""
        files.write(BOOK_A, "c1", TEXT)
        assert (files.master_dir(BOOK_A) / "c1.vcf").read_bytes() == TEXT.encode()

    def test_write_leaves_no_temp_files(self, files):
        """Test the atomic write cleans up its temp file."""
        files.write(BOOK_A, "c1", TEXT)
        names = {p.name for p in files.master_dir(BOOK_A).iterdir()}
        assert names == {"c1.vcf", MARKER_FILE}

    def test_fanout_failure_is_collected(self, files):
        """Test a failing account does not stop the write."""
        files.collection_root.mkdir(parents=True)
        files.account_dir("blocked").write_text("not a directory")
        result = files.write(BOOK_A, "c1", TEXT, ["blocked", "alice-x"])
        assert [f.item for f in result.failures] == ["blocked"]
        assert (files.account_dir("alice-x") / "c1.vcf").exists()

    def test_master_failure_raises(self, files):
        """Test a failing master write raises FileSystemError."""
        files.collection_root.mkdir(parents=True)
        files.master_dir(BOOK_A).write_text("not a directory")
        with pytest.raises(FileSystemError):
            files.write(BOOK_A, "c1", TEXT)

    def test_delete(self, files):
        """Test delete removes every copy and ignores missing ones."""
        files.write(BOOK_A, "c1", TEXT, ["alice-x"])
        result = files.delete(BOOK_A, "c1", ["alice-x", "bob-x"])
        assert result.ok
        assert len(result.succeeded) == 2
        assert not (files.master_dir(BOOK_A) / "c1.vcf").exists()

    def test_refresh_fanout_rewrites_stale_copies(self, files):
        """Test only missing and differing fan-out copies are rewritten."""
        files.write(BOOK_A, "c1", TEXT, ["alice-x", "bob-x", "carol-x"])
        master = files.master_dir(BOOK_A) / "c1.vcf"
        master_mtime = master.stat().st_mtime_ns
        (files.account_dir("alice-x") / "c1.vcf").unlink()
        _put(files.account_dir("bob-x"), "c1.vcf", "stale")

        result = files.refresh_fanout(BOOK_A, "c1", TEXT, ["alice-x", "bob-x", "carol-x"])

        assert result.ok
        assert sorted(p.parent.name for p in result.succeeded) == ["alice-x", "bob-x"]
        for user in ("alice-x", "bob-x"):
            assert (files.account_dir(user) / "c1.vcf").read_bytes() == TEXT.encode()
        assert master.stat().st_mtime_ns == master_mtime


class TestRead:
    """Tests for reading contact files."""

    def test_read_preserves_crlf(self, files):
        """Test the hash of a read file matches the hash of the written text."""
        files.write(BOOK_A, "c1", TEXT)
        snapshot = files.read(files.master_dir(BOOK_A) / "c1.vcf")
        assert snapshot.text == TEXT
        assert snapshot.hash == content_hash(TEXT)
        assert snapshot.mtime.tzinfo is not None

    def test_read_missing(self, files, tmp_path):
        """Test reading a missing file raises."""
        with pytest.raises(OSError):
            files.read(tmp_path / "missing.vcf")


class TestEnumeration:
    """Tests for list_all and resolve_book_from_path."""

    def test_legacy_mode(self, files):
        """Test legacy mode lists the shared directory and user directories."""
        root = files.collection_root
        shared = _put(root / "shared-contacts", "a.vcf")
        alice = _put(root / "alice", "b.vcf")
        _put(root / "ro-0f8fad5b-d9cb-469f-a165-70867728950e", "c.vcf")
        _put(root / "alice", "notes.txt")

        assert sorted(files.list_all([])) == sorted([shared, alice])

    def test_multi_book_mode(self, files):
        """Test masters, composites and unmigrated legacy directories are listed."""
        root = files.collection_root
        master = _put(root / BOOK_A.id, "a.vcf")
        composite = _put(root / f"alice-{BOOK_A.id}", "b.vcf")
        legacy = _put(root / "bob" / BOOK_B.id, "c.vcf")
        _put(root / f"ro-{BOOK_A.id}", "d.vcf")
        _put(root / "alice" / BOOK_A.id, "e.vcf")
        _put(root / "carol-9b2e3c1a-0000-4000-8000-000000000000", "f.vcf")

        listed = files.list_all([BOOK_A, BOOK_B])
        assert sorted(listed) == sorted([master, composite, legacy])

    def test_missing_root(self, files):
        """Test enumerating a missing tree returns nothing."""
        assert files.list_all([BOOK_A]) == []

    def test_account_dirs_for_book(self, files):
        """Test composite directories are found per book."""
        root = files.collection_root
        (root / f"alice-{BOOK_A.id}").mkdir(parents=True)
        (root / f"bob-{BOOK_B.id}").mkdir(parents=True)
        (root / "carol").mkdir(parents=True)
        assert files.account_dirs_for_book(BOOK_A) == [f"alice-{BOOK_A.id}"]

    def test_resolve_book(self, files):
        """Test master, slug, composite and legacy user paths resolve."""
        root = files.collection_root
        books = [BOOK_A, BOOK_B]
        assert files.resolve_book_from_path(root / BOOK_A.id / "x.vcf", books) == BOOK_A
        assert files.resolve_book_from_path(root / "family" / "x.vcf", books) == BOOK_B
        assert (
            files.resolve_book_from_path(root / f"alice-{BOOK_B.id}" / "x.vcf", books)
            == BOOK_B
        )
        assert (
            files.resolve_book_from_path(root / "bob" / BOOK_A.id / "x.vcf", books)
            == BOOK_A
        )
        assert files.resolve_book_from_path(root / "bob" / "x.vcf", books) is None
        assert files.resolve_book_from_path("/elsewhere/x.vcf", books) is None

    def test_resolve_legacy_mode(self, files):
        """Test every path belongs to the implicit book without books."""
        path = files.collection_root / "alice" / "x.vcf"
        assert files.resolve_book_from_path(path, []) == LEGACY_BOOK


class TestSeedAndMirror:
    """Tests for seed_account and mirror."""

    def test_seed_copies_missing_only(self, files):
        """Test seeding keeps existing files and copies the rest."""
        master = files.master_dir(BOOK_A)
        _put(master, "a.vcf", "A")
        _put(master, "b.vcf", "B")
        os.utime(master / "a.vcf", (1_000_000, 1_000_000))
        _put(files.account_dir("alice-x"), "b.vcf", "client edit")

        assert files.seed_account(BOOK_A, "alice-x") == 1
        target = files.account_dir("alice-x")
        assert (target / "a.vcf").read_text() == "A"
        assert (target / "a.vcf").stat().st_mtime == 1_000_000
        assert (target / "b.vcf").read_text() == "client edit"

    def test_mirror_replaces_differing_files(self, files):
        """Test mirror copies missing and changed files but deletes nothing."""
        master = files.master_dir(BOOK_A)
        _put(master, "a.vcf", "A")
        _put(master, "b.vcf", "B2")
        target = files.account_dir("ro-x")
        _put(target, "b.vcf", "B1")
        _put(target, "old.vcf", "gone from master")

        assert files.mirror(BOOK_A, "ro-x") == 2
        assert (target / "b.vcf").read_text() == "B2"
        assert (target / "old.vcf").exists()
        assert (target / MARKER_FILE).exists()
        assert files.mirror(BOOK_A, "ro-x") == 0
