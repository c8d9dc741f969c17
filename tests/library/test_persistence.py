"""Tests for JSON library persistence and file content storage."""

import json
from datetime import datetime, timezone

import pytest

from shelfsync.core.models import BookRecord, ReadingProgress
from shelfsync.library.content import FileContentStore
from shelfsync.library.persistence import JsonLibraryPersistence


# =============================================================================
# JsonLibraryPersistence
# =============================================================================

def test_missing_file_loads_empty(tmp_path):
    persistence = JsonLibraryPersistence(tmp_path / "library.json")

    assert persistence.load() == []


def test_save_then_load_restores_records(tmp_path):
    path = tmp_path / "nested" / "library.json"
    persistence = JsonLibraryPersistence(path)
    when = datetime(2024, 3, 2, 8, 30, tzinfo=timezone.utc)
    records = [
        BookRecord(hash="a" * 32, title="One", uploaded_at=when),
        BookRecord(hash="b" * 32, title="Two", progress=ReadingProgress("p", 12.5, when)),
    ]

    persistence.save(records)

    assert json.loads(path.read_text())["version"] == 1
    assert persistence.load() == records


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "library.json"
    path.write_text("{ not json")

    assert JsonLibraryPersistence(path).load() == []


def test_unreadable_entries_are_skipped(tmp_path):
    path = tmp_path / "library.json"
    path.write_text(json.dumps({
        "version": 1,
        "books": [
            {"hash": "good", "title": "Fine"},
            {"hash": "bad", "uploaded_at": "not-a-date"},
            "not-an-object",
        ],
    }))

    records = JsonLibraryPersistence(path).load()

    assert [r.hash for r in records] == ["good"]


def test_save_leaves_no_temp_files(tmp_path):
    persistence = JsonLibraryPersistence(tmp_path / "library.json")

    persistence.save([BookRecord(hash="c" * 32)])
    persistence.save([])

    assert [p.name for p in tmp_path.iterdir()] == ["library.json"]


# =============================================================================
# FileContentStore
# =============================================================================

def test_content_store_round_trip(tmp_path):
    store = FileContentStore(tmp_path)
    book_hash = "ab" + "0" * 30

    store.write(book_hash, b"content")

    assert store.exists(book_hash)
    assert store.read(book_hash) == b"content"
    assert store.path_for(book_hash) == tmp_path / "ab" / book_hash


def test_content_store_delete(tmp_path):
    store = FileContentStore(tmp_path)
    store.write("cd" * 16, b"x")

    assert store.delete("cd" * 16) is True
    assert store.delete("cd" * 16) is False
    assert not store.exists("cd" * 16)


def test_content_store_read_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        FileContentStore(tmp_path).read("ef" * 16)


@pytest.mark.parametrize("bad_hash", ["", "../etc", ".hidden", "a/b"])
def test_content_store_rejects_path_like_hashes(tmp_path, bad_hash):
    with pytest.raises(ValueError):
        FileContentStore(tmp_path).path_for(bad_hash)
