"""Unit tests for upload folder layout"""

from unittest.mock import patch

import pytest

from filevault.exceptions import StorageError
from filevault.models.file_record import FileRecord
from filevault.services.storage_organizer import build_stored_filename, move_file, remove_if_empty


class TestNaming:
    """Test stored filename construction"""

    def test_extension_is_lowercased(self):
        assert build_stored_filename("u1", "abc", "Holiday.JPG") == "u1_abc.jpg"

    def test_name_without_extension(self):
        assert build_stored_filename("u1", "abc", "README") == "u1_abc"

    def test_only_last_suffix_is_kept(self):
        assert build_stored_filename("u1", "abc", "backup.tar.gz") == "u1_abc.gz"


class TestOrganize:
    """Test moving uploads into their folders"""

    def test_upload_lands_in_own_folder(self, organizer, repository, make_file, storage_root):
        path = make_file("notes.txt", b"data")
        record = organizer.organize(
            path, FileRecord(original_name="notes.txt", mimetype="text/plain", size=4, owner_id="u1")
        )

        stored = repository.get(record.id)
        assert stored.stored_filename == f"u1_{record.id}.txt"
        assert stored.original_size == 4
        assert (storage_root / record.folder_id / stored.stored_filename).read_bytes() == b"data"
        assert not path.exists()

    def test_each_upload_gets_a_distinct_folder(self, stored_record):
        first = stored_record("a.txt")
        second = stored_record("b.txt")
        assert first.folder_id != second.folder_id

    def test_failed_move_rolls_back_record(self, organizer, repository, make_file, storage_root):
        path = make_file("notes.txt", b"data")

        with patch("filevault.services.storage_organizer.move_file", side_effect=OSError("read-only")):
            with pytest.raises(StorageError):
                organizer.organize(
                    path, FileRecord(original_name="notes.txt", mimetype="text/plain", size=4, owner_id="u1")
                )

        assert path.exists()
        assert repository.find_by_owner("u1") == []
        assert list(storage_root.iterdir()) == []

    def test_folder_swept_before_move_is_recreated(self, organizer, repository, make_file):
        path = make_file("notes.txt", b"data")
        calls = []

        def swept_then_move(source, destination):
            calls.append(destination)
            if len(calls) == 1:
                destination.parent.rmdir()
            return move_file(source, destination)

        with patch("filevault.services.storage_organizer.move_file", side_effect=swept_then_move):
            record = organizer.organize(
                path, FileRecord(original_name="notes.txt", mimetype="text/plain", size=4, owner_id="u1")
            )

        assert len(calls) == 2
        assert organizer.resolve_path(record).read_bytes() == b"data"
        assert not path.exists()

    def test_folder_does_not_exist_before_record(self, organizer, repository, make_file, storage_root):
        path = make_file("notes.txt", b"data")

        with patch.object(repository, "create", side_effect=RuntimeError("db gone")):
            with pytest.raises(StorageError):
                organizer.organize(
                    path, FileRecord(original_name="notes.txt", mimetype="text/plain", size=4, owner_id="u1")
                )

        assert list(storage_root.iterdir()) == []
        assert path.exists()

    def test_failed_filename_update_restores_temp_file(self, organizer, repository, make_file):
        path = make_file("notes.txt", b"data")

        with patch.object(repository, "update", side_effect=RuntimeError("db gone")):
            with pytest.raises(StorageError):
                organizer.organize(
                    path, FileRecord(original_name="notes.txt", mimetype="text/plain", size=4, owner_id="u1")
                )

        assert path.read_bytes() == b"data"
        assert repository.find_by_owner("u1") == []


class TestPaths:
    """Test path resolution for stored records"""

    def test_derivatives_share_the_folder(self, organizer, stored_record):
        record = stored_record("photo.jpg", b"x", mimetype="image/jpeg")
        paths = organizer.derivative_paths(record)

        assert paths["png"].name == f"user-1_{record.id}.png"
        assert paths["webp"].name == f"user-1_{record.id}.webp"
        assert paths["png"].parent == organizer.resolve_path(record).parent

    def test_readable_path_prefers_original(self, organizer, stored_record):
        record = stored_record("photo.jpg", b"x", mimetype="image/jpeg")
        organizer.derivative_paths(record)["webp"].write_bytes(b"w")

        assert organizer.readable_path(record) == organizer.resolve_path(record)

    def test_readable_path_falls_back_to_chosen_derivative(self, organizer, stored_record):
        record = stored_record("photo.jpg", b"x", mimetype="image/jpeg", compression_type="png")
        paths = organizer.derivative_paths(record)
        paths["png"].write_bytes(b"p")
        paths["webp"].write_bytes(b"w")
        organizer.resolve_path(record).unlink()

        assert organizer.readable_path(record) == paths["png"]

        paths["png"].unlink()
        assert organizer.readable_path(record) == paths["webp"]

    def test_readable_path_none_when_nothing_left(self, organizer, stored_record):
        record = stored_record("photo.jpg", b"x", mimetype="image/jpeg")
        organizer.resolve_path(record).unlink()

        assert organizer.readable_path(record) is None

    def test_sidecar_sits_next_to_original(self, organizer, stored_record):
        record = stored_record("log.txt")
        assert organizer.sidecar_path(record).name == f"user-1_{record.id}.txt.gz"


def test_remove_if_empty(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    full = tmp_path / "full"
    full.mkdir()
    (full / "file").write_text("x")

    assert remove_if_empty(empty) is True
    assert remove_if_empty(full) is False
    assert remove_if_empty(tmp_path / "missing") is False
    assert not empty.exists()
    assert full.exists()
