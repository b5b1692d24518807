from pathlib import Path

import pytest

from app.config import settings
from app.storage import StorageError, blob_exists, get_blob, put_blob, safe_filename


def test_local_blob_round_trip() -> None:
    path = put_blob(settings=settings, path="/tenant-1/2024-00123_base.pdf", content=b"%PDF-1.7", content_type="application/pdf")

    assert path == "tenant-1/2024-00123_base.pdf"
    assert (Path(settings.storage_root) / path).is_file()
    assert get_blob(settings=settings, path=path) == b"%PDF-1.7"
    assert blob_exists(settings=settings, path=path) is True


def test_missing_blob_raises_and_reports_absent() -> None:
    with pytest.raises(StorageError, match="not found"):
        get_blob(settings=settings, path="tenant-1/missing.pdf")
    assert blob_exists(settings=settings, path="tenant-1/missing.pdf") is False
    assert blob_exists(settings=settings, path=None) is False


def test_relative_segments_are_rejected() -> None:
    with pytest.raises(StorageError, match="relative segments"):
        put_blob(settings=settings, path="tenant-1/../escape.txt", content=b"x", content_type="text/plain")


def test_unsupported_backend_is_rejected() -> None:
    settings.storage_backend = "gcs"
    with pytest.raises(StorageError, match="Unsupported STORAGE_BACKEND"):
        put_blob(settings=settings, path="a.txt", content=b"x", content_type="text/plain")


def test_safe_filename_replaces_unsafe_characters() -> None:
    assert safe_filename("../Q3 report (final).pdf") == "Q3_report__final_.pdf"
    assert safe_filename("...", fallback="document") == "document"
