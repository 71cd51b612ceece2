from pathlib import Path

import pytest

from feedengine.blobstore import delete_blob, ensure_blob_root, load_json, resolve_blob_root, store_json


def test_resolve_blob_root_accepts_strings(tmp_path: Path) -> None:
    assert resolve_blob_root(str(tmp_path)) == tmp_path


def test_ensure_blob_root_creates_the_directory(tmp_path: Path) -> None:
    root = ensure_blob_root(tmp_path / "nested" / "blobs")

    assert root.is_dir()


def test_store_json_creates_a_missing_root(tmp_path: Path) -> None:
    root = tmp_path / "fresh"

    written = store_json("feeds/entry.json", {"title": "Café"}, blob_root=root)

    assert written == root / "feeds" / "entry.json"
    assert load_json("feeds/entry.json", blob_root=root) == {"title": "Café"}
    assert list((root / "feeds").iterdir()) == [written]


def test_load_json_rejects_invalid_documents(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text("{nope", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON"):
        load_json("broken.json", blob_root=tmp_path)


def test_delete_blob_ignores_missing_files(tmp_path: Path) -> None:
    store_json("entry.json", [], blob_root=tmp_path)

    delete_blob("entry.json", blob_root=tmp_path)
    delete_blob("entry.json", blob_root=tmp_path)

    with pytest.raises(FileNotFoundError):
        load_json("entry.json", blob_root=tmp_path)
