"""Utilities for the local blobstore that backs the persisted feed cache."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

_PACKAGE_DIR = Path(__file__).resolve().parent

#: Name of the directory under :mod:`feedengine.blobstore` that contains the data.
DEFAULT_BLOB_SUBDIR = "data"

#: Default location where cache artefacts are stored.
DEFAULT_BLOB_ROOT = _PACKAGE_DIR / DEFAULT_BLOB_SUBDIR


_Pathish = Union[str, Path]


def resolve_blob_root(blob_root: _Pathish | None = None) -> Path:
    """Return a :class:`Path` pointing at the blob root.

    ``blob_root`` may be either a string or :class:`Path`.  When ``None`` is
    provided, :data:`DEFAULT_BLOB_ROOT` is returned.  The path is not created on
    disk; callers can use :func:`ensure_blob_root` if they need to create it.
    """

    if blob_root is None:
        return DEFAULT_BLOB_ROOT
    if isinstance(blob_root, Path):
        return blob_root
    return Path(blob_root)


def ensure_blob_root(blob_root: _Pathish | None = None) -> Path:
    """Ensure the blob root exists and return it as a :class:`Path`."""

    root = resolve_blob_root(blob_root)
    root.mkdir(parents=True, exist_ok=True)
    return root


def store_json(path: str, payload: Any, *, blob_root: _Pathish | None = None) -> Path:
    """Write ``payload`` as JSON below the blob root, replacing any previous file atomically."""

    full_path = ensure_blob_root(blob_root) / path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file:
            json.dump(payload, file, ensure_ascii=False, indent=2)
        os.replace(tmp_name, full_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return full_path


def load_json(path: str, *, blob_root: _Pathish | None = None) -> Any:
    """Read a JSON document below the blob root.

    Raises :class:`FileNotFoundError` when missing and :class:`ValueError` when
    the file is not valid JSON.
    """

    full_path = resolve_blob_root(blob_root) / path
    with full_path.open("r", encoding="utf-8") as file:
        try:
            return json.load(file)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in blob {full_path}") from exc


def delete_blob(path: str, *, blob_root: _Pathish | None = None) -> None:
    (resolve_blob_root(blob_root) / path).unlink(missing_ok=True)


__all__ = [
    "DEFAULT_BLOB_ROOT",
    "DEFAULT_BLOB_SUBDIR",
    "delete_blob",
    "ensure_blob_root",
    "load_json",
    "resolve_blob_root",
    "store_json",
]
