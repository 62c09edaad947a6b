"""File storage for payment proof images."""

from __future__ import annotations

import re
from pathlib import Path
from uuid import uuid4

from .exceptions import ValidationError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LocalFileStorage:
    """Store uploaded files below ``root`` and hand back their path."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def save(self, filename: str, data: bytes) -> str:
        if not data:
            raise ValidationError("Uploaded file is empty.")
        stem = _UNSAFE_CHARS.sub("_", Path(filename or "").name).strip("._") or "upload"
        target = self.root / f"{uuid4().hex}-{stem}"
        self.root.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return str(target)

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def _resolve(self, path: str) -> Path:
        target = Path(path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValidationError("Path is outside the upload directory.")
        return target


__all__ = ["LocalFileStorage"]
