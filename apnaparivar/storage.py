from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"jpeg", "jpg", "png", "gif", "webp"}
IMAGE_MIME_SUBTYPES = IMAGE_EXTENSIONS


def is_image(file: FileStorage) -> bool:
    name = (file.filename or "").lower()
    ext = name.rsplit(".", 1)[-1] if "." in name else ""
    mime = (file.mimetype or "").lower()
    subtype = mime.split("/", 1)[1] if mime.startswith("image/") else ""
    return ext in IMAGE_EXTENSIONS and subtype in IMAGE_MIME_SUBTYPES


@dataclass
class StoredFile:
    key: str
    filename: str
    mime_type: str
    size: int


@dataclass
class LocalStorage:
    """Files on local disk under `base_path/<folder>/`, served from /uploads."""

    base_path: Path

    def save(self, file: FileStorage, folder: str = "photos", max_bytes: int | None = None) -> StoredFile:
        original = secure_filename(file.filename or "") or "upload"
        ext = original.rsplit(".", 1)[-1].lower() if "." in original else "bin"
        filename = f"{folder.rstrip('s')}-{uuid.uuid4().hex}.{ext}"
        target_dir = self.base_path / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / filename

        data = file.read()
        if max_bytes is not None and len(data) > max_bytes:
            raise ValueError(f"{original} is larger than {max_bytes} bytes")
        path.write_bytes(data)
        return StoredFile(key=f"{folder}/{filename}", filename=filename, mime_type=file.mimetype or "", size=len(data))

    def delete(self, key: str) -> bool:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            return False
        if path.exists():
            path.unlink()
            return True
        return False

    def public_url(self, key: str) -> str:
        return f"{current_app.config['BACKEND_URL']}/uploads/{key}"


def get_storage() -> LocalStorage:
    return LocalStorage(base_path=Path(current_app.config["UPLOAD_DIR"]))
