from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "heic": "image/heic",
    "heif": "image/heif",
}
DEFAULT_MIME_TYPE = "image/jpeg"


def extension_of(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def guess_mime_type(image_ref: str) -> str:
    return MIME_TYPES.get(extension_of(image_ref), DEFAULT_MIME_TYPE)


@dataclass
class StoragePaths:
    root: Path

    def upload_dir(self) -> Path:
        return self.root

    def image_path(self, image_ref: str) -> Path:
        # References are bare filenames; anything else would escape the upload dir.
        if not image_ref or Path(image_ref).name != image_ref:
            raise ValueError(f"Invalid image reference: {image_ref!r}")
        return self.root / image_ref


class LocalImageStorage:
    """
    Stores uploaded page images as files under one directory and hands out
    opaque references (the generated filename).

    In `remote` mode the bytes still live on local disk, but `url_for`
    returns a URL under `public_base_url` (bucket or CDN fronting the same
    files) instead of the API's own `/uploads/` prefix.
    """

    def __init__(
        self,
        storage_paths: StoragePaths,
        mode: str = "local",
        public_base_url: Optional[str] = None,
        local_url_prefix: str = "/uploads",
    ):
        if mode not in ("local", "remote"):
            raise ValueError(f"Unknown storage mode: {mode}")
        if mode == "remote" and not public_base_url:
            raise ValueError("Remote storage mode requires a public base URL")
        self.paths = storage_paths
        self.mode = mode
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.local_url_prefix = local_url_prefix.rstrip("/")

    def ensure_base_dirs(self) -> None:
        self.paths.upload_dir().mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes, extension: str = "jpg") -> str:
        self.ensure_base_dirs()
        image_ref = f"{uuid.uuid4()}.{extension.lstrip('.').lower() or 'jpg'}"
        self.paths.image_path(image_ref).write_bytes(data)
        return image_ref

    def get(self, image_ref: str) -> bytes:
        path = self.paths.image_path(image_ref)
        if not path.exists():
            raise FileNotFoundError(f"Image not found at {path}")
        return path.read_bytes()

    def exists(self, image_ref: str) -> bool:
        return self.paths.image_path(image_ref).exists()

    def url_for(self, image_ref: str) -> str:
        if self.mode == "remote":
            return f"{self.public_base_url}/{image_ref}"
        return f"{self.local_url_prefix}/{image_ref}"

    def delete(self, image_ref: str) -> bool:
        path = self.paths.image_path(image_ref)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Deleted image %s", path)
        return True
