"""
Image Store

Durable storage for uploaded originals. Bytes go to UPLOADS_DIR, metadata
to the record store. Files are named

    {principal_id}_{epoch_ms}_{safe_original_name}

and written exclusively, so an existing original is never overwritten.
"""

import re
import threading
import time
from pathlib import Path
from typing import BinaryIO, Optional

from config import UPLOADS_DIR, MAX_UPLOAD_BYTES
from errors import ImageDecodeFailed, InvalidUpload
from record_store import RecordStore, StoredImage
from structured_logging import get_logger

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = re.compile(r"\.(jpg|jpeg|png|gif|dicom)$", re.IGNORECASE)

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "dicom": "application/dicom",
}

_timestamp_lock = threading.Lock()
_last_timestamp = 0


def next_timestamp() -> int:
    """Epoch milliseconds, strictly increasing within this process."""
    global _last_timestamp
    with _timestamp_lock:
        now = int(time.time() * 1000)
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp


def safe_name(original_name: str) -> str:
    name = Path(original_name.replace("\\", "/")).name
    return re.sub(r"[^A-Za-z0-9._-]", "_", name) or "upload"


def guess_mime(original_name: str) -> str:
    extension = original_name.rsplit(".", 1)[-1].lower()
    return MIME_TYPES.get(extension, "application/octet-stream")


class ImageStore:
    def __init__(self, store: RecordStore, root: Path = UPLOADS_DIR, max_bytes: int = MAX_UPLOAD_BYTES):
        self.store = store
        self.root = Path(root)
        self.max_bytes = max_bytes
        self.root.mkdir(parents=True, exist_ok=True)

    def validate(self, original_name: Optional[str], size: int) -> None:
        """Pre-write checks. Raises InvalidUpload."""
        if not original_name or not ALLOWED_EXTENSIONS.search(original_name):
            raise InvalidUpload(
                "Only image files (jpg, jpeg, png, gif, dicom) are allowed",
                original_name=original_name,
            )
        if size <= 0:
            raise InvalidUpload(f"File '{original_name}' is empty", original_name=original_name)
        if size > self.max_bytes:
            raise InvalidUpload(
                f"File '{original_name}' exceeds the {self.max_bytes // (1024 * 1024)}MB upload limit",
                original_name=original_name,
            )

    def put(self, principal_id: int, original_name: str, data: bytes, mime: Optional[str] = None) -> StoredImage:
        self.validate(original_name, len(data))

        filename = f"{principal_id}_{next_timestamp()}_{safe_name(original_name)}"
        path = self.root / filename
        with open(path, "xb") as f:
            f.write(data)

        try:
            image = self.store.add_image(
                principal_id=principal_id,
                storage_path=filename,
                original_name=original_name,
                size_bytes=len(data),
                mime=mime or guess_mime(original_name),
            )
        except Exception:
            path.unlink(missing_ok=True)
            raise

        logger.info(
            "Image stored",
            extra={"image_id": image.id, "storage_path": filename, "size_bytes": image.size_bytes},
        )
        return image

    def path_for(self, image: StoredImage) -> Path:
        return self.root / image.storage_path

    def _lookup(self, image_id: int) -> StoredImage:
        image = self.store.get_image(image_id)
        if image is None:
            raise ImageDecodeFailed(f"Image {image_id} does not exist", image_id=image_id)
        return image

    def open(self, image_id: int) -> BinaryIO:
        image = self._lookup(image_id)
        try:
            return open(self.path_for(image), "rb")
        except FileNotFoundError as e:
            raise ImageDecodeFailed(f"Original for image {image_id} is missing", image_id=image_id) from e

    def read_bytes(self, image_id: int) -> bytes:
        with self.open(image_id) as f:
            return f.read()

    def original_name(self, image_id: int) -> str:
        return self._lookup(image_id).original_name

    def delete(self, image_id: int) -> None:
        image = self.store.get_image(image_id)
        if image is None:
            return
        self.path_for(image).unlink(missing_ok=True)
        self.store.remove_image(image_id)
        logger.info("Image deleted", extra={"image_id": image_id})
