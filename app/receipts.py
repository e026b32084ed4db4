"""Receipt images: best-effort compression and a local object store."""

from __future__ import annotations

import datetime
import io
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Protocol

from PIL import Image, ImageOps

from database import DATA_DIR

logger = logging.getLogger(__name__)

RECEIPTS_DIR = DATA_DIR / "receipts"
RECEIPT_URL_PREFIX = "/receipts/"
RECEIPT_TARGET_BYTES = 30 * 1024
RECEIPT_MAX_DIMENSION = 1920
_JPEG_QUALITY_STEPS = (85, 70, 55, 40, 25)


@dataclass(frozen=True)
class ReceiptImage:
    filename: str
    content_type: str
    data: bytes

    @property
    def extension(self) -> str:
        suffix = Path(self.filename or "").suffix.lstrip(".").lower()
        return suffix or "jpg"

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").lower().startswith("image/")


class ObjectStore(Protocol):
    def store(self, name: str, data: bytes, content_type: str) -> str: ...

    def remove(self, reference: str) -> None: ...


class ImageCompressor(Protocol):
    def __call__(self, image: ReceiptImage) -> ReceiptImage: ...


def compress_receipt_image(image: ReceiptImage) -> ReceiptImage:
    """Shrink a receipt photo towards ``RECEIPT_TARGET_BYTES``.

    Never raises: anything that goes wrong returns the original image so job
    completion can proceed.
    """
    if not image.is_image or not image.data:
        return image
    try:
        with Image.open(io.BytesIO(image.data)) as source:
            picture = ImageOps.exif_transpose(source)
            picture.thumbnail((RECEIPT_MAX_DIMENSION, RECEIPT_MAX_DIMENSION))
            if picture.mode not in ("RGB", "L"):
                picture = picture.convert("RGB")
            best: Optional[bytes] = None
            scale = 1.0
            while best is None or len(best) > RECEIPT_TARGET_BYTES:
                candidate = picture
                if scale < 1.0:
                    size = (max(1, int(picture.width * scale)), max(1, int(picture.height * scale)))
                    candidate = picture.resize(size)
                for quality in _JPEG_QUALITY_STEPS:
                    buffer = io.BytesIO()
                    candidate.save(buffer, format="JPEG", quality=quality, optimize=True)
                    best = buffer.getvalue()
                    if len(best) <= RECEIPT_TARGET_BYTES:
                        break
                if scale <= 0.25:
                    break
                scale /= 2
    except Exception as exc:  # noqa: BLE001
        logger.warning("Receipt compression failed; uploading original file instead: %s", exc)
        return image
    if best is None or len(best) >= len(image.data):
        return image
    stem = Path(image.filename or "receipt").stem or "receipt"
    return replace(image, filename=f"{stem}.jpg", content_type="image/jpeg", data=best)


def receipt_file_name(reference: Optional[str], prefix: str = RECEIPT_URL_PREFIX) -> Optional[str]:
    """Return the stored file name behind a public receipt reference, if it is one of ours."""
    if not reference:
        return None
    idx = reference.find(prefix)
    if idx == -1:
        return None
    name = reference[idx + len(prefix):]
    if not name or "/" in name or "\\" in name:
        return None
    return name


def receipt_object_name(job_id: int, image: ReceiptImage) -> str:
    stamp = int(datetime.datetime.now(datetime.timezone.utc).timestamp() * 1000)
    return f"{job_id}-{stamp}.{image.extension}"


class LocalReceiptStore:
    """Object store writing receipts under a directory and serving them by prefix."""

    def __init__(self, root: Optional[Path] = None, url_prefix: Optional[str] = None) -> None:
        self.root = Path(root or RECEIPTS_DIR)
        self.url_prefix = url_prefix or RECEIPT_URL_PREFIX

    def store(self, name: str, data: bytes, content_type: str) -> str:
        if not name or "/" in name or "\\" in name:
            raise ValueError(f"Invalid receipt object name '{name}'.")
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)
        return f"{self.url_prefix}{name}"

    def remove(self, reference: str) -> None:
        name = receipt_file_name(reference, self.url_prefix)
        if not name:
            return
        path = self.root / name
        if path.exists():
            path.unlink()

    def path_for(self, reference: str) -> Optional[Path]:
        name = receipt_file_name(reference, self.url_prefix)
        return self.root / name if name else None
