import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from config import get_settings
from errors import InternalError, NotFoundError, ValidationError
from models import Transaction

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {
    ".jpg": {"image/jpeg", "image/jpg", "image/pjpeg"},
    ".jpeg": {"image/jpeg", "image/jpg", "image/pjpeg"},
    ".png": {"image/png"},
    ".pdf": {"application/pdf"},
}

MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".pdf": "application/pdf",
}
INLINE_MEDIA_TYPES = {"image/jpeg", "image/png", "application/pdf"}
CHUNK_SIZE = 64 * 1024


def media_type_for(filename: str) -> str:
    return MEDIA_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def disposition_for(media_type: str, filename: str) -> str:
    kind = "inline" if media_type in INLINE_MEDIA_TYPES else "attachment"
    return f'{kind}; filename="{filename}"'


@dataclass(frozen=True)
class ReceiptFile:
    path: Path
    filename: str
    media_type: str
    size: int

    @property
    def content_disposition(self) -> str:
        return disposition_for(self.media_type, self.filename)


def iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk


class ReceiptStore:
    """Receipt files on local disk.

    A transaction only knows its receipt through ``receipt_path``, the file
    name relative to the upload directory.
    """

    def __init__(
        self, upload_dir: Optional[Path] = None, max_bytes: Optional[int] = None
    ) -> None:
        settings = get_settings()
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        self.max_bytes = max_bytes or settings.max_receipt_bytes

    def validate(self, filename: Optional[str], content_type: Optional[str]) -> str:
        extension = Path(filename or "").suffix.lower()
        allowed = ALLOWED_EXTENSIONS.get(extension)
        mime = (content_type or "").split(";")[0].strip().lower()
        if not allowed or mime not in allowed:
            raise ValidationError(
                "Only JPEG, PNG, and PDF files are allowed",
                title="Invalid receipt file",
            )
        return extension

    def save(
        self, filename: Optional[str], content_type: Optional[str], stream: BinaryIO
    ) -> str:
        extension = self.validate(filename, content_type)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        name = f"receipt-{int(time.time() * 1000)}-{os.urandom(6).hex()}{extension}"
        target = self.upload_dir / name

        written = 0
        try:
            with open(target, "wb") as out:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise ValidationError(
                            f"Receipt exceeds the {self.max_bytes // (1024 * 1024)}MB limit",
                            title="Receipt too large",
                        )
                    out.write(chunk)
        except ValidationError:
            target.unlink(missing_ok=True)
            raise
        except OSError as exc:
            target.unlink(missing_ok=True)
            logger.exception("receipt_write_failed: name=%s", name)
            raise InternalError("Failed to store receipt file") from exc

        logger.info("receipt_stored: name=%s bytes=%d", name, written)
        return name

    def path_for(self, receipt_path: str) -> Path:
        root = self.upload_dir.resolve()
        candidate = (root / receipt_path).resolve()
        if candidate.parent != root:
            raise NotFoundError(
                "The receipt file no longer exists on the server",
                title="Receipt file not found",
            )
        return candidate

    def remove(self, receipt_path: Optional[str]) -> None:
        if not receipt_path:
            return
        try:
            path = self.path_for(receipt_path)
        except NotFoundError:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("receipt_remove_failed: name=%s", receipt_path)
            return
        logger.info("receipt_removed: name=%s", receipt_path)

    def resolve(self, txn: Transaction) -> ReceiptFile:
        if not txn.receipt_path:
            logger.info("receipt_missing_association: transaction_id=%s", txn.id)
            raise NotFoundError(
                "No receipt file is associated with this expense",
                title="No receipt found",
            )
        path = self.path_for(txn.receipt_path)
        if not path.is_file():
            logger.warning(
                "receipt_missing_on_disk: transaction_id=%s name=%s",
                txn.id,
                txn.receipt_path,
            )
            raise NotFoundError(
                "The receipt file no longer exists on the server",
                title="Receipt file not found",
            )
        return ReceiptFile(
            path=path,
            filename=path.name,
            media_type=media_type_for(path.name),
            size=path.stat().st_size,
        )
