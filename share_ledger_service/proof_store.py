"""
Payment proof artifacts on the local filesystem.

A handle is an opaque file name; the content type is kept in a sidecar file
next to the artifact.
"""
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

from common.settings import settings
from share_ledger_service.errors import InvalidInput

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp", "application/pdf"}
MAX_PROOF_BYTES = 5 * 1024 * 1024


class LocalProofStore:
    def __init__(self, root: str = None):
        self.root = Path(root or settings.proof_storage_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, handle: str) -> Path:
        path = (self.root / handle).resolve()
        if path.parent != self.root.resolve():
            raise InvalidInput("Invalid proof handle", field="handle")
        return path

    def save(self, data: bytes, content_type: Optional[str], filename: Optional[str] = None) -> str:
        content_type = content_type or mimetypes.guess_type(filename or "")[0]
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise InvalidInput("Only image and PDF files are accepted", field="paymentProof")
        if not data:
            raise InvalidInput("Payment proof is empty", field="paymentProof")
        if len(data) > MAX_PROOF_BYTES:
            raise InvalidInput("Payment proof exceeds 5MB", field="paymentProof")

        suffix = mimetypes.guess_extension(content_type) or ""
        handle = f"{uuid.uuid4().hex}{suffix}"
        path = self._path(handle)
        path.write_bytes(data)
        path.with_name(handle + ".type").write_text(content_type)
        logger.info(f"Stored payment proof {handle} ({len(data)} bytes)")
        return handle

    def open(self, handle: str) -> Tuple[BinaryIO, str]:
        path = self._path(handle)
        if not path.is_file():
            raise FileNotFoundError(handle)
        type_file = path.with_name(handle + ".type")
        content_type = type_file.read_text() if type_file.exists() else "application/octet-stream"
        return path.open("rb"), content_type

    def delete(self, handle: str) -> bool:
        path = self._path(handle)
        removed = False
        for target in (path, path.with_name(handle + ".type")):
            if target.exists():
                target.unlink()
                removed = True
        if removed:
            logger.info(f"Deleted payment proof {handle}")
        return removed
