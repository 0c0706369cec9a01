"""
Content store collaborator.

A content store accepts a binary payload under a stable key and returns a
delivery URL. Delivery URLs end in "/public"; size variants ("thumb", "og",
"icon", "bg-desktop") are addressed by swapping that last segment.

exists() must be cheap: it is what makes migration idempotent.
"""

import hashlib
import logging
import os
import posixpath
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from .errors import ContentStoreError

logger = logging.getLogger(__name__)

PUBLIC_VARIANT = "public"
VARIANTS = ("public", "thumb", "og", "icon", "bg-desktop")

# Key length in hex chars of the URL digest
KEY_LENGTH = 32


def storage_key(resolved_url: str) -> str:
    """Stable key for a source URL: sha256 digest plus the original extension."""
    digest = hashlib.sha256(resolved_url.encode("utf-8")).hexdigest()[:KEY_LENGTH]
    ext = posixpath.splitext(urlsplit(resolved_url).path)[1].lower()
    return f"{digest}{ext}" if len(ext) <= 6 else digest


def variant_url(delivery_url: str, variant: str) -> str:
    """Swap the trailing /public segment of a delivery URL for another variant."""
    if variant not in VARIANTS:
        raise ValueError(f"Unknown delivery variant: {variant}")
    suffix = "/" + PUBLIC_VARIANT
    if delivery_url.endswith(suffix):
        return delivery_url[: -len(suffix)] + "/" + variant
    return delivery_url


class ContentStore(ABC):
    """Abstract content store."""

    @abstractmethod
    def exists(self, key: str) -> Optional[str]:
        """
        Return the delivery URL if the key is already stored, else None.
        """
        pass

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Store a payload and return its delivery URL.

        Raises:
            ContentStoreError: If the payload cannot be stored
        """
        pass


class LocalContentStore(ContentStore):
    """
    File-system content store.

    Payloads are written to <root>/<key> via a temp file + rename, so a
    concurrent reader never sees a partial file. Delivery URLs are
    <base_url>/<key>/public.
    """

    def __init__(self, root: Path, base_url: str = "/cdn"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if "/" in key or "\\" in key or key in ("", ".", ".."):
            raise ContentStoreError(key, "invalid key")
        return self.root / key

    def delivery_url(self, key: str) -> str:
        return f"{self.base_url}/{key}/{PUBLIC_VARIANT}"

    def exists(self, key: str) -> Optional[str]:
        return self.delivery_url(key) if self._path(key).is_file() else None

    def put(self, key: str, data: bytes, content_type: str) -> str:
        target = self._path(key)
        try:
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".upload-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, target)
        except OSError as e:
            raise ContentStoreError(key, str(e)) from e
        logger.debug(f"[ContentStore] Stored {key} ({len(data)} bytes, {content_type})")
        return self.delivery_url(key)

    def read(self, key: str) -> bytes:
        return self._path(key).read_bytes()
