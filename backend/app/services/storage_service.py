# backend/app/services/storage_service.py

import base64
import binascii
import re
import secrets
import time
from pathlib import Path
from typing import Optional

import requests

from app.core.config_loader import settings
from app.core.errors import StorageCopyError
from app.core.logger import get_logger

logger = get_logger("storage")

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)

EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

OWNER_RE = re.compile(r"[^A-Za-z0-9_-]")


class AssetStorage:
    """
    Local bucket for images, served by the app under /media.

    Provider image URLs expire after a while, so generated images are copied
    here; user uploads (data URLs) are written here too. Every failure is
    raised as StorageCopyError and callers decide the fallback.
    """

    def __init__(
        self,
        root: str = settings.MEDIA_ROOT,
        public_base_url: str = settings.PUBLIC_BASE_URL,
        timeout: float = settings.storage_copy_timeout,
    ):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout = timeout
        self.root.mkdir(parents=True, exist_ok=True)

    def _target(self, owner: Optional[str], extension: str) -> Path:
        folder = OWNER_RE.sub("", owner or "") or "anonymous"
        filename = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}{extension}"
        return self.root / folder / filename

    def _public_url(self, path: Path) -> str:
        relative = path.relative_to(self.root).as_posix()
        return f"{self.public_base_url}/media/{relative}"

    def _write(self, path: Path, payload: bytes) -> str:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
        except OSError as e:
            raise StorageCopyError(f"Could not write {path.name}: {e}") from e
        return self._public_url(path)

    def copy_remote_image(self, url: str, owner: Optional[str] = None) -> str:
        """Download `url` into the bucket and return its durable public URL."""
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise StorageCopyError(f"Download failed: {e}") from e

        if not response.content:
            raise StorageCopyError("Download returned an empty body")

        mime = (response.headers.get("Content-Type") or "image/png").split(";")[0].strip()
        public_url = self._write(self._target(owner, EXTENSIONS.get(mime, ".png")), response.content)
        logger.info("Copied provider image to %s", public_url)
        return public_url

    def store_data_url(self, data_url: str, owner: Optional[str] = None) -> str:
        """Decode a base64 data URL (user upload) into the bucket."""
        match = DATA_URL_RE.match(data_url or "")
        if not match:
            raise StorageCopyError("Not a base64 data URL")
        try:
            payload = base64.b64decode(match.group("data"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise StorageCopyError(f"Invalid base64 payload: {e}") from e

        extension = EXTENSIONS.get(match.group("mime"), ".png")
        return self._write(self._target(owner, extension), payload)
