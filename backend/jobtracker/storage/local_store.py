"""
Local filesystem storage.

Writes attachment bytes under the configured uploads directory and exposes
them under a relative URL namespace (default /uploads/<filename>). Used when
no remote backend is configured and as the last step of the fallback chain.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from jobtracker.storage.outcomes import StoredObject

logger = logging.getLogger(__name__)


def safe_filename(filename: str) -> str:
    """
    Reduce a client-supplied filename to a single path segment.

    Raises:
        ValueError: If nothing usable remains
    """
    name = os.path.basename((filename or "").replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        raise ValueError(f"Invalid filename: {filename!r}")
    return name


class LocalFileStore:
    """Reads and writes attachment bytes in a local directory."""

    def __init__(self, uploads_dir: str, url_prefix: str = "/uploads"):
        self.root = Path(uploads_dir)
        self.url_prefix = "/" + url_prefix.strip("/")

    @property
    def key_prefix(self) -> str:
        return self.url_prefix.lstrip("/")

    def save(self, filename: str, data: bytes) -> StoredObject:
        name = safe_filename(filename)
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / name
        path.write_bytes(data)
        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return StoredObject(
            url=f"{self.url_prefix}/{name}",
            storage_key=f"{self.key_prefix}/{name}",
            size=len(data),
        )

    def url_for(self, filename: str) -> str:
        return f"{self.url_prefix}/{safe_filename(filename)}"

    def key_for(self, filename: str) -> str:
        return f"{self.key_prefix}/{safe_filename(filename)}"

    def owns_url(self, url: Optional[str]) -> bool:
        """True if the URL lives in the local uploads namespace."""
        return bool(url) and url.startswith(self.url_prefix + "/")

    def owns_key(self, storage_key: Optional[str]) -> bool:
        return bool(storage_key) and storage_key.startswith(self.key_prefix + "/")

    def resolve(self, url: Optional[str] = None, storage_key: Optional[str] = None) -> Optional[Path]:
        """
        Map a local URL or storage key back to a path inside the uploads dir.

        Returns None when the locator is not local or escapes the directory.
        """
        if self.owns_url(url):
            relative = url[len(self.url_prefix) + 1:]
        elif self.owns_key(storage_key):
            relative = storage_key[len(self.key_prefix) + 1:]
        else:
            return None

        root = self.root.resolve()
        path = (root / relative).resolve()
        if root != path.parent and root not in path.parents:
            logger.warning(f"Rejected local path outside uploads dir: {relative}")
            return None
        return path

    def delete(self, url: Optional[str] = None, storage_key: Optional[str] = None) -> bool:
        """Remove the file if present. Returns True only if a file was deleted."""
        path = self.resolve(url=url, storage_key=storage_key)
        if path is None or not path.is_file():
            return False
        path.unlink()
        logger.debug(f"Deleted local file {path}")
        return True
