# dirmap/utils/hashing.py
import hashlib
from pathlib import Path


class ContentHasher:
    """md5 digests used as staleness signals only."""

    @staticmethod
    def hash_content(content: str) -> str:
        return hashlib.md5(content.encode("utf-8", errors="surrogateescape")).hexdigest()

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hashlib.md5(data).hexdigest()

    @staticmethod
    def hash_file(path: Path) -> str:
        hasher = hashlib.md5()
        try:
            with Path(path).open("rb") as f:
                for chunk in iter(lambda: f.read(8192), b""):
                    hasher.update(chunk)
            return hasher.hexdigest()
        except (PermissionError, OSError):
            return "access_denied"
