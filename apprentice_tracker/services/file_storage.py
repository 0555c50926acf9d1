"""On-disk storage for uploaded document bytes."""
import logging
import re
import uuid
from pathlib import Path

from apprentice_tracker.services.errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    """Strip directories and anything that is not a plain filename character."""
    base = Path(name or "").name
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "upload"


class UploadStorage:
    """
    Writes each upload to `<root>/<uuid4>-<name>`.

    The uuid prefix keeps concurrent uploads with the same display name apart.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def save(self, name: str, content: bytes) -> str:
        path = self.root / f"{uuid.uuid4()}-{safe_filename(name)}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            logger.error(f"Failed to store upload {name!r}: {exc}")
            raise StorageError("Failed to store uploaded file") from exc
        return str(path)

    def read(self, path: str) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise StorageError("Stored document could not be read") from exc

    def delete(self, path: str) -> bool:
        """Remove stored bytes. A missing file is not an error."""
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.error(f"Failed to delete stored upload {path}: {exc}")
            raise StorageError("Failed to delete stored file") from exc
        return True
