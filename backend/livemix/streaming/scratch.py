"""Scratch directory for ephemeral audio artifacts (capture files, placeholders)."""
import logging
import os
import uuid

from livemix.config import settings
from livemix.core.exceptions import CleanupError

logger = logging.getLogger(__name__)


def ensure_scratch_dir(base_dir: str | None = None) -> str:
    scratch_dir = base_dir or settings.SCRATCH_DIR
    os.makedirs(scratch_dir, exist_ok=True)
    return scratch_dir


def scratch_path(prefix: str, ext: str, base_dir: str | None = None) -> str:
    """Return a fresh, unused path inside the scratch directory."""
    scratch_dir = ensure_scratch_dir(base_dir)
    if not ext.startswith("."):
        ext = "." + ext
    return os.path.join(scratch_dir, f"{prefix}-{uuid.uuid4().hex[:12]}{ext}")


def remove_scratch_file(path: str | None) -> None:
    """Delete a scratch file if it exists. Raises CleanupError on failure."""
    if not path or not os.path.exists(path):
        return
    try:
        os.unlink(path)
    except OSError as e:
        raise CleanupError(f"Could not delete {path}: {e}") from e
    logger.debug("Removed scratch file %s", path)


def file_ready(path: str) -> bool:
    """A capture/placeholder file counts as ready once it exists with data."""
    try:
        return os.path.getsize(path) > 0
    except OSError:
        return False
