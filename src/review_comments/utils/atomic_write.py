"""Atomic file writes, so readers never observe a half-written store."""

import os
import tempfile
from pathlib import Path


def atomic_write_text(content: str, target_path: str | Path) -> None:
    """Write text content to target_path atomically.

    Uses temp file + rename pattern:
    1. Write to a temporary file in the same directory as the target
    2. Rename the temp file over the target (atomic on the same filesystem)
    3. Remove the temp file on any failure

    Args:
        content: Text content to write (a trailing newline is added if missing)
        target_path: Destination file path

    Raises:
        OSError: If write or rename fails
    """
    target_path = Path(target_path)
    dir_path = target_path.parent
    dir_path.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=dir_path, prefix=".tmp_", suffix=target_path.suffix)

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            if not content.endswith("\n"):
                f.write("\n")

        # rw-r--r--
        os.chmod(temp_path, 0o644)

        os.replace(temp_path, target_path)

    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass  # Temp file may already be gone
        raise
