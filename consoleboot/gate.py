"""Run-once gate backed by a durable marker file."""

from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path

from consoleboot.models import InitState
from consoleboot.utils import ensure_directory, log


class CompletionMarker:
    """Single accessor for the persisted initialization state.

    The marker is only ever created, never removed; losing it causes the whole
    configuration to be applied again on the next start.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def state(self) -> InitState:
        if self.path.is_file():
            return InitState.INITIALIZED
        return InitState.UNINITIALIZED

    def is_initialized(self) -> bool:
        return self.state() is InitState.INITIALIZED

    def mark_initialized(self) -> None:
        if self.is_initialized():
            return
        ensure_directory(self.path.parent)
        stamp = f"Initialized on {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())}\n"
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(stamp)
                f.flush()
                os.fsync(f.fileno())
            # Shared volumes are often group-owned (arbitrary UID containers).
            tmp_path.chmod(0o664)
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        log("INFO", f"Marked VM as initialized ({self.path})")
