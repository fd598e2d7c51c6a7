"""
Advisory single-writer lock over a Terraform workspace.
"""

import fcntl
import os
from pathlib import Path

from .exceptions import StateLockError


class WorkspaceLock:
    """Holds an exclusive flock on a lock file for the duration of a block.

    The lock is advisory and non-blocking: a second writer fails
    immediately with StateLockError instead of queueing behind the first.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            raise StateLockError(f"Lock {self.path} is already held by this process")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = os.read(fd, 64).decode(errors="replace").strip() or "unknown"
            os.close(fd)
            raise StateLockError(
                f"Workspace is locked by another lampstack process (pid {holder}): {self.path}"
            )

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "WorkspaceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
