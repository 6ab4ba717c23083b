"""Per-machine locking for lxdbox operations.

Two invocations acting on the same machine would race on the remote
container and on the machine index, so every state-changing command holds an
exclusive ``flock`` on ``<state_dir>/machines/<name>/action.lock``. Locks of
different machines are independent.
"""
import fcntl
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator

from lxdbox.core.errors import LxdboxError
from lxdbox.core.logger import get_logger
from lxdbox.core.retry import DeadlineExceeded, poll_until

logger = get_logger(__name__)

RETRY_INTERVAL = 0.5


class LockError(LxdboxError):
    """Raised when a machine is locked by another lxdbox process."""

    template = (
        "Another lxdbox operation is in progress for machine '{machine_name}'.\n"
        "Lock held by PID {pid} since {since}\n"
        "Wait for it to finish, or remove {lock_file} if that process is gone."
    )


class MachineLock:
    """Exclusive lock on one machine of a project."""

    def __init__(self, machine_name: str, state_dir: Path, timeout: float = 0):
        """
        Args:
            machine_name: Machine the lock guards
            state_dir: Project state directory
            timeout: Seconds to keep trying before giving up (0 = one attempt)
        """
        self.machine_name = machine_name
        self.lock_file = Path(state_dir) / "machines" / machine_name / "action.lock"
        self.timeout = timeout
        self.lock_fd = None

    def acquire(self) -> bool:
        """Take the lock, writing our PID and start time into the lock file.

        Raises:
            LockError: Another process kept the lock for the whole timeout
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        # a+ so a waiting process can still read the holder's details
        self.lock_fd = open(self.lock_file, "a+")

        try:
            poll_until(self._try_lock, timeout=self.timeout, interval=RETRY_INTERVAL,
                       description=f"lock on {self.machine_name}")
        except DeadlineExceeded:
            holder = self.holder()
            self.lock_fd.close()
            self.lock_fd = None
            raise LockError(
                machine_name=self.machine_name,
                lock_file=self.lock_file,
                pid=holder["pid"],
                since=holder["since"],
            )

        self.lock_fd.seek(0)
        self.lock_fd.truncate()
        self.lock_fd.write(f"{os.getpid()}\n{datetime.now().isoformat(timespec='seconds')}\n")
        self.lock_fd.flush()
        logger.debug(f"Locked {self.machine_name} ({self.lock_file})")
        return True

    def _try_lock(self) -> bool:
        try:
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def release(self) -> None:
        """Drop the lock and remove the lock file; a no-op when not held."""
        if self.lock_fd is None:
            return

        fd, self.lock_fd = self.lock_fd, None
        self.lock_file.unlink(missing_ok=True)
        fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
        fd.close()
        logger.debug(f"Unlocked {self.machine_name}")

    def holder(self) -> Dict[str, str]:
        """PID and start time recorded by the current holder."""
        try:
            pid, since = self.lock_file.read_text().splitlines()[:2]
        except (OSError, ValueError):
            return {"pid": "unknown", "since": "unknown"}
        return {"pid": pid.strip(), "since": since.strip()}

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@contextmanager
def machine_lock(machine_name: str, state_dir: Path, timeout: float = 0) -> Iterator[MachineLock]:
    """Hold a machine's lock for the duration of the block.

    Raises:
        LockError: If the lock cannot be acquired
    """
    lock = MachineLock(machine_name, state_dir, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
