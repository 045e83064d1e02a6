"""
Liveness checkers for the deduplication guard.

A LivenessChecker answers two questions for the guard: "who am I?" (the
fingerprint written into every audit row) and "may this key proceed?".
Two strategies are provided:

- AdvisoryLockChecker (default): holds a non-blocking exclusive flock on a
  per-key lock file. The OS drops the lock when the holder dies, so no scan
  of older rows is needed and crashed workers never block a key.
- ProcessFingerprintChecker: records (pid, start time) and, for each open
  row with the same key, asks /proc whether that exact process still runs.
  The start time guards against PID reuse. Only meaningful when every
  worker shares one process table.
"""

import fcntl
import hashlib
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import NamedTuple

from responsekit.config.logging import get_logger

logger = get_logger(__name__)


class LivenessUnavailableError(RuntimeError):
    """Raised when the host process table cannot be inspected."""


class ProcessFingerprint(NamedTuple):
    pid: int
    start_time: int | None


class KeyLock(ABC):
    """A held per-key lock. release() must be idempotent."""

    @abstractmethod
    def release(self) -> None:
        ...


class _NoLock(KeyLock):
    def release(self) -> None:
        pass


class FileKeyLock(KeyLock):
    """An flock held on an open lock file descriptor."""

    def __init__(self, path: Path, fd: int):
        self.path = path
        self._fd: int | None = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            # Unlink while still holding the lock; acquirers re-check the inode.
            self.path.unlink(missing_ok=True)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released lock {self.path.name}")


def parse_start_time(stat: str) -> int:
    """
    Extract starttime (field 22) from the contents of /proc/<pid>/stat.

    The command name (field 2) may contain spaces and parentheses, so fields
    are counted from the last ')'.

    Raises:
        ValueError: If the line is malformed
    """
    try:
        # Fields after "(comm)" start at field 3 (state).
        fields = stat[stat.rindex(")") + 2:].split()
        return int(fields[19])
    except IndexError as e:
        raise ValueError(f"Truncated stat line: {stat!r}") from e


def read_process_start_time(pid: int) -> int:
    """
    Return a process start time in clock ticks since boot.

    Raises:
        LivenessUnavailableError: If the stat file cannot be read or parsed
    """
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        stat = stat_path.read_text()
    except OSError as e:
        raise LivenessUnavailableError(f"Cannot read {stat_path}: {e}") from e

    try:
        return parse_start_time(stat)
    except ValueError as e:
        raise LivenessUnavailableError(f"Malformed {stat_path}: {e}") from e


class LivenessChecker(ABC):
    """
    Strategy used by the guard to decide whether a key may proceed.

    Attributes:
        requires_scan: True if the guard must check open audit rows for the
                       key (fingerprint strategy); False if holding the key
                       lock is sufficient (lock strategy)
    """

    requires_scan: bool = False

    @abstractmethod
    def current_fingerprint(self) -> ProcessFingerprint:
        """
        Fingerprint of the current process.

        Raises:
            LivenessUnavailableError: If the strategy cannot fingerprint this host
        """

    @abstractmethod
    def is_alive(self, fingerprint: ProcessFingerprint) -> bool:
        """Whether the process identified by fingerprint is still running."""

    @abstractmethod
    def try_acquire(self, correlation_key: str) -> KeyLock | None:
        """Acquire the key without blocking. Returns None if another live holder has it."""


class AdvisoryLockChecker(LivenessChecker):
    """
    Lock-based liveness: one flock per correlation key.

    flock locks belong to an open file description, so two attempts in the
    same process exclude each other just like two separate workers do.

    Args:
        lock_dir: Directory for lock files. Created on first use.
    """

    requires_scan = False

    def __init__(self, lock_dir: Path | str):
        self.lock_dir = Path(lock_dir)

    def lock_path(self, correlation_key: str) -> Path:
        digest = hashlib.sha256(correlation_key.encode("utf-8")).hexdigest()
        return self.lock_dir / f"{digest}.lock"

    def current_fingerprint(self) -> ProcessFingerprint:
        pid = os.getpid()
        # Start time is informational here; the lock itself is the liveness proof.
        try:
            start_time = read_process_start_time(pid)
        except LivenessUnavailableError:
            start_time = None
        return ProcessFingerprint(pid, start_time)

    def is_alive(self, fingerprint: ProcessFingerprint) -> bool:
        try:
            os.kill(fingerprint.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass

        if fingerprint.start_time is None:
            return True
        try:
            return read_process_start_time(fingerprint.pid) == fingerprint.start_time
        except LivenessUnavailableError:
            # Without /proc the pid check is all there is; with it, the process just exited.
            return not Path("/proc").is_dir()

    def try_acquire(self, correlation_key: str) -> KeyLock | None:
        """
        Lock files are removed on release. A lock taken on a file that was
        unlinked meanwhile protects nothing, so acquisition retries until the
        locked descriptor and the path name the same inode.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(correlation_key)

        while True:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                logger.debug(f"Lock {path.name} is held for key '{correlation_key}'")
                return None
            except OSError:
                os.close(fd)
                raise

            try:
                current = os.stat(path)
            except FileNotFoundError:
                current = None
            if current is not None and current.st_ino == os.fstat(fd).st_ino:
                break
            os.close(fd)

        # Holder pid for operators inspecting the lock directory.
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug(f"Acquired lock {path.name} for key '{correlation_key}'")
        return FileKeyLock(path, fd)

    def prune(self) -> int:
        """
        Remove lock files left by holders that died without releasing.

        Returns:
            Number of files removed
        """
        if not self.lock_dir.is_dir():
            return 0

        removed = 0
        for path in self.lock_dir.glob("*.lock"):
            try:
                fd = os.open(path, os.O_RDWR)
            except FileNotFoundError:
                continue
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                continue
            try:
                if os.stat(path).st_ino == os.fstat(fd).st_ino:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                pass
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

        if removed:
            logger.info(f"Pruned {removed} stale lock file(s) from {self.lock_dir}")
        return removed


class ProcessFingerprintChecker(LivenessChecker):
    """Fingerprint-based liveness using the Linux /proc filesystem."""

    requires_scan = True

    def current_fingerprint(self) -> ProcessFingerprint:
        pid = os.getpid()
        return ProcessFingerprint(pid, read_process_start_time(pid))

    def is_alive(self, fingerprint: ProcessFingerprint) -> bool:
        if not Path(f"/proc/{fingerprint.pid}").exists():
            return False
        try:
            return read_process_start_time(fingerprint.pid) == fingerprint.start_time
        except LivenessUnavailableError:
            # The process exited between the two checks.
            return False

    def try_acquire(self, correlation_key: str) -> KeyLock | None:
        return _NoLock()


def build_liveness_checker(strategy: str, lock_dir: Path | str) -> LivenessChecker:
    """Create the checker named by GuardSettings.strategy."""
    if strategy == "lock":
        return AdvisoryLockChecker(lock_dir)
    if strategy == "fingerprint":
        return ProcessFingerprintChecker()
    raise ValueError(f"Unknown liveness strategy: {strategy!r}")
