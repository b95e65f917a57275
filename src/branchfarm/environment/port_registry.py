"""
Port registry shared by every branchfarm invocation on this machine.

Bindings are kept in ``ports.tsv`` (one ``key<TAB>port`` per line) so they
survive restarts and stay human-editable. Every mutation runs inside one
critical section guarded by an in-process mutex and an exclusive ``flock`` on
the sibling ``ports.lock`` file, so two CLI processes serialize as well as two
threads.
"""

import fcntl
import logging
import os
import socket
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Optional

from ..models import ResourceExhausted

logger = logging.getLogger(__name__)

REGISTRY_FILE = "ports.tsv"
LOCK_FILE = "ports.lock"

_process_locks: Dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock(path: Path) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(str(path), threading.Lock())


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether something on the local host accepts connections on a port."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1)
            return sock.connect_ex((host, port)) == 0
    except OSError as e:
        logger.debug(f"Port probe for {port} failed: {e}")
        return False


class PortRegistry:
    """Persistent mapping from allocation key (``project:slug``) to port."""

    def __init__(
        self,
        state_dir: Path,
        dry_run: bool = False,
        port_in_use: Callable[[int], bool] = is_port_in_use,
    ):
        """
        Initialize the registry.

        Args:
            state_dir: Directory holding ports.tsv and ports.lock
            dry_run: Compute mutations but never write them
            port_in_use: Liveness probe used to skip ports taken outside branchfarm
        """
        self.state_dir = Path(state_dir)
        self.registry_file = self.state_dir / REGISTRY_FILE
        self.lock_file = self.state_dir / LOCK_FILE
        self.dry_run = dry_run
        self._port_in_use = port_in_use

        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.registry_file.touch(exist_ok=True)

    def allocate(self, key: str, port_range: Iterable[int]) -> int:
        """
        Return the port bound to ``key``, binding the first free one if needed.

        An existing binding is returned unchanged even when it lies outside
        ``port_range``. Otherwise ports are scanned in ascending order and the
        first one neither bound to another key nor accepting connections is
        bound and persisted.

        Raises:
            ResourceExhausted: If no port in the range is free
        """
        with self._transaction() as entries:
            existing = entries.get(key)
            if existing is not None:
                logger.debug(f"Reusing port {existing} for {key}")
                return existing

            taken = set(entries.values())
            candidates = list(port_range)
            for port in sorted(candidates):
                if port in taken:
                    continue
                if self._port_in_use(port):
                    logger.debug(f"Port {port} is in use outside branchfarm, skipping")
                    continue
                entries[key] = port
                logger.info(f"Allocated port {port} for {key}")
                return port

            raise ResourceExhausted(f"No free port available in range {_describe_range(candidates)}")

    def register(self, key: str, port: int) -> int:
        """Bind ``key`` to ``port`` unconditionally, replacing only this key's binding."""
        with self._transaction() as entries:
            previous = entries.get(key)
            entries[key] = int(port)
        if previous is not None and previous != port:
            logger.info(f"Rebound {key} from port {previous} to {port}")
        else:
            logger.info(f"Registered port {port} for {key}")
        return int(port)

    def remove(self, key: str) -> Optional[int]:
        """Delete the binding for ``key``; returns the released port or None."""
        with self._transaction() as entries:
            port = entries.pop(key, None)
        if port is None:
            logger.debug(f"No port registered for {key}")
        else:
            logger.info(f"Released port {port} from {key}")
        return port

    def get(self, key: str) -> Optional[int]:
        return self.entries().get(key)

    def entries(self) -> Dict[str, int]:
        """Snapshot of all bindings, read without taking the lock."""
        return self._read_entries()

    def all_for_project(self, project_key: str) -> Dict[str, int]:
        prefix = f"{project_key}:"
        return {key: port for key, port in self.entries().items() if key.startswith(prefix)}

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, int]]:
        """
        Exclusive read-modify-write over the registry file.

        Yields the freshly loaded snapshot; if the block completes, the
        snapshot is written back before the lock is released.
        """
        with _process_lock(self.lock_file):
            with open(self.lock_file, "a") as lock:
                fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
                try:
                    entries = self._read_entries()
                    before = dict(entries)
                    yield entries
                    if entries != before:
                        self._write_entries(entries)
                finally:
                    fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _read_entries(self) -> Dict[str, int]:
        if not self.registry_file.exists():
            return {}

        entries: Dict[str, int] = {}
        with open(self.registry_file, "r") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                parts = line.split("\t")
                if len(parts) < 2:
                    logger.warning(f"Ignoring malformed line {line_number} in {self.registry_file}")
                    continue
                try:
                    entries[parts[0]] = int(parts[1])
                except ValueError:
                    logger.warning(f"Ignoring invalid port on line {line_number} in {self.registry_file}")
        return entries

    def _write_entries(self, entries: Dict[str, int]) -> None:
        if self.dry_run:
            logger.info(f"[dry-run] Would write {len(entries)} port binding(s) to {self.registry_file}")
            return

        content = "".join(f"{key}\t{port}\n" for key, port in entries.items())
        fd, temp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".ports.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.registry_file)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise


def _describe_range(ports: list) -> str:
    if not ports:
        return "(empty)"
    return f"{min(ports)}..{max(ports)}"
