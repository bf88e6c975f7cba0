import threading
from dataclasses import dataclass, replace


__all__ = ["CacheEntry", "MetadataCache"]


@dataclass(frozen=True)
class CacheEntry:
    version: str | None = None
    devices: frozenset[str] | None = None


class MetadataCache:
    """
    Memoized results of read-only tool queries.

    Entries are keyed by the command string exactly as configured; two spellings of the path to
    the same executable get separate entries. Nothing is ever evicted, since the tool binary
    behind a command is not expected to change while the process is running.
    """

    def __init__(self):
        self._lock    = threading.Lock()
        self._entries = {}

    def get(self, command):
        with self._lock:
            return self._entries.get(command)

    def _update(self, command, **changes):
        with self._lock:
            entry = self._entries.get(command, CacheEntry())
            self._entries[command] = replace(entry, **changes)

    def store_version(self, command, version):
        self._update(command, version=version)

    def store_devices(self, command, devices):
        self._update(command, devices=frozenset(devices))

    def __contains__(self, command):
        with self._lock:
            return command in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)
