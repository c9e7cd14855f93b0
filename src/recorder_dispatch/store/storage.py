import os
import json
import fcntl
import logging
import time
import random
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    pass


class LocalCASKeyspace:
    """
    A file-backed keyspace shared by every process on one host.

    Entries live in a single versioned JSON document. Writers use optimistic
    concurrency: read the document and its version, apply a change, and
    compare-and-swap it back under an exclusive flock. Entries carry an
    optional `expires_at` and are treated as absent once it has passed, so
    leases expire without anyone deleting them.
    """
    def __init__(self, filename_base: str, clock: Callable[[], float] = time.time):
        self.data_file = f"{filename_base}.json"
        self.meta_file = f"{filename_base}.meta"
        self.lock_file = f"{filename_base}.lock"
        self.clock = clock

        if not os.path.exists(self.meta_file):
            self._write_meta(0)
        if not os.path.exists(self.data_file):
            self._write_data({"entries": {}})

    def _write_meta(self, version):
        tmp_meta = f"{self.meta_file}.tmp.{os.getpid()}"
        with open(tmp_meta, 'w') as f:
            json.dump({"version": version}, f)
        os.replace(tmp_meta, self.meta_file)

    def _write_data(self, data):
        tmp_data = f"{self.data_file}.tmp.{os.getpid()}"
        with open(tmp_data, 'w') as f:
            json.dump(data, f)
        os.replace(tmp_data, self.data_file)

    def _read_version(self) -> int:
        try:
            with open(self.meta_file, 'r') as f:
                return json.load(f).get("version", 0)
        except (FileNotFoundError, json.JSONDecodeError):
            return 0

    def read(self) -> Tuple[Dict[str, dict], int]:
        """
        Read the live entries and the current version.
        Expired entries are left out of the returned dict.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_SH)
            try:
                version = self._read_version()
                try:
                    with open(self.data_file, 'r') as f:
                        entries = json.load(f).get("entries", {})
                except (FileNotFoundError, json.JSONDecodeError):
                    entries = {}
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        now = self.clock()
        live = {
            key: entry for key, entry in entries.items()
            if entry.get("expires_at") is None or entry["expires_at"] > now
        }
        return live, version

    def cas_write(self, entries: Dict[str, dict], expected_version: int) -> Tuple[bool, int]:
        """
        Write entries only if the stored version still equals expected_version.
        Returns (True, new_version) on success, (False, current_version) on conflict.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                current_version = self._read_version()
                if current_version != expected_version:
                    return False, current_version

                new_version = current_version + 1
                self._write_data({"entries": entries})
                self._write_meta(new_version)
                return True, new_version
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def update_with_retry(self, update_fn: Callable[[Dict[str, dict], float], Any],
                          max_retries=10, base_delay=0.01) -> Any:
        """
        Apply update_fn(entries, now) with CAS retries, exponential backoff
        and jitter. update_fn mutates entries in place and its return value is
        passed back. If update_fn raises, nothing is written.
        """
        for attempt in range(max_retries):
            entries, version = self.read()
            result = update_fn(entries, self.clock())

            ok, new_version = self.cas_write(entries, version)
            if ok:
                logger.debug(f"Updated keyspace to version {new_version} on attempt {attempt + 1}")
                return result

            delay = base_delay * (2 ** attempt) + random.uniform(0, 0.05)
            logger.warning(f"Conflict on version {version}. Retrying in {delay:.3f}s (Attempt {attempt + 1}/{max_retries})")
            time.sleep(delay)

        raise ConflictError(f"Failed to update after {max_retries} attempts.")
