"""JSON document storage for medorders."""

import copy
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .config import get_settings
from .errors import DatabaseExistsError, InvalidSchemaVersionError

SCHEMA_VERSION = 1
DATA_FILE = "medorders.json"
LOCK_FILE = ".medorders.lock"

COLLECTIONS = (
    "users",
    "lab_profiles",
    "delivery_profiles",
    "products",
    "orders",
    "processed_events",
)

Documents = dict[str, dict[str, Any]]


class Database:
    """A single JSON file holding every collection, keyed by document id."""

    def __init__(self, data_dir: Path | None = None):
        """
        Initialize Database.

        Args:
            data_dir: Override data directory (for testing).
        """
        self.data_dir = data_dir or get_settings().data_dir
        self.data_path = self.data_dir / DATA_FILE

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _empty() -> dict[str, Any]:
        data: dict[str, Any] = {"schema_version": SCHEMA_VERSION}
        for name in COLLECTIONS:
            data[name] = {}
        return data

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the data file for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.data_dir / LOCK_FILE
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def exists(self) -> bool:
        return self.data_path.exists()

    def _load_data(self) -> dict[str, Any]:
        """
        Load all collections from disk.

        Raises:
            InvalidSchemaVersionError: If the file was written by another schema.
        """
        if not self.data_path.exists():
            return self._empty()

        with open(self.data_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)

        for name in COLLECTIONS:
            data.setdefault(name, {})
        return data

    def _save_data(self, data: dict[str, Any]) -> None:
        """Save all collections to disk atomically."""
        self._ensure_dir()

        fd, temp_path = tempfile.mkstemp(
            dir=self.data_dir, prefix=".medorders_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.data_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def init(self, force: bool = False) -> None:
        """
        Create an empty database file.

        Raises:
            DatabaseExistsError: If the file exists and force=False.
        """
        with self._lock():
            if self.exists() and not force:
                raise DatabaseExistsError(str(self.data_path))
            self._save_data(self._empty())

    def snapshot(self) -> dict[str, Any]:
        """Read-only view of every collection; saves are atomic renames so no lock is needed."""
        return self._load_data()

    def collection(self, name: str) -> Documents:
        return self.snapshot()[name]

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        """
        Yield the loaded collections with the file locked; persist them on clean exit.

        Any exception raised inside the block leaves the file untouched, so a
        guard that raises doubles as a precondition check. A block that changes
        nothing does not rewrite the file.
        """
        with self._lock():
            data = self._load_data()
            original = copy.deepcopy(data)
            yield data
            if data != original:
                self._save_data(data)
