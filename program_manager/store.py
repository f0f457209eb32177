"""
Single-file JSON persistence for the program catalog.

The whole catalog lives in one pretty-printed JSON document. Saves write a
sibling .tmp file and rename it over the real path, so a crash mid-save
leaves the previous catalog intact and readers never see a partial write.

A reader-writer lock lets loads run concurrently while mutations are
exclusive. Callers that mutate use transaction(), which holds the write lock
across the whole load -> mutate -> save sequence.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import CorruptCatalog, StorageIO
from .models import Catalog

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many readers or one writer. The write side is reentrant."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._write_depth = 0

    def acquire_read(self):
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                # Writer reading its own state
                self._write_depth += 1
                return
            while self._writer is not None:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._write_depth -= 1
                return
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._write_depth += 1
                return
            while self._writer is not None or self._readers > 0:
                self._cond.wait()
            self._writer = me
            self._write_depth = 1

    def release_write(self):
        with self._cond:
            self._write_depth -= 1
            if self._write_depth == 0:
                self._writer = None
                self._cond.notify_all()

    @contextmanager
    def reading(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def writing(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


def dump_catalog(catalog: Catalog) -> str:
    return json.dumps(catalog.to_dict(), indent=2, ensure_ascii=False) + "\n"


def parse_catalog(text: str, source: str) -> Catalog:
    try:
        return Catalog.from_dict(json.loads(text))
    except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
        raise CorruptCatalog(f"failed to parse catalog {source}: {e}") from e


class CatalogStore:
    """Atomic, lock-guarded access to programs.json."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = ReadWriteLock()

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    def load(self) -> Catalog:
        """Read the catalog; a missing file is an empty catalog."""
        with self.lock.reading():
            return self._load()

    def save(self, catalog: Catalog):
        with self.lock.writing():
            self._save(catalog)

    @contextmanager
    def transaction(self) -> Iterator[Catalog]:
        """Yield the current catalog under the write lock and save it on exit.

        If the body raises, nothing is written.
        """
        with self.lock.writing():
            catalog = self._load()
            yield catalog
            self._save(catalog)

    @contextmanager
    def locked(self) -> Iterator[Catalog]:
        """Yield the current catalog under the write lock without saving."""
        with self.lock.writing():
            yield self._load()

    def export(self, export_path: Path, catalog: Catalog = None):
        """Write the catalog (or the stored one) to another path."""
        with self.lock.reading():
            if catalog is None:
                catalog = self._load()
            try:
                Path(export_path).write_text(dump_catalog(catalog), encoding="utf-8")
            except OSError as e:
                raise StorageIO(f"failed to write export file: {e}") from e
        logger.info(f"Exported {len(catalog.programs)} programs to {export_path}")

    def import_(self, import_path: Path) -> Catalog:
        """Parse a catalog from another path without persisting it."""
        import_path = Path(import_path)
        if not import_path.exists():
            raise StorageIO(f"import file does not exist: {import_path}")
        try:
            text = import_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageIO(f"failed to read import file: {e}") from e
        return parse_catalog(text, str(import_path))

    def _load(self) -> Catalog:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Catalog()
        except OSError as e:
            raise StorageIO(f"failed to read {self.path}: {e}") from e
        return parse_catalog(text, str(self.path))

    def _save(self, catalog: Catalog):
        data = dump_catalog(catalog)
        temp = self.temp_path
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            _unlink_quietly(temp)
            raise StorageIO(f"failed to write temp file: {e}") from e

        try:
            os.replace(temp, self.path)
        except OSError as e:
            _unlink_quietly(temp)
            raise StorageIO(f"failed to rename temp file: {e}") from e


def _unlink_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temp file {path}: {e}")
