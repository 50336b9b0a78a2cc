"""
Checksum database backends: a mirrored shadow tree of record files, or extended attributes on the files themselves.
"""

import errno
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, List

from common import (
    FIELD_DIGEST,
    FIELD_SIGNATURE,
    XATTR_DIGEST,
    XATTR_SIGNATURE,
    CksumEnvironmentError,
    DatabaseError,
    RunConfig,
    derive_db_path,
    is_under_root,
)


# Missing-attribute errno differs between Linux (ENODATA) and BSD/macOS (ENOATTR).
_NO_ATTR_ERRNOS = {getattr(errno, name) for name in ("ENODATA", "ENOATTR") if hasattr(errno, name)}


class Backend(ABC):
    """Storage for one (signature, digest) record per path relative to root.

    Distinct paths map to distinct storage units, so callers may read and
    write records for different paths from different threads without locking.
    """

    def __init__(self, root: Path, location: Path) -> None:
        self.root = root
        self.location = location

    @abstractmethod
    def initialize(self, update: bool = False) -> None:
        """Prepare the database; must complete before any path is processed."""

    @abstractmethod
    def get(self, rel_path: Path, field: str) -> str:
        """Return the stored field for rel_path, or "" if there is no record."""

    @abstractmethod
    def set(self, rel_path: Path, signature: str, digest: str) -> None:
        """Store both fields for rel_path, replacing any previous record."""

    def skip_dirs(self) -> List[Path]:
        """Directories under root that the scanner must not descend into."""
        if is_under_root(self.location, self.root):
            return [self.location]
        return []


class FileBackend(Backend):
    """Records kept as "<signature> <digest>" files in a shadow copy of the tree."""

    def initialize(self, update: bool = False) -> None:
        if os.path.lexists(self.location) and not self.location.is_dir():
            raise DatabaseError(f"Database path exists but is not a directory: {self.location}")
        try:
            self.location.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DatabaseError(f"Cannot create database directory {self.location}: {exc}") from exc
        if update:
            self.sync_structure()

    def sync_structure(self) -> None:
        """Mirror the source directory layout and prune records of vanished files.

        Record files whose source file still exists are left untouched.
        """
        logging.debug(f"Synchronizing {self.location} with {self.root}")
        created = 0
        pruned = 0
        try:
            for source_dir in self._iter_source_dirs():
                shadow_dir = self.location / source_dir.relative_to(self.root)
                if shadow_dir.is_dir() and not shadow_dir.is_symlink():
                    continue
                if os.path.lexists(shadow_dir):
                    shadow_dir.unlink()
                    pruned += 1
                shadow_dir.mkdir()
                created += 1

            for dirpath, dirnames, filenames in os.walk(self.location, topdown=False):
                shadow_dir = Path(dirpath)
                source_dir = self.root / shadow_dir.relative_to(self.location)
                for name in filenames:
                    if not os.path.lexists(source_dir / name):
                        (shadow_dir / name).unlink()
                        pruned += 1
                for name in dirnames:
                    if not os.path.lexists(source_dir / name):
                        shutil.rmtree(shadow_dir / name)
                        pruned += 1
        except OSError as exc:
            raise DatabaseError(f"Cannot synchronize database {self.location}: {exc}") from exc
        logging.debug(f"Database sync: {created} directories created, {pruned} entries pruned")

    def _iter_source_dirs(self) -> Iterator[Path]:
        # Top-down, so a parent is always yielded before its children.
        skip = set(self.skip_dirs())
        root_dev = self.root.stat().st_dev

        def enter(path: Path) -> bool:
            if path in skip or path.is_symlink():
                return False
            return path.lstat().st_dev == root_dev

        def on_error(exc: OSError) -> None:
            logging.warning(f"Skipping directory {exc.filename}: {exc}")

        for dirpath, dirnames, _ in os.walk(self.root, onerror=on_error):
            current = Path(dirpath)
            dirnames[:] = [name for name in dirnames if enter(current / name)]
            for name in dirnames:
                yield current / name

    def _record_path(self, rel_path: Path) -> Path:
        return self.location / rel_path

    def get(self, rel_path: Path, field: str) -> str:
        record_path = self._record_path(rel_path)
        if not record_path.is_file():
            return ""
        try:
            line = record_path.read_text(encoding='utf-8')
        except OSError as exc:
            raise DatabaseError(f"Cannot read record {record_path}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise DatabaseError(f"Record is not valid UTF-8 {record_path}: {exc}") from exc
        signature, sep, digest = line.strip().rpartition(' ')
        if not sep or not signature or not digest:
            raise DatabaseError(f"Malformed record {record_path}: {line!r}")
        if field == FIELD_SIGNATURE:
            return signature
        if field == FIELD_DIGEST:
            return digest
        raise ValueError(f"Unknown record field: {field}")

    def set(self, rel_path: Path, signature: str, digest: str) -> None:
        record_path = self._record_path(rel_path)
        if not record_path.parent.is_dir():
            raise DatabaseError(f"Missing database directory for {rel_path}: {record_path.parent}")
        tmp_path = record_path.with_name(f".{record_path.name}.tmp")
        try:
            if record_path.is_dir() and not record_path.is_symlink():
                # Left over from a source directory that became a file.
                shutil.rmtree(record_path)
            tmp_path.write_text(f"{signature} {digest}", encoding='utf-8')
            os.replace(tmp_path, record_path)
        except OSError as exc:
            raise DatabaseError(f"Cannot write record {record_path}: {exc}") from exc


class XattrBackend(Backend):
    """Records kept as two user extended attributes on each source file."""

    _ATTRIBUTES = {FIELD_SIGNATURE: XATTR_SIGNATURE, FIELD_DIGEST: XATTR_DIGEST}

    @staticmethod
    def check_environment() -> None:
        if not (hasattr(os, "getxattr") and hasattr(os, "setxattr")):
            raise CksumEnvironmentError("Extended attributes are not supported on this platform")

    def initialize(self, update: bool = False) -> None:
        self.check_environment()
        try:
            os.listxattr(self.root)
        except OSError as exc:
            if exc.errno in (errno.ENOTSUP, errno.EOPNOTSUPP):
                raise CksumEnvironmentError(
                    f"Filesystem of {self.root} does not support extended attributes"
                ) from exc
            raise DatabaseError(f"Cannot read extended attributes of {self.root}: {exc}") from exc

    def get(self, rel_path: Path, field: str) -> str:
        try:
            name = self._ATTRIBUTES[field]
        except KeyError:
            raise ValueError(f"Unknown record field: {field}") from None
        try:
            value = os.getxattr(self.root / rel_path, name, follow_symlinks=False)
        except OSError as exc:
            if exc.errno in _NO_ATTR_ERRNOS:
                return ""
            raise DatabaseError(f"Cannot read {name} of {rel_path}: {exc}") from exc
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError as exc:
            raise DatabaseError(f"{name} of {rel_path} is not valid UTF-8: {exc}") from exc

    def set(self, rel_path: Path, signature: str, digest: str) -> None:
        file_path = self.root / rel_path
        try:
            # Not atomic: the first attribute may be written without the second.
            os.setxattr(file_path, XATTR_SIGNATURE, signature.encode('utf-8'), follow_symlinks=False)
            os.setxattr(file_path, XATTR_DIGEST, digest.encode('utf-8'), follow_symlinks=False)
        except OSError as exc:
            raise DatabaseError(f"Cannot store attributes for {rel_path}: {exc}") from exc


_BACKEND_TYPES = {
    "file": FileBackend,
    "xattr": XattrBackend,
}


def check_environment(config: RunConfig) -> None:
    """Raise CksumEnvironmentError if the configured backend cannot run here."""
    backend_type = _BACKEND_TYPES[config.backend]
    check = getattr(backend_type, "check_environment", None)
    if check is not None:
        check()


def make_backend(config: RunConfig, root: Path) -> Backend:
    """Create the configured backend for one scanned root."""
    location = derive_db_path(root, config.db_prefix, config.backend)
    return _BACKEND_TYPES[config.backend](root, location)
