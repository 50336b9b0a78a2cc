"""
Shared code for cksumdb update and verify: constants, config, errors, scanning, hashing, reporting.
"""

import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple


DB_NAME = "cksumdb"
DEFAULT_BACKEND = "file"
BACKENDS = ("file", "xattr")
DEFAULT_HASH_ALGO = "sha256"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = 0
DEFAULT_BATCH_SIZE = 8
PROGRESS_EVERY = 1000

FIELD_SIGNATURE = "signature"
FIELD_DIGEST = "digest"

XATTR_SIGNATURE = "user.cksumdb.mtime_size"
XATTR_DIGEST = "user.cksumdb.cksum"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

# Per-file outcomes
UNCHANGED = "unchanged"
CHANGED = "changed"
OK = "ok"
UNKNOWN = "unknown"
MODIFIED = "modified"
CORRUPT = "corrupt"
ERROR = "error"


class CksumDBError(Exception):
    """Base class for all cksumdb errors."""


class CksumEnvironmentError(CksumDBError):
    """A required external capability is not available."""


class DatabaseError(CksumDBError):
    """The database location is invalid or a record cannot be read or stored."""


class IntegrityError(CksumDBError):
    """A file's digest does not match the stored digest."""


class UnreadableFileError(CksumDBError):
    """A source file cannot be read."""


class UsageError(CksumDBError):
    """The invocation is malformed."""


@dataclass(frozen=True)
class RunConfig:
    """Settings for one cksumdb run, built once and passed to every component."""
    backend: str = DEFAULT_BACKEND
    db_prefix: str = ""
    hash_algo: str = DEFAULT_HASH_ALGO
    keep_going: bool = False
    workers: int = DEFAULT_WORKERS
    batch_size: int = DEFAULT_BATCH_SIZE
    exclude_exts: FrozenSet[str] = frozenset()
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise UsageError(
                f"Unknown backend: {self.backend} (expected one of {', '.join(BACKENDS)})"
            )
        if self.workers < 0:
            raise UsageError(f"Worker count must not be negative: {self.workers}")
        if self.batch_size < 1:
            raise UsageError(f"Batch size must be at least 1: {self.batch_size}")
        check_hash_algo(self.hash_algo)

    @property
    def continue_on_error(self) -> bool:
        # One worker cannot stop its siblings, so parallel runs always keep going.
        return self.keep_going or self.workers > 0


@dataclass
class FileOutcome:
    """Classified result of updating or verifying one file."""
    path: str
    status: str
    error: Optional[CksumDBError] = None
    signature: Optional[str] = None
    digest: Optional[str] = None
    expected_digest: Optional[str] = None


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def parse_exclude_extensions(exclude_args: List[str]) -> Set[str]:
    """Normalize exclude extensions into a set of lowercase suffixes."""
    extensions: Set[str] = set()
    for item in exclude_args:
        for part in item.split(','):
            ext = part.strip().lower()
            if not ext:
                continue
            if not ext.startswith('.'):
                ext = f".{ext}"
            extensions.add(ext)
    return extensions


def parse_parallel(value: str) -> Tuple[int, int]:
    """Parse a "<workers>[,<batch-size>]" --parallel value."""
    parts = value.split(',')
    if len(parts) > 2:
        raise UsageError(f"Invalid --parallel value {value!r}, expected WORKERS[,BATCH]")
    try:
        workers = int(parts[0])
        batch_size = int(parts[1]) if len(parts) == 2 else DEFAULT_BATCH_SIZE
    except ValueError:
        raise UsageError(f"Invalid --parallel value {value!r}, expected WORKERS[,BATCH]") from None
    if workers < 0 or batch_size < 1:
        raise UsageError(f"Invalid --parallel value {value!r}, expected WORKERS[,BATCH]")
    return workers, batch_size


def check_hash_algo(name: str) -> None:
    """Raise UsageError unless name is a fixed-length hashlib algorithm."""
    if name.lower().startswith("shake_"):
        raise UsageError(f"Variable-length hash algorithm not supported: {name}")
    try:
        hashlib.new(name)
    except ValueError:
        raise UsageError(f"Unsupported hash algorithm: {name}") from None


def derive_db_path(root: Path, prefix: str, backend: str) -> Path:
    """Return the database location for root: a hidden sibling named after it."""
    parent = str(root.parent).rstrip(os.sep)
    return Path(f"{prefix}{parent}{os.sep}.{root.name}-{DB_NAME}.{backend}")


def is_under_root(file_path: Path, root: Path) -> bool:
    """Return True if file_path is under root."""
    try:
        file_path.relative_to(root)
    except ValueError:
        return False
    return True


def iter_files(root: Path, skip_dirs: Iterable[Path] = ()) -> Iterator[Path]:
    """Yield paths of regular files under root, relative to root.

    Symlinks are not followed and directories on another filesystem are not
    entered. Every call walks the tree afresh.
    """
    skip = {str(path) for path in skip_dirs}
    root_dev = root.stat().st_dev
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            if entry.path in skip:
                                continue
                            if entry.stat(follow_symlinks=False).st_dev != root_dev:
                                logging.debug(f"Not crossing filesystem boundary: {entry.path}")
                                continue
                            stack.append(Path(entry.path))
                        elif entry.is_file(follow_symlinks=False):
                            yield Path(entry.path).relative_to(root)
                    except OSError as exc:
                        logging.warning(f"Skipping entry {entry.path}: {exc}")
        except OSError as exc:
            logging.warning(f"Skipping directory {current}: {exc}")


def iter_candidates(
    root: Path,
    exclude_exts: Iterable[str],
    skip_dirs: Iterable[Path],
    stats: Dict[str, int],
) -> Iterator[Path]:
    """Yield relative paths to process, counting scanned and excluded files in stats."""
    exclude = set(exclude_exts)
    for rel_path in iter_files(root, skip_dirs):
        if rel_path.suffix.lower() in exclude:
            stats["excluded"] += 1
            continue
        stats["scanned"] += 1
        yield rel_path


def compute_signature(file_path: Path) -> str:
    """Return the "<mtime_ns>_<size>" change-detection signature for a file."""
    file_stat = file_path.stat()
    return f"{file_stat.st_mtime_ns}_{file_stat.st_size}"


def compute_hash(
    file_path: Path,
    hash_algo: str = DEFAULT_HASH_ALGO,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Compute the hex digest of a file with the given hashlib algorithm."""
    hasher = hashlib.new(hash_algo)
    with file_path.open('rb') as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def build_report(
    root: Path,
    db_path: Path,
    config: RunConfig,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "root": str(root),
        "db": str(db_path),
        "backend": config.backend,
        "hash_algo": config.hash_algo,
        "mode": mode,
        "exclude_exts": sorted(config.exclude_exts),
        "stats": stats,
    }
    if config.workers > 0:
        report["workers"] = config.workers
        report["batch_size"] = config.batch_size
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
