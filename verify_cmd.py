"""
Verify command: re-hash files whose signature still matches and compare to stored digests.
"""

import logging
import os
import time
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional

from backends import Backend, make_backend
from common import (
    CORRUPT,
    ERROR,
    FIELD_DIGEST,
    FIELD_SIGNATURE,
    MODIFIED,
    OK,
    PROGRESS_EVERY,
    UNKNOWN,
    DatabaseError,
    FileOutcome,
    IntegrityError,
    RunConfig,
    UnreadableFileError,
    build_report,
    compute_hash,
    compute_signature,
    iter_candidates,
)
from scheduler import run_batches


def verify_file(root: Path, rel_path: Path, backend: Backend, config: RunConfig) -> FileOutcome:
    """Classify one file as ok, unknown, modified, corrupt or error."""
    path_str = rel_path.as_posix()
    file_path = root / rel_path
    if not os.access(file_path, os.R_OK):
        return FileOutcome(path_str, ERROR, error=UnreadableFileError(f"Cannot read {file_path}"))

    try:
        stored_sig = backend.get(rel_path, FIELD_SIGNATURE)
    except DatabaseError as exc:
        return FileOutcome(path_str, ERROR, error=exc)
    if not stored_sig:
        return FileOutcome(path_str, UNKNOWN)

    try:
        current_sig = compute_signature(file_path)
    except OSError as exc:
        error = UnreadableFileError(f"Failed to stat {file_path}: {exc}")
        return FileOutcome(path_str, ERROR, error=error)
    if current_sig != stored_sig:
        return FileOutcome(path_str, MODIFIED, signature=current_sig)

    try:
        digest = compute_hash(file_path, config.hash_algo, config.chunk_size)
    except OSError as exc:
        error = UnreadableFileError(f"Failed to hash {file_path}: {exc}")
        return FileOutcome(path_str, ERROR, error=error)
    try:
        stored_digest = backend.get(rel_path, FIELD_DIGEST)
    except DatabaseError as exc:
        return FileOutcome(path_str, ERROR, error=exc)

    if digest == stored_digest:
        return FileOutcome(path_str, OK, signature=current_sig, digest=digest)
    return FileOutcome(
        path_str,
        CORRUPT,
        error=IntegrityError(f"Checksum mismatch for {file_path}"),
        signature=current_sig,
        digest=digest,
        expected_digest=stored_digest,
    )


def verify_root(
    root: Path,
    config: RunConfig,
    backend: Optional[Backend] = None,
) -> Dict[str, object]:
    """Verify every file under root against the database and return a report.

    A corrupt or unreadable file stops the run unless config.continue_on_error
    is set, in which case it is logged as a warning and the run goes on.
    """
    stats = {
        "scanned": 0,
        "excluded": 0,
        "ok": 0,
        "unknown": 0,
        "modified": 0,
        "corrupt": 0,
        "errors": 0,
    }
    corrupt: List[Dict[str, object]] = []
    modified: List[Dict[str, object]] = []
    unknown: List[Dict[str, object]] = []
    errors: List[Dict[str, object]] = []

    run_started = int(time.time())
    if backend is None:
        backend = make_backend(config, root)
    backend.initialize(update=False)

    aborted = False
    processed = 0
    last_progress_log = 0
    candidates = iter_candidates(root, config.exclude_exts, backend.skip_dirs(), stats)
    task = partial(verify_file, root, backend=backend, config=config)
    outcomes = run_batches(candidates, task, config.workers, config.batch_size)
    try:
        for outcome in outcomes:
            processed += 1
            fatal = False
            if outcome.status == OK:
                stats["ok"] += 1
                logging.debug(f"ok: {outcome.path}")
            elif outcome.status == UNKNOWN:
                stats["unknown"] += 1
                logging.info(f"unknown: {outcome.path}")
                unknown.append({"path": outcome.path})
            elif outcome.status == MODIFIED:
                stats["modified"] += 1
                logging.info(f"modified: {outcome.path}")
                modified.append({"path": outcome.path, "signature": outcome.signature})
            elif outcome.status == CORRUPT:
                stats["corrupt"] += 1
                corrupt.append(
                    {
                        "path": outcome.path,
                        "expected_hash": outcome.expected_digest,
                        "actual_hash": outcome.digest,
                    }
                )
                fatal = True
            else:
                stats["errors"] += 1
                errors.append(
                    {
                        "path": outcome.path,
                        "error": str(outcome.error),
                        "kind": type(outcome.error).__name__,
                    }
                )
                fatal = True

            if fatal:
                if config.continue_on_error:
                    logging.warning(f"{outcome.status}: {outcome.path}: {outcome.error}")
                else:
                    logging.error(f"{outcome.status}: {outcome.path}: {outcome.error}")
                    logging.error(f"Aborting verify of {root}")
                    aborted = True
                    break

            if processed - last_progress_log >= PROGRESS_EVERY:
                logging.info(
                    f"Progress: scanned={stats['scanned']}, ok={stats['ok']}, "
                    f"corrupt={stats['corrupt']}, errors={stats['errors']}"
                )
                last_progress_log = processed
    finally:
        outcomes.close()

    run_finished = int(time.time())
    logging.info(
        f"Verify summary for {root}: scanned={stats['scanned']} | ok={stats['ok']} | "
        f"unknown={stats['unknown']} | modified={stats['modified']} | corrupt={stats['corrupt']} | "
        f"excluded={stats['excluded']} | errors={stats['errors']}"
    )

    details: Dict[str, object] = {
        "corrupt": corrupt,
        "modified": modified,
        "unknown": unknown,
        "errors": errors,
        "aborted": aborted,
        "success": not aborted,
    }
    return build_report(
        root=root,
        db_path=backend.location,
        config=config,
        stats=stats,
        run_started=run_started,
        run_finished=run_finished,
        mode="verify",
        details=details,
    )
