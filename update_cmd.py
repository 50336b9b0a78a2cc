"""
Update command: fingerprint new or changed files and store the records in the database.
"""

import logging
import time
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional

from backends import Backend, make_backend
from common import (
    CHANGED,
    ERROR,
    FIELD_SIGNATURE,
    PROGRESS_EVERY,
    UNCHANGED,
    DatabaseError,
    FileOutcome,
    RunConfig,
    UnreadableFileError,
    build_report,
    compute_hash,
    compute_signature,
    iter_candidates,
)
from scheduler import run_batches


def update_file(root: Path, rel_path: Path, backend: Backend, config: RunConfig) -> FileOutcome:
    """Store a fresh record for rel_path unless its signature is unchanged.

    The digest is only computed when the stored signature is missing or stale.
    """
    path_str = rel_path.as_posix()
    file_path = root / rel_path
    try:
        current_sig = compute_signature(file_path)
    except OSError as exc:
        error = UnreadableFileError(f"Failed to stat {file_path}: {exc}")
        return FileOutcome(path_str, ERROR, error=error)
    try:
        stored_sig = backend.get(rel_path, FIELD_SIGNATURE)
    except DatabaseError as exc:
        return FileOutcome(path_str, ERROR, error=exc)

    if stored_sig and stored_sig == current_sig:
        return FileOutcome(path_str, UNCHANGED, signature=current_sig)

    try:
        digest = compute_hash(file_path, config.hash_algo, config.chunk_size)
    except OSError as exc:
        error = UnreadableFileError(f"Failed to hash {file_path}: {exc}")
        return FileOutcome(path_str, ERROR, error=error)
    try:
        backend.set(rel_path, current_sig, digest)
    except DatabaseError as exc:
        return FileOutcome(path_str, ERROR, error=exc)
    return FileOutcome(path_str, CHANGED, signature=current_sig, digest=digest)


def update_root(
    root: Path,
    config: RunConfig,
    backend: Optional[Backend] = None,
) -> Dict[str, object]:
    """Bring the database for root up to date and return a report.

    Raises DatabaseError or CksumEnvironmentError if the database cannot be
    initialized; per-file failures are reported in the result instead.
    """
    stats = {
        "scanned": 0,
        "excluded": 0,
        "unchanged": 0,
        "changed": 0,
        "errors": 0,
    }
    changed: List[Dict[str, object]] = []
    errors: List[Dict[str, object]] = []

    run_started = int(time.time())
    if backend is None:
        backend = make_backend(config, root)
    backend.initialize(update=True)

    aborted = False
    processed = 0
    last_progress_log = 0
    candidates = iter_candidates(root, config.exclude_exts, backend.skip_dirs(), stats)
    task = partial(update_file, root, backend=backend, config=config)
    outcomes = run_batches(candidates, task, config.workers, config.batch_size)
    try:
        for outcome in outcomes:
            processed += 1
            if outcome.status == UNCHANGED:
                stats["unchanged"] += 1
                logging.debug(f"unchanged: {outcome.path}")
            elif outcome.status == CHANGED:
                stats["changed"] += 1
                logging.info(f"changed: {outcome.path}")
                changed.append(
                    {
                        "path": outcome.path,
                        "signature": outcome.signature,
                        "hash": outcome.digest,
                    }
                )
            else:
                stats["errors"] += 1
                errors.append(
                    {
                        "path": outcome.path,
                        "error": str(outcome.error),
                        "kind": type(outcome.error).__name__,
                    }
                )
                if config.continue_on_error:
                    logging.warning(f"error: {outcome.path}: {outcome.error}")
                else:
                    logging.error(f"error: {outcome.path}: {outcome.error}")
                    logging.error(f"Aborting update of {root}")
                    aborted = True
                    break

            if processed - last_progress_log >= PROGRESS_EVERY:
                logging.info(
                    f"Progress: scanned={stats['scanned']}, changed={stats['changed']}, "
                    f"unchanged={stats['unchanged']}, errors={stats['errors']}"
                )
                last_progress_log = processed
    finally:
        outcomes.close()

    run_finished = int(time.time())
    logging.info(
        f"Update summary for {root}: scanned={stats['scanned']} | changed={stats['changed']} | "
        f"unchanged={stats['unchanged']} | excluded={stats['excluded']} | errors={stats['errors']}"
    )

    details: Dict[str, object] = {
        "changed": changed,
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
        mode="update",
        details=details,
    )
