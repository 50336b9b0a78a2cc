#!/usr/bin/env python3
"""
cksumdb – checksum database for detecting silent corruption.

Records a signature (mtime and size) and a content digest for every regular
file under one or more roots, then re-derives them later to find corrupt,
modified or never-recorded files.

Commands:
  update  Bring the database up to date; only new or changed files are hashed.
  verify  Re-hash files whose signature is unchanged and compare digests.

Records live either in a hidden shadow tree next to each root (--backend file)
or in extended attributes on the files themselves (--backend xattr).
Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from backends import check_environment, make_backend
from common import (
    BACKENDS,
    DEFAULT_BACKEND,
    DEFAULT_BATCH_SIZE,
    DEFAULT_HASH_ALGO,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    CksumDBError,
    CksumEnvironmentError,
    RunConfig,
    UsageError,
    parse_exclude_extensions,
    parse_parallel,
    setup_logging,
    write_report,
)
from update_cmd import update_root
from verify_cmd import verify_root


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cksumdb',
        description='Record file checksums (update) or check files against them (verify).',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  update:
    cksumdb update /path/to/photos
    cksumdb update /path/to/photos /path/to/music --parallel 4,16
    cksumdb update /path/to/photos --backend xattr --algo blake2b

  verify:
    cksumdb verify /path/to/photos
    cksumdb verify /path/to/photos --keep-going --report verify.json
    cksumdb verify /path/to/photos --prefix /var/lib/cksumdb

The database for ROOT is PREFIX + parent(ROOT) + "/." + basename(ROOT) + "-cksumdb." + BACKEND.
--parallel takes WORKERS[,BATCH] (batch defaults to {DEFAULT_BATCH_SIZE}); 0 workers runs
sequentially. Parallel runs always continue past per-file errors.
        """,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (
        ('update', 'Store checksums for new or changed files'),
        ('verify', 'Compare files against their stored checksums'),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            'roots',
            nargs='+',
            type=Path,
            metavar='ROOT',
            help='Directory tree to process',
        )
        sub.add_argument(
            '-b', '--backend',
            choices=BACKENDS,
            default=DEFAULT_BACKEND,
            help=f'Where records are stored (default: {DEFAULT_BACKEND})',
        )
        sub.add_argument(
            '-p', '--prefix',
            default='',
            help='Prefix prepended to the database path (default: none)',
        )
        sub.add_argument(
            '-a', '--algo',
            default=DEFAULT_HASH_ALGO,
            help=f'hashlib digest algorithm (default: {DEFAULT_HASH_ALGO})',
        )
        sub.add_argument(
            '-k', '--keep-going',
            action='store_true',
            help='Report per-file failures as warnings and keep going',
        )
        sub.add_argument(
            '-j', '--parallel',
            default='0',
            metavar='WORKERS[,BATCH]',
            help='Number of worker threads and files per batch (default: 0, sequential)',
        )
        sub.add_argument(
            '--exclude-ext',
            action='append',
            default=[],
            help='Extensions to exclude (e.g. .tmp,.part). Comma-separated or repeatable.',
        )
        sub.add_argument(
            '--report',
            type=Path,
            help='Write a JSON report of the run to this path',
        )
        sub.add_argument(
            '--log',
            type=Path,
            help='Write log output to this file',
        )
        sub.add_argument(
            '--verbose',
            action='store_true',
            help='Enable verbose (debug) logging',
        )
    return parser


def build_config(args: argparse.Namespace) -> RunConfig:
    """Turn parsed arguments into the run configuration; raises UsageError."""
    workers, batch_size = parse_parallel(args.parallel)
    return RunConfig(
        backend=args.backend,
        db_prefix=args.prefix,
        hash_algo=args.algo,
        keep_going=args.keep_going,
        workers=workers,
        batch_size=batch_size,
        exclude_exts=frozenset(parse_exclude_extensions(args.exclude_ext)),
    )


def resolve_roots(roots: List[Path]) -> List[Path]:
    resolved = []
    for root in roots:
        root = root.resolve()
        if not root.exists():
            raise UsageError(f"Root directory does not exist: {root}")
        if not root.is_dir():
            raise UsageError(f"Root path is not a directory: {root}")
        resolved.append(root)
    return resolved


def run(command: str, roots: List[Path], config: RunConfig) -> List[Dict[str, object]]:
    """Process each root in turn; a root whose database cannot be opened is recorded as failed."""
    run_root = update_root if command == 'update' else verify_root
    reports: List[Dict[str, object]] = []
    for root in roots:
        backend = make_backend(config, root)
        logging.info(f"{command} {root} (database: {backend.location})")
        try:
            reports.append(run_root(root, config, backend))
        except CksumEnvironmentError:
            raise
        except CksumDBError as exc:
            logging.error(f"{command} of {root} failed: {exc}")
            reports.append(
                {
                    "root": str(root),
                    "db": str(backend.location),
                    "mode": command,
                    "error": str(exc),
                    "success": False,
                }
            )
    return reports


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log, args.verbose)

    try:
        config = build_config(args)
        roots = resolve_roots(args.roots)
        check_environment(config)
        reports = run(args.command, roots, config)
    except UsageError as exc:
        logging.error(str(exc))
        return EXIT_USAGE
    except CksumEnvironmentError as exc:
        logging.error(str(exc))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logging.error("Aborted by user")
        return EXIT_USAGE

    if args.report:
        write_report({"command": args.command, "roots": reports}, args.report)

    if all(report.get("success") for report in reports):
        return EXIT_OK
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
