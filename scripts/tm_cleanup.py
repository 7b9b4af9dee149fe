#!/usr/bin/env python3
"""
CLI entry point for manual TM maintenance.

Usage:
    python -m scripts.tm_cleanup                        # cleanup with configured policy
    python -m scripts.tm_cleanup --dry-run              # preview what would be deleted
    python -m scripts.tm_cleanup --min-quality 0.5 --max-age-days 180
    python -m scripts.tm_cleanup --rehash               # rebuild hashes after a normalizer change
    python -m scripts.tm_cleanup --stats                # print statistics
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Translation Memory - Maintenance")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview what would be cleaned without deleting",
    )
    parser.add_argument("--min-quality", type=float, default=None, help="Delete below this quality")
    parser.add_argument("--max-age-days", type=int, default=None, help="Only entries unused this long")
    parser.add_argument(
        "--include-unrated",
        action="store_true",
        help="Also delete entries without a quality score",
    )
    parser.add_argument("--rehash", action="store_true", help="Rebuild source hashes")
    parser.add_argument("--stats", action="store_true", help="Print statistics and exit")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    from config.logging_config import setup_logging
    from core.tm.exceptions import TMError
    from core.tm.service import get_tm_service

    setup_logging()
    service = get_tm_service()

    try:
        if args.stats:
            print(service.statistics().model_dump_json(indent=2))
            return 0

        if args.rehash:
            report = service.rebuild_hashes()
            print(f"Rehash: {report.scanned} scanned, {report.rehashed} rehashed, {report.merged} merged")
            return 0

        min_quality = service.cleanup_min_quality if args.min_quality is None else args.min_quality
        max_age_days = service.cleanup_max_age_days if args.max_age_days is None else args.max_age_days
        include_unrated = args.include_unrated or service.cleanup_include_unrated

        if args.dry_run:
            count = service.maintenance.preview_cleanup(
                min_quality, timedelta(days=max_age_days), include_unrated
            )
            print(f"Would delete {count} entries (quality < {min_quality}, unused > {max_age_days} days)")
        else:
            deleted = service.cleanup(min_quality, max_age_days, include_unrated)
            print(f"Deleted {deleted} entries (quality < {min_quality}, unused > {max_age_days} days)")
    except TMError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
