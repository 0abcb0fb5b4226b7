#!/usr/bin/env python3
"""
ARM Template Backup - Merge Environment Summaries

Combines the newest backup_summary_*.json of every environment folder into a
single backup_report_*.json. Use this when environments were backed up by
separate jobs (e.g. a CI matrix) and the report is produced in a final job.

Usage:
    # Report on every environment folder under ./backups
    python scripts/merge_summaries.py ./backups/

    # Write the report somewhere else
    python scripts/merge_summaries.py ./backups/ -o ./reports/

    # Print the report without writing it
    python scripts/merge_summaries.py ./backups/ --dry-run
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
from armlib.report import append_step_summary, build_report, write_report
from armlib.utils import print_summary_table, setup_logging


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Merge per-environment ARM backup summaries into one report",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/merge_summaries.py ./backups/
  python scripts/merge_summaries.py ./backups/ -o ./reports/
  python scripts/merge_summaries.py ./backups/ --dry-run
"""
    )

    parser.add_argument(
        "folder",
        help="Folder containing one sub-folder per environment"
    )

    parser.add_argument(
        "-o", "--output",
        help="Output directory for the report (default: same as input folder)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the report instead of writing it"
    )

    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    folder = Path(args.folder)
    if not folder.is_dir():
        print(f"ERROR: {folder} is not a directory")
        return 1

    report = build_report(str(folder))

    if not report['environments']:
        print(f"No backup summaries found under {folder}")
        return 1

    if args.dry_run:
        print(json.dumps(report, indent=2))
        return 0

    write_report(report, args.output or str(folder))
    append_step_summary(report)
    print_summary_table(report['environments'])
    return 0


if __name__ == "__main__":
    sys.exit(main())
