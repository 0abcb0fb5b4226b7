"""
Run-level backup report.

Reads the newest backup summary of every environment folder under an output
directory and combines them into one report. Only meaningful once every
environment has reached a terminal state, since it reads their summary files.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import (
    ENV_STEP_SUMMARY,
    REPORT_FILE_PREFIX,
    STATUS_FAILURE,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    SUMMARY_FILE_PREFIX,
)
from .models import EnvironmentResult, ExportRecord, SummaryRecord
from .utils import (
    generate_run_id,
    get_file_timestamp,
    get_timestamp,
    load_json_file,
    write_json,
)

logger = logging.getLogger(__name__)


def find_summary_files(output_dir: str) -> Dict[str, Path]:
    """
    Find the newest summary file of each environment folder.

    Summary names embed a sortable YYYYMMDD-HHMMSS timestamp, so the
    lexically greatest name is the newest.
    """
    latest: Dict[str, Path] = {}
    root = Path(output_dir)
    if not root.is_dir():
        return latest

    for env_dir in sorted(root.iterdir()):
        if not env_dir.is_dir() or env_dir.name.startswith('.'):
            continue
        candidates = sorted(env_dir.glob(f"{SUMMARY_FILE_PREFIX}*.json"))
        if candidates:
            latest[env_dir.name] = candidates[-1]

    return latest


def load_summaries(output_dir: str) -> Dict[str, SummaryRecord]:
    """Load the newest summary of each environment. Unreadable files are skipped."""
    summaries: Dict[str, SummaryRecord] = {}

    for env_name, path in find_summary_files(output_dir).items():
        data = load_json_file(str(path))
        if not isinstance(data, dict):
            logger.warning(f"Skipping unreadable summary file: {path}")
            continue
        try:
            record = SummaryRecord.from_dict(data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed summary file: {path}: {e}")
            continue
        summaries[record.environment or env_name] = record

    return summaries


def _row(
    environment: str,
    status: str,
    summary: Optional[SummaryRecord],
    error: Optional[str] = None,
    records: Optional[List[ExportRecord]] = None
) -> Dict[str, Any]:
    return {
        'environment': environment,
        'status': status,
        'subscription_id': summary.subscription_id if summary else None,
        'backup_timestamp': summary.backup_timestamp if summary else None,
        'successful_exports': summary.successful_exports if summary else 0,
        'failed_exports': summary.failed_exports if summary else 0,
        'total_resource_groups': summary.total_resource_groups if summary else 0,
        'error': error,
        'exports': [record.to_dict() for record in records or []],
    }


def build_report(output_dir: str, results: Optional[List[EnvironmentResult]] = None) -> Dict[str, Any]:
    """
    Combine environment summaries into one report.

    Args:
        output_dir: Directory holding one folder per environment
        results: Terminal states from an orchestrated run. When given, the
            report lists exactly these environments; failed and skipped ones
            contribute no counts even if an older summary file exists.
            When omitted, every summary file found is reported as a success.
            Per-group export records (including which export method produced
            each file) are only available for environments run in-process.
    """
    summaries = load_summaries(output_dir)
    rows: List[Dict[str, Any]] = []

    if results is None:
        for env_name in sorted(summaries):
            rows.append(_row(env_name, STATUS_SUCCESS, summaries[env_name]))
    else:
        for result in results:
            if result.status == STATUS_SUCCESS:
                summary = summaries.get(result.environment) or result.summary
                rows.append(_row(result.environment, result.status, summary, records=result.records))
            else:
                rows.append(_row(result.environment, result.status, None, result.error))

    totals = {
        'environments': len(rows),
        'succeeded': sum(1 for r in rows if r['status'] == STATUS_SUCCESS),
        'failed': sum(1 for r in rows if r['status'] == STATUS_FAILURE),
        'skipped': sum(1 for r in rows if r['status'] == STATUS_SKIPPED),
        'successful_exports': sum(r['successful_exports'] for r in rows),
        'failed_exports': sum(r['failed_exports'] for r in rows),
        'total_resource_groups': sum(r['total_resource_groups'] for r in rows),
    }

    return {
        'run_id': generate_run_id(),
        'timestamp': get_timestamp(),
        'environments': rows,
        'totals': totals,
    }


def write_report(report: Dict[str, Any], output_dir: str, timestamp: Optional[str] = None) -> str:
    """Write the report as backup_report_<timestamp>.json at the top of output_dir."""
    path = os.path.join(output_dir, f"{REPORT_FILE_PREFIX}{timestamp or get_file_timestamp()}.json")
    write_json(report, path)
    logger.info(f"Wrote backup report: {path}")
    return path


def render_markdown(report: Dict[str, Any]) -> str:
    """Render the report as a markdown table for a CI job summary."""
    lines = [
        "## ARM Template Backup Summary",
        "",
        "| Environment | Status | Successful | Failed | Total |",
        "|---|---|---:|---:|---:|",
    ]
    for row in report.get('environments', []):
        lines.append(
            f"| {row['environment']} | {row['status']} | {row['successful_exports']} "
            f"| {row['failed_exports']} | {row['total_resource_groups']} |"
        )

    totals = report.get('totals', {})
    lines.append(
        f"| **Total** | | **{totals.get('successful_exports', 0)}** "
        f"| **{totals.get('failed_exports', 0)}** | **{totals.get('total_resource_groups', 0)}** |"
    )

    errors = [r for r in report.get('environments', []) if r.get('error')]
    if errors:
        lines.append("")
        lines.append("### Errors")
        for row in errors:
            lines.append(f"- **{row['environment']}**: {row['error']}")

    return "\n".join(lines) + "\n"


def append_step_summary(report: Dict[str, Any]) -> Optional[str]:
    """Append the markdown report to $GITHUB_STEP_SUMMARY when running in Actions."""
    summary_file = os.environ.get(ENV_STEP_SUMMARY)
    if not summary_file:
        return None

    with open(summary_file, 'a', encoding='utf-8') as f:
        f.write(render_markdown(report))

    logger.debug(f"Appended job summary to {summary_file}")
    return summary_file
