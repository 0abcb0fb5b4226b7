"""
Tests for armlib/report.py and scripts/merge_summaries.py.

Covers:
- find_summary_files newest-per-environment selection
- build_report with and without orchestrated results
- render_markdown and append_step_summary
- merge_summaries CLI
"""
import json
import os
import sys
import tempfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'scripts'))

from armlib.models import EnvironmentResult, ExportRecord, SummaryRecord
from armlib.report import (
    append_step_summary,
    build_report,
    find_summary_files,
    load_summaries,
    render_markdown,
    write_report,
)
from armlib.utils import write_json
from scripts.merge_summaries import main as merge_main

# =============================================================================
# Fixtures
# =============================================================================


def make_summary(env: str, ts: str, ok: int, failed: int) -> SummaryRecord:
    return SummaryRecord(
        environment=env,
        subscription_id=f"sub-{env.lower()}",
        backup_timestamp=ts,
        backup_date="Mon Oct 19 08:49:00 UTC 2026",
        successful_exports=ok,
        failed_exports=failed,
        total_resource_groups=ok + failed,
    )


def write_summary(root: str, summary: SummaryRecord) -> str:
    path = os.path.join(
        root, summary.environment, f"backup_summary_{summary.backup_timestamp}.json"
    )
    write_json(summary.to_dict(), path)
    return path


@pytest.fixture
def backup_root():
    """Output directory with two environments, one backed up twice."""
    with tempfile.TemporaryDirectory() as tmp:
        write_summary(tmp, make_summary("ALM-TEST", "20261018-084900", 1, 1))
        write_summary(tmp, make_summary("ALM-TEST", "20261019-084900", 3, 0))
        write_summary(tmp, make_summary("ALM-DEV", "20261019-084900", 2, 1))
        # Noise that must be ignored
        write_json({"resources": []}, os.path.join(tmp, "ALM-DEV", "rg-a", "rg-a_20261019-084900.json"))
        os.makedirs(os.path.join(tmp, ".git"))
        yield tmp


@pytest.fixture(autouse=True)
def no_step_summary(monkeypatch):
    monkeypatch.delenv("GITHUB_STEP_SUMMARY", raising=False)


# =============================================================================
# find_summary_files / load_summaries
# =============================================================================

class TestFindSummaryFiles:
    """Tests for find_summary_files."""

    def test_newest_per_environment(self, backup_root):
        found = find_summary_files(backup_root)

        assert sorted(found) == ["ALM-DEV", "ALM-TEST"]
        assert found["ALM-TEST"].name == "backup_summary_20261019-084900.json"

    def test_missing_directory(self):
        assert find_summary_files("/nonexistent/backups") == {}

    def test_unreadable_summary_skipped(self, backup_root):
        with open(os.path.join(backup_root, "ALM-DEV", "backup_summary_20261020-000000.json"), 'w') as f:
            f.write("{truncated")

        summaries = load_summaries(backup_root)

        assert "ALM-DEV" not in summaries
        assert summaries["ALM-TEST"].successful_exports == 3

    def test_null_counts_read_as_zero(self, backup_root):
        write_json(
            {"environment": "ALM-TEST", "summary": None},
            os.path.join(backup_root, "ALM-TEST", "backup_summary_20261020-000000.json"),
        )

        report = build_report(backup_root)

        rows = {r["environment"]: r for r in report["environments"]}
        assert rows["ALM-TEST"]["total_resource_groups"] == 0
        assert rows["ALM-DEV"]["total_resource_groups"] == 3

    @pytest.mark.parametrize("counts", [
        "not-a-mapping",
        {"successful_exports": "many"},
        {"failed_exports": [1]},
    ])
    def test_malformed_counts_skipped(self, backup_root, counts):
        write_json(
            {"environment": "ALM-DEV", "summary": counts},
            os.path.join(backup_root, "ALM-DEV", "backup_summary_20261020-000000.json"),
        )

        summaries = load_summaries(backup_root)

        assert "ALM-DEV" not in summaries
        assert merge_main([backup_root, "--dry-run"]) == 0


# =============================================================================
# build_report
# =============================================================================

class TestBuildReport:
    """Tests for build_report."""

    def test_from_files_only(self, backup_root):
        report = build_report(backup_root)

        assert [r["environment"] for r in report["environments"]] == ["ALM-DEV", "ALM-TEST"]
        assert all(r["status"] == "success" for r in report["environments"])
        assert report["totals"] == {
            "environments": 2,
            "succeeded": 2,
            "failed": 0,
            "skipped": 0,
            "successful_exports": 5,
            "failed_exports": 1,
            "total_resource_groups": 6,
        }
        assert report["run_id"]
        assert report["timestamp"].endswith("Z")

    def test_with_results(self, backup_root):
        results = [
            EnvironmentResult(environment="ALM-TEST", status="success"),
            EnvironmentResult(environment="ALM-DEV", status="failure", error="Current subscription (x) does not match expected (y)"),
            EnvironmentResult(environment="ALM-PROD", status="skipped"),
        ]

        report = build_report(backup_root, results)
        rows = {r["environment"]: r for r in report["environments"]}

        assert [r["environment"] for r in report["environments"]] == ["ALM-TEST", "ALM-DEV", "ALM-PROD"]
        assert rows["ALM-TEST"]["successful_exports"] == 3
        # The stale ALM-DEV summary from disk is not counted
        assert rows["ALM-DEV"]["total_resource_groups"] == 0
        assert rows["ALM-DEV"]["error"].startswith("Current subscription")
        assert report["totals"]["succeeded"] == 1
        assert report["totals"]["failed"] == 1
        assert report["totals"]["skipped"] == 1
        assert report["totals"]["total_resource_groups"] == 3

    def test_export_records_included(self, backup_root):
        records = [
            ExportRecord(resource_group="rg-a", file_path="a.json", success=True, method="primary"),
            ExportRecord(resource_group="rg-b", file_path="b.json", success=True, method="fallback"),
            ExportRecord(resource_group="rg-c", file_path="c.json", success=False,
                         error="No deployments found to export"),
        ]
        results = [
            EnvironmentResult(environment="ALM-TEST", records=records),
            EnvironmentResult(environment="ALM-DEV", status="failure", error="boom"),
        ]

        report = build_report(backup_root, results)
        test_row, dev_row = report["environments"]

        assert [e["method"] for e in test_row["exports"]] == ["primary", "fallback", "none"]
        assert test_row["exports"][2]["error"] == "No deployments found to export"
        assert dev_row["exports"] == []
        # Survives the trip to disk
        path = write_report(report, backup_root, "20261019-084900")
        with open(path) as f:
            assert json.load(f)["environments"][0]["exports"][1]["resource_group"] == "rg-b"

    def test_result_summary_used_when_file_missing(self):
        with tempfile.TemporaryDirectory() as tmp:
            summary = make_summary("ALM-PREPROD", "20261019-084900", 4, 0)
            results = [EnvironmentResult(environment="ALM-PREPROD", summary=summary)]

            report = build_report(tmp, results)

        assert report["totals"]["successful_exports"] == 4

    def test_write_report(self, backup_root):
        report = build_report(backup_root)

        path = write_report(report, backup_root, "20261019-084900")

        assert os.path.basename(path) == "backup_report_20261019-084900.json"
        with open(path) as f:
            assert json.load(f)["totals"]["environments"] == 2


# =============================================================================
# Markdown / step summary
# =============================================================================

class TestMarkdown:
    """Tests for render_markdown and append_step_summary."""

    def test_render(self, backup_root):
        results = [
            EnvironmentResult(environment="ALM-TEST"),
            EnvironmentResult(environment="ALM-DEV", status="failure", error="boom"),
        ]
        markdown = render_markdown(build_report(backup_root, results))

        assert markdown.startswith("## ARM Template Backup Summary")
        assert "| ALM-TEST | success | 3 | 0 | 3 |" in markdown
        assert "| ALM-DEV | failure | 0 | 0 | 0 |" in markdown
        assert "- **ALM-DEV**: boom" in markdown

    def test_no_step_summary_outside_actions(self, backup_root):
        assert append_step_summary(build_report(backup_root)) is None

    def test_appends_to_step_summary(self, backup_root, monkeypatch):
        summary_file = os.path.join(backup_root, "step_summary.md")
        with open(summary_file, 'w') as f:
            f.write("existing\n")
        monkeypatch.setenv("GITHUB_STEP_SUMMARY", summary_file)

        assert append_step_summary(build_report(backup_root)) == summary_file

        with open(summary_file) as f:
            content = f.read()
        assert content.startswith("existing\n## ARM Template Backup Summary")


# =============================================================================
# merge_summaries CLI
# =============================================================================

class TestMergeSummaries:
    """Tests for scripts/merge_summaries.py."""

    def test_writes_report(self, backup_root):
        assert merge_main([backup_root]) == 0

        reports = [f for f in os.listdir(backup_root) if f.startswith("backup_report_")]
        assert len(reports) == 1

    def test_output_directory(self, backup_root):
        with tempfile.TemporaryDirectory() as out:
            assert merge_main([backup_root, "-o", out]) == 0
            assert any(f.startswith("backup_report_") for f in os.listdir(out))

    def test_dry_run(self, backup_root, capsys):
        assert merge_main([backup_root, "--dry-run"]) == 0

        assert not any(f.startswith("backup_report_") for f in os.listdir(backup_root))
        assert '"successful_exports": 5' in capsys.readouterr().out

    def test_missing_folder(self):
        assert merge_main(["/nonexistent/backups"]) == 1

    def test_no_summaries(self):
        with tempfile.TemporaryDirectory() as tmp:
            assert merge_main([tmp]) == 1
