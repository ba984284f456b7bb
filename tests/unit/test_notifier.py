"""Unit tests for update reports and the console notifier."""

from io import StringIO

from rich.console import Console

from drupalup.schemas.updates import UpdateResult, UpdateStatus, combine_status
from drupalup.services.notifier import ConsoleNotifier, build_report, overall_status, report_subject


def _result(uri, core, other, **kwargs):
    result = UpdateResult(uri=uri, **kwargs)
    result.set_outcome(core, other)
    return result


class TestCombineStatus:
    def test_failed_wins(self):
        assert combine_status(UpdateStatus.FAILED, UpdateStatus.SUCCESS) == UpdateStatus.FAILED
        assert combine_status(UpdateStatus.UNCHANGED, UpdateStatus.FAILED) == UpdateStatus.FAILED

    def test_equal_values(self):
        assert combine_status(UpdateStatus.SUCCESS, UpdateStatus.SUCCESS) == UpdateStatus.SUCCESS
        assert combine_status(UpdateStatus.UNCHANGED, UpdateStatus.UNCHANGED) == UpdateStatus.UNCHANGED

    def test_unchanged_is_neutral(self):
        assert combine_status(UpdateStatus.SUCCESS, UpdateStatus.UNCHANGED) == UpdateStatus.SUCCESS
        assert combine_status(UpdateStatus.UNCHANGED, UpdateStatus.SUCCESS) == UpdateStatus.SUCCESS

    def test_differing_outcomes_are_mixed(self):
        assert combine_status(UpdateStatus.SUCCESS, UpdateStatus.MIXED) == UpdateStatus.MIXED


class TestReport:
    def test_overall_status(self):
        ok = _result("https://a.example.com", UpdateStatus.SUCCESS, UpdateStatus.SUCCESS)
        same = _result("https://b.example.com", UpdateStatus.UNCHANGED, UpdateStatus.UNCHANGED)
        failed = UpdateResult(uri="https://c.example.com")
        failed.mark_failed()

        assert overall_status([ok]) == UpdateStatus.SUCCESS
        assert overall_status([ok, same]) == UpdateStatus.MIXED
        assert overall_status([ok, failed]) == UpdateStatus.FAILED
        assert overall_status([]) == UpdateStatus.UNCHANGED

    def test_subject(self):
        ok = _result("https://a.example.com", UpdateStatus.SUCCESS, UpdateStatus.SUCCESS)
        assert report_subject([ok]) == "Drupal updates: Updated"
        assert report_subject([ok], dry_run=True) == "Drupal updates: Updated (dry-run)"

    def test_report_sections(self):
        result = _result(
            "https://a.example.com",
            UpdateStatus.SUCCESS,
            UpdateStatus.UNCHANGED,
            dry_run=True,
            messages=["**Drupal core updated:**\n\n- drupal/core (10.1.0 => 10.1.6)"],
        )
        failed = UpdateResult(uri="https://b.example.com", errors=["Failed to pull", "could not resolve host"])
        failed.mark_failed()

        report = build_report([result, failed], invalid_sites=["Invalid site definition for site #2: No URI(s) provided."])

        assert report.startswith("# Drupal update report")
        assert "## https://a.example.com" in report
        assert "**Status:** success (core: success, other packages: unchanged)" in report
        assert "_Dry-run: changes were not committed or pushed._" in report
        assert "- drupal/core (10.1.0 => 10.1.6)" in report
        assert "```\nFailed to pull\ncould not resolve host\n```" in report
        assert "## Invalid site definitions" in report


def test_console_notifier_renders_markdown():
    buffer = StringIO()
    notifier = ConsoleNotifier(Console(file=buffer, width=100, color_system=None))
    notifier.deliver("Drupal updates: Updated", "# Report\n\n- drupal/core (10.1.0 => 10.1.6)")
    output = buffer.getvalue()
    assert "Drupal updates: Updated" in output
    assert "drupal/core (10.1.0 => 10.1.6)" in output
