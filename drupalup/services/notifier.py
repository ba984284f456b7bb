"""Update reports and their delivery."""

from abc import ABC, abstractmethod

import structlog
from rich.console import Console
from rich.markdown import Markdown

from drupalup.schemas.updates import UpdateResult, UpdateStatus

logger = structlog.get_logger()

STATUS_LABELS = {
    UpdateStatus.UNCHANGED: "No updates",
    UpdateStatus.SUCCESS: "Updated",
    UpdateStatus.FAILED: "Failed",
    UpdateStatus.MIXED: "Partially updated",
}


def overall_status(results: list[UpdateResult]) -> UpdateStatus:
    if not results:
        return UpdateStatus.UNCHANGED
    statuses = {result.status for result in results}
    if UpdateStatus.FAILED in statuses:
        return UpdateStatus.FAILED
    if len(statuses) == 1:
        return statuses.pop()
    return UpdateStatus.MIXED


def report_subject(results: list[UpdateResult], dry_run: bool = False) -> str:
    subject = f"Drupal updates: {STATUS_LABELS[overall_status(results)]}"
    return f"{subject} (dry-run)" if dry_run else subject


def build_site_report(result: UpdateResult) -> str:
    lines = [
        f"## {result.uri}",
        "",
        f"**Status:** {result.status.value} "
        f"(core: {result.core_status.value}, other packages: {result.other_status.value})",
    ]
    if result.dry_run:
        lines.extend(["", "_Dry-run: changes were not committed or pushed._"])
    for message in result.messages:
        lines.extend(["", message])
    if result.errors:
        lines.extend(["", "**Errors:**", "", "```", *result.errors, "```"])
    return "\n".join(lines)


def build_report(results: list[UpdateResult], invalid_sites: list[str] | None = None) -> str:
    """Markdown report for every processed site, followed by rejected site definitions."""
    sections = ["# Drupal update report"]
    sections.extend(build_site_report(result) for result in results)
    if invalid_sites:
        sections.append("## Invalid site definitions\n\n" + "\n".join(f"- {line}" for line in invalid_sites))
    return "\n\n".join(sections)


class Notifier(ABC):
    """Delivers a finished report."""

    @abstractmethod
    def deliver(self, subject: str, body: str) -> None: ...


class ConsoleNotifier(Notifier):
    """Renders the report on the terminal."""

    def __init__(self, console: Console | None = None):
        self._console = console or Console()

    def deliver(self, subject: str, body: str) -> None:
        self._console.rule(subject)
        self._console.print(Markdown(body))
        logger.info("report_delivered", notifier="console", subject=subject)
