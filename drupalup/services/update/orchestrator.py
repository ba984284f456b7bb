"""Update orchestrator: drives one site through the update phases.

Phases run strictly in order. Any fatal failure stops the site, records its
error lines on the site state and marks every status as failed; other sites
are unaffected.
"""

import shlex
from datetime import datetime, timezone
from enum import Enum

import structlog

from drupalup.config import AppConfig
from drupalup.core.exceptions import DrupalUpError, RepositoryError
from drupalup.core.process import CommandRunner, LineCallback, tail
from drupalup.schemas.updates import ChangeSet, Classification, UpdateResult, UpdateStatus
from drupalup.services.database import DatabaseOps
from drupalup.services.git import GitRepository
from drupalup.services.site import SiteState
from drupalup.services.update.classify import classify
from drupalup.services.update.engine import DependencyUpdateEngine

logger = structlog.get_logger()


class UpdatePhase(str, Enum):
    START = "start"
    REPO_VALIDATED = "repo_validated"
    DB_SYNCED = "db_synced"
    DB_BACKED_UP = "db_backed_up"
    BRANCH_READY = "branch_ready"
    DEPENDENCIES_UPDATED = "dependencies_updated"
    POST_PROCESSED = "post_processed"
    COMMITTED = "committed"
    DONE = "done"
    ABORTED = "aborted"


def commit_message(change_set: ChangeSet, when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    lines = [f"Drupal updates {when:%Y-%m-%d}", ""]
    lines.extend(f"- {change.describe()}" for change in change_set.updated_packages)
    lines.extend(f"- {change.describe()} (new)" for change in change_set.new_packages)
    return "\n".join(lines)


class UpdateOrchestrator:
    """Runs the update workflow for one site at a time."""

    def __init__(
        self,
        runner: CommandRunner,
        config: AppConfig,
        composer_binary: str,
        git_binary: str = "git",
        on_line: LineCallback | None = None,
    ):
        self._runner = runner
        self._config = config
        self._git_binary = git_binary
        self._on_line = on_line
        self._database = DatabaseOps(
            runner,
            timeout=config.timeouts.short,
            long_timeout=config.timeouts.long,
            on_line=on_line,
        )
        self._engine = DependencyUpdateEngine(
            runner,
            composer_binary,
            config.git.main_branch,
            timeout=config.timeouts.long,
            on_line=on_line,
        )

    def repository(self, state: SiteState) -> GitRepository:
        return GitRepository(
            self._runner,
            state.path,
            git_binary=self._git_binary,
            mode=state.mode,
            timeout=self._config.timeouts.short,
            push_timeout=self._config.timeouts.long,
        )

    async def run(self, state: SiteState) -> UpdateResult:
        result = UpdateResult(uri=state.primary_uri, dry_run=not state.apply_version_control_changes)
        git = self.repository(state)

        if state.has_errors or not state.uris:
            if not state.has_errors:
                state.add_error("No URI of this site returned a usable status.")
            result.mark_failed()
            result.phase = UpdatePhase.ABORTED.value
            result.errors = list(state.errors)
            logger.error("site_update_skipped", uri=state.primary_uri, errors=state.errors)
            return result

        git_config = self._config.git
        logger.info("site_update_started", uri=state.primary_uri, mode=state.mode.value)
        try:
            await self._run_step(
                result, UpdatePhase.REPO_VALIDATED,
                git.ensure_clean, [git_config.main_branch],
            )
            result.messages.extend(
                await self._run_step(
                    result, UpdatePhase.DB_SYNCED,
                    self._database.sync, state, self._config.sanitize_databases_on_sync,
                )
            )
            result.messages.extend(
                await self._run_step(
                    result, UpdatePhase.DB_BACKED_UP,
                    self._database.backup, state,
                )
            )
            await self._run_step(
                result, UpdatePhase.BRANCH_READY,
                git.setup_clean_update_branch, git_config.update_branch, git_config.remote_key,
            )
            outcome = await self._run_step(
                result, UpdatePhase.DEPENDENCIES_UPDATED,
                self._engine.run, state, git,
            )
            result.messages.extend(outcome.messages)

            if outcome.unchanged:
                result.set_outcome(UpdateStatus.UNCHANGED, UpdateStatus.UNCHANGED)
            else:
                classification = await self._post_process(state, git, outcome.change_set, result)
                await self._run_step(
                    result, UpdatePhase.COMMITTED,
                    git.commit_and_push, git_config.commit_author, commit_message(outcome.change_set),
                )
                await self._post_update_script(state, result)
                if not state.apply_version_control_changes:
                    await self._leave_dry_run(git, result)
                result.set_outcome(
                    UpdateStatus.SUCCESS if classification.core else UpdateStatus.UNCHANGED,
                    UpdateStatus.SUCCESS if classification.other_changed else UpdateStatus.UNCHANGED,
                )
            result.phase = UpdatePhase.DONE.value
            logger.info("site_update_completed", uri=state.primary_uri, status=result.status.value)

        except DrupalUpError as e:
            state.add_error(*e.error_lines())
            result.mark_failed()
            logger.error(
                "site_update_failed",
                uri=state.primary_uri,
                phase=result.phase,
                code=e.code,
                error=e.message,
            )
            result.phase = UpdatePhase.ABORTED.value

        result.messages.extend(git.warnings)
        result.errors = list(state.errors)
        return result

    async def _run_step(self, result: UpdateResult, phase: UpdatePhase, step_fn, *args):
        """Execute a phase and advance ``result.phase`` on success."""
        try:
            value = await step_fn(*args)
        except DrupalUpError:
            raise
        except Exception as e:
            logger.exception("site_update_unexpected_error", uri=result.uri, phase=phase.value)
            raise DrupalUpError(
                code=f"{phase.value}_error",
                message=f"Step '{phase.value}' failed: {e}",
            )
        result.phase = phase.value
        logger.info("site_update_phase_completed", uri=result.uri, phase=phase.value)
        return value

    async def _post_process(
        self,
        state: SiteState,
        git: GitRepository,
        change_set: ChangeSet,
        result: UpdateResult,
    ) -> Classification:
        """Classification and post-update diffs. Never fatal."""
        try:
            classification = classify(change_set)
        except Exception:
            logger.exception("classification_failed", uri=state.primary_uri)
            result.messages.append("The package changes could not be classified.")
            classification = Classification(core=True, other=True)
        result.messages.extend(classification.messages)

        try:
            result.messages.extend(
                await self._engine.diff_and_maybe_revert(
                    state,
                    git,
                    self._config.diff_only_files,
                    self._config.post_update_revert_files,
                )
            )
        except Exception:
            logger.exception("post_update_diff_error", uri=state.primary_uri)
            result.messages.append("The post-update file diffs could not be produced.")

        result.phase = UpdatePhase.POST_PROCESSED.value
        return classification

    async def _post_update_script(self, state: SiteState, result: UpdateResult) -> None:
        script = self._config.post_update_script
        if not script:
            return
        if not state.apply_version_control_changes:
            result.messages.append(f"Dry-run: post-update script `{script}` was not run.")
            return

        logger.info("post_update_script_started", uri=state.primary_uri, script=script)
        try:
            outcome = await self._runner.run(
                shlex.split(script),
                cwd=state.path,
                timeout=self._config.timeouts.long,
                on_line=self._on_line,
            )
        except (ValueError, OSError) as e:
            logger.warning("post_update_script_failed", uri=state.primary_uri, error=str(e))
            result.messages.append(f"Post-update script `{script}` could not be run: {e}.")
            return
        if outcome.success:
            result.messages.append(f"Post-update script `{script}` completed.")
            return

        logger.warning("post_update_script_failed", uri=state.primary_uri, returncode=outcome.returncode)
        lines = tail(outcome.stderr or outcome.stdout)
        message = f"Post-update script `{script}` failed"
        message += " (timed out)." if outcome.timed_out else f" with exit code {outcome.returncode}."
        if lines:
            message += "\n\n" + "\n".join(f"    {line}" for line in lines)
        result.messages.append(message)

    async def _leave_dry_run(self, git: GitRepository, result: UpdateResult) -> None:
        """Discard the dry run's working-copy changes and return to the main branch."""
        main_branch = self._config.git.main_branch
        try:
            await git.abort_to_branch(main_branch)
        except RepositoryError as e:
            logger.warning("dry_run_reset_failed", uri=result.uri, error=e.message)
            result.messages.append(
                f"Dry-run: the working copy could not be reset to {main_branch} ({e.message}). "
                "Clean it up before the next update."
            )
            return
        result.messages.append(f"Dry-run: working copy reset and {main_branch} checked out.")
