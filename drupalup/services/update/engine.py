"""Dependency update engine: composer update, change detection, post-update diffs."""

from dataclasses import dataclass, field

import structlog

from drupalup.core.exceptions import DependencyUpdateError, RepositoryError, StateInconsistencyError
from drupalup.core.process import LONG_TIMEOUT, CommandRunner, LineCallback, ProcessResult, tail
from drupalup.schemas.updates import ChangeSet
from drupalup.services.composer import Composer, read_lock
from drupalup.services.git import GitRepository
from drupalup.services.site import SiteState
from drupalup.services.update.classify import compute_changes

logger = structlog.get_logger()

DOCROOT_TOKEN = "[docroot]"


@dataclass
class DependencyUpdateOutcome:
    change_set: ChangeSet
    messages: list[str] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        return self.change_set.is_empty


def resolve_file(file_path: str, docroot_name: str | None) -> str | None:
    """Substitute ``[docroot]``. None when the token is present but the docroot is unknown."""
    if DOCROOT_TOKEN not in file_path:
        return file_path
    if not docroot_name:
        return None
    return file_path.replace(DOCROOT_TOKEN, docroot_name)


def render_diff(file_path: str, diff: str, reverted: bool) -> str:
    heading = f"**Changes to `{file_path}`"
    heading += " (reverted before commit):**" if reverted else ":**"
    return f"{heading}\n\n```diff\n{diff}\n```"


class DependencyUpdateEngine:
    """Runs composer update on the update branch and reports what changed."""

    def __init__(
        self,
        runner: CommandRunner,
        composer_binary: str,
        main_branch: str,
        timeout: float = LONG_TIMEOUT,
        on_line: LineCallback | None = None,
    ):
        self._runner = runner
        self._composer_binary = composer_binary
        self._main_branch = main_branch
        self._timeout = timeout
        self._on_line = on_line

    def _composer(self, state: SiteState) -> Composer:
        return Composer(
            self._runner,
            self._composer_binary,
            state.path,
            timeout=self._timeout,
            on_line=self._on_line,
        )

    async def run(self, state: SiteState, git: GitRepository) -> DependencyUpdateOutcome:
        """Update dependencies and compute the change set.

        composer update runs twice: the second pass picks up packages the first
        one reverted or missed. Only a failure of the first run aborts.
        """
        composer = self._composer(state)
        state.manifest_before = read_lock(state.path)
        messages = []

        first = await composer.update()
        if not first.success:
            await self._abort(git, "Composer update failed", result=first)

        second = await composer.update()
        if not second.success:
            logger.warning("composer_second_update_failed", uri=state.primary_uri)
            messages.append(
                "The second composer update run failed; results reflect the first run:\n\n"
                + "\n".join(f"    {line}" for line in tail(second.stderr or second.stdout))
            )

        try:
            state.manifest_after = read_lock(state.path)
        except StateInconsistencyError as e:
            logger.error("composer_lock_unreadable", uri=state.primary_uri, error=e.message)
            await self._abort(git, e.message, code="lock_read_failed")
        change_set = compute_changes(state.manifest_before, state.manifest_after)
        logger.info(
            "composer_update_completed",
            uri=state.primary_uri,
            new=len(change_set.new_packages),
            updated=len(change_set.updated_packages),
        )

        if change_set.is_empty:
            # Nothing to keep on the update branch.
            await git.abort_to_branch(self._main_branch)
            messages.append("No dependency updates were found.")
        return DependencyUpdateOutcome(change_set=change_set, messages=messages)

    async def _abort(
        self,
        git: GitRepository,
        reason: str,
        code: str = "composer_update_failed",
        result: ProcessResult | None = None,
    ) -> None:
        message = f"{reason}. The working copy was reset and {self._main_branch} checked out."
        try:
            await git.abort_to_branch(self._main_branch)
        except RepositoryError as e:
            logger.error("composer_abort_reset_failed", error=e.message)
            message = (
                f"{reason} and the working copy could not be reset to "
                f"{self._main_branch} ({e.message}). Manual intervention is required."
            )
        raise DependencyUpdateError(code=code, message=message, result=result)

    async def diff_and_maybe_revert(
        self,
        state: SiteState,
        git: GitRepository,
        diff_files: list[str],
        revert_files: list[str],
    ) -> list[str]:
        """Report working-copy diffs of ``diff_files``; diff and revert ``revert_files``.

        Failures become messages, never exceptions.
        """
        targets = [(f, False) for f in diff_files]
        targets.extend((f, True) for f in revert_files)

        messages = []
        for configured, revert in targets:
            file_path = resolve_file(configured, state.docroot_name)
            if file_path is None:
                messages.append(f"Could not resolve `{configured}`: the site docroot is unknown.")
                continue
            try:
                diff = await git.diff_file(file_path)
            except RepositoryError as e:
                logger.warning("post_update_diff_failed", file=file_path, error=e.message)
                messages.append(f"Could not diff `{file_path}`: {e.message}")
                continue
            if not diff:
                continue

            reverted = False
            if revert:
                try:
                    await git.revert_file(file_path)
                    reverted = True
                except RepositoryError as e:
                    logger.warning("post_update_revert_failed", file=file_path, error=e.message)
                    messages.append(f"Could not revert `{file_path}`: {e.message}")
            messages.append(render_diff(file_path, diff, reverted))
            logger.info("post_update_diff_recorded", file=file_path, reverted=reverted)
        return messages
