"""Rollback: restore the main branch, the database backups and the dependencies."""

import shutil
from pathlib import Path

import structlog

from drupalup.config import AppConfig
from drupalup.core.exceptions import DrupalUpError, RollbackError, StateInconsistencyError
from drupalup.core.process import CommandRunner, LineCallback
from drupalup.schemas.updates import RollbackCheck
from drupalup.services.composer import Composer, installer_directories, read_manifest, scripts_mention
from drupalup.services.database import DatabaseOps
from drupalup.services.git import ExecutionMode, GitRepository
from drupalup.services.site import SiteState

logger = structlog.get_logger()

UNSTABLE_NOTICE = "The site may be in an unstable state and need manual intervention."

# Substrings of post-install-cmd scripts that already cover the drush steps.
CACHE_REBUILD_COMMANDS = ("drush cr", "drush cache:rebuild", "drush cache-rebuild", "drush deploy")
SCHEMA_UPDATE_COMMANDS = ("drush updb", "drush updatedb", "drush deploy")


class RollbackEngine:
    """Returns a site to its pre-update code and database."""

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
        self._composer_binary = composer_binary
        self._git_binary = git_binary
        self._on_line = on_line
        self._database = DatabaseOps(
            runner,
            timeout=config.timeouts.short,
            long_timeout=config.timeouts.long,
            on_line=on_line,
        )

    def repository(self, state: SiteState) -> GitRepository:
        # Rollback always applies its changes.
        return GitRepository(
            self._runner,
            state.path,
            git_binary=self._git_binary,
            mode=ExecutionMode.APPLY,
            timeout=self._config.timeouts.short,
            push_timeout=self._config.timeouts.long,
        )

    async def check(self, state: SiteState) -> RollbackCheck:
        """A repository, an allowed branch and at least one backup file are required."""
        git = self.repository(state)
        if state.has_errors:
            return RollbackCheck(reason="; ".join(state.errors))

        if not await git.has_repository():
            return RollbackCheck(reason="The site does not have a git repository.")

        allowed = [self._config.git.main_branch, self._config.git.update_branch]
        if not await git.is_on_allowed_branch(allowed):
            branch = await git.current_branch()
            return RollbackCheck(
                reason=f"The site is on branch {branch or '(unknown)'}; "
                f"rollback requires one of: {', '.join(allowed)}."
            )

        backups = self._database.existing_backups(state)
        if not backups:
            return RollbackCheck(reason="No database backup files were found for this site.")

        backed_up = list(backups)
        check = RollbackCheck(can_rollback=True, backed_up_uris=backed_up)
        missing = [uri for uri in state.uris if uri not in backups]
        if missing:
            check.multisite_partial_backups_only = True
            check.reason = (
                f"Database backups exist only for {', '.join(backed_up)}; "
                f"no backup was found for {', '.join(missing)}."
            )
        return check

    async def rollback(self, state: SiteState, check: RollbackCheck | None = None) -> list[str]:
        """Run every rollback step in order. The first failing step stops the rollback."""
        check = check or await self.check(state)
        if not check.can_rollback:
            raise StateInconsistencyError(check.reason or "Rollback is not possible for this site.")

        git = self.repository(state)
        main_branch = self._config.git.main_branch
        messages = []
        logger.info("site_rollback_started", uri=state.primary_uri, backups=check.backed_up_uris)

        await self._step("reset_failed", "Failed to reset the working copy", git.hard_reset)
        await self._step("clean_failed", "Failed to clean the working copy", git.clean)
        await self._step("checkout_failed", f"Failed to check out {main_branch}", git.checkout, main_branch)
        messages.append(f"Working copy reset to {main_branch}.")

        for uri in check.backed_up_uris:
            await self._step(
                "import_failed",
                f"Failed to import the database backup for {uri}. {UNSTABLE_NOTICE}",
                self._database.import_backup, state, uri,
            )
            messages.append(f"Database for {uri} restored from {self._database.backup_file(state, uri)}.")

        try:
            manifest = read_manifest(state.path)
        except StateInconsistencyError as e:
            raise RollbackError(code="cleanup_failed", message=f"{e.message}. {UNSTABLE_NOTICE}")
        removed = self._remove_directories(installer_directories(manifest, state.path))
        if removed:
            messages.append("Removed " + ", ".join(str(p) for p in removed) + ".")

        composer = Composer(
            self._runner,
            self._composer_binary,
            state.path,
            timeout=self._config.timeouts.long,
            on_line=self._on_line,
        )
        result = await composer.install()
        if not result.success:
            raise RollbackError(
                code="install_failed",
                message=f"composer install failed. {UNSTABLE_NOTICE}",
                result=result,
            )
        messages.append("Dependencies reinstalled.")

        await self._post_install(state, manifest, messages)

        await self._step("final_reset_failed", "Failed to reset the working copy", git.hard_reset)
        logger.info("site_rollback_completed", uri=state.primary_uri)
        messages.append("Rollback completed.")
        return messages

    async def _step(self, code: str, message: str, step_fn, *args):
        try:
            return await step_fn(*args)
        except DrupalUpError as e:
            logger.error("site_rollback_failed", step=code, error=e.message)
            raise RollbackError(code=code, message=message, result=getattr(e, "result", None))

    def _remove_directories(self, directories: list[Path]) -> list[Path]:
        removed = []
        for directory in directories:
            if not directory.is_dir():
                continue
            try:
                shutil.rmtree(directory)
            except OSError as e:
                logger.error("site_rollback_failed", step="cleanup_failed", path=str(directory))
                raise RollbackError(
                    code="cleanup_failed",
                    message=f"Failed to remove {directory}: {e}. {UNSTABLE_NOTICE}",
                )
            removed.append(directory)
            logger.info("rollback_directory_removed", path=str(directory))
        return removed

    async def _post_install(self, state: SiteState, manifest: dict, messages: list[str]) -> None:
        """Schema updates and cache rebuilds, unless composer's post-install hooks ran them."""
        run_updb = not scripts_mention(manifest, "post-install-cmd", SCHEMA_UPDATE_COMMANDS)
        run_cr = not scripts_mention(manifest, "post-install-cmd", CACHE_REBUILD_COMMANDS)
        if not run_updb and not run_cr:
            return

        drush = state.drush(self._runner, self._config.timeouts.short, self._config.timeouts.long)
        for uri in state.uris:
            if run_updb:
                result = await drush.run("updb", uri=uri, timeout=self._config.timeouts.long)
                if not result.success:
                    raise RollbackError(
                        code="updb_failed",
                        message=f"Database updates failed for {uri}. {UNSTABLE_NOTICE}",
                        result=result,
                    )
            if run_cr:
                result = await drush.run("cr", uri=uri, timeout=self._config.timeouts.long)
                if not result.success:
                    raise RollbackError(
                        code="cache_rebuild_failed",
                        message=f"Cache rebuild failed for {uri}. {UNSTABLE_NOTICE}",
                        result=result,
                    )
            done = [step for step, ran in (("database updates", run_updb), ("cache rebuild", run_cr)) if ran]
            messages.append(f"Ran {' and '.join(done)} for {uri}.")
