"""Version control guard for a site's working copy.

All git calls run with ``cwd`` set to the site path. ``ExecutionMode.VERIFY``
is the dry-run mode: commit and push get ``--dry-run -v``, branch mutations
still run, their output goes to the debug log, and their failures are
reported as warnings instead of raising.
"""

from enum import Enum
from pathlib import Path

import structlog

from drupalup.core.exceptions import RepositoryError
from drupalup.core.process import DEFAULT_TIMEOUT, CommandRunner, ProcessResult

logger = structlog.get_logger()


class ExecutionMode(str, Enum):
    APPLY = "apply"
    VERIFY = "verify"


PUBLISHING_COMMANDS = {"commit", "push"}


class GitRepository:
    """Checks and mutates the git state of one site."""

    def __init__(
        self,
        runner: CommandRunner,
        path: str | Path,
        git_binary: str = "git",
        mode: ExecutionMode = ExecutionMode.APPLY,
        timeout: float = DEFAULT_TIMEOUT,
        push_timeout: float | None = None,
    ):
        self._runner = runner
        self._path = Path(path)
        self._git = git_binary
        self._mode = mode
        self._timeout = timeout
        self._push_timeout = push_timeout or timeout
        self.warnings: list[str] = []

    @property
    def mode(self) -> ExecutionMode:
        return self._mode

    @property
    def applies_changes(self) -> bool:
        return self._mode is ExecutionMode.APPLY

    # ── Command plumbing ─────────────────────────────────────────────────────

    def _is_mutation(self, args: list[str]) -> bool:
        command = args[0]
        return (
            command in PUBLISHING_COMMANDS
            or (command == "checkout" and "-b" in args)
            or (command == "branch" and "-D" in args)
        )

    async def run(self, *args: str, timeout: float | None = None) -> ProcessResult:
        cmd = list(args)
        verify_mutation = not self.applies_changes and self._is_mutation(cmd)
        if not self.applies_changes and cmd[0] in PUBLISHING_COMMANDS:
            cmd.extend(["--dry-run", "-v"])

        on_line = None
        if verify_mutation:
            logger.debug("git_verify_command", command="git " + " ".join(cmd), path=str(self._path))

            def on_line(_stream: str, line: str) -> None:
                logger.debug("git_verify_output", line=line)

        if timeout is None:
            timeout = self._push_timeout if cmd[0] == "push" else self._timeout
        return await self._runner.run(
            [self._git, *cmd], cwd=self._path, timeout=timeout, on_line=on_line
        )

    def _escalate(self, code: str, message: str, result: ProcessResult) -> None:
        """Raise in APPLY mode; record a warning in VERIFY mode."""
        if self.applies_changes:
            raise RepositoryError(code=code, message=message, result=result)
        warning = f"{message} (dry-run, not fatal)"
        if result.stderr.strip():
            warning += f": {result.stderr.strip()}"
        self.warnings.append(warning)
        logger.warning("git_verify_failure", code=code, error=result.stderr.strip()[:500])

    # ── Predicates ───────────────────────────────────────────────────────────

    async def has_repository(self) -> bool:
        return (await self.run("status", "--short")).success

    async def current_branch(self) -> str | None:
        result = await self.run("branch", "--show-current")
        if not result.success:
            return None
        return result.output

    async def is_on_allowed_branch(self, allowed_branches: str | list[str]) -> bool:
        """Exact, case-sensitive match of the current branch against ``allowed_branches``."""
        if isinstance(allowed_branches, str):
            allowed_branches = [allowed_branches]
        branch = await self.current_branch()
        if branch is None:
            return False
        return branch in allowed_branches

    # ── Validation ───────────────────────────────────────────────────────────

    async def ensure_clean(self, allowed_branches: str | list[str]) -> None:
        """Require a clean working copy on an allowed branch, then pull.

        Nothing is reset on failure: the caller must not have made local changes yet.
        """
        if isinstance(allowed_branches, str):
            allowed_branches = [allowed_branches]

        status = await self.run("status", "--short")
        if not status.success:
            raise RepositoryError(
                code="no_repository",
                message="The site does not have a git repository:",
                result=status,
            )
        if status.output:
            changed = [line.strip() for line in status.output.splitlines() if line.strip()]
            raise RepositoryError(
                code="uncommitted_changes",
                message="The site codebase contains uncommitted changes:",
                result=status,
                lines=changed,
            )

        if not await self.is_on_allowed_branch(allowed_branches):
            raise RepositoryError(
                code="branch_not_allowed",
                message="The current working copy of the site is not on an allowed branch: "
                + ", ".join(allowed_branches),
            )

        pull = await self.run("pull")
        if not pull.success:
            raise RepositoryError(
                code="pull_failed",
                message="Failed to pull the latest changes from the git repository:",
                result=pull,
            )
        logger.info("git_repository_clean", path=str(self._path), branches=allowed_branches)

    # ── Branch management ────────────────────────────────────────────────────

    async def local_branch_exists(self, branch: str) -> bool:
        result = await self.run("branch", "--list", branch)
        return result.success and bool(result.output)

    async def remote_branch_exists(self, remote: str, branch: str) -> bool:
        result = await self.run("ls-remote", "--heads", remote, branch)
        return result.success and bool(result.output)

    async def setup_clean_update_branch(self, branch: str, remote: str) -> None:
        """Recreate ``branch`` from HEAD and push it upstream.

        Stale local and remote copies are deleted first; their absence is fine.
        """
        if await self.local_branch_exists(branch):
            result = await self.run("branch", "-D", branch)
            if not result.success:
                self._escalate("branch_delete_failed", f"Failed to delete local branch {branch}", result)

        if await self.remote_branch_exists(remote, branch):
            result = await self.run("push", remote, "--delete", branch)
            if not result.success:
                self._escalate(
                    "remote_branch_delete_failed",
                    f"Failed to delete remote branch {remote}/{branch}",
                    result,
                )

        result = await self.run("checkout", "-b", branch)
        if not result.success:
            self._escalate("branch_create_failed", f"Failed to create branch {branch}", result)

        result = await self.run("push", "-u", remote, branch)
        if not result.success:
            self._escalate("branch_push_failed", f"Failed to push branch {branch} to {remote}", result)

        logger.info("git_update_branch_ready", branch=branch, remote=remote, mode=self._mode.value)

    async def commit_and_push(self, author: str, message: str) -> None:
        result = await self.run("add", "-A")
        if not result.success:
            self._escalate("add_failed", "Failed to stage changes", result)

        result = await self.run("commit", f"--author={author}", f"--message={message}")
        if not result.success:
            self._escalate("commit_failed", "Failed to commit changes", result)
            return

        result = await self.run("push")
        if not result.success:
            self._escalate("push_failed", "Failed to push changes", result)
            return
        logger.info("git_changes_pushed", path=str(self._path), mode=self._mode.value)

    # ── Working copy resets ──────────────────────────────────────────────────

    async def hard_reset(self) -> None:
        result = await self.run("reset", "--hard", "HEAD")
        if not result.success:
            raise RepositoryError(code="reset_failed", message="Failed to reset the working copy", result=result)

    async def clean(self) -> None:
        result = await self.run("clean", "-f", "-d")
        if not result.success:
            raise RepositoryError(code="clean_failed", message="Failed to clean the working copy", result=result)

    async def checkout(self, branch: str) -> None:
        result = await self.run("checkout", branch)
        if not result.success:
            raise RepositoryError(
                code="checkout_failed",
                message=f"Failed to check out branch {branch}",
                result=result,
            )

    async def abort_to_branch(self, branch: str) -> None:
        """Discard local modifications and return to ``branch``."""
        await self.hard_reset()
        await self.checkout(branch)
        logger.info("git_aborted_to_branch", branch=branch, path=str(self._path))

    # ── Files ────────────────────────────────────────────────────────────────

    async def diff_file(self, file_path: str) -> str:
        result = await self.run("diff", "--", file_path)
        if not result.success:
            raise RepositoryError(code="diff_failed", message=f"Failed to diff {file_path}", result=result)
        return result.stdout.rstrip()

    async def revert_file(self, file_path: str) -> None:
        result = await self.run("checkout", "--", file_path)
        if not result.success:
            raise RepositoryError(code="revert_failed", message=f"Failed to revert {file_path}", result=result)
