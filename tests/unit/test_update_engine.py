"""Unit tests for DependencyUpdateEngine (drupalup/services/update/engine.py)."""

import pytest

from drupalup.core.exceptions import DependencyUpdateError
from drupalup.services.git import GitRepository
from drupalup.services.update.engine import DependencyUpdateEngine, render_diff, resolve_file
from tests.fixtures.sites import CORE, TOKEN, lock_writer, make_state


def _engine(runner):
    return DependencyUpdateEngine(runner, "composer", "master")


def _git(runner, site):
    return GitRepository(runner, site, git_binary="git")


class TestRun:
    @pytest.mark.asyncio
    async def test_change_set_from_lock_files(self, runner, site):
        runner.on(
            "composer", "update",
            effect=lock_writer(site, {CORE[0]: (CORE[1], "10.1.6"), TOKEN[0]: (TOKEN[1], "1.13.0")}),
        )
        state = make_state(site)

        outcome = await _engine(runner).run(state, _git(runner, site))

        assert not outcome.unchanged
        assert [c.describe() for c in outcome.change_set.updated_packages] == ["drupal/core (10.1.0 => 10.1.6)"]
        assert [c.describe() for c in outcome.change_set.new_packages] == ["drupal/token (1.13.0)"]
        assert len(runner.find("composer", "update")) == 2
        assert state.manifest_before["drupal/core"].version == "10.1.0"
        assert state.manifest_after["drupal/core"].version == "10.1.6"
        assert not runner.ran("git")

    @pytest.mark.asyncio
    async def test_no_changes_returns_to_main(self, runner, site):
        state = make_state(site)

        outcome = await _engine(runner).run(state, _git(runner, site))

        assert outcome.unchanged
        assert outcome.messages == ["No dependency updates were found."]
        assert runner.commands("git") == [["git", "reset", "--hard", "HEAD"], ["git", "checkout", "master"]]

    @pytest.mark.asyncio
    async def test_first_failure_aborts(self, runner, site):
        runner.fail("composer", "update", stderr="Your requirements could not be resolved", times=1)
        state = make_state(site)

        with pytest.raises(DependencyUpdateError) as exc:
            await _engine(runner).run(state, _git(runner, site))

        assert exc.value.code == "composer_update_failed"
        assert "Your requirements could not be resolved" in exc.value.error_lines()
        assert len(runner.find("composer", "update")) == 1
        assert runner.ran("git", "checkout", "master")

    @pytest.mark.asyncio
    async def test_abort_reset_failure_is_reported(self, runner, site):
        runner.fail("composer", "update", times=1)
        runner.fail("git", "reset", stderr="index.lock exists")
        state = make_state(site)

        with pytest.raises(DependencyUpdateError, match="Manual intervention is required"):
            await _engine(runner).run(state, _git(runner, site))

    @pytest.mark.asyncio
    async def test_unreadable_lock_after_update_aborts_to_main(self, runner, site):
        runner.on("composer", "update", effect=lambda _args: (site / "composer.lock").write_text("{truncated"))
        state = make_state(site)

        with pytest.raises(DependencyUpdateError) as exc:
            await _engine(runner).run(state, _git(runner, site))

        assert exc.value.code == "lock_read_failed"
        assert exc.value.message.startswith("Could not read composer.lock")
        assert exc.value.message.endswith("The working copy was reset and master checked out.")
        assert runner.commands("git") == [["git", "reset", "--hard", "HEAD"], ["git", "checkout", "master"]]

    @pytest.mark.asyncio
    async def test_second_failure_is_only_a_warning(self, runner, site):
        runner.on("composer", "update", effect=lock_writer(site, {CORE[0]: (CORE[1], "10.1.6")}), times=1)
        runner.fail("composer", "update", stderr="post-update script failed")
        state = make_state(site)

        outcome = await _engine(runner).run(state, _git(runner, site))

        assert not outcome.unchanged
        assert outcome.messages[0].startswith("The second composer update run failed")
        assert "post-update script failed" in outcome.messages[0]


class TestDiffAndRevert:
    def test_resolve_docroot_token(self):
        assert resolve_file("[docroot]/.htaccess", "web") == "web/.htaccess"
        assert resolve_file("composer.json", None) == "composer.json"
        assert resolve_file("[docroot]/robots.txt", None) is None

    def test_render_diff(self):
        assert render_diff("web/.htaccess", "-a\n+b", reverted=False) == (
            "**Changes to `web/.htaccess`:**\n\n```diff\n-a\n+b\n```"
        )
        assert "(reverted before commit)" in render_diff("web/.htaccess", "-a", reverted=True)

    @pytest.mark.asyncio
    async def test_diff_files_then_revert_files(self, runner, site):
        runner.on("git", "diff", stdout="-old\n+new\n")
        state = make_state(site)

        messages = await _engine(runner).diff_and_maybe_revert(
            state, _git(runner, site), ["web/robots.txt"], ["[docroot]/.htaccess"]
        )

        assert runner.find("git", "diff") == [
            ["git", "diff", "--", "web/robots.txt"],
            ["git", "diff", "--", "web/.htaccess"],
        ]
        assert runner.find("git", "checkout") == [["git", "checkout", "--", "web/.htaccess"]]
        assert len(messages) == 2
        assert "reverted before commit" in messages[1]
        assert "```diff\n-old\n+new\n```" in messages[0]

    @pytest.mark.asyncio
    async def test_unchanged_files_produce_nothing(self, runner, site):
        state = make_state(site)
        messages = await _engine(runner).diff_and_maybe_revert(
            state, _git(runner, site), [], ["[docroot]/.htaccess"]
        )
        assert messages == []
        assert not runner.ran("git", "checkout")

    @pytest.mark.asyncio
    async def test_failures_become_messages(self, runner, site):
        runner.fail("git", "diff", stderr="fatal: bad revision")
        state = make_state(site)
        messages = await _engine(runner).diff_and_maybe_revert(state, _git(runner, site), ["composer.json"], [])
        assert messages == ["Could not diff `composer.json`: Failed to diff composer.json"]
