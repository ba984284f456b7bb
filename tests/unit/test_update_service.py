"""Unit tests for tool discovery, site selection and multi-site runs."""

import asyncio
import json
import stat

import pytest

from drupalup.core.exceptions import ConfigurationError
from drupalup.schemas.site import SiteDescriptor
from drupalup.schemas.updates import UpdateStatus
from drupalup.services.update.service import Toolchain, UpdateService, locate_tools, resolve_binary, select_sites
from tests.fixtures.sites import app_config, make_site, status_json
from tests.mocks.fake_runner import FakeRunner

TOOLS = Toolchain(git="git", composer="composer", composer_version="2.7.1")


def _executable(path):
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


class CountingRunner(FakeRunner):
    """Tracks how many commands are in flight at once."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def run(self, args, **kwargs):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().run(args, **kwargs)
        finally:
            self.active -= 1


class TestLocateTools:
    def test_configured_path_must_be_executable(self, tmp_path):
        (tmp_path / "composer").write_text("not executable")
        with pytest.raises(ConfigurationError, match="not an executable file"):
            resolve_binary(str(tmp_path / "composer"), "composer")

    def test_path_lookup(self, monkeypatch):
        monkeypatch.setattr("drupalup.services.update.service.shutil.which", lambda name: f"/usr/bin/{name}")
        assert resolve_binary(None, "git") == "/usr/bin/git"

    def test_not_on_path(self, monkeypatch):
        monkeypatch.setattr("drupalup.services.update.service.shutil.which", lambda name: None)
        with pytest.raises(ConfigurationError, match="Could not find the git executable"):
            resolve_binary("", "git")

    @pytest.mark.asyncio
    async def test_supported_composer(self, runner, tmp_path):
        git = _executable(tmp_path / "git")
        composer = _executable(tmp_path / "composer")
        runner.on("composer", "--version", stdout="Composer version 2.7.1 2024-02-09 15:26:28")

        tools = await locate_tools(runner, app_config(git_path=str(git), composer_path=str(composer)))

        assert tools == Toolchain(git=str(git), composer=str(composer), composer_version="2.7.1")

    @pytest.mark.asyncio
    async def test_old_composer_is_rejected(self, runner, tmp_path):
        git = _executable(tmp_path / "git")
        composer = _executable(tmp_path / "composer")
        runner.on("composer", "--version", stdout="Composer version 2.2.21 2023-02-15 13:07:40")

        with pytest.raises(ConfigurationError, match="2.3.6 or newer"):
            await locate_tools(runner, app_config(git_path=str(git), composer_path=str(composer)))


class TestSelectSites:
    def test_all_sites_without_uri(self, tmp_path):
        sites = [SiteDescriptor(uri="https://a.example.com", path=str(tmp_path), prod_alias_name_match="prod")]
        assert select_sites(sites) == sites

    def test_select_by_any_multisite_uri(self, tmp_path):
        multisite = SiteDescriptor(
            uri=["https://one.example.org", "https://two.example.org"], path=str(tmp_path), prod_alias_name_match="prod"
        )
        single = SiteDescriptor(uri="https://a.example.com", path=str(tmp_path), prod_alias_name_match="prod")
        assert select_sites([single, multisite], "https://two.example.org") == [multisite]

    def test_unknown_uri(self, tmp_path):
        with pytest.raises(ConfigurationError, match="No site with the URI"):
            select_sites([], "https://nowhere.example.com")


class TestUpdateSites:
    def _sites(self, tmp_path, count):
        return [
            SiteDescriptor(
                uri=f"https://site{index}.example.com",
                path=str(make_site(tmp_path, name=f"site{index}")),
                prod_alias_name_match="prod",
            )
            for index in range(count)
        ]

    def _script(self, runner, tmp_path):
        runner.on("drush", "site:alias", stdout=json.dumps({}))
        runner.on("drush", "status", stdout=status_json(tmp_path / "web"))
        runner.on("git", "branch", "--show-current", stdout="master\n")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,expected_peak", [(1, 1), (3, 3)])
    async def test_concurrency_is_bounded(self, tmp_path, limit, expected_peak):
        runner = CountingRunner()
        self._script(runner, tmp_path)
        service = UpdateService(app_config(max_parallel_sites=limit), TOOLS, runner)

        results = await service.update_sites(self._sites(tmp_path, 3))

        assert runner.peak == expected_peak
        assert [result.uri for result in results] == [f"https://site{index}.example.com" for index in range(3)]
        assert all(result.status == UpdateStatus.UNCHANGED for result in results)

    @pytest.mark.asyncio
    async def test_failures_stay_with_their_site(self, runner, tmp_path):
        self._script(runner, tmp_path)
        sites = self._sites(tmp_path, 2)
        runner.on("git", "status", stdout=" M x.php\n", times=1)
        announced = []
        service = UpdateService(app_config(), TOOLS, runner)

        results = await service.update_sites(sites, dry_run=True, on_site=lambda state: announced.append(state.primary_uri))

        assert [result.status for result in results] == [UpdateStatus.FAILED, UpdateStatus.UNCHANGED]
        assert all(result.dry_run for result in results)
        assert announced == [site.primary_uri for site in sites]

    @pytest.mark.asyncio
    async def test_malformed_alias_output_fails_each_site(self, runner, tmp_path):
        runner.on("drush", "site:alias", stdout=json.dumps(["@self"]))
        self._script(runner, tmp_path)
        service = UpdateService(app_config(), TOOLS, runner)

        results = await service.update_sites(self._sites(tmp_path, 2))

        assert [result.status for result in results] == [UpdateStatus.FAILED, UpdateStatus.FAILED]
        assert all(result.errors[0].startswith("Failed to obtain site aliases") for result in results)

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_a_failed_result(self, runner, tmp_path, monkeypatch):
        self._script(runner, tmp_path)
        sites = self._sites(tmp_path, 2)
        service = UpdateService(app_config(), TOOLS, runner)
        original_run = service.orchestrator.run

        async def run(state):
            if state.primary_uri == sites[0].primary_uri:
                raise ValueError("No closing quotation")
            return await original_run(state)

        monkeypatch.setattr(service.orchestrator, "run", run)

        results = await service.update_sites(sites, dry_run=True)

        assert results[0].status == UpdateStatus.FAILED
        assert results[0].errors == ["Unexpected error: No closing quotation"]
        assert results[0].phase == "aborted"
        assert results[0].dry_run
        assert results[1].status == UpdateStatus.UNCHANGED
