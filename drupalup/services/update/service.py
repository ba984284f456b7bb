"""Update service: tool discovery, site selection, and the per-site update and rollback runs."""

import asyncio
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from drupalup.config import AppConfig
from drupalup.core.exceptions import ConfigurationError
from drupalup.core.process import AsyncProcessRunner, CommandRunner, LineCallback
from drupalup.schemas.site import SiteDescriptor
from drupalup.schemas.updates import RollbackCheck, UpdateResult
from drupalup.services.composer import MIN_COMPOSER_VERSION, Composer, is_supported_version
from drupalup.services.git import ExecutionMode
from drupalup.services.site import SiteInspector, SiteState
from drupalup.services.update.orchestrator import UpdateOrchestrator, UpdatePhase
from drupalup.services.update.rollback import RollbackEngine

logger = structlog.get_logger()


@dataclass
class Toolchain:
    git: str
    composer: str
    composer_version: str


def resolve_binary(configured: str | None, name: str) -> str:
    """The configured executable, or ``name`` looked up on the PATH."""
    if configured:
        path = Path(configured).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        raise ConfigurationError(f"The configured {name} path is not an executable file: {configured}")
    found = shutil.which(name)
    if found is None:
        raise ConfigurationError(f"Could not find the {name} executable on the PATH.")
    return found


async def locate_tools(runner: CommandRunner, config: AppConfig) -> Toolchain:
    git = resolve_binary(config.git_path, "git")
    composer = resolve_binary(config.composer_path, "composer")
    version = await Composer.version(runner, composer)
    if version is None:
        raise ConfigurationError(f"Could not determine the version of composer at {composer}.")
    if not is_supported_version(version):
        raise ConfigurationError(
            f"Composer {version} is not supported; version {MIN_COMPOSER_VERSION} or newer is required."
        )
    logger.info("tools_located", git=git, composer=composer, composer_version=version)
    return Toolchain(git=git, composer=composer, composer_version=version)


def select_sites(sites: list[SiteDescriptor], uri: str | None = None) -> list[SiteDescriptor]:
    """All sites, or the one site serving ``uri``."""
    if not uri:
        return list(sites)
    selected = [site for site in sites if uri in site.uris]
    if not selected:
        raise ConfigurationError(f"No site with the URI {uri} is defined in the sites file.")
    return selected


class UpdateService:
    """Wires the inspector, orchestrator and rollback engine to one runner and config."""

    def __init__(
        self,
        config: AppConfig,
        tools: Toolchain,
        runner: CommandRunner | None = None,
        on_line: LineCallback | None = None,
    ):
        self._config = config
        self._runner = runner or AsyncProcessRunner()
        self._inspector = SiteInspector(self._runner, config.timeouts.short, config.timeouts.long)
        self.orchestrator = UpdateOrchestrator(
            self._runner, config, tools.composer, git_binary=tools.git, on_line=on_line
        )
        self.rollback_engine = RollbackEngine(
            self._runner, config, tools.composer, git_binary=tools.git, on_line=on_line
        )

    async def inspect(self, descriptor: SiteDescriptor, mode: ExecutionMode = ExecutionMode.APPLY) -> SiteState:
        return await self._inspector.inspect(descriptor, mode)

    async def update_sites(
        self,
        descriptors: list[SiteDescriptor],
        dry_run: bool = False,
        on_site: Callable[[SiteState], None] | None = None,
    ) -> list[UpdateResult]:
        """Update every site, at most ``max_parallel_sites`` at a time. Results keep input order."""
        mode = ExecutionMode.VERIFY if dry_run else ExecutionMode.APPLY
        semaphore = asyncio.Semaphore(self._config.max_parallel_sites)

        async def _update(descriptor: SiteDescriptor) -> UpdateResult:
            async with semaphore:
                try:
                    state = await self.inspect(descriptor, mode)
                    if on_site is not None:
                        on_site(state)
                    return await self.orchestrator.run(state)
                except Exception as e:
                    # Errors stay with their site.
                    logger.exception("site_update_crashed", uri=descriptor.primary_uri)
                    result = UpdateResult(
                        uri=descriptor.primary_uri,
                        dry_run=dry_run,
                        phase=UpdatePhase.ABORTED.value,
                        errors=[f"Unexpected error: {e}"],
                    )
                    result.mark_failed()
                    return result

        return list(await asyncio.gather(*(_update(descriptor) for descriptor in descriptors)))

    async def rollback_check(self, descriptor: SiteDescriptor) -> tuple[SiteState, RollbackCheck]:
        state = await self.inspect(descriptor, ExecutionMode.APPLY)
        return state, await self.rollback_engine.check(state)

    async def rollback(self, state: SiteState, check: RollbackCheck) -> list[str]:
        return await self.rollback_engine.rollback(state, check)
