"""Per-site state discovered before any phase runs, and the inspector that builds it."""

from dataclasses import dataclass, field
from pathlib import Path

import structlog
from pydantic import ValidationError

from drupalup.core.exceptions import ToolInvocationError
from drupalup.core.process import DEFAULT_TIMEOUT, LONG_TIMEOUT, CommandRunner
from drupalup.schemas.site import SiteDescriptor, StatusRecord
from drupalup.schemas.updates import ManifestSnapshot
from drupalup.services.drush import DRUSH_RELATIVE_PATH, Drush, find_drush
from drupalup.services.git import ExecutionMode

logger = structlog.get_logger()


@dataclass
class SiteState:
    """Identity, discovered facts and accumulated errors for one site.

    Lives for a single update or rollback run. ``errors`` is append-only.
    """

    descriptor: SiteDescriptor
    mode: ExecutionMode = ExecutionMode.APPLY
    drush_path: str | None = None
    status_by_uri: dict[str, StatusRecord] = field(default_factory=dict)
    alias_by_uri: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    manifest_before: ManifestSnapshot | None = None
    manifest_after: ManifestSnapshot | None = None
    backup_file_by_uri: dict[str, Path] = field(default_factory=dict)

    @property
    def path(self) -> Path:
        return Path(self.descriptor.path)

    @property
    def primary_uri(self) -> str:
        return self.descriptor.primary_uri

    @property
    def is_multisite(self) -> bool:
        return self.descriptor.is_multisite

    @property
    def uris(self) -> list[str]:
        """URIs whose status could be read, in descriptor order."""
        return [uri for uri in self.descriptor.uris if uri in self.status_by_uri]

    @property
    def apply_version_control_changes(self) -> bool:
        return self.mode is ExecutionMode.APPLY

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def docroot_name(self) -> str | None:
        """Basename of the installation root, used for the ``[docroot]`` token."""
        for uri in self.uris:
            return Path(self.status_by_uri[uri].root).name
        return None

    def add_error(self, *lines: str) -> None:
        for line in lines:
            if line:
                self.errors.append(line)

    def drush(
        self,
        runner: CommandRunner,
        timeout: float = DEFAULT_TIMEOUT,
        long_timeout: float = LONG_TIMEOUT,
    ) -> Drush:
        return Drush(runner, self.drush_path, self.path, timeout=timeout, long_timeout=long_timeout)


class SiteInspector:
    """Locates drush and reads aliases and status for every URI of a site."""

    def __init__(
        self,
        runner: CommandRunner,
        timeout: float = DEFAULT_TIMEOUT,
        long_timeout: float = LONG_TIMEOUT,
    ):
        self._runner = runner
        self._timeout = timeout
        self._long_timeout = long_timeout

    async def inspect(
        self,
        descriptor: SiteDescriptor,
        mode: ExecutionMode = ExecutionMode.APPLY,
    ) -> SiteState:
        state = SiteState(descriptor=descriptor, mode=mode)
        drush_path = find_drush(descriptor.path)
        if drush_path is None:
            state.add_error(f"Drush executable not found in {Path(descriptor.path) / DRUSH_RELATIVE_PATH}")
            return state
        state.drush_path = str(drush_path)

        drush = state.drush(self._runner, self._timeout, self._long_timeout)
        await self._load_aliases(state, drush)
        await self._load_statuses(state, drush)
        logger.info(
            "site_inspected",
            uri=state.primary_uri,
            uris=state.uris,
            aliases=state.alias_by_uri,
            errors=len(state.errors),
        )
        return state

    async def _load_aliases(self, state: SiteState, drush: Drush) -> None:
        """Keep aliases whose name contains the match string and whose uri matches a site URI."""
        try:
            aliases = await drush.site_aliases()
        except ToolInvocationError as e:
            state.add_error(f"Failed to obtain site aliases: {e.message}", *e.output_tail())
            return

        match = state.descriptor.prod_alias_name_match
        for alias, info in aliases.items():
            if match not in alias or not isinstance(info, dict):
                continue
            alias_uri = str(info.get("uri") or "")
            for uri in state.descriptor.uris:
                if uri in alias_uri:
                    state.alias_by_uri[uri] = alias
        logger.debug("site_aliases_filtered", uri=state.primary_uri, aliases=state.alias_by_uri)

    async def _load_statuses(self, state: SiteState, drush: Drush) -> None:
        for uri in state.descriptor.uris:
            try:
                raw = await drush.status(uri)
            except ToolInvocationError as e:
                state.add_error(f"Failed to obtain status for {uri}: {e.message}", *e.output_tail())
                continue
            try:
                state.status_by_uri[uri] = StatusRecord.model_validate(raw)
            except ValidationError:
                state.add_error(f"Status for {uri} is missing the root and files keys.")
