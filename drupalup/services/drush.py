"""Thin wrapper around a site's own drush executable."""

import json
import os
from pathlib import Path

import structlog

from drupalup.core.exceptions import ToolInvocationError
from drupalup.core.process import DEFAULT_TIMEOUT, LONG_TIMEOUT, CommandRunner, LineCallback, ProcessResult

logger = structlog.get_logger()

# Relative to the site path.
DRUSH_RELATIVE_PATH = "vendor/bin/drush"


def find_drush(site_path: str | Path) -> Path | None:
    """The site's drush, if it exists and is executable."""
    drush = Path(site_path) / DRUSH_RELATIVE_PATH
    if drush.is_file() and os.access(drush, os.X_OK):
        return drush
    return None


class Drush:
    """Runs drush commands against one site. ``--root`` and ``--yes`` are always added."""

    def __init__(
        self,
        runner: CommandRunner,
        drush_path: str | Path,
        site_path: str | Path,
        timeout: float = DEFAULT_TIMEOUT,
        long_timeout: float = LONG_TIMEOUT,
    ):
        self._runner = runner
        self._drush = str(drush_path)
        self._site_path = Path(site_path)
        self.timeout = timeout
        self.long_timeout = long_timeout

    async def run(
        self,
        command: str,
        *options: str,
        uri: str | None = None,
        timeout: float | None = None,
        on_line: LineCallback | None = None,
    ) -> ProcessResult:
        args = [self._drush, command, *options]
        if uri:
            args.append(f"--uri={uri}")
        args.extend([f"--root={self._site_path}", "--yes"])
        return await self._runner.run(
            args,
            cwd=self._site_path,
            timeout=timeout or self.timeout,
            on_line=on_line,
        )

    async def _json_object(self, command: str, *options: str, uri: str | None = None) -> dict:
        result = await self.run(command, *options, "--format=json", uri=uri)
        if not result.success:
            raise ToolInvocationError(
                code="drush_failed",
                message=f"drush {command} failed" + (f" for {uri}" if uri else ""),
                result=result,
            )
        output = result.output
        if not output:
            return {}
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ToolInvocationError(
                code="drush_invalid_json",
                message=f"drush {command} returned invalid JSON: {e}",
                result=result,
            )
        # PHP encodes an empty map as [].
        if data == []:
            return {}
        if not isinstance(data, dict):
            raise ToolInvocationError(
                code="drush_invalid_json",
                message=f"drush {command} returned a JSON {type(data).__name__}, not an object",
                result=result,
            )
        return data

    async def status(self, uri: str) -> dict:
        return await self._json_object("status", uri=uri)

    async def site_aliases(self) -> dict:
        return await self._json_object("site:alias")
