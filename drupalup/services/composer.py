"""Composer invocation and composer.json / composer.lock reading."""

import json
import re
from pathlib import Path

import semver
import structlog

from drupalup.core.exceptions import StateInconsistencyError
from drupalup.core.process import DEFAULT_TIMEOUT, LONG_TIMEOUT, CommandRunner, LineCallback, ProcessResult
from drupalup.schemas.updates import ManifestSnapshot, PackageInfo

logger = structlog.get_logger()

LOCK_FILE_NAME = "composer.lock"
MANIFEST_FILE_NAME = "composer.json"
MIN_COMPOSER_VERSION = "2.3.6"

_VERSION_PATTERN = re.compile(r"Composer (?:version )?(\d+\.\d+\.\d+)")


def parse_composer_version(output: str) -> str | None:
    match = _VERSION_PATTERN.search(output)
    return match.group(1) if match else None


def is_supported_version(version: str) -> bool:
    try:
        return semver.Version.parse(version) >= semver.Version.parse(MIN_COMPOSER_VERSION)
    except ValueError:
        return False


# ── Manifest reading ─────────────────────────────────────────────────────────


def _load_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise StateInconsistencyError(f"Could not read {path.name}: {e}", details={"path": str(path)})
    if not isinstance(data, dict):
        raise StateInconsistencyError(f"{path.name} is not a JSON object", details={"path": str(path)})
    return data


def read_lock(site_path: str | Path) -> ManifestSnapshot:
    """Package name -> type/version from composer.lock, runtime packages first."""
    data = _load_json(Path(site_path) / LOCK_FILE_NAME)
    snapshot: ManifestSnapshot = {}
    for section in ("packages", "packages-dev"):
        for entry in data.get(section) or []:
            name = entry.get("name")
            if not name:
                continue
            snapshot[name] = PackageInfo(
                type=entry.get("type") or "library",
                version=str(entry.get("version") or ""),
            )
    return snapshot


def read_manifest(site_path: str | Path) -> dict:
    """composer.json, or an empty dict if the site has none."""
    path = Path(site_path) / MANIFEST_FILE_NAME
    if not path.exists():
        return {}
    return _load_json(path)


def lifecycle_scripts(manifest: dict, event: str) -> list[str]:
    """Commands composer runs for ``event``, following ``@script`` references."""
    scripts = manifest.get("scripts") or {}
    commands: list[str] = []
    seen: set[str] = set()

    def expand(name: str) -> None:
        if name in seen:
            return
        seen.add(name)
        entries = scripts.get(name) or []
        if isinstance(entries, str):
            entries = [entries]
        for entry in entries:
            entry = str(entry)
            if entry.startswith("@") and not entry.startswith("@php") and entry[1:] in scripts:
                expand(entry[1:])
            else:
                commands.append(entry)

    expand(event)
    return commands


def scripts_mention(manifest: dict, event: str, needles: tuple[str, ...]) -> bool:
    return any(needle in command for command in lifecycle_scripts(manifest, event) for needle in needles)


def installer_directories(manifest: dict, site_path: str | Path) -> list[Path]:
    """Directories composer populates: the vendor dir plus contrib installer paths.

    Paths containing a ``custom`` segment are left alone.
    """
    site = Path(site_path)
    config = manifest.get("config") or {}
    directories = [site / str(config.get("vendor-dir") or "vendor")]

    installer_paths = (manifest.get("extra") or {}).get("installer-paths") or {}
    for pattern in installer_paths:
        base = str(pattern).split("{$", 1)[0].rstrip("/")
        if not base or base.startswith("/") or ".." in Path(base).parts:
            continue
        if "custom" in Path(base).parts:
            continue
        directory = site / base
        if directory not in directories:
            directories.append(directory)
    return directories


# ── Composer client ──────────────────────────────────────────────────────────


class Composer:
    """Runs composer for one site, always with ``--working-dir``."""

    def __init__(
        self,
        runner: CommandRunner,
        composer_binary: str,
        site_path: str | Path,
        timeout: float = LONG_TIMEOUT,
        on_line: LineCallback | None = None,
    ):
        self._runner = runner
        self._composer = composer_binary
        self._site_path = Path(site_path)
        self._timeout = timeout
        self._on_line = on_line

    async def run(self, command: str, *options: str) -> ProcessResult:
        args = [self._composer, command, *options, f"--working-dir={self._site_path}"]
        logger.info("composer_command_started", command=command, path=str(self._site_path))
        return await self._runner.run(
            args, cwd=self._site_path, timeout=self._timeout, on_line=self._on_line
        )

    async def update(self) -> ProcessResult:
        return await self.run("update", "--no-interaction")

    async def install(self) -> ProcessResult:
        return await self.run("install", "--no-interaction")

    @staticmethod
    async def version(runner: CommandRunner, composer_binary: str) -> str | None:
        result = await runner.run([composer_binary, "--version"], timeout=DEFAULT_TIMEOUT)
        if not result.success:
            return None
        return parse_composer_version(result.stdout)
