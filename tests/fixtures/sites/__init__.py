"""Helpers that build Drupal site directories and in-memory site state for tests."""

import json
import stat
from pathlib import Path

from drupalup.config import AppConfig
from drupalup.schemas.site import SiteDescriptor, StatusRecord
from drupalup.services.git import ExecutionMode
from drupalup.services.site import SiteState

CORE = ("drupal/core", "drupal-core")
TOKEN = ("drupal/token", "drupal-module")
OLIVERO = ("drupal/olivero_plus", "drupal-theme")
GUZZLE = ("guzzlehttp/guzzle", "library")


def lock_data(packages: dict[str, tuple[str, str]], dev: dict[str, tuple[str, str]] | None = None) -> dict:
    """composer.lock content from ``name -> (type, version)``."""

    def entries(items):
        return [{"name": name, "type": kind, "version": version} for name, (kind, version) in items.items()]

    return {"packages": entries(packages), "packages-dev": entries(dev or {})}


def write_lock(site: Path, packages: dict[str, tuple[str, str]], dev=None) -> None:
    (site / "composer.lock").write_text(json.dumps(lock_data(packages, dev)))


def write_manifest(site: Path, manifest: dict) -> None:
    (site / "composer.json").write_text(json.dumps(manifest))


def make_site(base: Path, name: str = "site", packages: dict | None = None, drush: bool = True) -> Path:
    """A site directory with an executable vendor/bin/drush and a composer.lock."""
    site = base / name
    (site / "vendor" / "bin").mkdir(parents=True)
    if drush:
        script = site / "vendor" / "bin" / "drush"
        script.write_text("#!/bin/sh\nexit 0\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    write_lock(site, packages if packages is not None else {CORE[0]: (CORE[1], "10.1.0")})
    return site


def status_json(root: Path, files: str = "sites/default/files") -> str:
    return json.dumps({"root": str(root), "files": files, "db-name": "drupal", "drupal-version": "10.1.0"})


def make_state(
    site: Path,
    uris=("https://www.example.com",),
    aliases: dict[str, str] | None = None,
    mode: ExecutionMode = ExecutionMode.APPLY,
    files: str = "sites/default/files",
) -> SiteState:
    """SiteState as the inspector would leave it for a healthy site."""
    descriptor = SiteDescriptor(uri=list(uris), path=str(site), prod_alias_name_match="prod")
    root = site / "web"
    root.mkdir(exist_ok=True)
    state = SiteState(descriptor=descriptor, mode=mode, drush_path=str(site / "vendor" / "bin" / "drush"))
    for uri in uris:
        state.status_by_uri[uri] = StatusRecord(root=str(root), files=files)
    if aliases is None:
        aliases = {uri: f"@example.prod.{index}" for index, uri in enumerate(uris)}
    state.alias_by_uri.update(aliases)
    return state


def app_config(**overrides) -> AppConfig:
    data = {
        "sanitize_databases_on_sync": True,
        "git": {"commit_author": "Jane Maintainer <jane@example.com>"},
    }
    data.update(overrides)
    return AppConfig.model_validate(data)


def lock_writer(site: Path, packages: dict[str, tuple[str, str]]):
    """Runner effect that rewrites composer.lock, as composer update would."""

    def effect(_args):
        write_lock(site, packages)

    return effect
