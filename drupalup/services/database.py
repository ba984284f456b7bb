"""Database sync from production, per-URI backups and backup import."""

import re
from datetime import datetime, timezone
from pathlib import Path

import structlog

from drupalup.core.exceptions import DatabaseError
from drupalup.core.process import DEFAULT_TIMEOUT, LONG_TIMEOUT, CommandRunner, LineCallback
from drupalup.services.site import SiteState

logger = structlog.get_logger()

BACKUP_DIR_NAME = "database-backups"

_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_uri(uri: str) -> str:
    """File-name safe form of a URI: scheme dropped, anything unusual replaced by ``_``."""
    return _UNSAFE.sub("_", _SCHEME.sub("", uri.strip()).rstrip("/"))


class DatabaseOps:
    """Database work for a site, always through the site's own drush."""

    def __init__(
        self,
        runner: CommandRunner,
        timeout: float = DEFAULT_TIMEOUT,
        long_timeout: float = LONG_TIMEOUT,
        on_line: LineCallback | None = None,
    ):
        self._runner = runner
        self._timeout = timeout
        self._long_timeout = long_timeout
        self._on_line = on_line

    def _drush(self, state: SiteState):
        return state.drush(self._runner, self._timeout, self._long_timeout)

    # ── Backup locations ─────────────────────────────────────────────────────

    @staticmethod
    def backup_directory(state: SiteState, uri: str) -> Path:
        status = state.status_by_uri[uri]
        return Path(status.root) / status.files / BACKUP_DIR_NAME

    def backup_file(self, state: SiteState, uri: str) -> Path:
        """``<root>/<files>/database-backups/<sanitized-uri>.sql``, computed once per run."""
        if uri not in state.backup_file_by_uri:
            state.backup_file_by_uri[uri] = self.backup_directory(state, uri) / f"{sanitize_uri(uri)}.sql"
        return state.backup_file_by_uri[uri]

    def existing_backups(self, state: SiteState) -> dict[str, Path]:
        backups = {}
        for uri in state.uris:
            path = self.backup_file(state, uri)
            if path.is_file():
                backups[uri] = path
        return backups

    @staticmethod
    def _ensure_directory(directory: Path, uri: str) -> None:
        try:
            directory.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(
                code="backup_directory_failed",
                message=f"Could not create directory for database backup of {uri}: {directory} ({e})",
            )

    # ── Phases ───────────────────────────────────────────────────────────────

    async def sync(self, state: SiteState, sanitize: bool = True) -> list[str]:
        """Pull each URI's database from its production alias.

        URIs without an alias are skipped with a warning message.
        """
        messages = []
        missing = [uri for uri in state.uris if uri not in state.alias_by_uri]
        if missing and len(missing) == len(state.uris):
            messages.append("Database cannot be synchronized from production: no production alias found.")
            logger.warning("database_sync_unavailable", uri=state.primary_uri)
        elif missing:
            messages.append(
                "Database cannot be synchronized from production for: " + ", ".join(missing)
            )
            logger.warning("database_sync_partial", uri=state.primary_uri, missing=missing)

        drush = self._drush(state)
        for uri in state.uris:
            alias = state.alias_by_uri.get(uri)
            if alias is None:
                continue

            logger.info("database_sync_started", uri=uri, alias=alias)
            result = await drush.run(
                "sql-sync", alias, "@self", uri=uri, timeout=self._long_timeout, on_line=self._on_line
            )
            if not result.success:
                raise DatabaseError(
                    code="sync_failed",
                    message=f"Failed to sync database from {alias} for {uri}",
                    result=result,
                )

            if sanitize:
                result = await drush.run("sql-sanitize", uri=uri, timeout=self._long_timeout)
                if not result.success:
                    raise DatabaseError(
                        code="sanitize_failed",
                        message=f"Failed to sanitize database from {alias} for {uri}",
                        result=result,
                    )

            # Cache rebuild result is not checked; config import will surface real problems.
            await drush.run("cr", uri=uri, timeout=self._long_timeout)
            result = await drush.run("cim", uri=uri, timeout=self._long_timeout)
            if not result.success:
                raise DatabaseError(
                    code="config_import_failed",
                    message=f"Failed to import configuration for {uri}",
                    result=result,
                )

            verb = "synced and sanitized" if sanitize else "synced"
            messages.append(f"Database {verb} from {alias} for {uri}")
            logger.info("database_sync_completed", uri=uri, alias=alias, sanitized=sanitize)
        return messages

    async def backup(self, state: SiteState) -> list[str]:
        """Dump every URI's database to its backup file."""
        messages = []
        drush = self._drush(state)
        for uri in state.uris:
            path = self.backup_file(state, uri)
            self._ensure_directory(path.parent, uri)
            result = await drush.run(
                "sql-dump", f"--result-file={path}", uri=uri, timeout=self._long_timeout
            )
            if not result.success:
                raise DatabaseError(
                    code="backup_failed",
                    message=f"Failed to backup database for {uri}",
                    result=result,
                )
            stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
            messages.append(f"Database for {uri} backed up to {path} ({stamp})")
            logger.info("database_backup_completed", uri=uri, path=str(path))
        return messages

    async def import_backup(self, state: SiteState, uri: str) -> None:
        path = self.backup_file(state, uri)
        result = await self._drush(state).run(
            "sql:query", f"--file={path}", uri=uri, timeout=self._long_timeout
        )
        if not result.success:
            raise DatabaseError(
                code="import_failed",
                message=f"Failed to import database backup for {uri} from {path}",
                result=result,
            )
        logger.info("database_backup_imported", uri=uri, path=str(path))
