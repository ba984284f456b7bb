"""Pydantic v2 models for manifests, change sets and per-site results."""

from enum import Enum

from pydantic import BaseModel, Field


class UpdateStatus(str, Enum):
    UNCHANGED = "unchanged"
    SUCCESS = "success"
    FAILED = "failed"
    MIXED = "mixed"


def combine_status(core: UpdateStatus, other: UpdateStatus) -> UpdateStatus:
    """Overall status from the core and non-core outcomes.

    ``failed`` always wins. ``unchanged`` is neutral, so a run that only
    updated modules is a success.
    """
    if UpdateStatus.FAILED in (core, other):
        return UpdateStatus.FAILED
    if core == other or other == UpdateStatus.UNCHANGED:
        return core
    if core == UpdateStatus.UNCHANGED:
        return other
    return UpdateStatus.MIXED


# ── Manifests ────────────────────────────────────────────────────────────────


class PackageInfo(BaseModel):
    """One package entry of composer.lock."""

    type: str = "library"
    version: str = ""


# Ordered package name -> info, as read from composer.lock
ManifestSnapshot = dict[str, PackageInfo]


class PackageChange(BaseModel):
    name: str
    type: str
    version: str
    old_version: str | None = None

    def describe(self) -> str:
        if self.old_version is not None:
            return f"{self.name} ({self.old_version} => {self.version})"
        return f"{self.name} ({self.version})"


class ChangeSet(BaseModel):
    """Packages added or changed between two snapshots, sorted by name."""

    new_packages: list[PackageChange] = Field(default_factory=list)
    updated_packages: list[PackageChange] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.new_packages and not self.updated_packages


# ── Classification ───────────────────────────────────────────────────────────


class PackageKind(str, Enum):
    CORE = "core"
    MODULE = "module"
    THEME = "theme"
    LIBRARY = "library"
    PROFILE = "profile"
    OTHER = "other"


class Classification(BaseModel):
    """Which buckets received entries, plus one Markdown block per non-empty bucket."""

    core: bool = False
    module: bool = False
    theme: bool = False
    library: bool = False
    profile: bool = False
    other: bool = False
    messages: list[str] = Field(default_factory=list)

    @property
    def other_changed(self) -> bool:
        return self.module or self.theme or self.library or self.profile or self.other


# ── Results ──────────────────────────────────────────────────────────────────


class UpdateResult(BaseModel):
    """Outcome of one site's update, consumed by the notifier and the log."""

    uri: str
    core_status: UpdateStatus = UpdateStatus.UNCHANGED
    other_status: UpdateStatus = UpdateStatus.UNCHANGED
    status: UpdateStatus = UpdateStatus.UNCHANGED
    phase: str = "start"
    dry_run: bool = False
    messages: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def mark_failed(self) -> None:
        self.core_status = UpdateStatus.FAILED
        self.other_status = UpdateStatus.FAILED
        self.status = UpdateStatus.FAILED

    def set_outcome(self, core: UpdateStatus, other: UpdateStatus) -> None:
        self.core_status = core
        self.other_status = other
        self.status = combine_status(core, other)

    @property
    def failed(self) -> bool:
        return self.status == UpdateStatus.FAILED


class RollbackCheck(BaseModel):
    """Whether a rollback may proceed, and why not."""

    can_rollback: bool = False
    reason: str = ""
    multisite_partial_backups_only: bool = False
    backed_up_uris: list[str] = Field(default_factory=list)
