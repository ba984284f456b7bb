"""Change detection between manifest snapshots and grouping by package kind."""

from drupalup.schemas.updates import ChangeSet, Classification, ManifestSnapshot, PackageChange, PackageKind

CORE_TYPE = "drupal-core"

TYPE_TO_KIND = {
    "drupal-module": PackageKind.MODULE,
    "drupal-theme": PackageKind.THEME,
    "drupal-library": PackageKind.LIBRARY,
    "drupal-profile": PackageKind.PROFILE,
}

# Report order is fixed.
BUCKET_ORDER = [
    PackageKind.CORE,
    PackageKind.MODULE,
    PackageKind.THEME,
    PackageKind.LIBRARY,
    PackageKind.PROFILE,
    PackageKind.OTHER,
]

BUCKET_TITLES = {
    PackageKind.CORE: "Drupal core",
    PackageKind.MODULE: "Modules",
    PackageKind.THEME: "Themes",
    PackageKind.LIBRARY: "Libraries",
    PackageKind.PROFILE: "Profiles",
    PackageKind.OTHER: "Other packages",
}


def compute_changes(before: ManifestSnapshot, after: ManifestSnapshot) -> ChangeSet:
    """New packages and version changes, each sorted by package name.

    Packages that disappeared are not reported.
    """
    new_packages = []
    updated_packages = []
    for name in sorted(after):
        info = after[name]
        previous = before.get(name)
        if previous is None:
            new_packages.append(PackageChange(name=name, type=info.type, version=info.version))
        elif previous.version != info.version:
            updated_packages.append(
                PackageChange(
                    name=name,
                    type=info.type,
                    version=info.version,
                    old_version=previous.version,
                )
            )
    return ChangeSet(new_packages=new_packages, updated_packages=updated_packages)


def bucket_changes(change_set: ChangeSet) -> dict[PackageKind, list[PackageChange]]:
    """Group entries by kind. Only the first ``drupal-core`` entry counts as core."""
    buckets: dict[PackageKind, list[PackageChange]] = {kind: [] for kind in BUCKET_ORDER}
    entries = sorted(
        [*change_set.updated_packages, *change_set.new_packages],
        key=lambda change: change.name,
    )
    for change in entries:
        if change.type == CORE_TYPE and not buckets[PackageKind.CORE]:
            buckets[PackageKind.CORE].append(change)
        else:
            buckets[TYPE_TO_KIND.get(change.type, PackageKind.OTHER)].append(change)
    return buckets


def render_bucket(kind: PackageKind, changes: list[PackageChange], verb: str) -> str:
    lines = [f"**{BUCKET_TITLES[kind]} {verb}:**", ""]
    lines.extend(f"- {change.describe()}" for change in changes)
    return "\n".join(lines)


def classify(change_set: ChangeSet, verb: str = "updated") -> Classification:
    """One Markdown block per non-empty bucket, in fixed order, plus per-bucket flags."""
    buckets = bucket_changes(change_set)
    flags = {}
    messages = []
    for kind in BUCKET_ORDER:
        changes = buckets[kind]
        flags[kind.value] = bool(changes)
        if changes:
            messages.append(render_bucket(kind, changes, verb))
    return Classification(**flags, messages=messages)
