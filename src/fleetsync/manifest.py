from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import Final, Literal, cast

from fleetsync.observability import log_event
from fleetsync.payloads import as_object_dict


LOGGER = logging.getLogger("fleetsync.manifest")
MANIFEST_FILENAME: Final[str] = ".fleetsync.json"
MANIFEST_VERSION: Final[int] = 3

ManagedKind = Literal["files", "rulesets"]


@dataclass(frozen=True)
class ManagedSet:
    files: tuple[str, ...] = ()
    rulesets: tuple[str, ...] = ()

    def get(self, kind: ManagedKind) -> tuple[str, ...]:
        return self.files if kind == "files" else self.rulesets

    def replace(self, kind: ManagedKind, entries: tuple[str, ...]) -> ManagedSet:
        if kind == "files":
            return ManagedSet(files=entries, rulesets=self.rulesets)
        return ManagedSet(files=self.files, rulesets=entries)

    @property
    def is_empty(self) -> bool:
        return not self.files and not self.rulesets


@dataclass(frozen=True)
class Manifest:
    configs: Mapping[str, ManagedSet] = field(default_factory=dict)
    version: int = MANIFEST_VERSION

    def managed(self, config_id: str, kind: ManagedKind) -> tuple[str, ...]:
        entry = self.configs.get(config_id)
        if entry is None:
            return ()
        return entry.get(kind)


@dataclass(frozen=True)
class ReconcileResult:
    manifest: Manifest
    orphans: tuple[str, ...]


def empty_manifest() -> Manifest:
    return Manifest(configs={})


def load_manifest(workspace: Path) -> Manifest | None:
    """Read the manifest from a workspace.

    Version 1 and anything unreadable map to ``None`` so the next save starts over;
    version 2 is upgraded in memory to the version 3 layout.
    """
    path = workspace / MANIFEST_FILENAME
    if not path.is_file():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        log_event(LOGGER, "manifest_unreadable", path=str(path), error_type=type(exc).__name__)
        return None

    manifest = decode_manifest(raw)
    log_event(
        LOGGER,
        "manifest_loaded",
        path=str(path),
        found=manifest is not None,
        config_count=len(manifest.configs) if manifest is not None else 0,
    )
    return manifest


def decode_manifest(raw: object) -> Manifest | None:
    obj = as_object_dict(raw)
    if obj is None:
        return None
    version = obj.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        return None
    configs = as_object_dict(obj.get("configs"))

    if version == 3 and configs is not None:
        return _decode_v3(configs)
    if version == 2 and configs is not None:
        return _decode_v2(configs)
    return None


def _decode_v3(configs: dict[str, object]) -> Manifest | None:
    decoded: dict[str, ManagedSet] = {}
    for config_id, raw_entry in configs.items():
        entry = as_object_dict(raw_entry)
        if entry is None:
            return None
        files = _as_names(entry.get("files", []))
        rulesets = _as_names(entry.get("rulesets", []))
        if files is None or rulesets is None:
            return None
        managed = ManagedSet(files=files, rulesets=rulesets)
        if not managed.is_empty:
            decoded[config_id] = managed
    return Manifest(configs=decoded)


def _decode_v2(configs: dict[str, object]) -> Manifest | None:
    decoded: dict[str, ManagedSet] = {}
    for config_id, raw_files in configs.items():
        files = _as_names(raw_files)
        if files is None:
            return None
        if files:
            decoded[config_id] = ManagedSet(files=files)
    return Manifest(configs=decoded)


def serialize_manifest(manifest: Manifest) -> str:
    configs: dict[str, dict[str, list[str]]] = {}
    for config_id, entry in manifest.configs.items():
        if entry.is_empty:
            continue
        payload: dict[str, list[str]] = {}
        if entry.files:
            payload["files"] = list(entry.files)
        if entry.rulesets:
            payload["rulesets"] = list(entry.rulesets)
        configs[config_id] = payload
    return json.dumps({"version": MANIFEST_VERSION, "configs": configs}, indent=2) + "\n"


def save_manifest(workspace: Path, manifest: Manifest) -> None:
    path = workspace / MANIFEST_FILENAME
    path.write_text(serialize_manifest(manifest), encoding="utf-8")
    log_event(LOGGER, "manifest_saved", path=str(path), config_count=len(manifest.configs))


def manifest_changed(existing: Manifest | None, updated: Manifest) -> bool:
    return serialize_manifest(existing or empty_manifest()) != serialize_manifest(updated)


def reconcile_files(
    existing: Manifest | None,
    config_id: str,
    declared: Mapping[str, bool | None],
) -> ReconcileResult:
    return _reconcile(existing, config_id, declared, kind="files")


def reconcile_rulesets(
    existing: Manifest | None,
    config_id: str,
    declared: Mapping[str, bool | None],
) -> ReconcileResult:
    return _reconcile(existing, config_id, declared, kind="rulesets")


def _reconcile(
    existing: Manifest | None,
    config_id: str,
    declared: Mapping[str, bool | None],
    *,
    kind: ManagedKind,
) -> ReconcileResult:
    base = existing or empty_manifest()
    previously_tracked = base.managed(config_id, kind)
    tracked = tuple(
        sorted(name for name, delete_orphaned in declared.items() if delete_orphaned is True)
    )

    # Entries still tracked by a sibling config id are owned by that config.
    tracked_elsewhere = {
        name
        for other_id, entry in base.configs.items()
        if other_id != config_id
        for name in entry.get(kind)
    }
    orphans = tuple(
        name
        for name in previously_tracked
        if name not in declared and name not in tracked_elsewhere
    )

    configs = dict(base.configs)
    updated_entry = configs.get(config_id, ManagedSet()).replace(kind, tracked)
    if updated_entry.is_empty:
        configs.pop(config_id, None)
    else:
        configs[config_id] = updated_entry

    log_event(
        LOGGER,
        "manifest_reconciled",
        config_id=config_id,
        kind=kind,
        tracked_count=len(tracked),
        orphan_count=len(orphans),
    )
    return ReconcileResult(manifest=Manifest(configs=configs), orphans=orphans)


def _as_names(value: object) -> tuple[str, ...] | None:
    if not isinstance(value, list):
        return None
    if not all(isinstance(item, str) for item in value):
        return None
    return tuple(sorted(set(cast(list[str], value))))
