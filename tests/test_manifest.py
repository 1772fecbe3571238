from __future__ import annotations

import json
from pathlib import Path

from hypothesis import given, strategies as st

from fleetsync.manifest import (
    MANIFEST_FILENAME,
    ManagedSet,
    Manifest,
    decode_manifest,
    load_manifest,
    manifest_changed,
    reconcile_files,
    reconcile_rulesets,
    save_manifest,
    serialize_manifest,
)


_names = st.sets(st.sampled_from(["a.txt", "b.yml", "c.md", "d.json", "e.sh"]))


def test_decode_v3_manifest() -> None:
    manifest = decode_manifest(
        {
            "version": 3,
            "configs": {
                "cfg": {"files": ["b.txt", "a.txt", "a.txt"], "rulesets": ["main-protection"]},
                "empty": {"files": []},
            },
        }
    )
    assert manifest is not None
    assert manifest.managed("cfg", "files") == ("a.txt", "b.txt")
    assert manifest.managed("cfg", "rulesets") == ("main-protection",)
    assert "empty" not in manifest.configs


def test_decode_v2_manifest_upgrades_to_files_only() -> None:
    manifest = decode_manifest({"version": 2, "configs": {"cfg": ["x.txt"]}})
    assert manifest is not None
    assert manifest.configs == {"cfg": ManagedSet(files=("x.txt",))}


def test_decode_rejects_v1_and_malformed_payloads() -> None:
    assert decode_manifest({"version": 1, "managedFiles": ["a"]}) is None
    assert decode_manifest({"version": True, "configs": {}}) is None
    assert decode_manifest({"version": 3, "configs": {"cfg": {"files": [1]}}}) is None
    assert decode_manifest({"version": 3, "configs": {"cfg": "nope"}}) is None
    assert decode_manifest({"version": 2, "configs": {"cfg": "nope"}}) is None
    assert decode_manifest([]) is None


def test_load_manifest_handles_missing_and_unreadable(tmp_path: Path) -> None:
    assert load_manifest(tmp_path) is None
    (tmp_path / MANIFEST_FILENAME).write_text("{not json", encoding="utf-8")
    assert load_manifest(tmp_path) is None


def test_save_and_load_manifest(tmp_path: Path) -> None:
    manifest = Manifest(configs={"cfg": ManagedSet(files=("a.txt",), rulesets=("r1",))})
    save_manifest(tmp_path, manifest)

    text = (tmp_path / MANIFEST_FILENAME).read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert json.loads(text) == {
        "version": 3,
        "configs": {"cfg": {"files": ["a.txt"], "rulesets": ["r1"]}},
    }
    assert load_manifest(tmp_path) == manifest


def test_serialize_omits_empty_kinds() -> None:
    manifest = Manifest(configs={"cfg": ManagedSet(rulesets=("r1",)), "gone": ManagedSet()})
    assert json.loads(serialize_manifest(manifest)) == {
        "version": 3,
        "configs": {"cfg": {"rulesets": ["r1"]}},
    }


def test_reconcile_files_tracks_only_delete_orphaned_and_reports_orphans() -> None:
    existing = Manifest(configs={"cfg": ManagedSet(files=("old.txt", "keep.txt"))})

    result = reconcile_files(
        existing,
        "cfg",
        {"keep.txt": True, "new.txt": True, "untracked.txt": None, "opt-out.txt": False},
    )

    assert result.orphans == ("old.txt",)
    assert result.manifest.managed("cfg", "files") == ("keep.txt", "new.txt")


def test_reconcile_keeps_file_owned_by_sibling_config() -> None:
    existing = Manifest(
        configs={
            "cfg": ManagedSet(files=("shared.txt",)),
            "other": ManagedSet(files=("shared.txt",)),
        }
    )

    result = reconcile_files(existing, "cfg", {})

    assert result.orphans == ()
    assert "cfg" not in result.manifest.configs
    assert result.manifest.managed("other", "files") == ("shared.txt",)


def test_reconcile_rulesets_preserves_files() -> None:
    existing = Manifest(configs={"cfg": ManagedSet(files=("a.txt",), rulesets=("old",))})

    result = reconcile_rulesets(existing, "cfg", {"new": True})

    assert result.orphans == ("old",)
    assert result.manifest.configs["cfg"] == ManagedSet(files=("a.txt",), rulesets=("new",))


def test_manifest_changed() -> None:
    manifest = Manifest(configs={"cfg": ManagedSet(files=("a.txt",))})
    assert manifest_changed(None, manifest)
    assert not manifest_changed(manifest, Manifest(configs={"cfg": ManagedSet(files=("a.txt",))}))
    assert not manifest_changed(None, Manifest(configs={}))


@given(previous=_names, declared=_names, tracked=st.booleans())
def test_reconcile_orphans_are_never_declared(
    previous: set[str], declared: set[str], tracked: bool
) -> None:
    existing = Manifest(configs={"cfg": ManagedSet(files=tuple(sorted(previous)))})

    result = reconcile_files(existing, "cfg", {name: tracked for name in declared})

    assert set(result.orphans) == previous - declared
    assert set(result.orphans).isdisjoint(declared)
    expected_tracked = tuple(sorted(declared)) if tracked else ()
    assert result.manifest.managed("cfg", "files") == expected_tracked


@given(mine=_names, theirs=_names)
def test_reconcile_never_touches_other_configs(mine: set[str], theirs: set[str]) -> None:
    other = ManagedSet(files=tuple(sorted(theirs)))
    existing = Manifest(configs={"cfg": ManagedSet(files=tuple(sorted(mine))), "other": other})

    result = reconcile_files(existing, "cfg", {})

    assert set(result.orphans) == mine - theirs
    if other.is_empty:
        assert "other" not in result.manifest.configs or result.manifest.configs["other"] == other
    else:
        assert result.manifest.configs["other"] == other
