from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging

from fleetsync.git_ops import GitWorkspace
from fleetsync.manifest import (
    MANIFEST_FILENAME,
    load_manifest,
    manifest_changed,
    reconcile_files,
    save_manifest,
    serialize_manifest,
)
from fleetsync.models import DeclaredFile, DiffStats, FileAction, FileChange, RepoDescriptor
from fleetsync.observability import log_event
from fleetsync.templating import interpolate, template_context


LOGGER = logging.getLogger("fleetsync.change_detector")


@dataclass(frozen=True)
class ChangeSet:
    changes: tuple[FileChange, ...]
    stats: DiffStats

    @property
    def has_changes(self) -> bool:
        return any(change.action != "skip" for change in self.changes)


def should_be_executable(declared: DeclaredFile) -> bool:
    if declared.executable is not None:
        return declared.executable
    return declared.file_name.endswith(".sh")


def render_content(declared: DeclaredFile, repo: RepoDescriptor) -> str:
    content = declared.content or ""
    if not declared.template:
        return content
    context = template_context(
        repo,
        file_name=declared.file_name,
        variables=dict(declared.vars),
    )
    return interpolate(content, context)


class ChangeDetector:
    """Computes and applies the change set for one repository workspace.

    Declared files are rendered and written in declaration order, orphans recorded in
    the manifest are deleted, and the manifest itself is rewritten when its serialized
    form changes. In dry-run mode the same change set is computed without touching the
    workspace.
    """

    def __init__(self, *, config_id: str, dry_run: bool = False, no_delete: bool = False) -> None:
        self._config_id = config_id
        self._dry_run = dry_run
        self._no_delete = no_delete

    def compute(
        self,
        workspace: GitWorkspace,
        repo: RepoDescriptor,
        files: Sequence[DeclaredFile],
        *,
        base_branch: str,
    ) -> ChangeSet:
        changes: dict[str, FileChange] = {}
        stats = DiffStats()

        for declared in files:
            if declared.create_only and workspace.file_exists_on_branch(
                declared.file_name, base_branch
            ):
                log_event(
                    LOGGER,
                    "file_skipped_create_only",
                    repo=repo.display_name,
                    file_name=declared.file_name,
                    base_branch=base_branch,
                )
                changes[declared.file_name] = FileChange(declared.file_name, None, "skip")
                continue

            content = render_content(declared, repo)
            existing = workspace.read_file(declared.file_name)
            if existing == content.encode("utf-8"):
                stats.record("unchanged")
                continue

            action: FileAction = "update" if existing is not None else "create"
            changes[declared.file_name] = FileChange(declared.file_name, content, action)
            stats.record(action)
            if not self._dry_run:
                workspace.write_file(declared.file_name, content)

        if not self._dry_run:
            for declared in files:
                tracked = changes.get(declared.file_name)
                if tracked is not None and tracked.action == "skip":
                    continue
                if should_be_executable(declared):
                    workspace.set_executable(declared.file_name)

        self._apply_orphans_and_manifest(workspace, repo, files, changes, stats)

        change_set = ChangeSet(changes=tuple(changes.values()), stats=stats)
        log_event(
            LOGGER,
            "change_set_computed",
            repo=repo.display_name,
            new_count=stats.new_count,
            modified_count=stats.modified_count,
            deleted_count=stats.deleted_count,
            unchanged_count=stats.unchanged_count,
            dry_run=self._dry_run,
        )
        return change_set

    def _apply_orphans_and_manifest(
        self,
        workspace: GitWorkspace,
        repo: RepoDescriptor,
        files: Sequence[DeclaredFile],
        changes: dict[str, FileChange],
        stats: DiffStats,
    ) -> None:
        existing = load_manifest(workspace.path)
        declared = {declared.file_name: declared.delete_orphaned for declared in files}
        reconciled = reconcile_files(existing, self._config_id, declared)

        if reconciled.orphans and self._no_delete:
            log_event(
                LOGGER,
                "orphan_deletion_suppressed",
                repo=repo.display_name,
                orphans=reconciled.orphans,
            )
        elif reconciled.orphans:
            for file_name in reconciled.orphans:
                if not workspace.file_exists(file_name):
                    continue
                changes[file_name] = FileChange(file_name, None, "delete")
                stats.record("delete")
                log_event(
                    LOGGER,
                    "orphan_deleted",
                    repo=repo.display_name,
                    file_name=file_name,
                    dry_run=self._dry_run,
                )
                if not self._dry_run:
                    workspace.delete_file(file_name)

        updated = reconciled.manifest
        if not manifest_changed(existing, updated):
            return
        if not updated.configs and existing is None:
            return

        action: FileAction = "update" if workspace.file_exists(MANIFEST_FILENAME) else "create"
        changes[MANIFEST_FILENAME] = FileChange(
            MANIFEST_FILENAME, serialize_manifest(updated), action
        )
        if not self._dry_run:
            save_manifest(workspace.path, updated)
