from __future__ import annotations

from collections.abc import Sequence

from fleetsync.models import FileChange


FILE_CHANGES_PLACEHOLDER = "{{FILE_CHANGES}}"
_ACTION_LABELS = {"create": "Created", "update": "Updated", "delete": "Deleted"}


def format_commit_message(changes: Sequence[FileChange]) -> str:
    changed = [change for change in changes if change.action != "skip"]
    deleted = [change for change in changed if change.action == "delete"]
    synced = [change for change in changed if change.action != "delete"]

    if not synced and deleted:
        if len(deleted) == 1:
            return f"chore: remove {deleted[0].file_name}"
        return f"chore: remove {len(deleted)} orphaned config files"
    if len(changed) == 1:
        return f"chore: sync {changed[0].file_name}"
    if len(changed) <= 3:
        return f"chore: sync {', '.join(change.file_name for change in changed)}"
    return f"chore: sync {len(changed)} config files"


def format_pr_title(changes: Sequence[FileChange]) -> str:
    changed = [change for change in changes if change.action != "skip"]
    if len(changed) == 1:
        return f"chore: sync {changed[0].file_name}"
    if 1 < len(changed) <= 3:
        return f"chore: sync {', '.join(change.file_name for change in changed)}"
    return f"chore: sync {len(changed)} config files"


def format_file_changes(changes: Sequence[FileChange]) -> str:
    lines = [
        f"- {_ACTION_LABELS[change.action]} `{change.file_name}`"
        for change in changes
        if change.action != "skip"
    ]
    return "\n".join(lines)


def format_pr_body(changes: Sequence[FileChange], *, template: str | None = None) -> str:
    file_list = format_file_changes(changes)
    if template is not None:
        return template.replace(FILE_CHANGES_PLACEHOLDER, file_list)
    return (
        "## Summary\n\n"
        "Automated sync of managed configuration files.\n\n"
        "## Changes\n\n"
        f"{file_list}\n\n"
        "---\n"
        "_This pull request is managed by fleetsync. Changes made directly on this branch "
        "are discarded by the next sync._\n"
    )
