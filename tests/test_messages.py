from __future__ import annotations

from fleetsync.messages import (
    FILE_CHANGES_PLACEHOLDER,
    format_commit_message,
    format_file_changes,
    format_pr_body,
    format_pr_title,
)
from fleetsync.models import FileChange


def _change(name: str, action: str = "update") -> FileChange:
    return FileChange(file_name=name, content=None if action == "delete" else "x", action=action)


def test_commit_message_single_file() -> None:
    assert format_commit_message([_change("a.yml")]) == "chore: sync a.yml"


def test_commit_message_lists_up_to_three_files() -> None:
    changes = [_change("a.yml"), _change("b.yml", "create"), _change("c.yml", "delete")]
    assert format_commit_message(changes) == "chore: sync a.yml, b.yml, c.yml"


def test_commit_message_counts_many_files() -> None:
    changes = [_change(f"f{i}.txt") for i in range(5)]
    assert format_commit_message(changes) == "chore: sync 5 config files"


def test_commit_message_for_deletions_only() -> None:
    assert format_commit_message([_change("old.txt", "delete")]) == "chore: remove old.txt"
    assert format_commit_message(
        [_change("old.txt", "delete"), _change("older.txt", "delete")]
    ) == "chore: remove 2 orphaned config files"


def test_skipped_files_are_ignored() -> None:
    changes = [_change("kept.txt", "skip"), _change("a.yml")]
    assert format_commit_message(changes) == "chore: sync a.yml"
    assert format_pr_title(changes) == "chore: sync a.yml"
    assert format_file_changes(changes) == "- Updated `a.yml`"


def test_pr_title_counts_many_files() -> None:
    assert format_pr_title([_change(f"f{i}") for i in range(4)]) == "chore: sync 4 config files"


def test_pr_body_default_and_template() -> None:
    changes = [_change("a.yml", "create"), _change("b.yml", "delete")]

    body = format_pr_body(changes)
    assert "- Created `a.yml`\n- Deleted `b.yml`" in body
    assert body.startswith("## Summary")

    custom = format_pr_body(changes, template=f"Changes:\n{FILE_CHANGES_PLACEHOLDER}\n")
    assert custom == "Changes:\n- Created `a.yml`\n- Deleted `b.yml`\n"
