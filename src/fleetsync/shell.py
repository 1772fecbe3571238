from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path, PurePosixPath
import logging
import os
import re
import subprocess


class CommandError(RuntimeError):
    def __init__(self, message: str, *, exit_code: int = 1, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class InvalidBranchNameError(ValueError):
    pass


class UnsafePathError(ValueError):
    pass


LOGGER = logging.getLogger("fleetsync.shell")

SAFE_BRANCH_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][-A-Za-z0-9_./]*$")
_URL_CREDENTIALS = re.compile(r"(https?://[^:/@\s]+:)([^@\s]+)(@)")
_AUTH_HEADER = re.compile(r"(Authorization:\s*(?:Bearer|Basic|token)\s+)(\S+)", re.IGNORECASE)


def sanitize_credentials(text: str | None) -> str:
    if not text:
        return ""
    scrubbed = _URL_CREDENTIALS.sub(r"\1***\3", text)
    return _AUTH_HEADER.sub(r"\1***", scrubbed)


def validate_branch_name(branch_name: str) -> str:
    """Reject branch names that are unsafe to hand to git or platform CLIs.

    Every commit protocol calls this before its first process invocation.
    """
    if not SAFE_BRANCH_NAME_PATTERN.fullmatch(branch_name) or ".." in branch_name:
        raise InvalidBranchNameError(
            f"Invalid branch name: {branch_name!r}. Branch names must start with a letter or "
            "digit and contain only letters, digits, '-', '_', '.', and '/'."
        )
    return branch_name


def validate_relative_path(path: str) -> str:
    pure = PurePosixPath(path)
    if (
        not path
        or path.startswith("-")
        or pure.is_absolute()
        or any(part == ".." for part in pure.parts)
        or "\x00" in path
    ):
        raise UnsafePathError(f"Unsafe repository path: {path!r}")
    return path


def _preview(text: str, *, limit: int = 200) -> str:
    compact = sanitize_credentials(text).replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
) -> str:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        env={**os.environ, **env} if env else None,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        command = sanitize_credentials(" ".join(argv))
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command,
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{sanitize_credentials(proc.stdout)}\n"
            f"stderr:\n{sanitize_credentials(proc.stderr)}",
            exit_code=proc.returncode,
            stderr=sanitize_credentials(proc.stderr),
        )
    return proc.stdout
