from __future__ import annotations

from collections.abc import Mapping
import re

from fleetsync.models import RepoDescriptor


_PLACEHOLDER = re.compile(r"\$\$|\$\{fleetsync:([A-Za-z0-9_.-]+)\}")


def template_context(
    repo: RepoDescriptor,
    *,
    file_name: str,
    variables: Mapping[str, str],
) -> dict[str, str]:
    context = {
        "repo.owner": repo.owner,
        "repo.name": repo.repo,
        "repo.fullName": repo.display_name,
        "repo.host": repo.host,
        "repo.platform": repo.platform,
        "file.name": file_name,
    }
    for key, value in variables.items():
        context[f"vars.{key}"] = value
    return context


def interpolate(content: str, context: Mapping[str, str]) -> str:
    """Replace ``${fleetsync:<key>}`` placeholders; ``$$`` escapes a literal ``$``.

    Unknown keys raise ``ValueError`` so a typo never ships a half-rendered file.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key is None:
            return "$"
        if key not in context:
            available = ", ".join(sorted(context))
            raise ValueError(f"Unknown template variable {key!r}; available: {available}")
        return context[key]

    return _PLACEHOLDER.sub(_replace, content)
