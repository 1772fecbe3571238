from __future__ import annotations

from pathlib import Path

import pytest

from fleetsync import config
from fleetsync.config import AppConfig, ConfigError
from fleetsync.models import DeclaredFile


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


_BASE = """
[runtime]
work_dir = "~/tmp/fleetsync"
config_id = "platform-defaults"
""".strip()


def test_load_config_applies_defaults_and_merges_files(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "fleetsync.toml",
        f"""
{_BASE}
worker_count = 2
retries = 1
log_dir = "{tmp_path}/logs"

[auth]
token_command = ["mint-token", "{{owner}}"]

[[files]]
file_name = ".editorconfig"
content = "root = true\\n"
delete_orphaned = true

[[files]]
file_name = "scripts/lint.sh"
content = "#!/bin/sh\\n"

[repo.widgets]
platform = "github"
owner = "acme"
name = "widgets"
merge = "force"
merge_strategy = "rebase"
bypass_reason = "fleet rollout"

[[repo.widgets.files]]
file_name = ".editorconfig"
content = "root = false\\n"

[[repo.widgets.files]]
file_name = "README.md"
content = "# ${{fleetsync:repo.name}}"
template = true
vars = {{ team = "infra" }}

[repo.svc]
platform = "azure"
owner = "org"
project = "proj"
name = "svc"
merge = "direct"
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert isinstance(loaded, AppConfig)
    runtime = loaded.runtime
    assert runtime.work_dir.as_posix().endswith("/tmp/fleetsync")
    assert "~" not in runtime.work_dir.as_posix()
    assert runtime.config_id == "platform-defaults"
    assert runtime.worker_count == 2
    assert runtime.retries == 1
    assert runtime.branch_name == "chore/sync-config"
    assert runtime.log_dir == tmp_path / "logs"
    assert loaded.auth.token_command == ("mint-token", "{owner}")

    assert [target.repo_id for target in loaded.repos] == ["svc", "widgets"]
    widgets = loaded.repo("widgets")
    assert widgets.descriptor.clone_url == "https://github.com/acme/widgets.git"
    assert widgets.pr_options.merge == "force"
    assert widgets.pr_options.merge_strategy == "rebase"
    assert widgets.pr_options.bypass_reason == "fleet rollout"
    assert widgets.files == (
        DeclaredFile(file_name=".editorconfig", content="root = false\n"),
        DeclaredFile(file_name="scripts/lint.sh", content="#!/bin/sh\n"),
        DeclaredFile(
            file_name="README.md",
            content="# ${fleetsync:repo.name}",
            template=True,
            vars=(("team", "infra"),),
        ),
    )

    svc = loaded.repo("svc")
    assert svc.descriptor.host == "dev.azure.com"
    assert svc.descriptor.clone_url == "https://dev.azure.com/org/proj/_git/svc"
    assert svc.descriptor.display_name == "org/proj/svc"
    assert svc.pr_options.merge == "direct"
    assert svc.files[0].delete_orphaned is True


def test_unknown_repo_id_lists_configured_ids(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "c.toml",
        f"""
{_BASE}

[repo.a]
platform = "gitlab"
owner = "g"
name = "a"
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert loaded.repo("a").descriptor.clone_url == "https://gitlab.com/g/a.git"
    assert loaded.repo("a").pr_options.merge == "auto"
    with pytest.raises(ConfigError, match="Unknown repo id 'b'; configured: a"):
        loaded.repo("b")


@pytest.mark.parametrize(
    ("extra", "message"),
    [
        ("worker_count = 0", "worker_count must be >= 1"),
        ("retries = -1", "retries must be >= 0"),
        ('branch_name = "bad branch"', "branch_name is invalid"),
        ("dry_run = 1", "dry_run must be a boolean"),
    ],
)
def test_invalid_runtime_values(tmp_path: Path, extra: str, message: str) -> None:
    cfg_path = _write(
        tmp_path / "c.toml",
        f"""
{_BASE}
{extra}

[repo.a]
platform = "github"
owner = "o"
name = "a"
""".strip(),
    )

    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)


@pytest.mark.parametrize(
    ("repo_body", "message"),
    [
        ('platform = "bitbucket"\nowner = "o"\nname = "a"', "platform must be one of"),
        ('platform = "azure"\nowner = "o"\nname = "a"', "project is required"),
        ('platform = "github"\nowner = "o"\nname = "a"\nmerge = "yolo"', "merge must be one of"),
        ('platform = "github"\nname = "a"', "owner is required"),
    ],
)
def test_invalid_repo_tables(tmp_path: Path, repo_body: str, message: str) -> None:
    cfg_path = _write(tmp_path / "c.toml", f"{_BASE}\n\n[repo.a]\n{repo_body}\n")

    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)


@pytest.mark.parametrize(
    ("file_entry", "message"),
    [
        ('file_name = "../escape"', "file_name is unsafe"),
        ('file_name = "/etc/passwd"', "file_name is unsafe"),
        ('file_name = ".fleetsync.json"', "must not declare"),
        ('file_name = "x"\ncontent = 3', "must be a string"),
    ],
)
def test_invalid_file_declarations(tmp_path: Path, file_entry: str, message: str) -> None:
    cfg_path = _write(
        tmp_path / "c.toml",
        f'{_BASE}\n\n[[files]]\n{file_entry}\n\n[repo.a]\nplatform = "github"\n'
        'owner = "o"\nname = "a"\n',
    )

    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)


def test_duplicate_file_names_rejected(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "c.toml",
        f'{_BASE}\n\n[[files]]\nfile_name = "x"\n\n[[files]]\nfile_name = "x"\n\n'
        '[repo.a]\nplatform = "github"\nowner = "o"\nname = "a"\n',
    )

    with pytest.raises(ConfigError, match="more than once"):
        config.load_config(cfg_path)


def test_duplicate_repositories_rejected(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "c.toml",
        f'{_BASE}\n\n[repo.a]\nplatform = "github"\nowner = "o"\nname = "r"\n\n'
        '[repo.b]\nplatform = "github"\nowner = "o"\nname = "r"\n',
    )

    with pytest.raises(ConfigError, match="Duplicate repository 'o/r'"):
        config.load_config(cfg_path)


def test_missing_tables_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match=r"\[repo\] is required"):
        config.load_config(_write(tmp_path / "c.toml", _BASE))
    with pytest.raises(ConfigError, match=r"\[runtime\] is required"):
        config.load_config(_write(tmp_path / "d.toml", '[repo.a]\nplatform = "github"\n'))


def test_pr_template_is_read_from_disk(tmp_path: Path) -> None:
    template = _write(tmp_path / "pr.md", "Files:\n{{FILE_CHANGES}}\n")
    cfg_path = _write(
        tmp_path / "c.toml",
        f'{_BASE}\npr_template_path = "{template}"\n\n'
        '[repo.a]\nplatform = "github"\nowner = "o"\nname = "a"\n',
    )

    loaded = config.load_config(cfg_path)

    assert loaded.pr_template() == "Files:\n{{FILE_CHANGES}}\n"


def test_missing_pr_template_raises(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "c.toml",
        f'{_BASE}\npr_template_path = "{tmp_path}/missing.md"\n\n'
        '[repo.a]\nplatform = "github"\nowner = "o"\nname = "a"\n',
    )

    with pytest.raises(ConfigError, match="could not be read"):
        config.load_config(cfg_path).pr_template()
