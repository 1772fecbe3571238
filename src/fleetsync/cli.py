from __future__ import annotations

import argparse
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from fleetsync.branch_session import BranchSessionManager
from fleetsync.change_detector import ChangeDetector
from fleetsync.config import AppConfig, load_config
from fleetsync.models import ManifestUpdate, RepoTarget, SyncResult
from fleetsync.observability import configure_logging
from fleetsync.orchestrator import BatchOrchestrator
from fleetsync.pr_merge import PullRequestMergeHandler
from fleetsync.sync_workflow import (
    AuthResolver,
    FileSyncStrategy,
    ManifestUpdateStrategy,
    SyncWorkflow,
    WorkStrategy,
)
from fleetsync.tokens import CachedInstallationTokenProvider, CommandTokenProvider, TokenProvider


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetsync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser(
        "sync", help="Reconcile declared files into every configured repository"
    )
    _add_common_arguments(sync_parser)
    sync_parser.add_argument(
        "--no-delete",
        action="store_true",
        help="Keep orphaned files instead of deleting them",
    )

    rulesets_parser = subparsers.add_parser(
        "track-rulesets",
        help="Record managed ruleset names in each repository's manifest",
    )
    _add_common_arguments(rulesets_parser)
    rulesets_parser.add_argument(
        "--ruleset",
        action="append",
        required=True,
        help="Ruleset name to track (repeatable)",
    )
    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("fleetsync.toml"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute changes without writing, pushing, or opening pull requests",
    )
    parser.add_argument(
        "--repo",
        type=str,
        help="Only process this repo id from the config",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(bool(getattr(args, "verbose", False)), log_dir=config.runtime.log_dir)
    config = _apply_overrides(config, args)

    if args.command == "sync":
        results = _cmd_sync(config, repo_id=args.repo)
    elif args.command == "track-rulesets":
        results = _cmd_track_rulesets(config, rulesets=tuple(args.ruleset), repo_id=args.repo)
    else:
        raise RuntimeError(f"Unknown command: {args.command}")

    _print_results(results)
    if any(not result.success for result in results):
        raise SystemExit(1)


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    runtime = config.runtime
    if getattr(args, "dry_run", False):
        runtime = replace(runtime, dry_run=True)
    if getattr(args, "no_delete", False):
        runtime = replace(runtime, no_delete=True)
    return replace(config, runtime=runtime)


def _cmd_sync(config: AppConfig, *, repo_id: str | None) -> list[SyncResult]:
    runtime = config.runtime
    detector = ChangeDetector(
        config_id=runtime.config_id,
        dry_run=runtime.dry_run,
        no_delete=runtime.no_delete,
    )
    strategy = FileSyncStrategy(detector)
    return _run_batch(config, repo_id=repo_id, strategy_for=lambda target: strategy)


def _cmd_track_rulesets(
    config: AppConfig, *, rulesets: tuple[str, ...], repo_id: str | None
) -> list[SyncResult]:
    strategy = ManifestUpdateStrategy(
        ManifestUpdate(rulesets=rulesets),
        config_id=config.runtime.config_id,
        dry_run=config.runtime.dry_run,
    )
    return _run_batch(config, repo_id=repo_id, strategy_for=lambda target: strategy)


def _run_batch(
    config: AppConfig,
    *,
    repo_id: str | None,
    strategy_for: Callable[[RepoTarget], WorkStrategy],
) -> list[SyncResult]:
    runtime = config.runtime
    runtime.work_dir.mkdir(parents=True, exist_ok=True)
    targets = _select_targets(config, repo_id)
    workflow = SyncWorkflow(
        auth_resolver=AuthResolver(_build_token_provider(config)),
        session_manager=BranchSessionManager(retries=runtime.retries, dry_run=runtime.dry_run),
        pr_handler=PullRequestMergeHandler(
            dry_run=runtime.dry_run,
            pr_template=config.pr_template(),
        ),
        work_dir=runtime.work_dir,
        branch_name=runtime.branch_name,
        retries=runtime.retries,
        dry_run=runtime.dry_run,
    )
    orchestrator = BatchOrchestrator(workflow, worker_count=runtime.worker_count)
    return orchestrator.run(targets, strategy_for)


def _select_targets(config: AppConfig, repo_id: str | None) -> tuple[RepoTarget, ...]:
    if repo_id is None:
        return config.repos
    return (config.repo(repo_id),)


def _build_token_provider(config: AppConfig) -> TokenProvider | None:
    if not config.auth.token_command:
        return None
    return CachedInstallationTokenProvider(CommandTokenProvider(config.auth.token_command))


def _print_results(results: list[SyncResult]) -> None:
    for result in results:
        if not result.success:
            status = "FAILED"
        elif result.skipped:
            status = "SKIPPED"
        else:
            status = "OK"
        line = f"{status} {result.repo_name}: {result.message}"
        if result.diff_stats is not None:
            stats = result.diff_stats
            line += (
                f" (new={stats.new_count} modified={stats.modified_count}"
                f" deleted={stats.deleted_count} unchanged={stats.unchanged_count})"
            )
        if result.merge_result is not None and not result.merge_result.success:
            line += f" [merge: {result.merge_result.message}]"
        print(line)

