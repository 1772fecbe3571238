from __future__ import annotations

import threading

from hypothesis import given, settings, strategies as st
import pytest

from fleetsync.models import PrOptions, RepoDescriptor, RepoTarget, SyncResult
from fleetsync.orchestrator import BatchOrchestrator
from fleetsync.sync_workflow import WorkResult


def _target(name: str) -> RepoTarget:
    return RepoTarget(
        repo_id=name,
        descriptor=RepoDescriptor(
            platform="github",
            owner="acme",
            repo=name,
            host="github.com",
            clone_url=f"https://github.com/acme/{name}.git",
        ),
        files=(),
        pr_options=PrOptions(),
    )


class NoopStrategy:
    def execute(self, target: RepoTarget, session: object) -> WorkResult | None:
        _ = target, session
        return None


class FakeWorkflow:
    def __init__(self, *, crash_on: set[str] | None = None) -> None:
        self.crash_on = crash_on or set()
        self.seen: list[str] = []
        self.lock = threading.Lock()
        self.on_execute: list[object] = []

    def execute(self, target: RepoTarget, strategy: object) -> SyncResult:
        assert isinstance(strategy, NoopStrategy)
        with self.lock:
            self.seen.append(target.repo_id)
        for hook in self.on_execute:
            hook()  # type: ignore[operator]
        if target.repo_id in self.crash_on:
            raise RuntimeError(f"crash in {target.repo_id}")
        return SyncResult(
            repo_name=target.descriptor.display_name,
            success=True,
            message="ok",
            stage="done",
        )


def test_results_follow_target_order() -> None:
    workflow = FakeWorkflow()
    targets = [_target(f"repo-{i}") for i in range(6)]

    results = BatchOrchestrator(workflow, worker_count=3).run(  # type: ignore[arg-type]
        targets, lambda target: NoopStrategy()
    )

    assert [result.repo_name for result in results] == [f"acme/repo-{i}" for i in range(6)]
    assert sorted(workflow.seen) == sorted(target.repo_id for target in targets)


def test_crashed_pipeline_becomes_failed_result() -> None:
    workflow = FakeWorkflow(crash_on={"b"})

    results = BatchOrchestrator(workflow, worker_count=2).run(  # type: ignore[arg-type]
        [_target("a"), _target("b"), _target("c")], lambda target: NoopStrategy()
    )

    assert [result.success for result in results] == [True, False, True]
    assert results[1].message == "crash in b"
    assert results[1].stage == "failed"


def test_request_stop_skips_queued_repositories() -> None:
    workflow = FakeWorkflow()
    orchestrator = BatchOrchestrator(workflow, worker_count=1)  # type: ignore[arg-type]
    workflow.on_execute.append(orchestrator.request_stop)

    results = orchestrator.run([_target("a"), _target("b"), _target("c")], lambda t: NoopStrategy())

    assert workflow.seen == ["a"]
    assert results[0].success is True
    assert [result.skipped for result in results[1:]] == [True, True]
    assert results[1].message == "Stopped before start"


def test_worker_count_must_be_positive() -> None:
    with pytest.raises(ValueError, match="worker_count must be >= 1"):
        BatchOrchestrator(FakeWorkflow(), worker_count=0)  # type: ignore[arg-type]


@settings(max_examples=25, deadline=None)
@given(
    names=st.lists(st.from_regex(r"[a-z]{1,8}", fullmatch=True), unique=True, max_size=12),
    worker_count=st.integers(min_value=1, max_value=5),
)
def test_every_target_yields_exactly_one_result(names: list[str], worker_count: int) -> None:
    workflow = FakeWorkflow()

    results = BatchOrchestrator(workflow, worker_count=worker_count).run(  # type: ignore[arg-type]
        [_target(name) for name in names], lambda target: NoopStrategy()
    )

    assert [result.repo_name for result in results] == [f"acme/{name}" for name in names]
