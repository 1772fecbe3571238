from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
import logging
import threading

from fleetsync.models import RepoTarget, SyncResult
from fleetsync.observability import log_event
from fleetsync.sync_workflow import SyncWorkflow, WorkStrategy


LOGGER = logging.getLogger("fleetsync.orchestrator")


class BatchOrchestrator:
    """Runs one sync pipeline per repository on a bounded thread pool.

    Targets must name distinct repositories; each pipeline owns its workspace
    directory. ``request_stop`` keeps queued repositories from starting, and those
    come back as skipped results.
    """

    def __init__(self, workflow: SyncWorkflow, *, worker_count: int) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self._workflow = workflow
        self._worker_count = worker_count
        self._stop_requested = threading.Event()

    def request_stop(self) -> None:
        self._stop_requested.set()
        log_event(LOGGER, "batch_stop_requested")

    def run(
        self,
        targets: Sequence[RepoTarget],
        strategy_for: Callable[[RepoTarget], WorkStrategy],
    ) -> list[SyncResult]:
        log_event(
            LOGGER,
            "batch_started",
            repo_count=len(targets),
            worker_count=self._worker_count,
        )
        futures: list[tuple[RepoTarget, Future[SyncResult]]] = []
        with ThreadPoolExecutor(
            max_workers=self._worker_count,
            thread_name_prefix="fleetsync",
        ) as pool:
            for target in targets:
                futures.append((target, pool.submit(self._process, target, strategy_for)))

        results: list[SyncResult] = []
        for target, fut in futures:
            try:
                results.append(fut.result())
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "repo_pipeline_crashed",
                    repo_id=target.repo_id,
                    error_type=type(exc).__name__,
                )
                results.append(
                    SyncResult(
                        repo_name=target.descriptor.display_name,
                        success=False,
                        message=str(exc),
                        stage="failed",
                    )
                )

        log_event(
            LOGGER,
            "batch_finished",
            repo_count=len(results),
            succeeded=sum(1 for result in results if result.success and not result.skipped),
            skipped=sum(1 for result in results if result.skipped),
            failed=sum(1 for result in results if not result.success),
        )
        return results

    def _process(
        self,
        target: RepoTarget,
        strategy_for: Callable[[RepoTarget], WorkStrategy],
    ) -> SyncResult:
        if self._stop_requested.is_set():
            log_event(LOGGER, "repo_not_started", repo_id=target.repo_id)
            return SyncResult(
                repo_name=target.descriptor.display_name,
                success=True,
                message="Stopped before start",
                stage="skipped",
                skipped=True,
            )
        return self._workflow.execute(target, strategy_for(target))
