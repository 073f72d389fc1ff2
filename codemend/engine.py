"""Wires scanner, strategy chain, applier, escalation and learning into one batch run."""
from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import List, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, Field

from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.config.defaults import CodemendConfig
from codemend.config.remediation import STRATEGY_ORDER, ScanOptions
from codemend.detectors.base import BaseDetector, DetectorRegistry
from codemend.detectors.python_detector import PythonDetector
from codemend.errors import DataStoreFailure
from codemend.escalation.base import EscalationHandler
from codemend.escalation.dependency import DependencyEscalation
from codemend.escalation.router import EscalationRouter
from codemend.escalation.security import SecurityEscalation
from codemend.learning.loop import LearningLoop
from codemend.llm.factory import LLMFactory
from codemend.llm.generative import GenerativeService
from codemend.models import Exhausted, FixAttempt, Issue, IssueState, WorkItem, utcnow
from codemend.notifications.dispatcher import NotificationDispatcher
from codemend.notifications.events import applied_event, batch_completed_event, needs_review_event
from codemend.notifications.sinks import CompositeSink, LoggingSink, NotificationSink
from codemend.notifications.webhook import WebhookSink
from codemend.remediation.applier import (
    APPLIED,
    COMMIT_FAILED,
    PENDING_REVIEW,
    STALE,
    VALIDATION_FAILED,
    Applier,
    ApplyResult,
)
from codemend.remediation.backup import BackupManager
from codemend.remediation.monitor import MonitoringWindow
from codemend.remediation.sandbox import Sandbox
from codemend.remediation.validator import PatchValidator
from codemend.review import ReviewService
from codemend.scanner.scheduler import Scanner, ScanStats
from codemend.store.engine import StorageEngine, default_db_url
from codemend.store.issue_store import IssueStore
from codemend.store.pattern_store import PatternStore
from codemend.store.snapshot_store import SnapshotStore
from codemend.strategies.base import BaseStrategy, StrategyContext
from codemend.strategies.chain import StrategyChain, spent_strategies
from codemend.strategies.contextual import ContextualStrategy
from codemend.strategies.generative import GenerativeStrategy
from codemend.strategies.pattern_match import PatternMatchStrategy
from codemend.strategies.similarity import CodebaseSimilarityStrategy
from codemend.utils.file_utils import read_text
from codemend.workers import Batch, FileLocks, WorkerPool, WorkerSlot

logger = structlog.get_logger()


class BatchReport(BaseModel):
    project: str
    root: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    scan: ScanStats = Field(default_factory=ScanStats)
    issues_attempted: int = 0
    below_severity_floor: int = 0
    applied: int = 0
    pending_review: int = 0
    validation_failed: int = 0
    stale: int = 0
    commit_failed: int = 0
    escalated: int = 0
    needs_review: int = 0
    store_failures: int = 0
    errors: List[str] = Field(default_factory=list)

    def summary(self) -> dict:
        data = self.model_dump(mode="json", exclude={"errors"})
        data.update(data.pop("scan"))
        return data


@dataclass
class Runtime:
    """The per-root object graph of one engine run."""

    root: Path
    project: str
    issues: IssueStore
    patterns: PatternStore
    snapshots: SnapshotStore
    calibrator: ConfidenceCalibrator
    learning: LearningLoop
    backups: BackupManager
    applier: Applier
    monitor: MonitoringWindow
    scanner: Scanner
    chain: StrategyChain
    router: EscalationRouter
    locks: FileLocks


class RemediationEngine:
    """
    Entry point of the library: ``run(root, options)`` scans a tree, remediates
    what it finds and returns a BatchReport.

    Collaborators that talk to the outside world can be injected; everything
    else is built from the configuration.
    """

    def __init__(
        self,
        config: Optional[CodemendConfig] = None,
        storage: Optional[StorageEngine] = None,
        generative_service: Optional[GenerativeService] = None,
        sink: Optional[NotificationSink] = None,
        detectors: Optional[Sequence[BaseDetector]] = None,
        strategies: Optional[Sequence[BaseStrategy]] = None,
        handlers: Optional[Sequence[EscalationHandler]] = None,
        executor: Optional[Executor] = None,
    ):
        self.config = config or CodemendConfig.default()
        self._storage = storage
        self.generative_service = generative_service
        self.sink = sink or self._default_sink()
        self.detectors = detectors
        self.strategies = strategies
        self.handlers = handlers
        self.executor = executor

    # -- wiring ----------------------------------------------------------

    def storage_for(self, root: Path) -> StorageEngine:
        if self._storage is None:
            self._storage = StorageEngine(self.config.storage.db_url or default_db_url(root))
        return self._storage

    def _default_sink(self) -> NotificationSink:
        sinks: List[NotificationSink] = []
        if self.config.integrations.log_events:
            sinks.append(LoggingSink())
        webhook = self.config.integrations.webhook
        if webhook is not None and webhook.enabled:
            sinks.append(WebhookSink(webhook))
        return CompositeSink(sinks)

    def build_runtime(self, root: str | Path, options: Optional[ScanOptions] = None) -> Runtime:
        root = Path(root).resolve()
        options = options or self.config.scan
        config = self.config
        project = root.name
        storage = self.storage_for(root)

        issues = IssueStore(storage)
        patterns = PatternStore(storage)
        snapshots = SnapshotStore(storage)
        calibrator = ConfidenceCalibrator(storage, config.calibration)
        learning = LearningLoop(calibrator, patterns)
        backups = BackupManager(root, config.monitoring.backup_dir, config.monitoring.backup_retention_days)
        validator = PatchValidator(config.validation, Sandbox(timeout=config.validation.command_timeout))
        applier = Applier(root, issues, validator, backups, config.strategies, config.monitoring, learning)
        monitor = MonitoringWindow(issues, applier, backups, learning)

        python_detector = PythonDetector.for_project(root)
        registry = DetectorRegistry(self.detectors if self.detectors is not None else [python_detector])
        scanner = Scanner(
            project,
            registry,
            issues,
            snapshots,
            monitor=monitor,
            config=config.scheduler,
            concurrency=options.concurrency,
            executor=self.executor,
        )

        strategies = list(self.strategies) if self.strategies is not None else self._default_strategies(issues, patterns)
        chain = StrategyChain(strategies, calibrator, issues, config.strategies, enabled=options.strategies)
        handlers = (
            list(self.handlers)
            if self.handlers is not None
            else [SecurityEscalation(PythonDetector()), DependencyEscalation()]
        )
        router = EscalationRouter(handlers, issues, config.strategies, learning)
        return Runtime(
            root=root,
            project=project,
            issues=issues,
            patterns=patterns,
            snapshots=snapshots,
            calibrator=calibrator,
            learning=learning,
            backups=backups,
            applier=applier,
            monitor=monitor,
            scanner=scanner,
            chain=chain,
            router=router,
            locks=FileLocks(),
        )

    def _default_strategies(self, issues: IssueStore, patterns: PatternStore) -> List[BaseStrategy]:
        config = self.config
        strategies: List[BaseStrategy] = [
            PatternMatchStrategy(patterns),
            CodebaseSimilarityStrategy(issues, config.strategies.similarity_min_ratio, config.strategies.similarity_neighbours),
            ContextualStrategy(),
        ]
        service = self.generative_service
        if service is None:
            service = LLMFactory.create_service(config.llm, self.executor, config.strategies.generative_timeout)
        if service is not None:
            strategies.append(
                GenerativeStrategy(service, config.strategies, config.retry, config.llm.max_code_context_lines)
            )
        return strategies

    def review_service(self, root: str | Path) -> ReviewService:
        runtime = self.build_runtime(root)
        return ReviewService(runtime.issues, runtime.applier, runtime.learning, project=runtime.project)

    def mark_dirty(self, root: str | Path, rel_path: str) -> None:
        """Forces the next run to re-detect ``rel_path`` even if its content hash is unchanged."""
        root = Path(root).resolve()
        SnapshotStore(self.storage_for(root)).mark_dirty(root.name, Path(rel_path).as_posix())

    # -- running ---------------------------------------------------------

    async def run(
        self,
        root: str | Path,
        options: Optional[ScanOptions] = None,
        batch: Optional[Batch] = None,
    ) -> BatchReport:
        options = options or self.config.scan
        batch = batch or Batch()
        loop = asyncio.get_running_loop()
        runtime = await loop.run_in_executor(self.executor, self.build_runtime, root, options)
        report = BatchReport(project=runtime.project, root=str(runtime.root))
        log = logger.bind(project=runtime.project)
        log.info("batch_started", concurrency=options.concurrency, auto_apply=options.auto_apply)

        dispatcher = NotificationDispatcher(self.sink, self.executor)
        dispatcher.start()
        pool = WorkerPool(options.concurrency)
        tasks: List[asyncio.Task] = []
        deferred: List[asyncio.Task] = []
        try:
            await loop.run_in_executor(self.executor, runtime.backups.prune_expired)
            async for item in runtime.scanner.scan(runtime.root, batch, report.scan):
                if batch.cancelled:
                    break
                worker = partial(self._process, runtime, item, options, batch, report, dispatcher, deferred)
                tasks.append(asyncio.create_task(pool.run(worker)))
            await asyncio.gather(*tasks)
            await asyncio.gather(*deferred)
        finally:
            report.cancelled = batch.cancelled
            report.finished_at = utcnow()
            dispatcher.publish(batch_completed_event(runtime.project, report.summary(), report.errors))
            await dispatcher.close()
        log.info("batch_completed", **{k: v for k, v in report.summary().items() if isinstance(v, int) and v})
        return report

    async def _process(
        self,
        runtime: Runtime,
        item: WorkItem,
        options: ScanOptions,
        batch: Batch,
        report: BatchReport,
        dispatcher: NotificationDispatcher,
        deferred: List[asyncio.Task],
        slot: WorkerSlot,
    ) -> None:
        landed = False
        try:
            for issue in sorted(item.issues, key=lambda i: (i.line, i.detected_at)):
                if batch.cancelled:
                    break
                if not issue.severity.at_least(options.severity_floor):
                    report.below_severity_floor += 1
                    continue
                report.issues_attempted += 1
                try:
                    landed = await self._remediate(runtime, issue, options, report, dispatcher, slot) or landed
                except DataStoreFailure:
                    raise
                except Exception as e:
                    # The failure stays with this issue; the rest of the item still runs.
                    report.errors.append(f"{issue.file_path}: {type(e).__name__}: {e}")
                    logger.exception("issue_aborted", issue_id=issue.id, file=issue.file_path)
        except DataStoreFailure as e:
            report.store_failures += 1
            report.errors.append(f"{item.file_path}: {e}")
            logger.error("work_item_aborted", file=item.file_path, error=str(e))
        finally:
            if landed:
                deferred.append(asyncio.create_task(self._post_apply_pass(runtime, item.file_path, report)))

    async def _remediate(
        self,
        runtime: Runtime,
        issue: Issue,
        options: ScanOptions,
        report: BatchReport,
        dispatcher: NotificationDispatcher,
        slot: WorkerSlot,
    ) -> bool:
        """Drives one issue through chain, apply and escalation. True when a fix landed."""
        run = partial(asyncio.get_running_loop().run_in_executor, self.executor)
        issue = await run(self._enter, runtime, issue)
        apply = partial(self._apply_and_tally, runtime, options, report, dispatcher)

        if issue.state == IssueState.ESCALATED:
            ctx = await run(self._context, runtime, issue, slot, apply)
            return await self._escalate(runtime, issue, ctx, report, dispatcher)

        skip = spent_strategies(issue.attempts)
        for _ in range(len(STRATEGY_ORDER) + 1):
            ctx = await run(self._context, runtime, issue, slot, apply)
            outcome = await runtime.chain.resolve(issue, ctx, skip)
            if isinstance(outcome, Exhausted):
                return await self._escalate(runtime, issue, ctx, report, dispatcher)

            result = await apply(issue, outcome)
            if result.applied:
                return True
            if result.issue.state == IssueState.NEEDS_REVIEW:
                report.needs_review += 1
                reason = "awaiting approval" if result.status == PENDING_REVIEW else "repeated validation failures"
                dispatcher.publish(needs_review_event(await run(runtime.issues.require, issue.id), reason))
                return False
            if result.status == VALIDATION_FAILED:
                skip.add(outcome.strategy)
            issue = await run(runtime.issues.transition, issue.id, IssueState.ATTEMPTING)
        logger.warning("issue_left_attempting", issue_id=issue.id, file=issue.file_path)
        return False

    def _enter(self, runtime: Runtime, issue: Issue) -> Issue:
        if issue.state == IssueState.VALIDATING:
            # A previous run stopped between validation and commit; nothing was written.
            runtime.issues.transition(issue.id, IssueState.ROLLED_BACK)
            return runtime.issues.transition(issue.id, IssueState.ATTEMPTING)
        if issue.state in (IssueState.DETECTED, IssueState.ROLLED_BACK):
            return runtime.issues.transition(issue.id, IssueState.ATTEMPTING)
        return runtime.issues.require(issue.id)

    def _context(self, runtime: Runtime, issue: Issue, slot: WorkerSlot, apply) -> StrategyContext:
        return StrategyContext(
            root=runtime.root,
            project=runtime.project,
            rel_path=issue.file_path,
            content=read_text(runtime.root / issue.file_path),
            config=self.config,
            slot=slot,
            executor=self.executor,
            apply=apply,
        )

    async def _escalate(
        self,
        runtime: Runtime,
        issue: Issue,
        ctx: StrategyContext,
        report: BatchReport,
        dispatcher: NotificationDispatcher,
    ) -> bool:
        report.escalated += 1
        outcome: Union[FixAttempt, Issue] = await runtime.router.escalate(issue, ctx)
        if isinstance(outcome, FixAttempt):
            return True
        report.needs_review += 1
        dispatcher.publish(needs_review_event(outcome, "no strategy or escalation handler produced a valid fix"))
        return False

    async def _apply_and_tally(
        self,
        runtime: Runtime,
        options: ScanOptions,
        report: BatchReport,
        dispatcher: NotificationDispatcher,
        issue: Issue,
        attempt: FixAttempt,
    ) -> ApplyResult:
        loop = asyncio.get_running_loop()
        async with runtime.locks.hold(attempt.patch.paths):
            job = loop.run_in_executor(
                self.executor, partial(runtime.applier.apply, issue, attempt, options.auto_apply)
            )
            # Once validation started the apply runs to completion, even if the batch is cancelled.
            result = await asyncio.shield(job)

        if result.status == APPLIED:
            report.applied += 1
            dispatcher.publish(applied_event(result.issue, result.attempt))
        elif result.status == PENDING_REVIEW:
            report.pending_review += 1
        elif result.status == VALIDATION_FAILED:
            report.validation_failed += 1
        elif result.status == STALE:
            report.stale += 1
        elif result.status == COMMIT_FAILED:
            report.commit_failed += 1
        return result

    async def _post_apply_pass(self, runtime: Runtime, rel_path: str, report: BatchReport) -> None:
        try:
            async with runtime.locks.hold([rel_path]):
                await runtime.scanner.rescan_file(runtime.root, rel_path, report.scan)
        except DataStoreFailure as e:
            report.store_failures += 1
            report.errors.append(f"{rel_path}: {e}")
            logger.error("post_apply_pass_failed", file=rel_path, error=str(e))
        except Exception as e:
            report.errors.append(f"{rel_path}: {type(e).__name__}: {e}")
            logger.exception("post_apply_pass_crashed", file=rel_path)
