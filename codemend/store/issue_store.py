from __future__ import annotations

import uuid
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload

from codemend.errors import DataStoreFailure, InvalidTransition
from codemend.models import (
    OPEN_STATES,
    TRANSITIONS,
    AttemptOutcome,
    CandidatePatch,
    Category,
    FixAttempt,
    Issue,
    IssueState,
    ReviewDecision,
    Severity,
    as_utc,
    utcnow,
)
from codemend.scanner.fingerprint import Finding
from codemend.store.engine import StorageEngine
from codemend.store.models import FixAttemptRecord, IssueRecord

logger = structlog.get_logger()

# Open states an issue may be closed from when a rescan no longer finds it.
# Monitoring and NeedsReview are owned by the monitoring window and by humans.
STALE_CLOSABLE_STATES = frozenset({
    IssueState.DETECTED,
    IssueState.ATTEMPTING,
    IssueState.ROLLED_BACK,
    IssueState.ESCALATED,
})


class SyncResult(BaseModel):
    created: int = 0
    reopened: int = 0
    updated: int = 0
    closed: int = 0
    issues: List[Issue] = Field(default_factory=list)


def _sources_for(target: IssueState) -> Set[IssueState]:
    return {source for source, targets in TRANSITIONS.items() if target in targets}


class IssueStore:
    """
    Persistent record of every issue, its state and its ordered FixAttempt history.

    State changes are compare-and-swap updates: the row only moves when it is
    still in one of the states the transition is legal from.
    """

    def __init__(self, storage: StorageEngine):
        self.storage = storage

    # -- detection -------------------------------------------------------

    def sync_file(self, project: str, file_path: str, findings: Sequence[Finding]) -> SyncResult:
        """
        Upserts the findings of one detector pass over ``file_path``.

        New fingerprints create issues, resolved ones reopen, dismissed ones stay
        suppressed. Open issues that were not found again are closed.
        """
        result = SyncResult()
        seen: Set[str] = set()
        now = utcnow()
        with self.storage.transaction() as session:
            existing = session.execute(
                select(IssueRecord)
                .where(IssueRecord.project == project, IssueRecord.file_path == file_path)
                .order_by(IssueRecord.detected_at)
            ).scalars().all()
            by_fingerprint: Dict[str, IssueRecord] = {}
            for record in existing:
                current = by_fingerprint.get(record.fingerprint)
                # Prefer the open record if history left more than one.
                if current is None or IssueState(current.state) not in OPEN_STATES:
                    by_fingerprint[record.fingerprint] = record

            for finding in findings:
                if finding.fingerprint in seen:
                    continue
                seen.add(finding.fingerprint)
                record = by_fingerprint.get(finding.fingerprint)
                if record is None:
                    record = self._new_record(project, file_path, finding, now)
                    session.add(record)
                    result.created += 1
                    logger.debug("issue_detected", file=file_path, rule=finding.detected.rule_id, line=finding.detected.line)
                    continue

                state = IssueState(record.state)
                if state == IssueState.DISMISSED:
                    record.occurrences = finding.occurrences
                    continue
                self._refresh(record, finding, now)
                if state == IssueState.RESOLVED:
                    record.state = IssueState.DETECTED.value
                    record.review_decision = None
                    record.validation_failures = 0
                    # The fix that resolved it no longer holds.
                    session.execute(
                        update(FixAttemptRecord)
                        .where(FixAttemptRecord.issue_id == record.id, FixAttemptRecord.applied.is_(True))
                        .values(applied=False)
                        .execution_options(synchronize_session=False)
                    )
                    result.reopened += 1
                    logger.info("issue_reopened", issue_id=record.id, file=file_path, rule=record.rule_id)
                else:
                    result.updated += 1

            for record in existing:
                state = IssueState(record.state)
                if record.fingerprint in seen or state not in STALE_CLOSABLE_STATES:
                    continue
                record.state = IssueState.RESOLVED.value
                record.updated_at = now
                result.closed += 1
                logger.info("issue_no_longer_detected", issue_id=record.id, file=file_path, rule=record.rule_id)

            session.flush()
            records = session.execute(
                select(IssueRecord)
                .options(selectinload(IssueRecord.attempts))
                .where(
                    IssueRecord.project == project,
                    IssueRecord.file_path == file_path,
                    IssueRecord.state.in_([s.value for s in OPEN_STATES]),
                )
                .order_by(IssueRecord.line, IssueRecord.detected_at)
            ).scalars().all()
            result.issues = [_to_issue(r) for r in records]
        return result

    def _new_record(self, project: str, file_path: str, finding: Finding, now) -> IssueRecord:
        detected = finding.detected
        return IssueRecord(
            id=uuid.uuid4().hex,
            project=project,
            file_path=file_path,
            fingerprint=finding.fingerprint,
            pattern_key=finding.pattern_key,
            rule_id=detected.rule_id,
            category=detected.category.value,
            severity=detected.severity.value,
            message=detected.message,
            line=detected.line,
            end_line=detected.end_line,
            column=detected.column,
            snippet=detected.snippet,
            scope=detected.scope,
            extra=dict(detected.extra),
            occurrences=finding.occurrences,
            state=IssueState.DETECTED.value,
            validation_failures=0,
            detected_at=now,
            updated_at=now,
        )

    def _refresh(self, record: IssueRecord, finding: Finding, now) -> None:
        detected = finding.detected
        record.line = detected.line
        record.end_line = detected.end_line
        record.column = detected.column
        record.snippet = detected.snippet
        record.extra = dict(detected.extra)
        record.message = detected.message
        record.severity = detected.severity.value
        record.occurrences = finding.occurrences
        record.updated_at = now

    # -- queries ---------------------------------------------------------

    def get(self, issue_id: str) -> Optional[Issue]:
        with self.storage.session() as session:
            record = session.execute(
                select(IssueRecord).options(selectinload(IssueRecord.attempts)).where(IssueRecord.id == issue_id)
            ).scalar_one_or_none()
            return _to_issue(record) if record else None

    def require(self, issue_id: str) -> Issue:
        issue = self.get(issue_id)
        if issue is None:
            raise DataStoreFailure(f"Unknown issue {issue_id}")
        return issue

    def list_issues(
        self,
        project: Optional[str] = None,
        file_path: Optional[str] = None,
        states: Optional[Iterable[IssueState]] = None,
    ) -> List[Issue]:
        stmt = select(IssueRecord).options(selectinload(IssueRecord.attempts))
        if project is not None:
            stmt = stmt.where(IssueRecord.project == project)
        if file_path is not None:
            stmt = stmt.where(IssueRecord.file_path == file_path)
        if states is not None:
            stmt = stmt.where(IssueRecord.state.in_([IssueState(s).value for s in states]))
        stmt = stmt.order_by(IssueRecord.file_path, IssueRecord.line, IssueRecord.detected_at)
        with self.storage.session() as session:
            return [_to_issue(r) for r in session.execute(stmt).scalars().all()]

    def files_with_open_issues(self, project: str) -> Set[str]:
        with self.storage.session() as session:
            rows = session.execute(
                select(IssueRecord.file_path)
                .where(
                    IssueRecord.project == project,
                    IssueRecord.state.in_([s.value for s in OPEN_STATES if s != IssueState.NEEDS_REVIEW]),
                )
                .distinct()
            ).scalars().all()
            return set(rows)

    def monitored_attempts(self, project: str, file_path: str) -> List[Tuple[Issue, FixAttempt]]:
        """Applied attempts in ``file_path`` whose issue is in Monitoring, oldest apply first."""
        with self.storage.session() as session:
            rows = session.execute(
                select(IssueRecord, FixAttemptRecord)
                .join(FixAttemptRecord, FixAttemptRecord.issue_id == IssueRecord.id)
                .where(
                    IssueRecord.project == project,
                    IssueRecord.file_path == file_path,
                    IssueRecord.state == IssueState.MONITORING.value,
                    FixAttemptRecord.applied.is_(True),
                )
                .order_by(FixAttemptRecord.applied_at, FixAttemptRecord.id)
            ).all()
            return [(_to_issue(issue, with_attempts=False), _to_attempt(attempt)) for issue, attempt in rows]

    def applied_attempts_touching(self, project: str, path: str) -> List[Tuple[Issue, FixAttempt]]:
        """Every currently applied attempt whose patch wrote ``path``, oldest apply first."""
        with self.storage.session() as session:
            rows = session.execute(
                select(IssueRecord, FixAttemptRecord)
                .join(FixAttemptRecord, FixAttemptRecord.issue_id == IssueRecord.id)
                .where(IssueRecord.project == project, FixAttemptRecord.applied.is_(True))
                .order_by(FixAttemptRecord.applied_at, FixAttemptRecord.id)
            ).all()
            result = []
            for issue, attempt in rows:
                model = _to_attempt(attempt)
                if path in model.post_apply_hashes:
                    result.append((_to_issue(issue, with_attempts=False), model))
            return result

    def resolved_attempts(self, project: str, rule_id: str, limit: int = 200) -> List[Tuple[Issue, FixAttempt]]:
        """Most recent resolved attempts for ``rule_id``; the neighbour pool for similarity search."""
        with self.storage.session() as session:
            rows = session.execute(
                select(IssueRecord, FixAttemptRecord)
                .join(FixAttemptRecord, FixAttemptRecord.issue_id == IssueRecord.id)
                .where(
                    IssueRecord.project == project,
                    IssueRecord.rule_id == rule_id,
                    FixAttemptRecord.outcome == AttemptOutcome.RESOLVED.value,
                )
                .order_by(FixAttemptRecord.updated_at.desc())
                .limit(limit)
            ).all()
            return [(_to_issue(issue, with_attempts=False), _to_attempt(attempt)) for issue, attempt in rows]

    # -- state machine ---------------------------------------------------

    def transition(
        self,
        issue_id: str,
        target: IssueState,
        expected: Optional[Iterable[IssueState]] = None,
        **fields,
    ) -> Issue:
        """
        Moves an issue to ``target`` if its current state allows it.

        Raises InvalidTransition when the edge is illegal or another worker moved
        the issue first.
        """
        sources = _sources_for(target)
        if expected is not None:
            sources &= {IssueState(s) for s in expected}
        values = {"state": target.value, "updated_at": utcnow()}
        for key, value in fields.items():
            values[key] = value.value if hasattr(value, "value") else value
        with self.storage.transaction() as session:
            outcome = session.execute(
                update(IssueRecord)
                .where(IssueRecord.id == issue_id, IssueRecord.state.in_([s.value for s in sources]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                current = session.execute(
                    select(IssueRecord.state).where(IssueRecord.id == issue_id)
                ).scalar_one_or_none()
                raise InvalidTransition(issue_id, current, target.value)
        logger.debug("issue_transition", issue_id=issue_id, target=target.value)
        return self.require(issue_id)

    def increment_validation_failures(self, issue_id: str) -> int:
        with self.storage.transaction() as session:
            session.execute(
                update(IssueRecord)
                .where(IssueRecord.id == issue_id)
                .values(validation_failures=IssueRecord.validation_failures + 1)
                .execution_options(synchronize_session=False)
            )
            return session.execute(
                select(IssueRecord.validation_failures).where(IssueRecord.id == issue_id)
            ).scalar_one()

    def set_review_decision(self, issue_id: str, decision: ReviewDecision) -> None:
        with self.storage.transaction() as session:
            session.execute(
                update(IssueRecord)
                .where(IssueRecord.id == issue_id)
                .values(review_decision=decision.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    # -- attempts --------------------------------------------------------

    def add_attempt(self, attempt: FixAttempt) -> FixAttempt:
        with self.storage.transaction() as session:
            sequence = session.execute(
                select(func.coalesce(func.max(FixAttemptRecord.sequence), 0)).where(
                    FixAttemptRecord.issue_id == attempt.issue_id
                )
            ).scalar_one() + 1
            record = FixAttemptRecord(
                issue_id=attempt.issue_id,
                sequence=sequence,
                strategy=attempt.strategy,
                raw_confidence=attempt.raw_confidence,
                calibrated_confidence=attempt.calibrated_confidence,
                patch=attempt.diff,
                payload=attempt.patch.model_dump(mode="json") if attempt.patch else None,
                outcome=attempt.outcome.value,
                validation=attempt.validation or None,
                applied=False,
                backups=attempt.backups or None,
                post_apply_hashes=attempt.post_apply_hashes or None,
                monitor_passes_remaining=attempt.monitor_passes_remaining,
                occurrences_at_apply=attempt.occurrences_at_apply,
                escalation_handler=attempt.escalation_handler,
                error=attempt.error,
                created_at=attempt.created_at,
                updated_at=attempt.updated_at,
            )
            session.add(record)
            session.flush()
            return _to_attempt(record)

    def update_attempt(self, attempt_id: int, **fields) -> FixAttempt:
        values = {"updated_at": utcnow()}
        for key, value in fields.items():
            if key == "patch":
                values["patch"] = value.diff if value else ""
                values["payload"] = value.model_dump(mode="json") if value else None
            elif key == "applied":
                raise ValueError("use mark_applied/clear_applied to change the applied flag")
            else:
                values[key] = value.value if hasattr(value, "value") else value
        with self.storage.transaction() as session:
            record = session.get(FixAttemptRecord, attempt_id)
            if record is None:
                raise DataStoreFailure(f"Unknown fix attempt {attempt_id}")
            for key, value in values.items():
                setattr(record, key, value)
            session.flush()
            return _to_attempt(record)

    def mark_applied(
        self,
        attempt_id: int,
        backups: Dict[str, str],
        post_apply_hashes: Dict[str, str],
        monitor_passes: int,
        occurrences: int,
    ) -> FixAttempt:
        """Flags the attempt as the one applied fix of its issue."""
        with self.storage.transaction() as session:
            record = session.get(FixAttemptRecord, attempt_id)
            if record is None:
                raise DataStoreFailure(f"Unknown fix attempt {attempt_id}")
            other = session.execute(
                select(FixAttemptRecord.id).where(
                    FixAttemptRecord.issue_id == record.issue_id,
                    FixAttemptRecord.applied.is_(True),
                    FixAttemptRecord.id != attempt_id,
                )
            ).first()
            if other is not None:
                raise DataStoreFailure(f"Issue {record.issue_id} already has applied attempt {other[0]}")
            record.applied = True
            record.outcome = AttemptOutcome.APPLIED.value
            record.backups = backups
            record.post_apply_hashes = post_apply_hashes
            record.monitor_passes_remaining = monitor_passes
            record.occurrences_at_apply = occurrences
            record.applied_at = record.updated_at = utcnow()
            session.flush()
            return _to_attempt(record)

    def clear_applied(self, attempt_id: int, outcome: AttemptOutcome, error: Optional[str] = None) -> FixAttempt:
        with self.storage.transaction() as session:
            record = session.get(FixAttemptRecord, attempt_id)
            if record is None:
                raise DataStoreFailure(f"Unknown fix attempt {attempt_id}")
            record.applied = False
            record.outcome = outcome.value
            if error:
                record.error = error
            record.updated_at = utcnow()
            session.flush()
            return _to_attempt(record)

    def pending_review_attempt(self, issue_id: str) -> Optional[FixAttempt]:
        with self.storage.session() as session:
            record = session.execute(
                select(FixAttemptRecord)
                .where(
                    FixAttemptRecord.issue_id == issue_id,
                    FixAttemptRecord.outcome == AttemptOutcome.PENDING_REVIEW.value,
                )
                .order_by(FixAttemptRecord.sequence.desc())
            ).scalars().first()
            return _to_attempt(record) if record else None


def _to_attempt(record: FixAttemptRecord) -> FixAttempt:
    return FixAttempt(
        id=record.id,
        issue_id=record.issue_id,
        sequence=record.sequence,
        strategy=record.strategy,
        raw_confidence=record.raw_confidence or 0.0,
        calibrated_confidence=record.calibrated_confidence or 0.0,
        patch=CandidatePatch.model_validate(record.payload) if record.payload else None,
        outcome=AttemptOutcome(record.outcome),
        validation=record.validation or {},
        applied=bool(record.applied),
        backups=record.backups or {},
        post_apply_hashes=record.post_apply_hashes or {},
        monitor_passes_remaining=record.monitor_passes_remaining or 0,
        occurrences_at_apply=record.occurrences_at_apply or 0,
        escalation_handler=record.escalation_handler,
        error=record.error,
        applied_at=as_utc(record.applied_at),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def _to_issue(record: IssueRecord, with_attempts: bool = True) -> Issue:
    return Issue(
        id=record.id,
        project=record.project,
        file_path=record.file_path,
        fingerprint=record.fingerprint,
        pattern_key=record.pattern_key,
        rule_id=record.rule_id,
        category=Category(record.category),
        severity=Severity(record.severity),
        message=record.message,
        line=record.line,
        end_line=record.end_line,
        column=record.column or 0,
        snippet=record.snippet or "",
        scope=record.scope or "<module>",
        extra=dict(record.extra or {}),
        occurrences=record.occurrences or 0,
        state=IssueState(record.state),
        review_decision=ReviewDecision(record.review_decision) if record.review_decision else None,
        validation_failures=record.validation_failures or 0,
        detected_at=as_utc(record.detected_at),
        updated_at=as_utc(record.updated_at),
        attempts=[_to_attempt(a) for a in record.attempts] if with_attempts else [],
    )
