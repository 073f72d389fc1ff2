from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from codemend.models import utcnow

Base = declarative_base()


class IssueRecord(Base):
    __tablename__ = "issues"

    id = Column(String(32), primary_key=True)
    project = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=False)
    fingerprint = Column(String(64), nullable=False)
    pattern_key = Column(String(64), nullable=False)
    rule_id = Column(String(100), nullable=False)
    category = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    line = Column(Integer, nullable=False)
    end_line = Column(Integer)
    column = Column(Integer, default=0)
    snippet = Column(Text, default="")
    scope = Column(String(512), default="<module>")
    extra = Column(JSON, default=dict)
    occurrences = Column(Integer, default=1)
    state = Column(String(32), nullable=False)
    review_decision = Column(String(16))
    validation_failures = Column(Integer, default=0)
    detected_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    attempts = relationship(
        "FixAttemptRecord",
        back_populates="issue",
        cascade="all, delete-orphan",
        order_by="FixAttemptRecord.sequence",
    )

    __table_args__ = (
        Index("ix_issues_fingerprint", "fingerprint"),
        Index("ix_issues_file_state", "project", "file_path", "state"),
    )


class FixAttemptRecord(Base):
    __tablename__ = "fix_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(String(32), ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    strategy = Column(String(64), nullable=False)
    raw_confidence = Column(Float, default=0.0)
    calibrated_confidence = Column(Float, default=0.0)
    patch = Column(Text, default="")
    payload = Column(JSON, nullable=True)
    outcome = Column(String(32), nullable=False)
    validation = Column(JSON, nullable=True)
    applied = Column(Boolean, default=False, nullable=False)
    backups = Column(JSON, nullable=True)
    post_apply_hashes = Column(JSON, nullable=True)
    monitor_passes_remaining = Column(Integer, default=0)
    occurrences_at_apply = Column(Integer, default=0)
    escalation_handler = Column(String(64))
    error = Column(Text)
    applied_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    issue = relationship("IssueRecord", back_populates="attempts")

    __table_args__ = (
        Index("ix_fix_attempts_issue", "issue_id", "sequence"),
        Index("ix_fix_attempts_strategy_outcome", "strategy", "outcome"),
    )


class PatternRecord(Base):
    __tablename__ = "patterns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False)
    rule_id = Column(String(100), nullable=False)
    category = Column(String(32), nullable=False)
    template = Column(JSON, nullable=True)
    occurrence_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_seen = Column(DateTime(timezone=True), default=utcnow)
    tags = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("fingerprint", name="uq_patterns_fingerprint"),)


class FileSnapshotRecord(Base):
    __tablename__ = "file_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project = Column(String(255), nullable=False)
    path = Column(String(1024), nullable=False)
    content_hash = Column(String(64))
    last_scanned = Column(DateTime(timezone=True))
    outstanding_issues = Column(Integer, default=0)
    health_score = Column(Float, default=100.0)
    dirty = Column(Boolean, default=False, nullable=False)
    last_error = Column(Text)

    __table_args__ = (UniqueConstraint("project", "path", name="uq_file_snapshots_path"),)


class StrategyOutcomeRecord(Base):
    __tablename__ = "strategy_outcomes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    strategy = Column(String(64), nullable=False)
    domain = Column(String(32), nullable=False)
    success = Column(Boolean, nullable=False)
    confidence = Column(Float)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("ix_strategy_outcomes_pair", "strategy", "domain", "id"),)
