from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from codemend.errors import DataStoreFailure
from codemend.models import Category, Pattern, as_utc, utcnow
from codemend.store.engine import StorageEngine
from codemend.store.models import PatternRecord

logger = structlog.get_logger()

_STRIPES = 64


class PatternStore:
    """
    Learned fix templates keyed by pattern key.

    Counters only ever increase and every mutation of a key goes through
    ``_mutate``, which holds that key's stripe lock for the whole
    read-modify-write transaction.
    """

    def __init__(self, storage: StorageEngine):
        self.storage = storage
        self._locks = [threading.Lock() for _ in range(_STRIPES)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % _STRIPES]

    def get(self, key: str) -> Optional[Pattern]:
        with self.storage.session() as session:
            record = session.execute(
                select(PatternRecord).where(PatternRecord.fingerprint == key)
            ).scalar_one_or_none()
            return _to_pattern(record) if record else None

    def list_patterns(self, rule_id: Optional[str] = None) -> List[Pattern]:
        stmt = select(PatternRecord).order_by(PatternRecord.rule_id, PatternRecord.fingerprint)
        if rule_id:
            stmt = stmt.where(PatternRecord.rule_id == rule_id)
        with self.storage.session() as session:
            return [_to_pattern(r) for r in session.execute(stmt).scalars().all()]

    def record_success(self, key: str, rule_id: str, category: Category) -> Optional[Pattern]:
        """A fix instantiated from this pattern held through monitoring."""
        return self._mutate(key, rule_id, category, success=1, create=False)

    def record_failure(self, key: str, rule_id: str, category: Category) -> Optional[Pattern]:
        return self._mutate(key, rule_id, category, failure=1, create=False)

    def promote(
        self,
        key: str,
        rule_id: str,
        category: Category,
        template: Dict[str, Any],
        tags: Iterable[str] = (),
    ) -> Pattern:
        """Stores a fix generalised from another strategy, merging into an existing pattern."""
        return self._mutate(key, rule_id, category, success=1, template=template, tags=tags, create=True)

    def _mutate(
        self,
        key: str,
        rule_id: str,
        category: Category,
        success: int = 0,
        failure: int = 0,
        template: Optional[Dict[str, Any]] = None,
        tags: Iterable[str] = (),
        create: bool = True,
    ) -> Optional[Pattern]:
        with self._lock_for(key):
            try:
                return self._apply(key, rule_id, category, success, failure, template, tags, create)
            except DataStoreFailure as e:
                # Another process inserted the key between our read and write.
                if not isinstance(e.__cause__, IntegrityError):
                    raise
                logger.debug("pattern_insert_race", key=key)
                return self._apply(key, rule_id, category, success, failure, template, tags, create)

    def _apply(self, key, rule_id, category, success, failure, template, tags, create) -> Optional[Pattern]:
        with self.storage.transaction() as session:
            record = session.execute(
                select(PatternRecord).where(PatternRecord.fingerprint == key).with_for_update()
            ).scalar_one_or_none()
            if record is None:
                if not create:
                    return None
                record = PatternRecord(
                    fingerprint=key,
                    rule_id=rule_id,
                    category=category.value,
                    template=template or {},
                    occurrence_count=0,
                    success_count=0,
                    failure_count=0,
                    tags=sorted(set(tags)),
                )
                session.add(record)
                logger.info("pattern_learned", key=key[:12], rule=rule_id)
            elif template and not record.template:
                record.template = template
            if tags:
                record.tags = sorted(set(record.tags or []) | set(tags))
            record.occurrence_count = (record.occurrence_count or 0) + 1
            record.success_count = (record.success_count or 0) + success
            record.failure_count = (record.failure_count or 0) + failure
            record.last_seen = utcnow()
            session.flush()
            return _to_pattern(record)


def _to_pattern(record: PatternRecord) -> Pattern:
    return Pattern(
        fingerprint=record.fingerprint,
        rule_id=record.rule_id,
        category=Category(record.category),
        template=record.template or {},
        occurrence_count=record.occurrence_count or 0,
        success_count=record.success_count or 0,
        failure_count=record.failure_count or 0,
        last_seen=as_utc(record.last_seen) or utcnow(),
        tags=list(record.tags or []),
    )
