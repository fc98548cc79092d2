"""
Learning Engine - persona suggestions from recorded outcomes.

Outcome history is kept per (domain, persona) as success/total counters. The
engine only ever suggests a persona whose record is trusted (at least
min_samples outcomes) and whose success ratio beats the detector's own persona
by more than the configured margin. Under-sampled records are tracked but
never acted on.

Stores:
    InMemoryLearningStore: process-local, per-key locks
    SQLiteLearningStore: persistent, single-statement atomic upsert

Both stores bound their retries. When retries are exhausted the outcome is
dropped with a warning; a request is never failed because learning could not
be recorded.
"""

import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from guidance_engine.config import EngineSettings
from guidance_engine.database import LearningDatabase
from guidance_engine.models import Context, LearningRecord, OptimizedContext, Recommendation

logger = logging.getLogger(__name__)

# Retry configuration for lock contention
MAX_RETRIES = 3
RETRY_BASE_DELAY = 0.05  # seconds; doubles on each retry

PATTERN_PREFER_PERSONA = "prefer-persona"
PATTERN_LOW_SUCCESS = "low-success-history"


class LearningStore(ABC):
    """Storage for learning records keyed by (domain, persona)."""

    @abstractmethod
    def get(self, domain: str, persona: str) -> LearningRecord | None:
        """Record for one pair, or None if no outcome was recorded yet."""

    @abstractmethod
    def records_for_domain(self, domain: str) -> list[LearningRecord]:
        """All records of one domain, ordered by persona."""

    @abstractmethod
    def update(self, domain: str, persona: str, success: bool) -> LearningRecord | None:
        """
        Atomically add one outcome to a record, creating it on first use.

        Returns:
            The updated record, or None if the outcome was dropped
        """

    @abstractmethod
    def all_records(self) -> list[LearningRecord]:
        """All records, ordered by (domain, persona)."""

    def stats(self) -> dict:
        records = self.all_records()
        return {
            "store": type(self).__name__,
            "record_count": len(records),
            "outcome_count": sum(r.total_count for r in records),
            "domains": sorted({r.domain for r in records}),
        }


class InMemoryLearningStore(LearningStore):
    """
    Process-local learning store.

    Each (domain, persona) key has its own lock, so updates to different keys
    never contend. A reader only ever sees a whole record since records are
    immutable and replaced, never edited in place.
    """

    def __init__(self, max_retries: int = MAX_RETRIES, lock_timeout: float = 0.1):
        self.max_retries = max(1, max_retries)
        self.lock_timeout = lock_timeout
        self._records: dict[tuple[str, str], LearningRecord] = {}
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._index_lock = threading.Lock()

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._index_lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def get(self, domain: str, persona: str) -> LearningRecord | None:
        with self._index_lock:
            return self._records.get((domain, persona))

    def records_for_domain(self, domain: str) -> list[LearningRecord]:
        with self._index_lock:
            snapshot = [r for (d, _), r in self._records.items() if d == domain]
        return sorted(snapshot, key=lambda r: r.persona)

    def all_records(self) -> list[LearningRecord]:
        with self._index_lock:
            snapshot = list(self._records.values())
        return sorted(snapshot, key=lambda r: (r.domain, r.persona))

    def update(self, domain: str, persona: str, success: bool) -> LearningRecord | None:
        key = (domain, persona)
        lock = self._lock_for(key)

        for attempt in range(self.max_retries):
            timeout = self.lock_timeout * (2 ** attempt)
            if lock.acquire(timeout=timeout):
                try:
                    with self._index_lock:
                        current = self._records.get(key)
                    if current is None:
                        current = LearningRecord(domain=domain, persona=persona)
                    updated = current.incremented(success, datetime.now())
                    with self._index_lock:
                        self._records[key] = updated
                    return updated
                finally:
                    lock.release()
            logger.debug(
                f"Learning record ({domain}, {persona}) busy, "
                f"attempt {attempt + 1}/{self.max_retries}"
            )

        logger.warning(
            f"Dropped learning outcome for ({domain}, {persona}) "
            f"after {self.max_retries} attempts"
        )
        return None


UPSERT_SQL = """
INSERT INTO learning_records (domain, persona, success_count, total_count, last_updated)
VALUES (?, ?, ?, 1, ?)
ON CONFLICT(domain, persona) DO UPDATE SET
    success_count = success_count + excluded.success_count,
    total_count = total_count + 1,
    last_updated = excluded.last_updated
"""

SELECT_COLUMNS = "domain, persona, success_count, total_count, last_updated"


class SQLiteLearningStore(LearningStore):
    """Persistent learning store backed by LearningDatabase."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        db: LearningDatabase | None = None,
    ):
        self.db = db or LearningDatabase(db_path=db_path)
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay

    def get(self, domain: str, persona: str) -> LearningRecord | None:
        row = self.db.execute_one(
            f"SELECT {SELECT_COLUMNS} FROM learning_records WHERE domain = ? AND persona = ?",
            (domain, persona),
        )
        return LearningRecord.from_row(row) if row else None

    def records_for_domain(self, domain: str) -> list[LearningRecord]:
        rows = self.db.execute(
            f"SELECT {SELECT_COLUMNS} FROM learning_records WHERE domain = ? ORDER BY persona",
            (domain,),
        )
        return [LearningRecord.from_row(row) for row in rows]

    def all_records(self) -> list[LearningRecord]:
        rows = self.db.execute(
            f"SELECT {SELECT_COLUMNS} FROM learning_records ORDER BY domain, persona"
        )
        return [LearningRecord.from_row(row) for row in rows]

    def update(self, domain: str, persona: str, success: bool) -> LearningRecord | None:
        """
        Add one outcome with a single atomic upsert.

        Retries with exponential backoff on "database is locked" errors;
        any other database error drops the outcome immediately.
        """
        params = (domain, persona, 1 if success else 0, datetime.now().isoformat())

        for attempt in range(self.max_retries):
            try:
                with self.db.connection() as conn:
                    conn.execute(UPSERT_SQL, params)
                    row = conn.execute(
                        f"SELECT {SELECT_COLUMNS} FROM learning_records "
                        "WHERE domain = ? AND persona = ?",
                        (domain, persona),
                    ).fetchone()
                return LearningRecord.from_row(row)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < self.max_retries - 1:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.debug(
                        f"Database locked, retry {attempt + 1}/{self.max_retries} "
                        f"after {delay:.3f}s"
                    )
                    time.sleep(delay)
                    continue
                logger.warning(f"Dropped learning outcome for ({domain}, {persona}): {e}")
                return None
            except sqlite3.Error as e:
                logger.warning(f"Dropped learning outcome for ({domain}, {persona}): {e}")
                return None

        return None

    def stats(self) -> dict:
        stats = super().stats()
        stats["database"] = self.db.get_stats()
        return stats


def create_learning_store(
    settings: EngineSettings, db_path: Path | str | None = None
) -> LearningStore:
    """Build the store named by settings.learning.store."""
    learning = settings.learning
    if learning.store == "memory":
        return InMemoryLearningStore(max_retries=learning.max_retries)
    return SQLiteLearningStore(
        db_path=db_path,
        max_retries=learning.max_retries,
        retry_base_delay=learning.retry_base_delay,
    )


class LearningEngine:
    """Suggests personas from outcome history and records new outcomes."""

    def __init__(self, store: LearningStore, settings: EngineSettings | None = None):
        self.store = store
        self.settings = settings or EngineSettings.from_config()

    def optimize(self, context: Context) -> OptimizedContext:
        """
        Adjust a context using recorded outcomes for its primary domain.

        A persona is suggested only when its trusted success ratio exceeds the
        baseline by more than the margin. The baseline is the detector
        persona's own trusted ratio, or the neutral ratio while that persona
        is still under-sampled.

        Args:
            context: Context from the detector (not modified)

        Returns:
            OptimizedContext; identical to the input context when there is no
            trusted history
        """
        learning = self.settings.learning
        domain = context.primary_domain
        records = self.store.records_for_domain(domain)
        trusted = [r for r in records if r.total_count >= learning.min_samples]
        if not trusted:
            return OptimizedContext(context=context)

        current = next((r for r in trusted if r.persona == context.persona), None)
        baseline = current.success_ratio if current else learning.neutral_ratio

        # Highest ratio first; more samples, then persona name break ties
        best = sorted(trusted, key=lambda r: (-r.success_ratio, -r.total_count, r.persona))[0]

        recommendations: list[Recommendation] = []
        suggested = None
        persona_confidence = None

        if best.persona != context.persona and best.success_ratio - baseline > learning.margin:
            suggested = best.persona
            persona_confidence = round(best.success_ratio, 4)
            recommendations.append(
                Recommendation(
                    pattern=PATTERN_PREFER_PERSONA,
                    description=(
                        f"'{best.persona}' succeeded in {best.success_ratio:.0%} of "
                        f"{best.total_count} '{domain}' requests "
                        f"(baseline {baseline:.0%} for '{context.persona}')"
                    ),
                    domain=domain,
                    persona=best.persona,
                    success_ratio=round(best.success_ratio, 4),
                    sample_size=best.total_count,
                )
            )
            logger.info(
                f"Learning suggests persona '{best.persona}' over '{context.persona}' "
                f"for domain '{domain}'"
            )

        if current and current.success_ratio < learning.low_success_ratio:
            recommendations.append(
                Recommendation(
                    pattern=PATTERN_LOW_SUCCESS,
                    description=(
                        f"'{current.persona}' succeeded in only "
                        f"{current.success_ratio:.0%} of {current.total_count} "
                        f"'{domain}' requests"
                    ),
                    domain=domain,
                    persona=current.persona,
                    success_ratio=round(current.success_ratio, 4),
                    sample_size=current.total_count,
                )
            )

        return OptimizedContext(
            context=context,
            suggested_persona=suggested,
            persona_confidence=persona_confidence,
            pattern_recommendations=tuple(recommendations),
        )

    def record_outcome(self, domain: str, persona: str, success: bool) -> None:
        """
        Record the outcome of a completed request.

        Never raises for contention: an outcome that cannot be stored is
        dropped and logged by the store.
        """
        if not domain or not persona:
            logger.warning(
                f"Ignoring outcome with empty domain or persona: ({domain!r}, {persona!r})"
            )
            return

        record = self.store.update(domain, persona, bool(success))
        if record is not None:
            logger.debug(
                f"Recorded {'success' if success else 'failure'} for ({domain}, {persona}): "
                f"{record.success_count}/{record.total_count}"
            )

    def stats(self) -> dict:
        """Store statistics plus every record."""
        stats = self.store.stats()
        stats["records"] = [r.to_dict() for r in self.store.all_records()]
        return stats
