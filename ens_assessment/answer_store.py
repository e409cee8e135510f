# ens_assessment/answer_store.py

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DbSession

from ens_assessment.assessment_errors import (
    AnswerNotFound,
    AnswerStoreUnavailable,
    ConcurrentMutationConflict,
    DeleteNotConfirmed,
)
from ens_assessment.entities import AnswerRecordRow
from ens_assessment.models import RECORD_COMPLETE, RECORD_DELETED, AnswerRecord, utcnow

logger = logging.getLogger("ens_assessment")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_record(row: AnswerRecordRow) -> AnswerRecord:
    return AnswerRecord(
        question_id=row.question_id,
        domain=row.domain,
        version=row.version,
        status=row.status,
        fields=dict(row.fields or {}),
        completeness_score=row.completeness_score,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        tombstoned=bool(row.tombstoned),
        confidences=dict(row.confidences or {}),
        confirm_token=row.confirm_token,
    )


class AnswerStore:
    """
    Versioned, append-only store of finalized answers.

    Every write inserts version n+1 for one question_id inside a single
    transaction, so a reader sees either the whole new version or the previous
    one. Writes for the same question are serialized in-process; the unique
    (question_id, version) constraint catches writers in other processes.
    """

    def __init__(self, session_factory: Callable[[], DbSession]):
        self._session_factory = session_factory
        self._locks_guard = threading.Lock()
        self._question_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, question_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._question_locks.get(question_id)
            if lock is None:
                lock = threading.Lock()
                self._question_locks[question_id] = lock
            return lock

    # -----------------------
    # Reads
    # -----------------------

    def _latest_row(self, db: DbSession, question_id: str) -> Optional[AnswerRecordRow]:
        stmt = (
            select(AnswerRecordRow)
            .where(AnswerRecordRow.question_id == question_id)
            .order_by(AnswerRecordRow.version.desc())
            .limit(1)
        )
        return db.execute(stmt).scalars().first()

    def latest(self, question_id: str) -> Optional[AnswerRecord]:
        """Latest version, tombstones included."""
        try:
            with self._session_factory() as db:
                row = self._latest_row(db, question_id)
                return _row_to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise AnswerStoreUnavailable(f"Answer store read failed: {e}", question_id=question_id) from e

    def get(self, question_id: str) -> Optional[AnswerRecord]:
        record = self.latest(question_id)
        if record is None or record.tombstoned:
            return None
        return record

    def history(self, question_id: str) -> List[AnswerRecord]:
        try:
            with self._session_factory() as db:
                stmt = (
                    select(AnswerRecordRow)
                    .where(AnswerRecordRow.question_id == question_id)
                    .order_by(AnswerRecordRow.version.asc())
                )
                return [_row_to_record(r) for r in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            raise AnswerStoreUnavailable(f"Answer store read failed: {e}", question_id=question_id) from e

    def latest_records(self) -> Dict[str, AnswerRecord]:
        """
        question_id -> latest version (tombstones included) for every stored question.
        """
        try:
            with self._session_factory() as db:
                latest_versions = (
                    select(
                        AnswerRecordRow.question_id,
                        func.max(AnswerRecordRow.version).label("max_version"),
                    )
                    .group_by(AnswerRecordRow.question_id)
                    .subquery()
                )
                stmt = select(AnswerRecordRow).join(
                    latest_versions,
                    (AnswerRecordRow.question_id == latest_versions.c.question_id)
                    & (AnswerRecordRow.version == latest_versions.c.max_version),
                )
                return {r.question_id: _row_to_record(r) for r in db.execute(stmt).scalars().all()}
        except SQLAlchemyError as e:
            raise AnswerStoreUnavailable(f"Answer store read failed: {e}") from e

    def answered_ids(self) -> Set[str]:
        return {qid for qid, rec in self.latest_records().items() if not rec.tombstoned}

    # -----------------------
    # Writes
    # -----------------------

    def commit(
        self,
        question_id: str,
        field_values: Mapping[str, object],
        *,
        domain: str,
        completeness_score: int = 100,
        confidences: Optional[Mapping[str, float]] = None,
    ) -> AnswerRecord:
        return self._append(
            question_id,
            domain=domain,
            status=RECORD_COMPLETE,
            fields=dict(field_values),
            completeness_score=int(completeness_score),
            confidences=dict(confidences or {}),
            tombstoned=False,
            confirm_token=None,
        )

    def delete(self, question_id: str, confirm_token: Optional[str]) -> AnswerRecord:
        """
        Appends a tombstone version. The last live fields are carried into the
        tombstone so the audit trail shows what was removed.
        """
        if not confirm_token or not str(confirm_token).strip():
            raise DeleteNotConfirmed(
                f"Deleting the answer to {question_id} requires a confirmation token",
                question_id=question_id,
            )
        current = self.latest(question_id)
        if current is None or current.tombstoned:
            raise AnswerNotFound(f"No stored answer for {question_id}", question_id=question_id)

        return self._append(
            question_id,
            domain=current.domain,
            status=RECORD_DELETED,
            fields=dict(current.fields),
            completeness_score=0,
            confidences=dict(current.confidences),
            tombstoned=True,
            confirm_token=str(confirm_token).strip(),
            expected_version=current.version,
        )

    def _append(
        self,
        question_id: str,
        *,
        domain: str,
        status: str,
        fields: Dict[str, object],
        completeness_score: int,
        confidences: Dict[str, float],
        tombstoned: bool,
        confirm_token: Optional[str],
        expected_version: Optional[int] = None,
    ) -> AnswerRecord:
        with self._lock_for(question_id):
            try:
                with self._session_factory() as db:
                    with db.begin():
                        latest = self._latest_row(db, question_id)
                        latest_version = latest.version if latest is not None else 0
                        if expected_version is not None and latest_version != expected_version:
                            raise ConcurrentMutationConflict(
                                f"Answer {question_id} changed while deleting (v{expected_version} -> v{latest_version})",
                                question_id=question_id,
                            )

                        now = utcnow()
                        first_created = self._first_created_at(db, question_id) if latest is not None else None
                        row = AnswerRecordRow(
                            question_id=question_id,
                            domain=domain,
                            version=latest_version + 1,
                            status=status,
                            fields=fields,
                            confidences=confidences,
                            completeness_score=completeness_score,
                            created_at=_as_utc(first_created) or now,
                            updated_at=now,
                            tombstoned=tombstoned,
                            confirm_token=confirm_token,
                        )
                        db.add(row)
                        db.flush()
                        record = _row_to_record(row)
            except IntegrityError as e:
                raise ConcurrentMutationConflict(
                    f"Another writer stored a version of {question_id} first; resubmit",
                    question_id=question_id,
                ) from e
            except SQLAlchemyError as e:
                logger.error(f"[STORE] write failed for {question_id}: {e}")
                raise AnswerStoreUnavailable(f"Answer store write failed: {e}", question_id=question_id) from e

        logger.info(
            f"[STORE] {question_id} v{record.version} status={record.status} score={record.completeness_score}"
        )
        return record

    def _first_created_at(self, db: DbSession, question_id: str):
        stmt = (
            select(AnswerRecordRow.created_at)
            .where(AnswerRecordRow.question_id == question_id)
            .order_by(AnswerRecordRow.version.asc())
            .limit(1)
        )
        return db.execute(stmt).scalars().first()
