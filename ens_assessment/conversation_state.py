# ens_assessment/conversation_state.py
"""
Conversation State Tracker.

Per (session, question) finite state machine:

    not_started --engage--> in_progress --complete--> complete
    complete --edit--> in_progress
    complete --delete--> not_started       (after a tombstone version is written)

Deleting while an edit is open first drops the edit (abandon_edit) so the
question is back to `complete` before it is deleted.

Sessions are independent. Within a session there is one logical writer: every
mutation runs on a staged copy under the session's lock and is published in a
single swap, so a failed turn leaves the session exactly as it was.
"""

import copy
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set

from ens_assessment.assessment_config import EngineSettings
from ens_assessment.assessment_errors import (
    ConcurrentMutationConflict,
    FieldNotFound,
    InvalidTransition,
    PrerequisitesNotMet,
    SessionNotFound,
)
from ens_assessment.models import (
    COMPLETE,
    EVIDENCE_RESET,
    IN_PROGRESS,
    NOT_STARTED,
    EvidenceEntry,
    FieldEvidence,
    QuestionDefinition,
    QuestionProgress,
    Session,
    Turn,
    completeness_score,
    utcnow,
)

logger = logging.getLogger("ens_assessment")


ENGAGE = "engage"
COMPLETE_QUESTION = "complete"
EDIT = "edit"
DELETE = "delete"

_TRANSITIONS = {
    (NOT_STARTED, ENGAGE): IN_PROGRESS,
    (IN_PROGRESS, COMPLETE_QUESTION): COMPLETE,
    (COMPLETE, EDIT): IN_PROGRESS,
    (COMPLETE, DELETE): NOT_STARTED,
}


def transition(progress: QuestionProgress, trigger: str) -> QuestionProgress:
    """
    Returns a copy of `progress` moved along `trigger`, or raises InvalidTransition.
    """
    target = _TRANSITIONS.get((progress.status, trigger))
    if target is None:
        raise InvalidTransition(
            f"Question {progress.question_id}: cannot '{trigger}' from status '{progress.status}'",
            question_id=progress.question_id,
            status=progress.status,
        )
    updated = progress.copy()
    updated.status = target
    return updated


class SessionRegistry:
    """
    In-memory, per-session state with:
    - sliding TTL (expires ttl_seconds after last touch)
    - one non-reentrant writer lock per session
    - a registry lock that only guards the map, never held across external calls
    """

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        # session_id -> {"session": Session, "expires_at": float, "lock": threading.Lock}
        self._items: Dict[str, Dict[str, object]] = {}

    def create(self, session_id: Optional[str] = None) -> Session:
        sid = str(session_id or uuid.uuid4())
        now = time.time()
        with self._lock:
            # abandoned sessions are dropped whenever a session is opened
            self._sweep_unlocked(now)
            item = self._items.get(sid)
            if item is not None and float(item["expires_at"]) > now:
                item["expires_at"] = now + self.ttl_seconds
                return copy.deepcopy(item["session"])  # type: ignore[arg-type]
            session = Session(session_id=sid)
            self._items[sid] = {
                "session": session,
                "expires_at": now + self.ttl_seconds,
                "lock": threading.Lock(),
            }
            return copy.deepcopy(session)

    def _get_item_unlocked(self, session_id: str) -> Dict[str, object]:
        now = time.time()
        item = self._items.get(session_id)
        if item is None:
            raise SessionNotFound(f"Unknown session: {session_id}", session_id=session_id)
        if float(item["expires_at"]) <= now:
            lock: threading.Lock = item["lock"]  # type: ignore[assignment]
            if not lock.locked():
                del self._items[session_id]
                raise SessionNotFound(f"Session expired: {session_id}", session_id=session_id)
        item["expires_at"] = now + self.ttl_seconds
        return item

    def snapshot(self, session_id: str) -> Session:
        """
        Returns a COPY of the last published state of the session.
        """
        with self._lock:
            item = self._get_item_unlocked(str(session_id))
            return copy.deepcopy(item["session"])  # type: ignore[arg-type]

    def exists(self, session_id: str) -> bool:
        with self._lock:
            try:
                self._get_item_unlocked(str(session_id))
            except SessionNotFound:
                return False
            return True

    @contextmanager
    def writer(self, session_id: str) -> Iterator["SessionWriter"]:
        sid = str(session_id)
        with self._lock:
            item = self._get_item_unlocked(sid)
            session_lock: threading.Lock = item["lock"]  # type: ignore[assignment]

        if not session_lock.acquire(blocking=False):
            raise ConcurrentMutationConflict(
                f"Session {sid} is already processing a mutation; resubmit once it completes",
                session_id=sid,
            )
        try:
            with self._lock:
                current = copy.deepcopy(item["session"])
            yield SessionWriter(self, sid, current)
        finally:
            session_lock.release()

    def _publish(self, session_id: str, session: Session) -> None:
        with self._lock:
            item = self._items.get(session_id)
            if item is None:
                raise SessionNotFound(f"Session vanished while writing: {session_id}", session_id=session_id)
            item["session"] = session
            item["expires_at"] = time.time() + self.ttl_seconds

    def _sweep_unlocked(self, now: float) -> int:
        removed = 0
        for sid in list(self._items.keys()):
            item = self._items[sid]
            lock: threading.Lock = item["lock"]  # type: ignore[assignment]
            if float(item["expires_at"]) <= now and not lock.locked():
                del self._items[sid]
                removed += 1
        if removed:
            logger.info(f"[STATE] dropped {removed} expired session(s)")
        return removed

    def sweep_expired(self) -> int:
        with self._lock:
            return self._sweep_unlocked(time.time())

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())


class SessionWriter:
    """
    Handle given to the single writer of a session. `session` is a private
    staged copy; nothing is visible to readers until publish().
    """

    def __init__(self, registry: SessionRegistry, session_id: str, session: Session):
        self._registry = registry
        self.session_id = session_id
        self.session = session

    def publish(self) -> None:
        self._registry._publish(self.session_id, self.session)


class ConversationStateTracker:
    def __init__(self, catalog, settings: EngineSettings | None = None, registry: SessionRegistry | None = None):
        self.catalog = catalog
        self.settings = settings or EngineSettings()
        self.registry = registry or SessionRegistry(ttl_seconds=self.settings.session_ttl_seconds)

    # -----------------------
    # Sessions
    # -----------------------

    def open_session(self, session_id: Optional[str] = None) -> Session:
        session = self.registry.create(session_id)
        logger.info(f"[STATE] session opened: {session.session_id}")
        return session

    def get_session(self, session_id: str) -> Session:
        return self.registry.snapshot(session_id)

    def writer(self, session_id: str):
        return self.registry.writer(session_id)

    def check_turn_order(self, session: Session, expected_turn: Optional[int]) -> None:
        if expected_turn is None:
            return
        if expected_turn != session.next_turn_index:
            raise ConcurrentMutationConflict(
                f"Turn {expected_turn} arrived out of order for session {session.session_id} "
                f"(next expected turn is {session.next_turn_index})",
                session_id=session.session_id,
                expected_turn=session.next_turn_index,
            )

    def append_turn(self, session: Session, speaker: str, text: str, question_id: Optional[str]) -> Turn:
        turn = Turn(index=session.next_turn_index, speaker=speaker, text=text, timestamp=utcnow(), question_id=question_id)
        session.turns.append(turn)
        return turn

    # -----------------------
    # Questions
    # -----------------------

    def is_done(self, session: Session, question_id: str, answered_ids: Set[str]) -> bool:
        """
        Open while this session is working on it; otherwise done iff the store
        holds a live answer. A `complete` progress whose answer was deleted
        from another session is therefore not done.
        """
        progress = session.progress.get(question_id)
        if progress is not None and progress.status == IN_PROGRESS:
            return False
        return question_id in answered_ids

    def prerequisites_met(self, session: Session, question: QuestionDefinition, answered_ids: Set[str]) -> bool:
        return all(self.is_done(session, pre, answered_ids) for pre in question.prerequisites)

    def check_prerequisites(self, session: Session, question: QuestionDefinition, answered_ids: Set[str]) -> None:
        missing = [pre for pre in question.prerequisites if not self.is_done(session, pre, answered_ids)]
        if missing:
            raise PrerequisitesNotMet(
                f"Question {question.id} requires {', '.join(missing)} to be answered first",
                question_id=question.id,
                missing=missing,
            )

    def select_active_question(self, session: Session, answered_ids: Set[str]) -> Optional[QuestionDefinition]:
        """
        Keeps the current active question while it is open; otherwise the
        first catalog question (declared order) that is open and unlocked.
        """
        if session.active_question_id:
            current = session.progress.get(session.active_question_id)
            if current is not None and current.status == IN_PROGRESS:
                return self.catalog.get(session.active_question_id)

        for question in self.catalog.questions():
            if self.is_done(session, question.id, answered_ids):
                continue
            if not self.prerequisites_met(session, question, answered_ids):
                continue
            return question
        return None

    def conversation_window(self, session: Session, progress: QuestionProgress) -> List[Turn]:
        turns = [
            t for t in session.turns
            if t.question_id == progress.question_id and t.index >= progress.window_start
        ]
        limit = max(1, self.settings.conversation_window)
        return turns[-limit:]

    # -----------------------
    # Edit / delete
    # -----------------------

    def begin_edit(self, progress: QuestionProgress, question: QuestionDefinition, field_name: str, turn_index: int) -> QuestionProgress:
        if question.field(field_name) is None:
            raise FieldNotFound(
                f"Question {question.id} has no field '{field_name}'",
                question_id=question.id,
                field=field_name,
            )

        if progress.status == IN_PROGRESS and progress.edited_fields:
            # already re-editing this answer: open one more field
            updated = progress.copy()
        else:
            updated = transition(progress, EDIT)

        previous = updated.fields.get(field_name) or FieldEvidence()
        updated.evidence_log.append(
            EvidenceEntry(turn_index, field_name, previous.value, previous.confidence, EVIDENCE_RESET)
        )
        updated.fields[field_name] = FieldEvidence()
        if field_name not in updated.edited_fields:
            updated.edited_fields = updated.edited_fields + (field_name,)
        updated.confirmation_requested = False
        updated.window_start = turn_index
        updated.last_updated = utcnow()
        # score drops for the edited field until it is re-confirmed
        updated.completeness_score = completeness_score(updated)
        return updated

    def abandon_edit(self, progress: QuestionProgress, question: QuestionDefinition, record, turn_index: int) -> QuestionProgress:
        """
        Drops an unfinished edit and returns to the stored answer, `complete`
        again. The session's evidence log is kept.
        """
        restored = self.hydrate_from_record(question, record, turn_index)
        restored.status = COMPLETE
        restored.evidence_log = list(progress.evidence_log)
        return restored

    def drop_stale_completion(
        self,
        progress: QuestionProgress,
        question: QuestionDefinition,
        answered_ids: Set[str],
        turn_index: int,
    ) -> QuestionProgress:
        """
        A question this session completed, whose answer has since been
        deleted from another session, starts over from not_started.
        """
        if progress.status != COMPLETE or question.id in answered_ids:
            return progress
        logger.info(f"[STATE] {question.id}: stored answer was deleted elsewhere; question reopened")
        return self.reset_after_delete(progress, question, turn_index)

    def reset_after_delete(self, progress: QuestionProgress, question: QuestionDefinition, turn_index: int) -> QuestionProgress:
        updated = transition(progress, DELETE)
        for name in question.field_names:
            previous = updated.fields.get(name) or FieldEvidence()
            updated.evidence_log.append(
                EvidenceEntry(turn_index, name, previous.value, previous.confidence, EVIDENCE_RESET)
            )
        updated.fields = {name: FieldEvidence() for name in question.field_names}
        updated.completeness_score = 0
        updated.confirmation_requested = False
        updated.edited_fields = ()
        updated.window_start = turn_index
        updated.last_updated = utcnow()
        return updated

    def hydrate_from_record(self, question: QuestionDefinition, record, turn_index: int) -> QuestionProgress:
        """
        Rebuilds a `complete` QuestionProgress from a stored answer, for
        sessions that edit an answer committed elsewhere.
        """
        progress = QuestionProgress.for_question(question)
        for name in question.field_names:
            if name in record.fields:
                progress.fields[name] = FieldEvidence(
                    value=record.fields[name],
                    confidence=float(record.confidences.get(name, 1.0)),
                    satisfied=True,
                )
        progress.status = COMPLETE if all(ev.satisfied for ev in progress.fields.values()) else IN_PROGRESS
        progress.completeness_score = completeness_score(progress)
        progress.window_start = turn_index
        progress.last_updated = record.updated_at
        return progress

    def statuses(self, session: Session, answered_ids: Iterable[str] = ()) -> Dict[str, str]:
        answered = set(answered_ids)
        out: Dict[str, str] = {}
        for q in self.catalog.questions():
            progress = session.progress.get(q.id)
            if progress is not None and progress.status == IN_PROGRESS:
                out[q.id] = IN_PROGRESS
            else:
                out[q.id] = COMPLETE if q.id in answered else NOT_STARTED
        return out
