# ens_assessment/assessment_engine.py
"""
AssessmentEngine: the exposed interface of the conversational assessment.

    open_session(session_id=None)
    submit_turn(session_id, text, question_id=None, expected_turn=None)
    request_edit(session_id, question_id, field)
    request_delete(session_id, question_id, confirm_token)
    get_progress(session_id=None)
    answer_history(question_id)

Every mutating call runs under the session's single-writer lock on a staged
copy of the session. The copy is published only once every step (extraction,
merge, commit) succeeded; on failure the previous state stays in place.
"""

import logging
import os
from typing import Any, Dict, Optional

from ens_assessment.answer_store import AnswerStore
from ens_assessment.assessment_config import EngineSettings
from ens_assessment.assessment_errors import AnswerNotFound, InvalidTransition
from ens_assessment.base_utils import BaseUtils
from ens_assessment.completeness_evaluator import CompletenessEvaluator
from ens_assessment.conversation_state import COMPLETE_QUESTION, ConversationStateTracker, transition
from ens_assessment.db_connection_hlpr import DBConnection
from ens_assessment.follow_up_planner import FollowUpPlanner
from ens_assessment.llm_client import build_llms_for_model
from ens_assessment.llm_collaborators import (
    LlmFieldExtractor,
    LlmFollowUpPhraser,
    RuleBasedFieldExtractor,
    TemplateFollowUpPhraser,
)
from ens_assessment.messages import get_message
from ens_assessment.model_props import is_openai_model
from ens_assessment.models import (
    COMPLETE,
    IN_PROGRESS,
    NOT_STARTED,
    PROMPT_CONFIRMATION,
    SPEAKER_ASSISTANT,
    SPEAKER_USER,
    QuestionDefinition,
    QuestionProgress,
    Session,
    Turn,
    utcnow,
)
from ens_assessment.progress_analytics import ProgressAnalytics
from ens_assessment.question_catalog import QuestionCatalog, get_question_catalog

logger = logging.getLogger("ens_assessment")

RULE_BASED_MODELS = ("", "rules", "none", "offline")


class AssessmentEngine(BaseUtils):
    def __init__(
        self,
        catalog: QuestionCatalog,
        store: AnswerStore,
        extract_fields,
        phrase_followup=None,
        settings: EngineSettings | None = None,
        tracker: ConversationStateTracker | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.catalog = catalog
        self.store = store
        self.tracker = tracker or ConversationStateTracker(catalog, self.settings)
        self.evaluator = CompletenessEvaluator(extract_fields, self.settings)
        self.planner = FollowUpPlanner(phrase_followup, self.settings)
        self.analytics = ProgressAnalytics(catalog, store)

    # -----------------------
    # Helpers
    # -----------------------

    def _msg(self, key: str, **kwargs) -> str:
        return get_message(self.settings.locale, key, **kwargs)

    def _intro(self, question: QuestionDefinition) -> str:
        return self._msg(
            "question_intro",
            domain=question.domain,
            measure=f" {question.measure}" if question.measure else "",
            question_prompt=question.prompt,
        )

    def _next_question_text(self, session: Session, answered_ids) -> tuple[Optional[QuestionDefinition], str]:
        nxt = self.tracker.select_active_question(session, answered_ids)
        session.active_question_id = nxt.id if nxt is not None else None
        if nxt is None:
            return None, self._msg("assessment_complete")
        progress = session.progress.get(nxt.id)
        if progress is not None and progress.status == IN_PROGRESS:
            prompt = self.planner.next_prompt(nxt, progress)
            if prompt is not None:
                return nxt, prompt.text
        return nxt, self._intro(nxt)

    def _say(self, session: Session, text: str, question_id: Optional[str]) -> Turn:
        return self.tracker.append_turn(session, SPEAKER_ASSISTANT, text, question_id)

    @staticmethod
    def _field_values(progress: QuestionProgress) -> Dict[str, Any]:
        return {name: ev.value for name, ev in progress.fields.items()}

    @staticmethod
    def _confidences(progress: QuestionProgress) -> Dict[str, float]:
        return {name: ev.confidence for name, ev in progress.fields.items()}

    def _response(self, session: Session, assistant_text: str, question: Optional[QuestionDefinition], progress: Optional[QuestionProgress], **extra) -> dict:
        out = {
            "session_id": session.session_id,
            "assistant_text": assistant_text,
            "question_id": question.id if question is not None else None,
            "status": progress.status if progress is not None else (COMPLETE if question is None else NOT_STARTED),
            "completeness_score": progress.completeness_score if progress is not None else 0,
            "active_question_id": session.active_question_id,
            "next_turn": session.next_turn_index,
            "retryable": False,
            "degraded": False,
        }
        out.update(extra)
        return out

    # -----------------------
    # Sessions
    # -----------------------

    def open_session(self, session_id: Optional[str] = None) -> dict:
        session = self.tracker.open_session(session_id)
        if session.turns:
            # reopening a live session: nothing to say again
            last = session.turns[-1]
            return {
                "session_id": session.session_id,
                "assistant_text": last.text if last.speaker == SPEAKER_ASSISTANT else "",
                "question_id": session.active_question_id,
                "next_turn": session.next_turn_index,
            }

        with self.tracker.writer(session.session_id) as w:
            staged = w.session
            question, text = self._next_question_text(staged, self.store.answered_ids())
            assistant_text = f"{self._msg('welcome')}\n\n{text}"
            self._say(staged, assistant_text, question.id if question else None)
            w.publish()

        return {
            "session_id": staged.session_id,
            "assistant_text": assistant_text,
            "question_id": question.id if question else None,
            "next_turn": staged.next_turn_index,
        }

    # -----------------------
    # Turns
    # -----------------------

    def _resolve_question(self, session: Session, question_id: Optional[str], answered_ids) -> Optional[QuestionDefinition]:
        if question_id is None:
            return self.tracker.select_active_question(session, answered_ids)

        question = self.catalog.get(question_id)
        if self.tracker.is_done(session, question.id, answered_ids):
            raise InvalidTransition(
                f"Question {question.id} is already complete; request an edit to change it",
                question_id=question.id,
                status=COMPLETE,
            )
        self.tracker.check_prerequisites(session, question, answered_ids)
        return question

    def submit_turn(
        self,
        session_id: str,
        text: str,
        *,
        question_id: Optional[str] = None,
        expected_turn: Optional[int] = None,
    ) -> dict:
        text = (text or "").strip()
        logger.debug(f"[TURN] {session_id} <- {text[:200]!r} (question={question_id}, expected_turn={expected_turn})")

        with self.tracker.writer(session_id) as w:
            session = w.session
            self.tracker.check_turn_order(session, expected_turn)
            answered = self.store.answered_ids()

            question = self._resolve_question(session, question_id, answered)
            if question is None:
                self.tracker.append_turn(session, SPEAKER_USER, text, None)
                assistant_text = self._msg("assessment_complete")
                self._say(session, assistant_text, None)
                w.publish()
                return self._response(session, assistant_text, None, None)

            progress = session.progress.get(question.id) or QuestionProgress.for_question(question)
            progress = self.tracker.drop_stale_completion(progress, question, answered, session.next_turn_index)
            turn = Turn(
                index=session.next_turn_index,
                speaker=SPEAKER_USER,
                text=text,
                timestamp=utcnow(),
                question_id=question.id,
            )
            window = self.tracker.conversation_window(session, progress)
            result = self.evaluator.evaluate(question, progress, turn, window)

            if result.failed:
                return self._degraded(w, question, progress, result.error)

            updated = result.progress
            session.consecutive_failures = 0
            session.active_question_id = question.id
            record = None
            confirmed, reask = False, None
            if progress.confirmation_requested:
                updated, confirmed, reask = self.evaluator.resolve_confirmation(question, progress, updated, turn)

            if self.evaluator.ready_to_complete(updated, confirmed=confirmed):
                # commit first; a store failure raises before anything is published
                record = self.store.commit(
                    question.id,
                    self._field_values(updated),
                    domain=question.domain,
                    completeness_score=updated.completeness_score,
                    confidences=self._confidences(updated),
                )
                updated = transition(updated, COMPLETE_QUESTION)
                updated.confirmation_requested = False
                updated.last_updated = record.updated_at

            session.turns.append(turn)
            session.progress[question.id] = updated

            if record is not None:
                answered = set(answered) | {question.id}
                _, follow = self._next_question_text(session, answered)
                saved = self._msg("answer_saved", question_id=question.id, version=record.version)
                assistant_text = f"{saved}\n\n{follow}"
                prompt = None
            elif reask is not None:
                prompt = self.planner.prompt_for_field(question, updated, reask)
                assistant_text = f"{self._msg('confirmation_declined')}\n\n{prompt.text}"
            else:
                prompt = self.planner.next_prompt(question, updated)
                assistant_text = prompt.text if prompt is not None else ""
                if prompt is not None and prompt.kind == PROMPT_CONFIRMATION:
                    updated.confirmation_requested = True

            self._say(session, assistant_text, session.active_question_id)
            w.publish()

        logger.info(
            f"[TURN] {session_id} {question.id}: status={updated.status} score={updated.completeness_score}"
            + (f" committed v{record.version}" if record is not None else "")
        )
        logger.debug(f"[TURN] {session_id} -> {assistant_text[:200]!r}")
        return self._response(
            session,
            assistant_text,
            question,
            updated,
            prompt_kind=prompt.kind if prompt is not None else None,
            missing_field=prompt.field if prompt is not None else None,
            rejected_fields=list(result.rejected),
            record=record.to_document() if record is not None else None,
        )

    def _degraded(self, w, question: QuestionDefinition, progress: QuestionProgress, error) -> dict:
        """
        Extraction failed after retries: only the failure counter moves; turns
        and question progress stay exactly as they were.
        """
        session = w.session
        session.consecutive_failures += 1
        w.publish()

        failures = session.consecutive_failures
        if failures >= self.settings.degraded_after_failures:
            assistant_text = self._msg("degraded_escalated", failures=failures)
            self.color_print(
                f"[TURN] {session.session_id}: degraded mode after {failures} consecutive extraction failures",
                color="red",
                level=logging.ERROR,
            )
        else:
            assistant_text = self._msg("degraded")

        return self._response(
            session,
            assistant_text,
            question,
            progress,
            retryable=True,
            degraded=True,
            consecutive_failures=failures,
            error=error.to_dict() if error is not None else None,
        )

    # -----------------------
    # Edit / delete
    # -----------------------

    def _progress_for_change(self, session: Session, question: QuestionDefinition) -> QuestionProgress:
        progress = session.progress.get(question.id)
        if progress is not None and progress.status == IN_PROGRESS:
            return progress
        # a `complete` progress only counts while its answer is still live in the store
        record = self.store.get(question.id)
        if record is None:
            raise AnswerNotFound(f"No stored answer for {question.id}", question_id=question.id)
        if progress is not None and progress.status == COMPLETE:
            return progress
        return self.tracker.hydrate_from_record(question, record, session.next_turn_index)

    def request_edit(self, session_id: str, question_id: str, field: str) -> dict:
        with self.tracker.writer(session_id) as w:
            session = w.session
            question = self.catalog.get(question_id)
            progress = self._progress_for_change(session, question)
            updated = self.tracker.begin_edit(progress, question, field, session.next_turn_index)

            session.progress[question.id] = updated
            session.active_question_id = question.id

            prompt = self.planner.next_prompt(question, updated)
            rf = question.field(field)
            assistant_text = self._msg(
                "edit_started",
                question_id=question.id,
                field_description=(rf.description or rf.name).rstrip(".").lower(),
            )
            if prompt is not None:
                assistant_text = f"{assistant_text}\n\n{prompt.text}"
            self._say(session, assistant_text, question.id)
            w.publish()

        logger.info(f"[EDIT] {session_id} {question.id}.{field}: score={updated.completeness_score}")
        return self._response(
            session,
            assistant_text,
            question,
            updated,
            edited_fields=list(updated.edited_fields),
            missing_field=prompt.field if prompt is not None else None,
        )

    def request_delete(self, session_id: str, question_id: str, confirm_token: Optional[str]) -> dict:
        with self.tracker.writer(session_id) as w:
            session = w.session
            question = self.catalog.get(question_id)
            progress = self._progress_for_change(session, question)
            if progress.status == IN_PROGRESS:
                if not progress.edited_fields:
                    raise InvalidTransition(
                        f"Question {question.id} has no stored answer to delete yet",
                        question_id=question.id,
                        status=progress.status,
                    )
                record = self.store.get(question.id)
                if record is None:
                    raise AnswerNotFound(f"No stored answer for {question.id}", question_id=question.id)
                progress = self.tracker.abandon_edit(progress, question, record, session.next_turn_index)

            tombstone = self.store.delete(question.id, confirm_token)
            updated = self.tracker.reset_after_delete(progress, question, session.next_turn_index)
            session.progress[question.id] = updated
            if session.active_question_id == question.id:
                session.active_question_id = None

            answered = self.store.answered_ids()
            _, follow = self._next_question_text(session, answered)
            done = self._msg("delete_done", question_id=question.id, version=tombstone.version)
            assistant_text = f"{done}\n\n{follow}"
            self._say(session, assistant_text, session.active_question_id)
            w.publish()

        logger.info(f"[DELETE] {session_id} {question.id}: tombstone v{tombstone.version}")
        return self._response(session, assistant_text, question, updated, record=tombstone.to_document())

    # -----------------------
    # Reads
    # -----------------------

    def get_progress(self, session_id: Optional[str] = None) -> dict:
        session = self.tracker.get_session(session_id) if session_id else None
        snapshot = self.analytics.snapshot(session)
        if session is not None:
            answered = self.store.answered_ids()
            snapshot["session"] = {
                "session_id": session.session_id,
                "active_question_id": session.active_question_id,
                "consecutive_failures": session.consecutive_failures,
                "next_turn": session.next_turn_index,
                "statuses": self.tracker.statuses(session, answered),
                "progress": {
                    qid: {
                        "status": p.status,
                        "completeness_score": p.completeness_score,
                        "fields": {
                            name: {"value": ev.value, "confidence": ev.confidence, "satisfied": ev.satisfied}
                            for name, ev in p.fields.items()
                        },
                        "edited_fields": list(p.edited_fields),
                        "last_updated": p.last_updated.isoformat(),
                    }
                    for qid, p in session.progress.items()
                },
            }
        return snapshot

    def answer_history(self, question_id: str) -> list:
        question = self.catalog.get(question_id)
        return [r.to_document() for r in self.store.history(question.id)]


def _llm_configured(settings: EngineSettings) -> bool:
    model = (settings.llm_model or "").strip().lower()
    if model in RULE_BASED_MODELS:
        return False
    if is_openai_model(model):
        return bool(os.getenv("OPENAI_API_KEY"))
    return bool(settings.vertex_project) and settings.vertex_project != "your-project-id"


def build_default_engine(settings: EngineSettings | None = None) -> AssessmentEngine:
    """
    Wires the engine from the environment: catalog file, DATABASE_URL store,
    and LLM collaborators when a model is configured (rule-based otherwise).
    """
    settings = settings or EngineSettings.from_env()
    catalog = get_question_catalog(settings.catalog_path)

    db = DBConnection(settings.database_url)
    db.create_schema()
    store = AnswerStore(db.build_db_session_factory())

    llm, chat_llm = None, None
    if _llm_configured(settings):
        llm, chat_llm = build_llms_for_model(
            settings.llm_model,
            vertex_project=settings.vertex_project,
            vertex_region=settings.vertex_region,
            timeout=settings.external_call_timeout,
        )

    if chat_llm is not None:
        extractor = LlmFieldExtractor(chat_llm, llm=llm, catalog=catalog)
        phraser = LlmFollowUpPhraser(llm, locale=settings.locale)
        logger.info(f"[ENGINE] using model {settings.llm_model} for extraction and phrasing")
    else:
        extractor = RuleBasedFieldExtractor()
        phraser = TemplateFollowUpPhraser(locale=settings.locale)
        logger.info("[ENGINE] no model configured; using rule-based extraction")

    return AssessmentEngine(catalog, store, extractor, phraser, settings)
