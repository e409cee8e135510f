# ens_assessment/completeness_evaluator.py
"""
Completeness Evaluator.

Decides, per turn, which required fields of the active question are now
satisfied. The raw extraction is delegated to an external callable

    extract_fields(required_fields, conversation_window) -> {field: (value, confidence)}

which is treated as a black box. Everything else is engine-owned policy:

- a field is satisfied only if confidence >= threshold AND the value passes
  the field's format check;
- merge policy is last-higher-confidence-wins: new evidence replaces stored
  evidence only when its confidence strictly exceeds the stored one;
- values failing the format check are logged and never merged;
- completeness_score = floor(satisfied / total * 100);
- a near-threshold answer is only committed after an explicit yes, or once
  stronger evidence arrives for one of its fields.

The evaluator never mutates the progress it is given. On extraction failure
(after retries) it returns an unchanged copy plus a retryable error.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ens_assessment.assessment_config import EngineSettings
from ens_assessment.assessment_errors import ExtractionUnavailable, InvalidFieldValue
from ens_assessment.base_utils import BaseUtils
from ens_assessment.conversation_state import ENGAGE, transition
from ens_assessment.field_validators import read_confirmation, require_valid_field_value
from ens_assessment.llm_client import MaxRetryErrorsException, call_with_retries_sync
from ens_assessment.models import (
    EVIDENCE_ACCEPTED,
    EVIDENCE_BELOW_THRESHOLD,
    EVIDENCE_INVALID_FORMAT,
    EVIDENCE_KEPT_EXISTING,
    NOT_STARTED,
    EvidenceEntry,
    FieldEvidence,
    QuestionDefinition,
    QuestionProgress,
    RequiredField,
    Turn,
    completeness_score,
)

logger = logging.getLogger("ens_assessment")

ExtractFields = Callable[[Sequence[RequiredField], Sequence[Turn]], Mapping[str, Any]]


@dataclass
class EvaluationResult:
    progress: QuestionProgress
    error: Optional[ExtractionUnavailable] = None
    newly_satisfied: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.error is not None


class CompletenessEvaluator(BaseUtils):
    def __init__(self, extract_fields: ExtractFields, settings: EngineSettings | None = None):
        self._extract_fields = extract_fields
        self.settings = settings or EngineSettings()

    # -----------------------
    # Public API
    # -----------------------

    def evaluate(
        self,
        question: QuestionDefinition,
        progress: QuestionProgress,
        new_turn: Turn,
        conversation_window: Sequence[Turn] | None = None,
    ) -> EvaluationResult:
        window = list(conversation_window or [])
        if not window or window[-1].index != new_turn.index:
            window.append(new_turn)

        try:
            candidates = self._extract_with_policy(question, window)
        except ExtractionUnavailable as e:
            self.color_print(
                f"[EVAL] extraction unavailable for {question.id} at turn {new_turn.index}: {e.message}",
                color="yellow",
                level=logging.WARNING,
            )
            return EvaluationResult(progress=progress.copy(), error=e)

        updated, newly, rejected = self.merge_candidates(question, progress, candidates, new_turn.index)
        updated.last_updated = new_turn.timestamp
        if updated.status == NOT_STARTED:
            updated = transition(updated, ENGAGE)

        logger.debug(
            f"[EVAL] {question.id} turn={new_turn.index} score={updated.completeness_score} "
            f"newly_satisfied={newly} rejected={rejected}"
        )
        return EvaluationResult(progress=updated, newly_satisfied=newly, rejected=rejected)

    def merge_candidates(
        self,
        question: QuestionDefinition,
        progress: QuestionProgress,
        candidates: Mapping[str, Tuple[Any, float]],
        turn_index: int,
    ) -> Tuple[QuestionProgress, List[str], List[str]]:
        """
        Pure merge of extracted candidates into a copy of `progress`.
        Candidates are applied in the question's declared field order so the
        outcome never depends on the extractor's dict ordering.
        """
        updated = progress.copy()
        threshold = self.settings.confidence_threshold
        newly: List[str] = []
        rejected: List[str] = []

        for rf in question.required_fields:
            if rf.name not in candidates:
                continue
            raw_value, confidence = candidates[rf.name]
            current = updated.fields.setdefault(rf.name, FieldEvidence())

            try:
                normalized = require_valid_field_value(rf, raw_value)
            except InvalidFieldValue as e:
                logger.debug(f"[EVAL] {question.id}: {e.message}")
                rejected.append(rf.name)
                updated.evidence_log.append(
                    EvidenceEntry(turn_index, rf.name, self._coerce_field_to_str(raw_value), confidence, EVIDENCE_INVALID_FORMAT)
                )
                continue

            if confidence <= current.confidence:
                updated.evidence_log.append(
                    EvidenceEntry(turn_index, rf.name, normalized, confidence, EVIDENCE_KEPT_EXISTING)
                )
                continue

            # current.satisfied implies current.confidence >= threshold, so a
            # strictly higher confidence can never un-satisfy the field
            satisfied = confidence >= threshold
            was_satisfied = current.satisfied
            updated.fields[rf.name] = FieldEvidence(value=normalized, confidence=confidence, satisfied=satisfied)
            updated.evidence_log.append(
                EvidenceEntry(
                    turn_index,
                    rf.name,
                    normalized,
                    confidence,
                    EVIDENCE_ACCEPTED if satisfied else EVIDENCE_BELOW_THRESHOLD,
                )
            )
            if satisfied:
                if rf.name in updated.edited_fields:
                    updated.edited_fields = tuple(f for f in updated.edited_fields if f != rf.name)
                if not was_satisfied:
                    newly.append(rf.name)

        updated.completeness_score = completeness_score(updated)
        return updated, newly, rejected

    def all_satisfied(self, progress: QuestionProgress) -> bool:
        return bool(progress.fields) and all(ev.satisfied for ev in progress.fields.values())

    def needs_confirmation(self, progress: QuestionProgress) -> bool:
        """
        All fields satisfied, but every confidence sits within the
        confirmation margin above the threshold.
        """
        if not self.all_satisfied(progress):
            return False
        ceiling = self.settings.confidence_threshold + self.settings.confirmation_margin
        return all(ev.confidence < ceiling for ev in progress.fields.values())

    def ready_to_complete(self, progress: QuestionProgress, confirmed: bool = False) -> bool:
        """
        `confirmed` is the outcome of resolve_confirmation for this turn; a
        pending confirmation prompt alone never completes a question.
        """
        if not self.all_satisfied(progress):
            return False
        if progress.edited_fields:
            return False
        return confirmed or not self.needs_confirmation(progress)

    def resolve_confirmation(
        self,
        question: QuestionDefinition,
        before: QuestionProgress,
        after: QuestionProgress,
        reply: Turn,
    ) -> Tuple[QuestionProgress, bool, Optional[RequiredField]]:
        """
        Reads the user's reply to a confirmation prompt. `before` is the
        progress the prompt was asked on, `after` the same progress with the
        reply's evidence merged in.

        Returns (progress, confirmed, field_to_reask). The question is
        confirmed by an explicit yes, or by strictly higher-confidence evidence
        for any field. A denial, or a reply that says neither, clears the
        pending prompt and names the first near-threshold field to ask again.
        """
        updated = after.copy()
        updated.confirmation_requested = False

        stronger = [
            name for name, ev in after.fields.items()
            if ev.satisfied and ev.confidence > before.fields.get(name, FieldEvidence()).confidence
        ]
        answer = read_confirmation(reply.text)
        if answer is True or stronger:
            logger.debug(f"[EVAL] {question.id}: confirmed at turn {reply.index} (reply={answer}, stronger={stronger})")
            return updated, True, None

        ceiling = self.settings.confidence_threshold + self.settings.confirmation_margin
        reask = next(
            (rf for rf in question.required_fields if updated.fields.get(rf.name, FieldEvidence()).confidence < ceiling),
            question.required_fields[0],
        )
        logger.info(
            f"[EVAL] {question.id}: confirmation {'denied' if answer is False else 'not given'} "
            f"at turn {reply.index}; asking for '{reask.name}' again"
        )
        return updated, False, reask

    # -----------------------
    # Extraction policy
    # -----------------------

    def _extract_with_policy(self, question: QuestionDefinition, window: List[Turn]) -> Dict[str, Tuple[Any, float]]:
        settings = self.settings

        def _call() -> Dict[str, Tuple[Any, float]]:
            raw = self._extract_fields(question.required_fields, window)
            return self._normalize_candidates(question, raw)

        try:
            return call_with_retries_sync(
                _call,
                retries=settings.extraction_retries,
                timeout=settings.external_call_timeout,
                backoff_seconds=settings.retry_backoff_seconds,
                log=lambda msg: logger.warning(f"[EXTRACT-RETRY] {question.id}: {msg}"),
            )
        except MaxRetryErrorsException as e:
            cause = e.__cause__
            raise ExtractionUnavailable(
                f"Field extraction failed after {settings.extraction_retries} attempts: {cause!r}",
                question_id=question.id,
            ) from cause

    def _normalize_candidates(self, question: QuestionDefinition, raw: Any) -> Dict[str, Tuple[Any, float]]:
        """
        Accepts {field: (value, confidence)} or {field: {"value":..., "confidence":...}}.
        Alias names are mapped to canonical field names; unknown names are dropped.
        A non-mapping response is a failed call (and therefore retried).
        """
        if not isinstance(raw, Mapping):
            raise ValueError(f"extract_fields returned {type(raw).__name__}, expected a mapping")

        by_name: Dict[str, str] = {}
        for rf in question.required_fields:
            by_name[rf.name.lower()] = rf.name
            for alias in rf.aliases:
                by_name.setdefault(alias.lower(), rf.name)

        out: Dict[str, Tuple[Any, float]] = {}
        for key, item in raw.items():
            canonical = by_name.get(str(key).strip().lower())
            if canonical is None:
                logger.debug(f"[EVAL] {question.id}: ignoring unknown field '{key}'")
                continue

            if isinstance(item, Mapping):
                value, confidence = item.get("value"), item.get("confidence")
            elif isinstance(item, (tuple, list)) and len(item) == 2:
                value, confidence = item
            else:
                logger.debug(f"[EVAL] {question.id}: malformed candidate for '{key}': {item!r}")
                continue

            try:
                confidence = float(confidence)
            except (TypeError, ValueError):
                continue
            if math.isnan(confidence) or value is None:
                continue
            confidence = min(1.0, max(0.0, confidence))

            previous = out.get(canonical)
            if previous is None or confidence > previous[1]:
                out[canonical] = (value, confidence)
        return out
