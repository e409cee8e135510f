# ens_assessment/follow_up_planner.py

import logging
from typing import Callable, Dict, Mapping, Optional

from ens_assessment.assessment_config import EngineSettings
from ens_assessment.base_utils import BaseUtils
from ens_assessment.llm_client import MaxRetryErrorsException, call_with_retries_sync
from ens_assessment.messages import get_message
from ens_assessment.models import (
    COMPLETE,
    PROMPT_CONFIRMATION,
    PROMPT_FOLLOW_UP,
    Prompt,
    QuestionDefinition,
    QuestionProgress,
    RequiredField,
)

logger = logging.getLogger("ens_assessment")

PhraseFollowup = Callable[[Mapping[str, str], RequiredField, Mapping[str, str]], str]


def question_context(question: QuestionDefinition) -> Dict[str, str]:
    return {
        "question_id": question.id,
        "domain": question.domain,
        "measure": question.measure,
        "prompt": question.prompt,
    }


class FollowUpPlanner(BaseUtils):
    """
    Picks the next missing field (first unsatisfied in declared order, never
    random) and gets it phrased. The phrasing call only ever sees the asked
    field plus the other fields already known. A satisfied field only comes
    back as an ask when the user did not confirm it.
    """

    def __init__(self, phrase_followup: Optional[PhraseFollowup] = None, settings: EngineSettings | None = None):
        self._phrase_followup = phrase_followup
        self.settings = settings or EngineSettings()

    def next_prompt(self, question: QuestionDefinition, progress: QuestionProgress) -> Optional[Prompt]:
        if progress.status == COMPLETE:
            return None

        missing = self.next_missing_field(question, progress)
        known = progress.satisfied_fields()

        if missing is None:
            # every field satisfied but not committed: near-threshold confirmation
            return Prompt(
                question_id=question.id,
                field=None,
                text=self._confirmation_text(question, known),
                kind=PROMPT_CONFIRMATION,
            )

        return self.prompt_for_field(question, progress, missing)

    def prompt_for_field(self, question: QuestionDefinition, progress: QuestionProgress, rf: RequiredField) -> Prompt:
        # the asked field is never passed as known, even when it holds an unconfirmed value
        known = {name: value for name, value in progress.satisfied_fields().items() if name != rf.name}
        text = self._phrase(question, rf, known)
        return Prompt(question_id=question.id, field=rf.name, text=text, kind=PROMPT_FOLLOW_UP)

    def next_missing_field(self, question: QuestionDefinition, progress: QuestionProgress) -> Optional[RequiredField]:
        for rf in question.required_fields:
            ev = progress.fields.get(rf.name)
            if ev is None or not ev.satisfied:
                return rf
        return None

    # -----------------------
    # Phrasing
    # -----------------------

    def _phrase(self, question: QuestionDefinition, missing: RequiredField, known: Dict[str, str]) -> str:
        if self._phrase_followup is not None:
            context = question_context(question)
            try:
                text = call_with_retries_sync(
                    lambda: self._phrase_followup(context, missing, dict(known)),
                    retries=1,
                    timeout=self.settings.external_call_timeout,
                    backoff_seconds=0.0,
                    log=lambda msg: logger.warning(f"[PHRASE] {question.id}.{missing.name}: {msg}"),
                )
                text = self.clean_triple_backticks(text or "").strip()
                if text:
                    return text
                logger.warning(f"[PHRASE] {question.id}.{missing.name}: empty phrasing, using template")
            except MaxRetryErrorsException:
                self.color_print(
                    f"[PHRASE] {question.id}.{missing.name}: phrasing unavailable, using template",
                    color="yellow",
                    level=logging.WARNING,
                )
        return self.template_text(question, missing)

    def template_text(self, question: QuestionDefinition, missing: RequiredField) -> str:
        return get_message(
            self.settings.locale,
            "followup_template",
            question_prompt=question.prompt,
            field_description=(missing.description or missing.name).rstrip(".").lower(),
        )

    def _confirmation_text(self, question: QuestionDefinition, known: Dict[str, str]) -> str:
        summary = "; ".join(f"{name} = {value}" for name, value in known.items())
        return get_message(
            self.settings.locale,
            "confirmation",
            question_prompt=question.prompt,
            summary=summary,
        )
