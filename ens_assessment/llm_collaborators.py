# ens_assessment/llm_collaborators.py
"""
Adapters for the two external calls the engine consumes:

    extract_fields(required_fields, conversation_window) -> {field: (value, confidence)}
    phrase_followup(question_context, missing_field, known_fields) -> prompt_text

LLM-backed versions wrap LlmClient / ChatLlmClient. The rule-based ones work
offline and are what the engine falls back to when no model is configured.
"""

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from ens_assessment.assessment_prompts import FIELD_EXTRACTION_PROMPT, FOLLOWUP_PHRASING_PROMPT
from ens_assessment.base_utils import BaseUtils
from ens_assessment.messages import get_message
from ens_assessment.models import SPEAKER_USER, RequiredField, Turn

logger = logging.getLogger("ens_assessment")

LANGUAGE_NAMES = {"es": "Spanish", "en": "English"}


def _describe_fields(required_fields: Sequence[RequiredField]) -> str:
    lines = []
    for rf in required_fields:
        line = f"- {rf.name} ({rf.format_hint}): {rf.description}"
        if rf.aliases:
            line += f" [also called: {', '.join(rf.aliases)}]"
        lines.append(line)
    return "\n".join(lines)


class LlmFieldExtractor(BaseUtils):
    """
    Field extraction through a chat model. The instructions go in a
    SystemMessage, the conversation window is replayed as Human/AI messages.
    The catalog is optional and only used to add the control's context.
    """

    def __init__(self, chat_llm, llm=None, catalog=None):
        self.chat_llm = chat_llm
        self.llm = llm
        self.catalog = catalog

    def _control_context(self, window: Sequence[Turn]) -> Dict[str, str]:
        qid = next((t.question_id for t in reversed(list(window)) if t.question_id), None)
        if qid and self.catalog is not None and qid in self.catalog:
            q = self.catalog.get(qid)
            return {"DOMAIN": q.domain, "MEASURE": q.measure or "-", "QUESTION_PROMPT": q.prompt}
        return {"DOMAIN": "-", "MEASURE": "-", "QUESTION_PROMPT": qid or "-"}

    def build_messages(self, required_fields: Sequence[RequiredField], window: Sequence[Turn]) -> List:
        prompt = self.unsafe_string_format(
            FIELD_EXTRACTION_PROMPT,
            REQUIRED_FIELDS=_describe_fields(required_fields),
            **self._control_context(window),
        )
        messages: List = [SystemMessage(content=prompt)]
        for turn in window:
            if turn.speaker == SPEAKER_USER:
                messages.append(HumanMessage(content=turn.text))
            else:
                messages.append(AIMessage(content=turn.text))
        messages.append(HumanMessage(content="Return the JSON object for the REQUIRED FIELDS now."))
        return messages

    def __call__(self, required_fields: Sequence[RequiredField], window: Sequence[Turn]) -> Dict[str, Tuple[str, float]]:
        messages = self.build_messages(required_fields, window)
        raw = self.chat_llm.invoke(messages)
        raw = getattr(raw, "content", raw)
        logger.debug(f"[EXTRACT] raw response: {str(raw)[:500]}")
        return self.parse_response(raw, required_fields)

    def parse_response(self, raw: str, required_fields: Sequence[RequiredField]) -> Dict[str, Tuple[str, float]]:
        data = self.load_fault_tolerant_json(raw or "{}", llm=self.llm)
        if isinstance(data, list):
            # some models wrap the object in a list
            data = next((d for d in data if isinstance(d, dict)), {})

        known = {rf.name for rf in required_fields}
        for rf in required_fields:
            known.update(rf.aliases)

        out: Dict[str, Tuple[str, float]] = {}
        for key, item in data.items():
            if key not in known:
                continue
            if isinstance(item, Mapping):
                value, confidence = item.get("value"), item.get("confidence", 0.0)
            else:
                value, confidence = item, 0.5
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            try:
                confidence = float(confidence)
            except (TypeError, ValueError):
                confidence = 0.0
            out[key] = (self._coerce_field_to_str(value), confidence)
        return out


class LlmFollowUpPhraser(BaseUtils):
    def __init__(self, llm, locale: str = "es"):
        self.llm = llm
        self.locale = locale

    def __call__(self, question_context: Mapping[str, str], missing_field: RequiredField, known_fields: Mapping[str, str]) -> str:
        known = "\n".join(f"- {k}: {v}" for k, v in known_fields.items()) or "- (nothing yet)"
        prompt = self.unsafe_string_format(
            FOLLOWUP_PHRASING_PROMPT,
            LANGUAGE=LANGUAGE_NAMES.get(self.locale, "Spanish"),
            DOMAIN=question_context.get("domain", ""),
            MEASURE=question_context.get("measure", ""),
            QUESTION_PROMPT=question_context.get("prompt", ""),
            KNOWN_FIELDS=known,
            MISSING_FIELD=missing_field.name,
            MISSING_DESCRIPTION=missing_field.description,
        )
        text = self.llm.invoke(prompt)
        text = self.clean_triple_backticks(getattr(text, "content", text) or "").strip().strip('"')
        logger.debug(f"[PHRASE] {question_context.get('question_id')}.{missing_field.name}: {text[:200]}")
        return text


class RuleBasedFieldExtractor(BaseUtils):
    """
    Offline extractor: reads explicit "field: value" statements from user
    turns, field names and aliases matched case-insensitively. Every hit gets
    the same confidence; later statements win over earlier ones.
    """

    def __init__(self, confidence: float = 0.8):
        self.confidence = confidence

    @staticmethod
    def _key_pattern(required_fields: Iterable[RequiredField]) -> Tuple[re.Pattern, Dict[str, str]]:
        lookup: Dict[str, str] = {}
        for rf in required_fields:
            lookup[rf.name.lower()] = rf.name
            lookup.setdefault(rf.name.replace("_", " ").lower(), rf.name)
            for alias in rf.aliases:
                lookup.setdefault(alias.lower(), rf.name)
        # longest first so "mfa scope" wins over "mfa"
        names = sorted(lookup.keys(), key=len, reverse=True)
        pattern = re.compile(
            r"(?<![\w])(" + "|".join(re.escape(n) for n in names) + r")\s*[:=]",
            re.IGNORECASE,
        )
        return pattern, lookup

    def __call__(self, required_fields: Sequence[RequiredField], window: Sequence[Turn]) -> Dict[str, Tuple[str, float]]:
        if not required_fields:
            return {}
        pattern, lookup = self._key_pattern(required_fields)
        out: Dict[str, Tuple[str, float]] = {}
        for turn in window:
            if turn.speaker != SPEAKER_USER:
                continue
            matches = list(pattern.finditer(turn.text))
            for i, m in enumerate(matches):
                end = matches[i + 1].start() if i + 1 < len(matches) else len(turn.text)
                value = turn.text[m.end():end].strip().rstrip(",;.").strip()
                if not value:
                    continue
                out[lookup[m.group(1).lower()]] = (value, self.confidence)
        return out


class TemplateFollowUpPhraser:
    def __init__(self, locale: str = "es"):
        self.locale = locale

    def __call__(self, question_context: Mapping[str, str], missing_field: RequiredField, known_fields: Optional[Mapping[str, str]] = None) -> str:
        return get_message(
            self.locale,
            "followup_template",
            question_prompt=question_context.get("prompt", ""),
            field_description=(missing_field.description or missing_field.name).rstrip(".").lower(),
        )
