# ens_assessment/models.py

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
COMPLETE = "complete"

QUESTION_STATUSES = (NOT_STARTED, IN_PROGRESS, COMPLETE)

# AnswerRecord.status
RECORD_COMPLETE = "complete"
RECORD_DELETED = "deleted"

SPEAKER_USER = "user"
SPEAKER_ASSISTANT = "assistant"

PROMPT_FOLLOW_UP = "follow_up"
PROMPT_CONFIRMATION = "confirmation"

# EvidenceEntry.outcome
EVIDENCE_ACCEPTED = "accepted"
EVIDENCE_BELOW_THRESHOLD = "below_threshold"
EVIDENCE_KEPT_EXISTING = "kept_existing"
EVIDENCE_INVALID_FORMAT = "invalid_format"
EVIDENCE_RESET = "reset"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------
# Catalog
# -----------------------

@dataclass(frozen=True)
class RequiredField:
    name: str
    description: str
    format_hint: str = "free_text"
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QuestionDefinition:
    id: str
    domain: str
    prompt: str
    required_fields: Tuple[RequiredField, ...]
    prerequisites: Tuple[str, ...] = ()
    measure: str = ""

    def field(self, name: str) -> Optional[RequiredField]:
        for f in self.required_fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.required_fields]


# -----------------------
# Conversation state
# -----------------------

@dataclass
class Turn:
    index: int
    speaker: str
    text: str
    timestamp: datetime = field(default_factory=utcnow)
    question_id: Optional[str] = None


@dataclass
class FieldEvidence:
    value: Optional[str] = None
    confidence: float = 0.0
    satisfied: bool = False


@dataclass(frozen=True)
class EvidenceEntry:
    turn_index: int
    field: str
    value: Optional[str]
    confidence: float
    outcome: str


@dataclass
class QuestionProgress:
    question_id: str
    fields: Dict[str, FieldEvidence] = field(default_factory=dict)
    status: str = NOT_STARTED
    completeness_score: int = 0
    last_updated: datetime = field(default_factory=utcnow)
    evidence_log: List[EvidenceEntry] = field(default_factory=list)
    confirmation_requested: bool = False
    edited_fields: Tuple[str, ...] = ()
    # first turn index the extractor may look at (moves forward on edit/delete)
    window_start: int = 0

    @classmethod
    def for_question(cls, question: QuestionDefinition) -> "QuestionProgress":
        return cls(
            question_id=question.id,
            fields={f.name: FieldEvidence() for f in question.required_fields},
        )

    def copy(self) -> "QuestionProgress":
        return copy.deepcopy(self)

    def satisfied_fields(self) -> Dict[str, str]:
        return {
            name: ev.value
            for name, ev in self.fields.items()
            if ev.satisfied and ev.value is not None
        }


def completeness_score(progress: QuestionProgress) -> int:
    """floor(satisfied / total * 100); 0 for a question without fields."""
    total = len(progress.fields)
    if total == 0:
        return 0
    satisfied = sum(1 for ev in progress.fields.values() if ev.satisfied)
    return math.floor(satisfied * 100 / total)


@dataclass
class Session:
    session_id: str
    turns: List[Turn] = field(default_factory=list)
    progress: Dict[str, QuestionProgress] = field(default_factory=dict)
    active_question_id: Optional[str] = None
    consecutive_failures: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def next_turn_index(self) -> int:
        return len(self.turns)

    def copy(self) -> "Session":
        return copy.deepcopy(self)


# -----------------------
# Persistence / output
# -----------------------

@dataclass(frozen=True)
class AnswerRecord:
    question_id: str
    domain: str
    version: int
    status: str
    fields: Dict[str, Any]
    completeness_score: int
    created_at: datetime
    updated_at: datetime
    tombstoned: bool = False
    confidences: Dict[str, float] = field(default_factory=dict)
    confirm_token: Optional[str] = None

    def to_document(self) -> dict:
        return {
            "question_id": self.question_id,
            "domain": self.domain,
            "version": self.version,
            "status": self.status,
            "fields": dict(self.fields),
            "completeness_score": self.completeness_score,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "tombstoned": self.tombstoned,
            "confidences": dict(self.confidences),
            "confirm_token": self.confirm_token,
        }


@dataclass(frozen=True)
class Prompt:
    question_id: str
    field: Optional[str]
    text: str
    kind: str = PROMPT_FOLLOW_UP
