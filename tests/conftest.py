"""
Shared fixtures: a small explicit catalog, an in-memory answer store and
scripted collaborators. Nothing here touches the network.
"""

import pytest

from ens_assessment.answer_store import AnswerStore
from ens_assessment.assessment_config import EngineSettings
from ens_assessment.assessment_engine import AssessmentEngine
from ens_assessment.db_connection_hlpr import DBConnection
from ens_assessment.models import SPEAKER_USER, QuestionDefinition, RequiredField
from ens_assessment.question_catalog import QuestionCatalog


BACKUPS = QuestionDefinition(
    id="backups_frequency",
    domain="Backups",
    measure="mp.info.6",
    prompt="How are backups performed?",
    required_fields=(
        RequiredField("frequency", "How often backups are taken", "frequency", ("frecuencia",)),
        RequiredField("verification", "How backup integrity is verified", "free_text"),
        RequiredField("offsite", "Whether a copy is kept off-site", "yes_no", ("copia externa",)),
    ),
)

RESTORE = QuestionDefinition(
    id="backups_restore_testing",
    domain="Backups",
    measure="mp.info.6",
    prompt="How are restores tested?",
    required_fields=(
        RequiredField("test_frequency", "How often restore tests run", "frequency"),
        RequiredField("rto", "Recovery time objective", "duration"),
    ),
    prerequisites=("backups_frequency",),
)

MFA = QuestionDefinition(
    id="access_authentication",
    domain="AccessControl",
    measure="op.acc.6",
    prompt="Is MFA enforced?",
    required_fields=(
        RequiredField("mfa_enabled", "Whether MFA is enforced", "yes_no"),
        RequiredField("password_min_length", "Minimum password length", "integer"),
    ),
)


class ScriptedExtractor:
    """
    extract_fields stand-in: answers by the text of the latest user turn.
    Unknown texts yield no evidence. Every call is recorded.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls = []

    def __call__(self, required_fields, window):
        self.calls.append(([rf.name for rf in required_fields], [t.text for t in window]))
        user_turns = [t for t in window if t.speaker == SPEAKER_USER]
        if not user_turns:
            return {}
        return dict(self.script.get(user_turns[-1].text, {}))


class FailingExtractor:
    def __init__(self, exc=None):
        self.exc = exc or TimeoutError("extraction timed out")
        self.calls = 0

    def __call__(self, required_fields, window):
        self.calls += 1
        raise self.exc


class RecordingPhraser:
    def __init__(self):
        self.calls = []

    def __call__(self, question_context, missing_field, known_fields):
        self.calls.append((question_context["question_id"], missing_field.name, dict(known_fields)))
        return f"Please tell me about {missing_field.name}."


@pytest.fixture
def settings():
    return EngineSettings(
        retry_backoff_seconds=0.0,
        external_call_timeout=2.0,
        locale="en",
        database_url="sqlite://",
    )


@pytest.fixture
def catalog():
    return QuestionCatalog([BACKUPS, RESTORE, MFA])


@pytest.fixture
def store():
    db = DBConnection("sqlite://")
    db.create_schema()
    return AnswerStore(db.build_db_session_factory())


@pytest.fixture
def extractor():
    return ScriptedExtractor()


@pytest.fixture
def phraser():
    return RecordingPhraser()


@pytest.fixture
def engine(catalog, store, extractor, phraser, settings):
    return AssessmentEngine(catalog, store, extractor, phraser, settings)
