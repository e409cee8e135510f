"""
Follow-Up Planner: deterministic field selection, phrasing inputs, fallbacks.
"""

import time

from ens_assessment.assessment_config import EngineSettings
from ens_assessment.follow_up_planner import FollowUpPlanner
from ens_assessment.models import (
    COMPLETE,
    IN_PROGRESS,
    PROMPT_CONFIRMATION,
    PROMPT_FOLLOW_UP,
    FieldEvidence,
    QuestionProgress,
)

from conftest import BACKUPS, RecordingPhraser

EN = EngineSettings(locale="en", external_call_timeout=1.0)


def _progress(**satisfied):
    progress = QuestionProgress.for_question(BACKUPS)
    progress.status = IN_PROGRESS
    for name, value in satisfied.items():
        progress.fields[name] = FieldEvidence(value=value, confidence=0.9, satisfied=True)
    return progress


class TestNextPrompt:
    def test_complete_question_has_no_prompt(self):
        progress = _progress(frequency="daily", verification="checksums", offsite="yes")
        progress.status = COMPLETE
        assert FollowUpPlanner(settings=EN).next_prompt(BACKUPS, progress) is None

    def test_first_missing_field_in_declared_order(self):
        planner = FollowUpPlanner(settings=EN)

        assert planner.next_prompt(BACKUPS, _progress()).field == "frequency"
        assert planner.next_prompt(BACKUPS, _progress(frequency="daily")).field == "verification"
        assert planner.next_prompt(BACKUPS, _progress(verification="checksums")).field == "frequency"

    def test_below_threshold_field_is_still_asked(self):
        progress = _progress(frequency="daily")
        progress.fields["verification"] = FieldEvidence(value="kind of", confidence=0.4, satisfied=False)

        assert FollowUpPlanner(settings=EN).next_prompt(BACKUPS, progress).field == "verification"

    def test_never_reasks_satisfied_fields(self):
        planner = FollowUpPlanner(settings=EN)
        progress = _progress()
        asked = []
        for name in BACKUPS.field_names:
            prompt = planner.next_prompt(BACKUPS, progress)
            asked.append(prompt.field)
            progress.fields[name] = FieldEvidence(value="x", confidence=0.9, satisfied=True)
            for _ in range(5):
                assert planner.next_prompt(BACKUPS, progress).field not in progress.satisfied_fields()
        assert asked == ["frequency", "verification", "offsite"]

    def test_deterministic(self):
        planner = FollowUpPlanner(settings=EN)
        progress = _progress(frequency="daily")
        assert len({planner.next_prompt(BACKUPS, progress) for _ in range(10)}) == 1

    def test_all_satisfied_yields_confirmation(self):
        progress = _progress(frequency="daily", verification="checksums", offsite="yes")

        prompt = FollowUpPlanner(settings=EN).next_prompt(BACKUPS, progress)

        assert prompt.kind == PROMPT_CONFIRMATION
        assert prompt.field is None
        assert "frequency = daily" in prompt.text


class TestPhrasing:
    def test_phraser_gets_missing_field_and_known_values_only(self):
        phraser = RecordingPhraser()
        planner = FollowUpPlanner(phraser, settings=EN)

        prompt = planner.next_prompt(BACKUPS, _progress(frequency="daily"))

        assert prompt.kind == PROMPT_FOLLOW_UP
        assert prompt.text == "Please tell me about verification."
        qid, missing, known = phraser.calls[0]
        assert qid == BACKUPS.id
        assert missing == "verification"
        assert known == {"frequency": "daily"}

    def test_reasked_field_is_not_passed_as_known(self):
        phraser = RecordingPhraser()
        planner = FollowUpPlanner(phraser, settings=EN)
        progress = _progress(frequency="daily", verification="checksums", offsite="yes")

        prompt = planner.prompt_for_field(BACKUPS, progress, BACKUPS.field("frequency"))

        assert prompt.kind == PROMPT_FOLLOW_UP
        assert prompt.field == "frequency"
        _, missing, known = phraser.calls[0]
        assert missing == "frequency"
        assert known == {"verification": "checksums", "offsite": "yes"}

    def test_failing_phraser_falls_back_to_template(self):
        def broken(context, missing, known):
            raise RuntimeError("model down")

        prompt = FollowUpPlanner(broken, settings=EN).next_prompt(BACKUPS, _progress())

        assert prompt.field == "frequency"
        assert prompt.text == "How are backups performed? I still need: how often backups are taken."

    def test_empty_phrasing_falls_back_to_template(self):
        prompt = FollowUpPlanner(lambda c, m, k: "   ", settings=EN).next_prompt(BACKUPS, _progress())
        assert "how often backups are taken" in prompt.text

    def test_slow_phraser_times_out_to_template(self):
        def slow(context, missing, known):
            time.sleep(0.5)
            return "too late"

        settings = EngineSettings(locale="en", external_call_timeout=0.05)
        prompt = FollowUpPlanner(slow, settings=settings).next_prompt(BACKUPS, _progress())

        assert prompt.text != "too late"

    def test_spanish_template_by_default(self):
        prompt = FollowUpPlanner().next_prompt(BACKUPS, _progress())
        assert "Necesito saber" in prompt.text
