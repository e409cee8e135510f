"""
Completeness Evaluator: thresholds, merge policy and the extraction failure path.
"""

import itertools

import pytest

from ens_assessment.assessment_config import EngineSettings
from ens_assessment.assessment_errors import ExtractionUnavailable
from ens_assessment.completeness_evaluator import CompletenessEvaluator
from ens_assessment.models import (
    COMPLETE,
    EVIDENCE_ACCEPTED,
    EVIDENCE_BELOW_THRESHOLD,
    EVIDENCE_INVALID_FORMAT,
    EVIDENCE_KEPT_EXISTING,
    IN_PROGRESS,
    NOT_STARTED,
    SPEAKER_USER,
    QuestionProgress,
    Turn,
    completeness_score,
)

from conftest import BACKUPS, FailingExtractor, ScriptedExtractor


def _turn(index, text):
    return Turn(index=index, speaker=SPEAKER_USER, text=text, question_id=BACKUPS.id)


@pytest.fixture
def fast_settings():
    return EngineSettings(retry_backoff_seconds=0.0, external_call_timeout=2.0)


class TestEvaluate:
    def test_first_turn_engages_question(self, fast_settings):
        extractor = ScriptedExtractor({"frequency: daily": {"frequency": ("daily", 0.9)}})
        evaluator = CompletenessEvaluator(extractor, fast_settings)
        progress = QuestionProgress.for_question(BACKUPS)

        result = evaluator.evaluate(BACKUPS, progress, _turn(0, "frequency: daily"))

        assert not result.failed
        assert result.progress.status == IN_PROGRESS
        assert result.progress.completeness_score == 33
        assert result.progress.fields["frequency"].satisfied
        assert result.newly_satisfied == ["frequency"]
        # input untouched
        assert progress.status == NOT_STARTED
        assert progress.fields["frequency"].value is None

    def test_extractor_receives_window_plus_new_turn(self, fast_settings):
        extractor = ScriptedExtractor()
        evaluator = CompletenessEvaluator(extractor, fast_settings)
        progress = QuestionProgress.for_question(BACKUPS)
        window = [_turn(0, "hello")]

        evaluator.evaluate(BACKUPS, progress, _turn(1, "frequency: daily"), window)

        names, texts = extractor.calls[0]
        assert names == ["frequency", "verification", "offsite"]
        assert texts == ["hello", "frequency: daily"]

    def test_below_threshold_is_stored_but_not_satisfied(self, fast_settings):
        extractor = ScriptedExtractor({"t": {"frequency": ("daily", 0.5)}})
        evaluator = CompletenessEvaluator(extractor, fast_settings)

        result = evaluator.evaluate(BACKUPS, QuestionProgress.for_question(BACKUPS), _turn(0, "t"))

        ev = result.progress.fields["frequency"]
        assert ev.value == "daily" and not ev.satisfied
        assert result.progress.completeness_score == 0
        assert result.progress.evidence_log[-1].outcome == EVIDENCE_BELOW_THRESHOLD

    def test_aliases_and_unknown_fields(self, fast_settings):
        extractor = ScriptedExtractor({"t": {"frecuencia": ("diaria", 0.9), "colour": ("blue", 0.99)}})
        evaluator = CompletenessEvaluator(extractor, fast_settings)

        result = evaluator.evaluate(BACKUPS, QuestionProgress.for_question(BACKUPS), _turn(0, "t"))

        assert result.progress.fields["frequency"].value == "diaria"
        assert "colour" not in result.progress.fields

    def test_dict_shaped_candidates_accepted(self, fast_settings):
        extractor = ScriptedExtractor({"t": {"offsite": {"value": "sí", "confidence": 0.95}}})
        evaluator = CompletenessEvaluator(extractor, fast_settings)

        result = evaluator.evaluate(BACKUPS, QuestionProgress.for_question(BACKUPS), _turn(0, "t"))

        assert result.progress.fields["offsite"].value == "yes"

    def test_invalid_format_is_logged_never_merged(self, fast_settings):
        extractor = ScriptedExtractor({"t": {"offsite": ("maybe", 0.99)}})
        evaluator = CompletenessEvaluator(extractor, fast_settings)

        result = evaluator.evaluate(BACKUPS, QuestionProgress.for_question(BACKUPS), _turn(0, "t"))

        assert result.progress.fields["offsite"].value is None
        assert result.rejected == ["offsite"]
        entry = result.progress.evidence_log[-1]
        assert entry.outcome == EVIDENCE_INVALID_FORMAT
        assert entry.value == "maybe"


class TestMergePolicy:
    def test_lower_confidence_never_overwrites(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        progress = QuestionProgress.for_question(BACKUPS)
        progress, _, _ = evaluator.merge_candidates(BACKUPS, progress, {"frequency": ("daily", 0.9)}, 0)

        updated, newly, _ = evaluator.merge_candidates(BACKUPS, progress, {"frequency": ("monthly", 0.8)}, 1)

        assert updated.fields["frequency"].value == "daily"
        assert updated.fields["frequency"].confidence == 0.9
        assert newly == []
        assert updated.evidence_log[-1].outcome == EVIDENCE_KEPT_EXISTING

    def test_equal_confidence_never_overwrites(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        progress, _, _ = evaluator.merge_candidates(
            BACKUPS, QuestionProgress.for_question(BACKUPS), {"frequency": ("daily", 0.9)}, 0
        )

        updated, _, _ = evaluator.merge_candidates(BACKUPS, progress, {"frequency": ("weekly", 0.9)}, 1)

        assert updated.fields["frequency"].value == "daily"

    def test_strictly_higher_confidence_replaces(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        progress, _, _ = evaluator.merge_candidates(
            BACKUPS, QuestionProgress.for_question(BACKUPS), {"frequency": ("daily", 0.75)}, 0
        )

        updated, _, _ = evaluator.merge_candidates(BACKUPS, progress, {"frequency": ("weekly", 0.95)}, 1)

        assert updated.fields["frequency"].value == "weekly"
        assert updated.evidence_log[-1].outcome == EVIDENCE_ACCEPTED

    def test_evidence_log_is_append_only(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        progress = QuestionProgress.for_question(BACKUPS)
        first, _, _ = evaluator.merge_candidates(BACKUPS, progress, {"frequency": ("daily", 0.9)}, 0)
        second, _, _ = evaluator.merge_candidates(BACKUPS, first, {"frequency": ("weekly", 0.5)}, 1)

        assert second.evidence_log[: len(first.evidence_log)] == first.evidence_log
        assert len(second.evidence_log) == len(first.evidence_log) + 1

    def test_accumulation_is_order_independent(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        batches = [
            {"frequency": ("daily", 0.9)},
            {"verification": ("weekly checksum", 0.8)},
            {"offsite": ("yes", 0.8), "frequency": ("weekly", 0.6)},
        ]
        finals = set()
        for order in itertools.permutations(batches):
            progress = QuestionProgress.for_question(BACKUPS)
            for i, batch in enumerate(order):
                progress, _, _ = evaluator.merge_candidates(BACKUPS, progress, batch, i)
            assert progress.completeness_score == 100
            finals.add(tuple(sorted(progress.satisfied_fields().items())))
        assert len(finals) == 1

    def test_score_is_floor_of_ratio(self):
        progress = QuestionProgress.for_question(BACKUPS)
        progress.fields["frequency"].satisfied = True
        assert completeness_score(progress) == 33
        progress.fields["verification"].satisfied = True
        assert completeness_score(progress) == 66


class TestConfirmationRule:
    def test_near_threshold_needs_confirmation(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        candidates = {"frequency": ("daily", 0.71), "verification": ("checksums", 0.72), "offsite": ("yes", 0.7)}
        progress, _, _ = evaluator.merge_candidates(BACKUPS, QuestionProgress.for_question(BACKUPS), candidates, 0)

        assert evaluator.needs_confirmation(progress)
        assert not evaluator.ready_to_complete(progress)

        progress.confirmation_requested = True
        assert not evaluator.ready_to_complete(progress)
        assert evaluator.ready_to_complete(progress, confirmed=True)

    def test_one_confident_field_skips_confirmation(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        candidates = {"frequency": ("daily", 0.9), "verification": ("checksums", 0.72), "offsite": ("yes", 0.7)}
        progress, _, _ = evaluator.merge_candidates(BACKUPS, QuestionProgress.for_question(BACKUPS), candidates, 0)

        assert not evaluator.needs_confirmation(progress)
        assert evaluator.ready_to_complete(progress)

    def test_pending_edit_blocks_completion(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        candidates = {"frequency": ("daily", 0.9), "verification": ("checksums", 0.9), "offsite": ("yes", 0.9)}
        progress, _, _ = evaluator.merge_candidates(BACKUPS, QuestionProgress.for_question(BACKUPS), candidates, 0)
        progress.edited_fields = ("frequency",)

        assert not evaluator.ready_to_complete(progress)


class TestResolveConfirmation:
    """Replies to the near-threshold confirmation prompt."""

    @pytest.fixture
    def asked(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        candidates = {"frequency": ("daily", 0.9), "verification": ("checksums", 0.72), "offsite": ("yes", 0.71)}
        progress, _, _ = evaluator.merge_candidates(BACKUPS, QuestionProgress.for_question(BACKUPS), candidates, 0)
        # frequency at 0.9 alone would skip confirmation; pull it down into the margin
        progress.fields["frequency"].confidence = 0.71
        progress.status = IN_PROGRESS
        progress.confirmation_requested = True
        return evaluator, progress

    def test_explicit_yes_confirms(self, asked):
        evaluator, progress = asked

        updated, confirmed, reask = evaluator.resolve_confirmation(BACKUPS, progress, progress.copy(), _turn(1, "Sí, es correcto"))

        assert confirmed and reask is None
        assert not updated.confirmation_requested

    def test_denial_asks_first_near_threshold_field_again(self, asked):
        evaluator, progress = asked

        updated, confirmed, reask = evaluator.resolve_confirmation(BACKUPS, progress, progress.copy(), _turn(1, "no, that is not correct"))

        assert not confirmed
        assert reask.name == "frequency"
        assert not updated.confirmation_requested
        # nothing is thrown away: the score does not drop while the question is open
        assert updated.completeness_score == 100
        assert not evaluator.ready_to_complete(updated, confirmed=confirmed)

    def test_reply_without_answer_is_not_a_confirmation(self, asked):
        evaluator, progress = asked

        _, confirmed, reask = evaluator.resolve_confirmation(BACKUPS, progress, progress.copy(), _turn(1, "hmm, let me check"))

        assert not confirmed
        assert reask.name == "frequency"

    def test_stronger_evidence_confirms(self, asked):
        evaluator, progress = asked
        after, _, _ = evaluator.merge_candidates(BACKUPS, progress, {"offsite": ("yes", 0.95)}, 1)

        _, confirmed, _ = evaluator.resolve_confirmation(BACKUPS, progress, after, _turn(1, "offsite copy is in the other datacenter"))

        assert confirmed


class TestExtractionFailure:
    def test_timeout_is_a_no_op_with_retryable_error(self, fast_settings):
        extractor = FailingExtractor()
        evaluator = CompletenessEvaluator(extractor, fast_settings)
        progress = QuestionProgress.for_question(BACKUPS)
        progress.status = IN_PROGRESS

        result = evaluator.evaluate(BACKUPS, progress, _turn(0, "frequency: daily"))

        assert result.failed
        assert isinstance(result.error, ExtractionUnavailable)
        assert result.error.retryable
        assert result.progress == progress
        assert result.progress is not progress
        assert extractor.calls == fast_settings.extraction_retries

    def test_non_mapping_response_counts_as_failure(self, fast_settings):
        evaluator = CompletenessEvaluator(lambda fields, window: "not a dict", fast_settings)

        result = evaluator.evaluate(BACKUPS, QuestionProgress.for_question(BACKUPS), _turn(0, "x"))

        assert result.failed

    def test_slow_extractor_times_out(self):
        import time

        settings = EngineSettings(retry_backoff_seconds=0.0, external_call_timeout=0.05, extraction_retries=1)

        def slow(fields, window):
            time.sleep(0.5)
            return {"frequency": ("daily", 0.9)}

        result = CompletenessEvaluator(slow, settings).evaluate(
            BACKUPS, QuestionProgress.for_question(BACKUPS), _turn(0, "x")
        )

        assert result.failed
        assert result.progress.fields["frequency"].value is None

    def test_complete_status_is_kept(self, fast_settings):
        evaluator = CompletenessEvaluator(ScriptedExtractor(), fast_settings)
        progress = QuestionProgress.for_question(BACKUPS)
        progress.status = COMPLETE

        result = evaluator.evaluate(BACKUPS, progress, _turn(0, "anything"))

        assert result.progress.status == COMPLETE
