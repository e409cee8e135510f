from ens_assessment.models import COMPLETE, IN_PROGRESS, NOT_STARTED, FieldEvidence, QuestionProgress, Session
from ens_assessment.progress_analytics import ProgressAnalytics

from conftest import BACKUPS, MFA, RESTORE


def _commit_backups(store):
    return store.commit(
        BACKUPS.id,
        {"frequency": "daily", "verification": "checksums", "offsite": "yes"},
        domain=BACKUPS.domain,
        completeness_score=100,
        confidences={"frequency": 0.95, "verification": 0.8, "offsite": 0.6},
    )


class TestProgressAnalytics:
    def test_empty_store(self, catalog, store):
        overall = ProgressAnalytics(catalog, store).overall_completion()

        assert overall["total_questions"] == 3
        assert overall["complete"] == 0
        assert overall["completion_pct"] == 0
        assert overall["domains"] == {"Backups": 0, "AccessControl": 0}

    def test_domain_completion_from_store(self, catalog, store):
        _commit_backups(store)
        analytics = ProgressAnalytics(catalog, store)

        backups = analytics.domain_completion("Backups")

        assert backups["complete"] == 1
        assert backups["not_started"] == 1
        assert backups["completion_pct"] == 50
        assert backups["average_score"] == 50
        assert analytics.domain_completion("AccessControl")["completion_pct"] == 0

    def test_session_progress_overrides_store(self, catalog, store):
        _commit_backups(store)
        session = Session(session_id="s1")
        editing = QuestionProgress.for_question(BACKUPS)
        editing.status = IN_PROGRESS
        editing.completeness_score = 66
        session.progress[BACKUPS.id] = editing
        mfa = QuestionProgress.for_question(MFA)
        mfa.status = IN_PROGRESS
        mfa.fields["mfa_enabled"] = FieldEvidence("yes", 0.9, True)
        mfa.completeness_score = 50
        session.progress[MFA.id] = mfa

        snapshot = ProgressAnalytics(catalog, store).snapshot(session)

        statuses = {q["question_id"]: q["status"] for q in snapshot["questions"]}
        assert statuses == {BACKUPS.id: IN_PROGRESS, RESTORE.id: NOT_STARTED, MFA.id: IN_PROGRESS}
        assert snapshot["overall"]["in_progress"] == 2
        assert snapshot["domains"]["AccessControl"]["average_score"] == 50

    def test_tombstoned_answers_do_not_count(self, catalog, store):
        _commit_backups(store)
        store.delete(BACKUPS.id, "confirmed")

        overall = ProgressAnalytics(catalog, store).overall_completion()

        assert overall["complete"] == 0

    def test_completed_in_session_but_deleted_in_store(self, catalog, store):
        _commit_backups(store)
        session = Session(session_id="s1")
        done = QuestionProgress.for_question(BACKUPS)
        done.status = COMPLETE
        done.completeness_score = 100
        session.progress[BACKUPS.id] = done
        store.delete(BACKUPS.id, "confirmed")

        snapshot = ProgressAnalytics(catalog, store).snapshot(session)

        backups = snapshot["questions"][0]
        assert backups["status"] == NOT_STARTED
        assert backups["completeness_score"] == 0
        assert snapshot["overall"]["complete"] == 0

    def test_quality_distribution(self, catalog, store):
        _commit_backups(store)

        quality = ProgressAnalytics(catalog, store).quality_distribution()

        assert quality["score_bands"] == {"0": 2, "1-49": 0, "50-99": 0, "100": 1}
        assert quality["confidence_bands"] == {"high": 1, "medium": 1, "low": 1}

    def test_recomputation_is_deterministic(self, catalog, store):
        _commit_backups(store)
        analytics = ProgressAnalytics(catalog, store)
        assert analytics.snapshot() == analytics.snapshot()
        assert analytics.snapshot()["questions"][0]["status"] == COMPLETE
