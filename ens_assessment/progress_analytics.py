# ens_assessment/progress_analytics.py

import logging
from typing import Dict, List, Optional

from ens_assessment.answer_store import AnswerStore
from ens_assessment.models import COMPLETE, IN_PROGRESS, NOT_STARTED, AnswerRecord, Session

logger = logging.getLogger("ens_assessment")

SCORE_BANDS = (
    ("0", 0, 0),
    ("1-49", 1, 49),
    ("50-99", 50, 99),
    ("100", 100, 100),
)

CONFIDENCE_HIGH = 0.9
CONFIDENCE_MEDIUM = 0.7


def _score_band(score: int) -> str:
    for label, lo, hi in SCORE_BANDS:
        if lo <= score <= hi:
            return label
    return SCORE_BANDS[-1][0]


def _confidence_band(confidence: float) -> str:
    if confidence >= CONFIDENCE_HIGH:
        return "high"
    if confidence >= CONFIDENCE_MEDIUM:
        return "medium"
    return "low"


class ProgressAnalytics:
    """
    Stateless aggregator: every figure is recomputed from the answer store and,
    optionally, one session. Nothing is cached between calls.
    """

    def __init__(self, catalog, store: AnswerStore):
        self.catalog = catalog
        self.store = store

    def _question_view(self, session: Optional[Session], records: Dict[str, AnswerRecord]) -> List[dict]:
        rows = []
        for q in self.catalog.questions():
            live = records.get(q.id)
            if live is not None and live.tombstoned:
                live = None

            progress = session.progress.get(q.id) if session is not None else None
            # only open work comes from the session; anything else is whatever the
            # store holds now, so deletes from other sessions are seen here
            if progress is not None and progress.status == IN_PROGRESS:
                status = progress.status
                score = progress.completeness_score
                confidences = {n: ev.confidence for n, ev in progress.fields.items() if ev.satisfied}
            elif live is not None:
                status = COMPLETE
                score = live.completeness_score
                confidences = dict(live.confidences)
            else:
                status = NOT_STARTED
                score = 0
                confidences = {}

            rows.append({
                "question_id": q.id,
                "domain": q.domain,
                "status": status,
                "completeness_score": score,
                "confidences": confidences,
                "version": live.version if live is not None else None,
            })
        return rows

    @staticmethod
    def _summarize(rows: List[dict]) -> dict:
        total = len(rows)
        complete = sum(1 for r in rows if r["status"] == COMPLETE)
        in_progress = sum(1 for r in rows if r["status"] == IN_PROGRESS)
        average = (sum(r["completeness_score"] for r in rows) // total) if total else 0
        return {
            "total_questions": total,
            "complete": complete,
            "in_progress": in_progress,
            "not_started": total - complete - in_progress,
            "completion_pct": (complete * 100 // total) if total else 0,
            "average_score": average,
        }

    @staticmethod
    def _quality(rows: List[dict]) -> dict:
        by_score = {label: 0 for label, _, _ in SCORE_BANDS}
        by_confidence = {"high": 0, "medium": 0, "low": 0}
        for r in rows:
            by_score[_score_band(r["completeness_score"])] += 1
            for confidence in r["confidences"].values():
                by_confidence[_confidence_band(float(confidence))] += 1
        return {"score_bands": by_score, "confidence_bands": by_confidence}

    def domain_completion(self, domain: str, session: Optional[Session] = None) -> dict:
        rows = [r for r in self._question_view(session, self.store.latest_records()) if r["domain"] == domain]
        out = self._summarize(rows)
        out["domain"] = domain
        return out

    def overall_completion(self, session: Optional[Session] = None) -> dict:
        rows = self._question_view(session, self.store.latest_records())
        out = self._summarize(rows)
        out["domains"] = {
            d: self._summarize([r for r in rows if r["domain"] == d])["completion_pct"]
            for d in self.catalog.domains()
        }
        return out

    def quality_distribution(self, session: Optional[Session] = None) -> dict:
        return self._quality(self._question_view(session, self.store.latest_records()))

    def snapshot(self, session: Optional[Session] = None) -> dict:
        records = self.store.latest_records()
        rows = self._question_view(session, records)
        overall = self._summarize(rows)
        domains = {}
        for d in self.catalog.domains():
            summary = self._summarize([r for r in rows if r["domain"] == d])
            summary["domain"] = d
            domains[d] = summary

        return {
            "overall": overall,
            "domains": domains,
            "quality": self._quality(rows),
            "questions": [
                {k: r[k] for k in ("question_id", "domain", "status", "completeness_score", "version")}
                for r in rows
            ],
        }
