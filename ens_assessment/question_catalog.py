# ens_assessment/question_catalog.py

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import commentjson

from ens_assessment.assessment_errors import CatalogError, QuestionNotFound
from ens_assessment.field_validators import is_known_format_hint
from ens_assessment.models import QuestionDefinition, RequiredField

logger = logging.getLogger("ens_assessment")


class QuestionCatalog:
    """
    Immutable, ordered set of ENS question definitions.

    Built once (from a JSON-with-comments file or from definitions) and
    validated eagerly: a broken catalog must fail at boot, never mid-session.
    """

    def __init__(self, questions: Iterable[QuestionDefinition]):
        self._questions: Dict[str, QuestionDefinition] = {}
        for q in questions:
            if q.id in self._questions:
                raise CatalogError(f"Duplicate question id: {q.id}")
            self._questions[q.id] = q
        self._order: List[str] = list(self._questions.keys())
        self._validate()

    # -----------------------
    # Loading
    # -----------------------

    @classmethod
    def from_file(cls, path) -> "QuestionCatalog":
        cfg_path = Path(path)
        if not cfg_path.exists():
            raise CatalogError(f"ENS question catalog not found at '{cfg_path}'.")

        try:
            with cfg_path.open("r", encoding="utf-8") as f:
                data = commentjson.load(f)
        except Exception as e:
            raise CatalogError(f"ENS question catalog at '{cfg_path}' is not valid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("questions"), list):
            raise CatalogError("ENS question catalog must be an object with a 'questions' list")

        catalog = cls(cls._parse_question(raw) for raw in data["questions"])
        logger.info(f"[CATALOG] Loaded {len(catalog)} ENS questions across {len(catalog.domains())} domains from {cfg_path}")
        return catalog

    @staticmethod
    def _parse_question(raw: Any) -> QuestionDefinition:
        if not isinstance(raw, dict):
            raise CatalogError(f"Question entry must be an object, got: {raw!r}")

        qid = (raw.get("id") or "").strip()
        domain = (raw.get("domain") or "").strip()
        prompt = (raw.get("prompt") or "").strip()
        if not qid or not domain or not prompt:
            raise CatalogError(f"Question entry missing id/domain/prompt: {raw!r}")

        raw_fields = raw.get("required_fields")
        if not isinstance(raw_fields, list) or not raw_fields:
            raise CatalogError(f"Question {qid} must declare at least one required field")

        fields = []
        for rf in raw_fields:
            if not isinstance(rf, dict) or not (rf.get("name") or "").strip():
                raise CatalogError(f"Question {qid} has a malformed required field: {rf!r}")
            fields.append(
                RequiredField(
                    name=rf["name"].strip(),
                    description=(rf.get("description") or "").strip(),
                    format_hint=(rf.get("format_hint") or "free_text").strip(),
                    aliases=tuple(a.strip() for a in (rf.get("aliases") or []) if a and a.strip()),
                )
            )

        return QuestionDefinition(
            id=qid,
            domain=domain,
            prompt=prompt,
            required_fields=tuple(fields),
            prerequisites=tuple(raw.get("prerequisites") or ()),
            measure=(raw.get("measure") or "").strip(),
        )

    def _validate(self) -> None:
        for q in self._questions.values():
            names = [f.name for f in q.required_fields]
            if not names:
                raise CatalogError(f"Question {q.id} has no required fields")
            if len(set(names)) != len(names):
                raise CatalogError(f"Question {q.id} declares duplicate field names: {names}")
            for f in q.required_fields:
                if not is_known_format_hint(f.format_hint):
                    raise CatalogError(f"Question {q.id} field {f.name}: unknown format hint '{f.format_hint}'")
            for pre in q.prerequisites:
                if pre not in self._questions:
                    raise CatalogError(f"Question {q.id} has unknown prerequisite '{pre}'")
                if pre == q.id:
                    raise CatalogError(f"Question {q.id} lists itself as a prerequisite")

        # prerequisite cycles
        visiting: set = set()
        done: set = set()

        def visit(qid: str, path: List[str]) -> None:
            if qid in done:
                return
            if qid in visiting:
                raise CatalogError(f"Prerequisite cycle: {' -> '.join(path + [qid])}")
            visiting.add(qid)
            for pre in self._questions[qid].prerequisites:
                visit(pre, path + [qid])
            visiting.discard(qid)
            done.add(qid)

        for qid in self._order:
            visit(qid, [])

    # -----------------------
    # Read API
    # -----------------------

    def get(self, question_id: str) -> QuestionDefinition:
        q = self._questions.get(question_id)
        if q is None:
            raise QuestionNotFound(f"Unknown question: {question_id}", question_id=question_id)
        return q

    def questions(self) -> List[QuestionDefinition]:
        return [self._questions[qid] for qid in self._order]

    def domains(self) -> List[str]:
        out: List[str] = []
        for q in self.questions():
            if q.domain not in out:
                out.append(q.domain)
        return out

    def questions_for_domain(self, domain: str) -> List[QuestionDefinition]:
        return [q for q in self.questions() if q.domain == domain]

    def __contains__(self, question_id) -> bool:
        return question_id in self._questions

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self):
        return iter(self.questions())


_catalog_lock = threading.Lock()
_catalog_cache: Dict[str, QuestionCatalog] = {}


def get_question_catalog(path: Optional[str] = None) -> QuestionCatalog:
    """
    Process-wide catalog, loaded once per path.
    """
    if path is None:
        from ens_assessment.assessment_config import EngineSettings
        path = EngineSettings.from_env().catalog_path
    key = str(Path(path).resolve())
    with _catalog_lock:
        catalog = _catalog_cache.get(key)
        if catalog is None:
            catalog = QuestionCatalog.from_file(key)
            _catalog_cache[key] = catalog
        return catalog
