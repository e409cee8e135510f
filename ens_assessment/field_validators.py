# ens_assessment/field_validators.py
"""
Per-field format checks.

A RequiredField carries a ``format_hint``; a candidate value only satisfies the
field when the check for that hint accepts it. Checks return the normalized
value, or None when the value is rejected. They never raise for bad input.
"""

import logging
import re
from datetime import date
from typing import Callable, Dict, Optional

from ens_assessment.assessment_errors import InvalidFieldValue
from ens_assessment.models import RequiredField

logger = logging.getLogger("ens_assessment")


_YES = {"yes", "y", "true", "si", "sí", "s", "afirmativo", "1"}
_NO = {"no", "n", "false", "0", "negativo"}

_UNKNOWN = {"n/a", "na", "unknown", "desconocido", "no se", "no sé", "no lo se", "no lo sé", "?"}
# "no sé ..." is a non-answer, "no se hacen ..." is a real negative
_UNKNOWN_RE = re.compile(
    r"^(no sé|no lo s[eé]|no estoy segur[oa]|not sure|i'?m not sure|no idea|(i )?don'?t know)(\W|$)"
)

# replies to a "is that correct?" prompt, beyond plain yes/no
_AFFIRM = {"correct", "correcto", "correcta", "exacto", "exactly", "right", "cierto", "ok", "okay", "vale", "confirmed", "confirmo", "confirmado"}
_DENY = {"incorrect", "incorrecto", "incorrecta", "wrong", "falso", "nope", "mal", "equivocado"}
_NEGATED_RE = re.compile(r"\b(not|isn't|no es|no son|no está|no esta)\s+(correct[oa]?|right|cierto|bien)\b")

_FREQUENCY_WORDS = {
    # en
    "continuous", "continuously", "real-time", "realtime", "hourly", "daily", "nightly",
    "weekly", "biweekly", "fortnightly", "monthly", "quarterly", "semiannual",
    "semiannually", "yearly", "annually", "annual",
    # es
    "continua", "continuo", "tiempo real", "cada hora", "diaria", "diario", "diariamente",
    "semanal", "semanalmente", "quincenal", "mensual", "mensualmente", "trimestral",
    "semestral", "anual", "anualmente",
}

_UNIT = (
    r"(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h|days?|d|weeks?|w|months?|years?|"
    r"segundos?|minutos?|horas?|d[ií]as?|semanas?|mes(?:es)?|a[nñ]os?)"
)
_DURATION_RE = re.compile(rf"^\s*(\d+(?:[.,]\d+)?)\s*{_UNIT}\s*$", re.IGNORECASE)
_EVERY_RE = re.compile(
    rf"^\s*(every|each|cada)\s+(\d+\s*)?{_UNIT}\s*$",
    re.IGNORECASE,
)
_PERCENT_RE = re.compile(r"^\s*(\d+(?:[.,]\d+)?)\s*%?\s*$")
_INTEGER_RE = re.compile(r"^\s*[+-]?\d+\s*$")


def _clean(value) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip().strip(".;")


def _is_unknown(low: str) -> bool:
    return low in _UNKNOWN or bool(_UNKNOWN_RE.match(low))


def check_free_text(value: str) -> Optional[str]:
    v = _clean(value)
    if len(v) < 2:
        return None
    if _is_unknown(v.lower()):
        return None
    return v


def check_yes_no(value: str) -> Optional[str]:
    v = _clean(value).lower()
    if v in _YES:
        return "yes"
    if v in _NO:
        return "no"
    if _is_unknown(v):
        return None
    first = v.split(" ", 1)[0].strip(",") if v else ""
    if first in _YES:
        return "yes"
    if first in _NO:
        return "no"
    return None


def read_confirmation(text: str) -> Optional[bool]:
    """
    True for an explicit confirmation, False for an explicit denial, None when
    the reply says neither. Any denial wins ("yes... no wait, that's wrong").
    """
    v = _clean(text).lower()
    if not v or _is_unknown(v):
        return None
    words = re.findall(r"\w+", v)
    yes_no = check_yes_no(v)
    if yes_no == "no" or _NEGATED_RE.search(v) or any(w in _DENY for w in words):
        return False
    if yes_no == "yes" or (words and words[0] in _AFFIRM):
        return True
    return None


def check_frequency(value: str) -> Optional[str]:
    v = _clean(value)
    low = v.lower()
    if low in _FREQUENCY_WORDS:
        return low
    if _EVERY_RE.match(low):
        return low
    for word in _FREQUENCY_WORDS:
        if re.search(rf"\b{re.escape(word)}\b", low):
            return low
    return None


def check_integer(value: str) -> Optional[str]:
    v = _clean(value)
    if not _INTEGER_RE.match(v):
        return None
    return str(int(v))


def check_percentage(value: str) -> Optional[str]:
    v = _clean(value)
    m = _PERCENT_RE.match(v)
    if not m:
        return None
    number = float(m.group(1).replace(",", "."))
    if not 0.0 <= number <= 100.0:
        return None
    return f"{number:g}%"


def check_duration(value: str) -> Optional[str]:
    v = _clean(value)
    if _DURATION_RE.match(v):
        return v
    return None


def check_date(value: str) -> Optional[str]:
    v = _clean(value)
    try:
        return date.fromisoformat(v).isoformat()
    except ValueError:
        return None


def check_list(value) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        items = [_clean(x) for x in value]
    else:
        items = [_clean(x) for x in re.split(r"[,;\n]", str(value or ""))]
    items = [x for x in items if x]
    if not items:
        return None
    return ", ".join(items)


FORMAT_CHECKS: Dict[str, Callable[[str], Optional[str]]] = {
    "free_text": check_free_text,
    "yes_no": check_yes_no,
    "frequency": check_frequency,
    "integer": check_integer,
    "percentage": check_percentage,
    "duration": check_duration,
    "date": check_date,
    "list": check_list,
}


def is_known_format_hint(hint: str) -> bool:
    if not hint:
        return False
    if hint.startswith("regex:"):
        try:
            re.compile(hint[len("regex:"):])
        except re.error:
            return False
        return True
    return hint in FORMAT_CHECKS


def validate_field_value(required_field: RequiredField, value) -> Optional[str]:
    """
    Returns the normalized value when it passes the field's format check,
    None otherwise.
    """
    if value is None:
        return None
    hint = required_field.format_hint or "free_text"

    if hint.startswith("regex:"):
        v = _clean(value)
        if v and re.fullmatch(hint[len("regex:"):], v, flags=re.IGNORECASE):
            return v
        return None

    check = FORMAT_CHECKS.get(hint)
    if check is None:
        logger.warning(f"validate_field_value: unknown format hint '{hint}' for field {required_field.name}")
        return None
    return check(value)


def require_valid_field_value(required_field: RequiredField, value) -> str:
    normalized = validate_field_value(required_field, value)
    if normalized is None:
        raise InvalidFieldValue(
            f"Value {value!r} does not match format '{required_field.format_hint}' of field {required_field.name}",
            field=required_field.name,
            format_hint=required_field.format_hint,
        )
    return normalized
