# ens_assessment/model_props.py

from typing import Any, Dict, Optional, Tuple


def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o1", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


# preset -> (verbosity, reasoning_effort, service_tier)
_MODEL_PRESETS: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]] = {
    "standard": ("low", "low", None),
    "std": ("low", "low", None),
    "fast": ("low", "none", None),
    "deep": ("medium", "high", None),
    "standard-flex": ("low", "low", "flex"),
    "fast-flex": ("low", "none", "flex"),
}

_VERBOSITY = {"low", "medium", "high"}
_REASONING = {"none", "minimal", "low", "medium", "high"}
_SERVICE_TIER = {"auto", "default", "flex", "priority"}


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """
    Parse 'gpt-5.1_fast', 'gpt-5.1_low_low' or a bare model name into
    (base_model, openai_params). Extraction needs short, cheap answers, so
    the presets lean towards low verbosity.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed.")

    base, *suffixes = raw.split("_")
    if not suffixes:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None
    unknown = []

    for tok in suffixes:
        t = tok.strip().lower()
        if not t:
            continue
        if t in _MODEL_PRESETS:
            p_verb, p_reason, p_tier = _MODEL_PRESETS[t]
            verbosity = verbosity or p_verb
            reasoning_effort = reasoning_effort or p_reason
            service_tier = service_tier or p_tier
        elif verbosity is None and t in _VERBOSITY:
            verbosity = t
        elif reasoning_effort is None and t in _REASONING:
            reasoning_effort = t
        elif service_tier is None and t in _SERVICE_TIER:
            service_tier = t
        else:
            unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'.")

    params: Dict[str, Any] = {"service_tier": service_tier or "default"}
    if verbosity is not None:
        params["text"] = {"verbosity": verbosity}
    if reasoning_effort is not None:
        params["reasoning"] = {"effort": reasoning_effort}
    return base, params
