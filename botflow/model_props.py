# botflow/model_props.py
from typing import Any, Dict, Optional, Tuple

from botflow.errors import InvalidRequestError


def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "gpt-4", "gpt-5", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


# preset -> (verbosity, reasoning effort, service tier)
MODEL_PRESETS: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]] = {
    "standard": ("low", "low", None),
    "fast": ("low", "none", None),
    "deep": ("medium", "high", None),
    # generation writes long tables; repair only a handful of rows
    "generate": ("high", "medium", None),
    "repair": ("low", "low", None),
    "flex": (None, None, "flex"),
    "priority": (None, None, "priority"),
}

_VERBOSITY = {"low", "medium", "high"}
_REASONING = {"none", "minimal", "low", "medium", "high", "xhigh"}
_TIERS = {"auto", "default", "flex", "priority"}


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like 'gpt-5.1_repair' or 'gpt-5.1_low_high_flex'
    into (base_model, openai_params).

    Tokens after the base name are presets or explicit verbosity / reasoning /
    tier values; the first value seen for each setting wins.
    """
    raw = (raw or "").strip()
    if not raw:
        raise InvalidRequestError("parse_model_name: No Model Name passed.")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue
        if t in MODEL_PRESETS:
            p_verb, p_reason, p_tier = MODEL_PRESETS[t]
            verbosity = verbosity or p_verb
            reasoning_effort = reasoning_effort or p_reason
            service_tier = service_tier or p_tier
        elif verbosity is None and t in _VERBOSITY:
            verbosity = t
        elif reasoning_effort is None and t in _REASONING:
            reasoning_effort = t
        elif service_tier is None and t in _TIERS:
            service_tier = t
        else:
            unknown.append(t)

    if unknown:
        raise InvalidRequestError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'.")

    params: Dict[str, Any] = {}
    if verbosity is not None:
        params.setdefault("text", {})["verbosity"] = verbosity
    if reasoning_effort is not None:
        params.setdefault("reasoning", {})["effort"] = reasoning_effort
    params["service_tier"] = service_tier or "default"
    return base, params
