# botflow/error_signatures.py
"""
Stable signatures for validator errors, so the same mistake on different
nodes is recognised as one pattern, plus the prompt fragments built from
previously proven fixes.
"""

import hashlib
import re
from typing import Dict, Iterable, List

from botflow.validation_errors import ValidationError


def normalize_error_signature(error: ValidationError) -> str:
    field = (error.field or "unknown").lower()
    desc = error.message or ""
    desc = re.sub(r"node \d+", "node X", desc, flags=re.IGNORECASE)
    desc = re.sub(r'"\d+"', '"X"', desc)
    desc = re.sub(r"row \d+", "row X", desc, flags=re.IGNORECASE)
    desc = re.sub(r"\d+ characters?", "N characters", desc, flags=re.IGNORECASE)
    desc = desc.lower().strip()
    digest = hashlib.sha1(f"{field}:{desc}".encode("utf-8")).hexdigest()[:12]
    return f"err_{digest}"


def categorize_error(error: ValidationError) -> str:
    description = (error.message or "").lower()
    field = (error.field or "").lower()

    if "nlu disabled" in description and "one child" in description:
        return "NLU_DISABLED_MULTI_CHILD"
    if "invalid json" in description or "malformed" in description:
        return "INVALID_JSON"
    if "does not exist" in description or "not found" in description:
        return "MISSING_REFERENCE"
    if "next nodes" in field and "child" in description:
        return "NEXT_NODES_CONSTRAINT"
    if "rich asset" in field:
        return "RICH_ASSET_ERROR"
    if "message" in field and "character" in description:
        return "MESSAGE_LENGTH"
    if "reserved" in description or "special character" in description:
        return "RESERVED_CHARACTER"
    if "answer required" in description:
        return "ANSWER_REQUIRED_CONSTRAINT"

    if field:
        return re.sub(r"\s+", "_", field.upper()) + "_ERROR"
    return "UNKNOWN_ERROR"


def signatures(errors: Iterable[ValidationError]) -> set:
    return {normalize_error_signature(e) for e in errors}


def format_errors_for_prompt(errors: List[ValidationError]) -> str:
    lines = []
    for e in errors:
        line = f"- {e.format()}"
        if e.category:
            line += f" (category: {e.category})"
        if e.field_entry:
            line += f"\n  offending value: {e.field_entry[:200]}"
        lines.append(line)
    return "\n".join(lines)


def format_known_fixes_for_prompt(known_fixes) -> str:
    """
    `known_fixes` is either ready-made text or a list of dicts shaped like
    {"error_type", "fix_description", "confidence_score"}. Only the most
    confident fix per error type is kept.
    """
    if not known_fixes:
        return ""
    if isinstance(known_fixes, str):
        return known_fixes.strip()

    best: Dict[str, dict] = {}
    for fix in known_fixes:
        if not isinstance(fix, dict):
            continue
        error_type = fix.get("error_type") or "unknown"
        score = float(fix.get("confidence_score") or 0.0)
        if error_type not in best or score > float(best[error_type].get("confidence_score") or 0.0):
            best[error_type] = fix

    if not best:
        return ""

    lines = [
        f"- For {error_type} errors: {fix.get('fix_description', '')} "
        f"({round(float(fix.get('confidence_score') or 0.0) * 100)}% success rate)"
        for error_type, fix in best.items()
    ]
    return "PROVEN FIXES (apply these first):\n" + "\n".join(lines)
