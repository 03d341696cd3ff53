# botflow/response_parser.py
"""
Pull a flow document out of free-form model output.

The model may wrap the table in prose, fence it, return a node list as JSON,
or a JSON object carrying the table as a string. Each heuristic below is a
pure function returning a candidate (text, extras) or None; `parse_document`
runs them in order and keeps the first candidate that passes the sanity
check. When none does, the result says which strategies were tried.

Order:
    1. extract_fenced_structured
    2. extract_balanced_object
    3. extract_whole_object
    4. extract_fenced_table
    5. extract_header_scan
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from botflow.base_utils import BaseUtils
from botflow.errors import ParseError, SchemaError
from botflow.flow_csv import HEADER, is_header, looks_like_row, serialize, split_records
from botflow.flow_document import DocumentRow, FlowDocument, Node

logger = logging.getLogger("botflow_backend")

SCOPE_DOCUMENT = "document"
SCOPE_ROWS = "rows"

# a document needs strictly more data rows than this
MIN_DATA_ROWS = 3

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)
_STRUCTURED_LABELS = {"json", "json5", "jsonc", "yaml", "yml"}
_TABLE_LABELS = {"", "csv", "text", "txt", "plaintext"}

_EXTRA_KEYS = {
    "warnings": "warnings",
    "fixesmade": "fixesMade",
    "fixes": "fixesMade",
    "stillbroken": "stillBroken",
}

Candidate = Tuple[str, dict]

_utils = BaseUtils()


@dataclass
class ParseResult:
    ok: bool
    text: str = ""
    strategy: str = ""
    attempted: List[str] = field(default_factory=list)
    reason: str = ""
    extras: dict = field(default_factory=dict)

    def unwrap(self) -> str:
        if not self.ok:
            raise ParseError(
                f"No extraction strategy produced a valid document ({self.reason})",
                attempted=self.attempted,
            )
        return self.text

    def document(self) -> FlowDocument:
        return FlowDocument.from_text(self.unwrap())

    def rows(self) -> List[DocumentRow]:
        records = [r for r in split_records(self.unwrap()) if r.strip()]
        return [DocumentRow.from_record(r) for r in records if not is_header(r)]


# -----------------------
# Structured payloads
# -----------------------

def _collect_extras(data: dict) -> dict:
    extras = {}
    for k, v in data.items():
        key = _EXTRA_KEYS.get(re.sub(r"[^a-z]", "", str(k).lower()))
        if key and v:
            extras[key] = v
    return extras


def _min_nodes(scope: str) -> int:
    return MIN_DATA_ROWS + 1 if scope == SCOPE_DOCUMENT else 1


def payload_to_text(data, scope: str = SCOPE_DOCUMENT) -> Optional[Candidate]:
    """
    Structured value -> candidate document text. Accepts a node list, an
    object with `nodes`, or an object carrying the table under `csv` /
    `document` / `rows`.
    """
    extras: dict = {}
    if isinstance(data, dict):
        extras = _collect_extras(data)
        for key in ("csv", "document", "rows"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return _utils.clean_triple_backticks(value).strip(), extras
        nodes = data.get("nodes")
        if nodes is None:
            nodes = data.get("Nodes")
        data = nodes

    if not isinstance(data, list):
        return None
    if len(data) < _min_nodes(scope):
        return None
    if not all(Node.mapping_is_complete(item) for item in data):
        return None
    return serialize(Node.from_mapping(item) for item in data), extras


def _load_structured(text: str):
    try:
        return _utils.load_fault_tolerant_json(text)
    except ValueError:
        return None


# -----------------------
# Strategies
# -----------------------

def extract_fenced_structured(output: str, scope: str = SCOPE_DOCUMENT) -> Optional[Candidate]:
    for m in _FENCE_RE.finditer(output or ""):
        label, body = m.group(1).lower(), m.group(2).strip()
        if label not in _STRUCTURED_LABELS and not (label == "" and body[:1] in ("{", "[")):
            continue
        data = _load_structured(body)
        candidate = payload_to_text(data, scope) if data is not None else None
        if candidate:
            return candidate
    return None


def _balanced_spans(text: str):
    """Yield (start, end) of every top-level bracketed span, string aware."""
    pairs = {"{": "}", "[": "]"}
    i, n = 0, len(text)
    while i < n:
        if text[i] not in pairs:
            i += 1
            continue
        stack = [pairs[text[i]]]
        in_string = False
        escaped = False
        j = i + 1
        while j < n and stack:
            ch = text[j]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch in pairs:
                stack.append(pairs[ch])
            elif ch == stack[-1]:
                stack.pop()
            elif ch in ("}", "]"):
                break
            j += 1
        if not stack:
            yield i, j
            i = j
        else:
            i += 1


def extract_balanced_object(output: str, scope: str = SCOPE_DOCUMENT) -> Optional[Candidate]:
    text = output or ""
    for start, end in _balanced_spans(text):
        data = _load_structured(text[start:end])
        candidate = payload_to_text(data, scope) if data is not None else None
        if candidate:
            return candidate
    return None


def extract_whole_object(output: str, scope: str = SCOPE_DOCUMENT) -> Optional[Candidate]:
    text = (output or "").strip()
    if text[:1] not in ("{", "["):
        return None
    data = _load_structured(text)
    return payload_to_text(data, scope) if data is not None else None


def extract_fenced_table(output: str, scope: str = SCOPE_DOCUMENT) -> Optional[Candidate]:
    for m in _FENCE_RE.finditer(output or ""):
        label, body = m.group(1).lower(), m.group(2).strip()
        if label not in _TABLE_LABELS or not body:
            continue
        first = next((r for r in split_records(body) if r.strip()), "")
        if is_header(first) or (scope == SCOPE_ROWS and looks_like_row(first)):
            return body, {}
    return None


def extract_header_scan(output: str, scope: str = SCOPE_DOCUMENT) -> Optional[Candidate]:
    text = output or ""
    lines = text.splitlines()
    header_idx = next((i for i, line in enumerate(lines) if is_header(line)), None)

    if header_idx is None:
        if scope != SCOPE_ROWS:
            return None
        start_idx = next((i for i, line in enumerate(lines) if looks_like_row(line)), None)
        if start_idx is None:
            return None
        collected: List[str] = []
        records = split_records("\n".join(lines[start_idx:]))
    else:
        collected = [HEADER]
        records = split_records("\n".join(lines[header_idx + 1:]))

    for record in records:
        if not record.strip():
            continue
        if not looks_like_row(record):
            break
        collected.append(record)

    if len(collected) <= (1 if header_idx is not None else 0):
        return None
    return "\n".join(collected), {}


STRATEGIES: List[Tuple[str, Callable[[str, str], Optional[Candidate]]]] = [
    ("fenced_structured", extract_fenced_structured),
    ("balanced_object", extract_balanced_object),
    ("whole_object", extract_whole_object),
    ("fenced_table", extract_fenced_table),
    ("header_scan", extract_header_scan),
]


# -----------------------
# Sanity check + chain
# -----------------------

def sanity_check(text: str, scope: str = SCOPE_DOCUMENT) -> Tuple[bool, str, str]:
    """
    Returns (ok, reason, canonical_text). In document scope the canonical
    text starts with the exact header; in rows scope it holds rows only.
    """
    records = [r for r in split_records((text or "").strip()) if r.strip()]
    if not records:
        return False, "empty candidate", ""

    if scope == SCOPE_ROWS:
        if is_header(records[0]):
            records = records[1:]
        if not records:
            return False, "no rows", ""
        for r in records:
            if not looks_like_row(r):
                return False, f"not a schema row: {r[:60]!r}", ""
        return True, "", "\n".join(records)

    if not is_header(records[0]):
        return False, "first line is not the header", ""
    rows = records[1:]
    for r in rows:
        if not looks_like_row(r):
            return False, f"not a schema row: {r[:60]!r}", ""
    if len(rows) <= MIN_DATA_ROWS:
        return False, f"only {len(rows)} data rows", ""
    canonical = "\n".join([HEADER] + rows)
    try:
        FlowDocument.from_text(canonical)
    except SchemaError as e:
        return False, str(e), ""
    return True, "", canonical


def parse_document(output, scope: str = SCOPE_DOCUMENT) -> ParseResult:
    """
    Run the strategy chain over `output` (raw text, or an already structured
    node list / payload) and return an explicit ParseResult.
    """
    if isinstance(output, (list, dict)):
        candidate = payload_to_text(output, scope)
        if candidate:
            ok, reason, text = sanity_check(candidate[0], scope)
            if ok:
                return ParseResult(True, text, "structured_input", ["structured_input"], extras=candidate[1])
        else:
            reason = "structured input is not a usable node list"
        return ParseResult(False, attempted=["structured_input"], reason=reason)

    attempted: List[str] = []
    last_reason = "no strategy matched"
    for name, strategy in STRATEGIES:
        attempted.append(name)
        candidate = strategy(output or "", scope)
        if not candidate:
            continue
        ok, reason, text = sanity_check(candidate[0], scope)
        if ok:
            logger.debug(f"[Parser] {scope} extracted by {name}")
            return ParseResult(True, text, name, list(attempted), extras=candidate[1])
        last_reason = f"{name}: {reason}"
        logger.debug(f"[Parser] {name} candidate rejected: {reason}")

    logger.info(f"[Parser] no strategy produced a valid {scope}; tried {', '.join(attempted)}")
    return ParseResult(False, attempted=attempted, reason=last_reason)


def parse_rows(output) -> ParseResult:
    return parse_document(output, scope=SCOPE_ROWS)
