# botflow/row_fixes.py
"""
Deterministic fixes applied to rows before they are sent to the validator.

Each fix edits fields of an existing row in place; rows are never added,
removed or renumbered. A row that no fix touches keeps its exact source text.
"""

import json
import logging
import re
from typing import Callable, List, Optional, Tuple

from json_repair import repair_json

from botflow.flow_csv import COL, format_row
from botflow.flow_document import KIND_ACTION, KIND_DECISION, DocumentRow, FlowDocument, parse_kind

logger = logging.getLogger("botflow_backend")

ERROR_NODE = 99990
DEFAULT_DECISION_VARIABLE = "success"

_BUTTON_TYPES = ("button", "buttons")
_MULTI_ROUTE_TYPES = ("button", "buttons", "listpicker", "quick_reply", "carousel")
_PICKER_MESSAGES = {"datepicker": "Please select a date", "timepicker": "Please select a time"}
_VAR_REF_RE = re.compile(r":(\s*)\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


def _loads(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


def _compact(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _repair_structured(text: str):
    """Valid JSON as-is, otherwise whatever json_repair recovers; None when neither yields an object."""
    data = _loads(text)
    if isinstance(data, (dict, list)):
        return data
    data = _loads(repair_json(text))
    if isinstance(data, (dict, list)) and data:
        return data
    return None


def _button_options(data) -> Optional[list]:
    options = data.get("options") if isinstance(data, dict) else data
    if not isinstance(options, list) or not options:
        return None
    if not all(isinstance(o, dict) and "dest" in o for o in options):
        return None
    return options


def rejoin_button_labels(content: str) -> Optional[str]:
    """
    `label~dest|label~dest` where a label itself contained a pipe
    (`$25|k-$35|k~201`) -> labels glued back together. None when the content
    cannot be read as buttons even after rejoining.
    """
    entries, pending = [], ""
    for part in content.split("|"):
        pending += part
        if "~" in part:
            entries.append(pending)
            pending = ""
    if pending:
        return None
    for entry in entries:
        label, _, dest = entry.rpartition("~")
        if not label.strip() or not re.fullmatch(r"\s*-?\d+\s*", dest):
            return None
    return "|".join(entries)


# -----------------------
# Row fixes
# -----------------------

def fix_button_format(number: int, f: List[str]) -> List[str]:
    rich_type = f[COL["Rich Asset Type"]].strip().lower()
    content = f[COL["Rich Asset Content"]].strip()
    if rich_type not in _BUTTON_TYPES or not content:
        return []

    if content[:1] in ("{", "["):
        options = _button_options(_repair_structured(content))
        if options is None:
            return []
        f[COL["Rich Asset Type"]] = "button"
        f[COL["Rich Asset Content"]] = "|".join(f"{o.get('label') or 'Option'}~{o['dest']}" for o in options)
        return [f"Node {number}: converted JSON buttons to pipe format ({len(options)} buttons)"]

    fixes = []
    if "|" in content:
        rejoined = rejoin_button_labels(content)
        if rejoined is not None and rejoined != content:
            f[COL["Rich Asset Content"]] = rejoined
            fixes.append(f"Node {number}: removed pipe characters inside button labels")
    if rich_type == "buttons":
        f[COL["Rich Asset Type"]] = "button"
        fixes.append(f"Node {number}: Rich Asset Type \"buttons\" -> \"button\" for pipe format")
    return fixes


def fix_rich_asset_json(number: int, f: List[str]) -> List[str]:
    rich_type = f[COL["Rich Asset Type"]].strip().lower()
    content = f[COL["Rich Asset Content"]].strip()

    if rich_type in _PICKER_MESSAGES:
        data = _repair_structured(content) if content else {}
        if not isinstance(data, dict):
            data = {}
        if data.get("type") == "static" and data.get("message"):
            return []
        data["type"] = "static"
        data.setdefault("message", _PICKER_MESSAGES[rich_type])
        f[COL["Rich Asset Content"]] = _compact(data)
        return [f"Node {number}: {rich_type} content set to a static message"]

    if content[:1] not in ("{", "[") or isinstance(_loads(content), (dict, list)):
        return []
    data = _repair_structured(content)
    if data is None:
        return []
    f[COL["Rich Asset Content"]] = _compact(data)
    return [f"Node {number}: repaired Rich Asset Content JSON"]


def fix_parameter_input(number: int, f: List[str]) -> List[str]:
    raw = f[COL["Parameter Input"]].strip()
    if not raw or isinstance(_loads(raw), dict):
        return []

    text = raw
    while text.count("}") > text.count("{"):
        text = re.sub(r"}([^}]*)$", r"\1", text)
    text = _VAR_REF_RE.sub(r':\1"{\2}"', text)
    data = _loads(text)
    if data is None:
        data = _repair_structured(text)
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = {"set": data[0]}
    if not isinstance(data, dict):
        return []
    f[COL["Parameter Input"]] = _compact(data)
    return [f"Node {number}: repaired Parameter Input JSON"]


def fix_action_routing(number: int, f: List[str]) -> List[str]:
    if parse_kind(f[COL["Node Type"]]) != KIND_ACTION:
        return []
    fixes = []
    what_next = f[COL["What Next?"]].strip()
    if what_next and "error~" not in what_next.lower():
        f[COL["What Next?"]] = f"{what_next}|error~{ERROR_NODE}"
        fixes.append(f"Node {number}: added |error~{ERROR_NODE} to What Next")
    if f[COL["What Next?"]].strip() and not f[COL["Decision Variable"]].strip():
        f[COL["Decision Variable"]] = DEFAULT_DECISION_VARIABLE
        fixes.append(f"Node {number}: added Decision Variable \"{DEFAULT_DECISION_VARIABLE}\"")
    return fixes


def fix_nlu_disabled(number: int, f: List[str]) -> List[str]:
    if parse_kind(f[COL["Node Type"]]) != KIND_DECISION or f[COL["NLU Disabled?"]].strip() != "1":
        return []
    next_nodes = f[COL["Next Nodes"]].strip()
    rich_type = f[COL["Rich Asset Type"]].strip().lower()
    multi_next = len({n.strip() for n in re.split(r"[,|]", next_nodes) if n.strip()}) > 1
    if not multi_next and rich_type not in _MULTI_ROUTE_TYPES:
        return []
    f[COL["NLU Disabled?"]] = ""
    return [f"Node {number}: cleared NLU Disabled (node routes to more than one child)"]


def fix_agent_transfer(number: int, f: List[str]) -> List[str]:
    if "xfer_to_agent" not in f[COL["Behaviors"]] or not f[COL["Next Nodes"]].strip():
        return []
    f[COL["Next Nodes"]] = ""
    return [f"Node {number}: cleared Next Nodes on xfer_to_agent node"]


def fix_variable_case(number: int, f: List[str]) -> List[str]:
    variable = f[COL["Variable"]].strip()
    if not variable or not re.search(r"[a-z]", variable):
        return []
    f[COL["Variable"]] = re.sub(r"[\s-]+", "_", variable.upper())
    return [f"Node {number}: Variable converted to {f[COL['Variable']]}"]


ROW_FIXES: List[Callable[[int, List[str]], List[str]]] = [
    fix_button_format,
    fix_rich_asset_json,
    fix_parameter_input,
    fix_action_routing,
    fix_nlu_disabled,
    fix_agent_transfer,
    fix_variable_case,
]


def fix_row(row: DocumentRow) -> Tuple[DocumentRow, List[str]]:
    fields = list(row.fields)
    fixes: List[str] = []
    for fix in ROW_FIXES:
        fixes.extend(fix(row.number, fields))
    if not fixes:
        return DocumentRow(row.number, list(row.fields), row.raw), []
    return DocumentRow(row.number, fields, format_row(fields)), fixes


def apply_row_fixes(document: FlowDocument) -> Tuple[FlowDocument, List[str]]:
    rows, fixes = [], []
    for row in document.rows():
        fixed, row_fixes = fix_row(row)
        rows.append(fixed)
        fixes.extend(row_fixes)
    if fixes:
        logger.info(f"[RowFixes] {len(fixes)} deterministic fix(es) applied")
    return FlowDocument(rows, header=document.header), fixes
