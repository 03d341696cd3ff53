# botflow/flow_csv.py
"""
Canonical text form of a flow document.

One header row naming every field, then one row per node, fields in the same
fixed order, comma separated. A field is quoted only when it contains the
separator, the quote character or a line break; quotes inside a quoted field
are doubled. Column position carries the meaning, so unset fields are written
empty and never dropped.
"""

from typing import Iterable, List

SEPARATOR = ","
QUOTE = '"'

FIELDS: List[str] = [
    "Node Number",
    "Node Type",
    "Node Name",
    "Intent",
    "Entity Type",
    "Entity",
    "NLU Disabled?",
    "Next Nodes",
    "Message",
    "Rich Asset Type",
    "Rich Asset Content",
    "Answer Required?",
    "Behaviors",
    "Command",
    "Description",
    "Output",
    "Node Input",
    "Parameter Input",
    "Decision Variable",
    "What Next?",
    "Node Tags",
    "Skill Tag",
    "Variable",
    "Platform Flag",
    "Flows",
    "CSS Classname",
]

FIELD_COUNT = len(FIELDS)
COL = {name: i for i, name in enumerate(FIELDS)}


def escape_field(value) -> str:
    if value is None:
        return ""
    s = str(value)
    if SEPARATOR in s or QUOTE in s or "\n" in s or "\r" in s:
        return QUOTE + s.replace(QUOTE, QUOTE + QUOTE) + QUOTE
    return s


def format_row(fields: Iterable) -> str:
    return SEPARATOR.join(escape_field(f) for f in fields)


HEADER = format_row(FIELDS)


def serialize(nodes) -> str:
    """
    Node list -> canonical document text (header + one row per node).
    Nodes only need a `to_fields()` returning the full field list.
    """
    lines = [HEADER]
    for node in nodes:
        fields = list(node.to_fields())
        # pad/cut so the width is fixed no matter what the node returned
        if len(fields) < FIELD_COUNT:
            fields.extend([""] * (FIELD_COUNT - len(fields)))
        lines.append(format_row(fields[:FIELD_COUNT]))
    return "\n".join(lines)


def split_records(text: str) -> List[str]:
    """
    Split text into records on line breaks that sit outside quoted fields.
    Records keep their exact text (minus the terminating line break).
    """
    records: List[str] = []
    current: List[str] = []
    in_quotes = False
    for ch in text:
        if ch == QUOTE:
            in_quotes = not in_quotes
            current.append(ch)
        elif ch == "\n" and not in_quotes:
            rec = "".join(current)
            if rec.endswith("\r"):
                rec = rec[:-1]
            records.append(rec)
            current = []
        else:
            current.append(ch)
    if current:
        rec = "".join(current)
        if rec.endswith("\r"):
            rec = rec[:-1]
        records.append(rec)
    return records


def tokenize(record: str) -> List[str]:
    result: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    n = len(record)
    while i < n:
        ch = record[i]
        if ch == QUOTE:
            if in_quotes and i + 1 < n and record[i + 1] == QUOTE:
                current.append(QUOTE)
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == SEPARATOR and not in_quotes:
            result.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    result.append("".join(current))
    return result


def count_fields(record: str) -> int:
    return len(tokenize(record))


def is_header(record: str) -> bool:
    r = record.strip()
    if r == HEADER or r.startswith(HEADER):
        return True
    # quoted header names are still the same header
    return [f.strip() for f in tokenize(r)][:FIELD_COUNT] == FIELDS


def looks_like_row(record: str) -> bool:
    """
    Separator-count heuristic for a data row: the right width and an integer
    node number in the first column.
    """
    if not record.strip():
        return False
    fields = tokenize(record)
    if len(fields) != FIELD_COUNT:
        return False
    try:
        int(fields[0].strip())
    except ValueError:
        return False
    return True
