# botflow/validation_errors.py

from dataclasses import dataclass
from typing import Any, List, Optional

_NODE_KEYS = ("nodeIdentifier", "node_identifier", "node_num", "nodeNum", "node_number", "node", "nodeNumber")
_CATEGORY_KEYS = ("category", "error_type", "errorType", "type")
_FIELD_KEYS = ("field", "field_name", "fieldName")
_MESSAGE_KEYS = ("message", "error_description", "errorDescription", "description", "error")


def _first(d: dict, keys) -> Any:
    for k in keys:
        if k in d and d[k] not in (None, ""):
            return d[k]
    return None


def _as_node_number(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass
class ValidationError:
    node_number: Optional[int]
    category: str = ""
    field: str = ""
    message: str = ""
    field_entry: Optional[str] = None

    @property
    def is_row_addressed(self) -> bool:
        return self.node_number is not None

    def format(self) -> str:
        where = f"Node {self.node_number}" if self.node_number is not None else "Document"
        field = f"[{self.field}] " if self.field else ""
        return f"{where}: {field}{self.message}"

    def to_dict(self) -> dict:
        out = {
            "nodeIdentifier": self.node_number,
            "category": self.category,
            "field": self.field,
            "message": self.message,
        }
        if self.field_entry is not None:
            out["fieldEntry"] = self.field_entry
        return out


def normalize_errors(payload) -> List[ValidationError]:
    """
    Flatten every error shape the validator is known to emit:

    - flat objects: {nodeIdentifier, category, field, message}
    - bot manager objects: {row_num, node_num, err_msgs: [{field_name, error_description, field_entry}]}
    - nested pairings: [node, [[category, field, message], ...]]
    - plain strings (not row addressed)
    """
    if payload is None:
        return []
    if isinstance(payload, dict):
        if isinstance(payload.get("errors"), list):
            payload = payload["errors"]
        else:
            payload = [payload]
    if not isinstance(payload, list):
        return [ValidationError(None, message=str(payload))]

    out: List[ValidationError] = []
    for item in payload:
        out.extend(_normalize_one(item))
    return out


def _normalize_one(item) -> List[ValidationError]:
    if isinstance(item, ValidationError):
        return [item]

    if isinstance(item, str):
        return [ValidationError(None, message=item)]

    if isinstance(item, (list, tuple)):
        if len(item) == 2 and isinstance(item[1], (list, tuple)):
            node = _as_node_number(item[0])
            details = item[1]
            out = []
            for d in details:
                if isinstance(d, (list, tuple)):
                    parts = [str(p) if p is not None else "" for p in d] + ["", "", ""]
                    category, field, message = parts[0], parts[1], parts[2]
                    if len(d) == 1:
                        category, field, message = "", "", parts[0]
                    out.append(ValidationError(node, category, field, message))
                else:
                    out.append(ValidationError(node, message=str(d)))
            if not out:
                out.append(ValidationError(node, message="Unknown error"))
            return out
        return [ValidationError(None, message=" ".join(str(p) for p in item))]

    if isinstance(item, dict):
        node = _as_node_number(_first(item, _NODE_KEYS))
        category = str(_first(item, _CATEGORY_KEYS) or "")
        msgs = item.get("err_msgs")
        if isinstance(msgs, list) and msgs:
            out = []
            for m in msgs:
                if not isinstance(m, dict):
                    out.append(ValidationError(node, category, "", str(m)))
                    continue
                entry = m.get("field_entry")
                out.append(
                    ValidationError(
                        node,
                        str(_first(m, _CATEGORY_KEYS) or category),
                        str(_first(m, _FIELD_KEYS) or ""),
                        str(_first(m, _MESSAGE_KEYS) or ""),
                        None if entry is None else str(entry),
                    )
                )
            return out
        entry = item.get("field_entry", item.get("fieldEntry"))
        return [
            ValidationError(
                node,
                category,
                str(_first(item, _FIELD_KEYS) or ""),
                str(_first(item, _MESSAGE_KEYS) or ""),
                None if entry is None else str(entry),
            )
        ]

    return [ValidationError(None, message=str(item))]


def format_errors(errors: List[ValidationError]) -> List[str]:
    return [e.format() for e in errors]
