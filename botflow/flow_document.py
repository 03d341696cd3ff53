# botflow/flow_document.py

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from botflow.errors import SchemaError
from botflow.flow_csv import (
    COL,
    FIELD_COUNT,
    HEADER,
    format_row,
    is_header,
    split_records,
    tokenize,
)

KIND_DECISION = "decision"
KIND_ACTION = "action"

_KIND_CODES = {KIND_DECISION: "D", KIND_ACTION: "A"}
_KIND_BY_TEXT = {
    "d": KIND_DECISION,
    "decision": KIND_DECISION,
    "a": KIND_ACTION,
    "action": KIND_ACTION,
}

RICH_ASSET_TYPES = {
    "buttons", "button", "quick_reply", "listpicker", "carousel", "webview",
    "datepicker", "timepicker", "file_upload", "star_rating",
}

# Built into the platform, no script upload needed
SYSTEM_ACTION_NODES = {
    "SysAssignVariable",
    "SysMultiMatchRouting",
    "SysShowMetadata",
    "SysSetEnv",
    "SysVariableReset",
}

RECOMMENDED_SYSTEM_NODES = [-500, 666, 1800, 99990]
MAX_MESSAGE_CHARS = 200

# normalized key -> Node attribute
_ATTR_ALIASES = {
    "nodenumber": "number", "number": "number", "num": "number", "nodenum": "number", "id": "number",
    "nodetype": "kind", "type": "kind", "kind": "kind",
    "nodename": "name", "name": "name",
    "intent": "intent",
    "entitytype": "entity_type",
    "entity": "entity",
    "nludisabled": "nlu_disabled",
    "nextnodes": "next_nodes", "next": "next_nodes", "routing": "next_nodes",
    "message": "message",
    "richassettype": "rich_asset_type", "richtype": "rich_asset_type",
    "richassetcontent": "rich_asset_content", "richcontent": "rich_asset_content",
    "richasset": "rich_asset",
    "answerrequired": "answer_required", "ansreq": "answer_required",
    "behaviors": "behaviors", "behaviours": "behaviors",
    "command": "command",
    "description": "description",
    "output": "output",
    "nodeinput": "node_input",
    "parameterinput": "parameter_input", "paraminput": "parameter_input", "parameters": "parameter_input",
    "decisionvariable": "decision_variable", "decvar": "decision_variable",
    "whatnext": "what_next",
    "nodetags": "node_tags", "tags": "node_tags",
    "skilltag": "skill_tag",
    "variable": "variable",
    "platformflag": "platform_flag",
    "flows": "flows",
    "cssclassname": "css_classname",
}


def _norm_key(key) -> str:
    return re.sub(r"[^a-z0-9]", "", str(key).lower())


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        s = value.strip()
        if re.fullmatch(r"-?\d+", s):
            return int(s)
    return None


def _as_flag(value) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value).strip()


def _compact(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _maybe_json(text: str):
    s = (text or "").strip()
    if s[:1] in ("{", "["):
        try:
            return json.loads(s)
        except ValueError:
            return text
    return text


def parse_kind(value) -> Optional[str]:
    if value is None:
        return None
    return _KIND_BY_TEXT.get(str(value).strip().lower())


def parse_next_nodes(value) -> List[int]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(",")
    out: List[int] = []
    for item in items:
        n = _as_int(item)
        if n is not None:
            out.append(n)
    return out


def parse_what_next(value) -> Dict[str, int]:
    """
    `value~node|value~node` (or a mapping / pair list) -> ordered mapping.
    Pairs whose destination is not a node number are skipped.
    """
    if not value:
        return {}
    pairs: Iterable[Tuple[Any, Any]]
    if isinstance(value, dict):
        pairs = value.items()
    elif isinstance(value, (list, tuple)):
        pairs = [tuple(p) for p in value if isinstance(p, (list, tuple)) and len(p) == 2]
    else:
        pairs = []
        for part in str(value).split("|"):
            if "~" not in part:
                continue
            k, _, v = part.partition("~")
            pairs.append((k, v))  # type: ignore[union-attr]
    out: Dict[str, int] = {}
    for k, v in pairs:
        n = _as_int(v)
        if n is not None and str(k).strip():
            out[str(k).strip()] = n
    return out


@dataclass
class RichAsset:
    type: str
    content: Any = ""

    def content_text(self) -> str:
        return _compact(self.content)

    def destinations(self) -> List[int]:
        found: List[int] = []

        def walk(obj):
            if isinstance(obj, dict):
                for k, v in obj.items():
                    if str(k).lower() == "dest":
                        n = _as_int(v)
                        if n is not None:
                            found.append(n)
                    else:
                        walk(v)
            elif isinstance(obj, list):
                for v in obj:
                    walk(v)

        if isinstance(self.content, (dict, list)):
            walk(self.content)
        elif isinstance(self.content, str) and "~" in self.content:
            # pipe button format: label~dest|label~dest
            found.extend(parse_what_next(self.content).values())
        return found


@dataclass
class Node:
    number: int
    kind: str
    name: str
    intent: str = ""
    entity_type: str = ""
    entity: str = ""
    nlu_disabled: str = ""
    next_nodes: List[int] = field(default_factory=list)
    message: str = ""
    rich_asset: Optional[RichAsset] = None
    answer_required: str = ""
    behaviors: str = ""
    command: str = ""
    description: str = ""
    output: str = ""
    node_input: str = ""
    parameter_input: Any = ""
    decision_variable: str = ""
    what_next: Dict[str, int] = field(default_factory=dict)
    node_tags: str = ""
    skill_tag: str = ""
    variable: str = ""
    platform_flag: str = ""
    flows: str = ""
    css_classname: str = ""

    @property
    def kind_code(self) -> str:
        return _KIND_CODES.get(self.kind, "")

    def to_fields(self) -> List[str]:
        row = [""] * FIELD_COUNT
        row[COL["Node Number"]] = str(self.number)
        row[COL["Node Type"]] = self.kind_code
        row[COL["Node Name"]] = self.name or ""
        row[COL["Intent"]] = self.intent or ""
        row[COL["Entity Type"]] = self.entity_type or ""
        row[COL["Entity"]] = self.entity or ""
        row[COL["NLU Disabled?"]] = _as_flag(self.nlu_disabled)
        row[COL["Next Nodes"]] = ",".join(str(n) for n in self.next_nodes)
        row[COL["Message"]] = self.message or ""
        if self.rich_asset is not None:
            row[COL["Rich Asset Type"]] = self.rich_asset.type or ""
            row[COL["Rich Asset Content"]] = self.rich_asset.content_text()
        row[COL["Answer Required?"]] = _as_flag(self.answer_required)
        row[COL["Behaviors"]] = self.behaviors or ""
        row[COL["Command"]] = self.command or ""
        row[COL["Description"]] = self.description or ""
        row[COL["Output"]] = self.output or ""
        row[COL["Node Input"]] = self.node_input or ""
        row[COL["Parameter Input"]] = _compact(self.parameter_input)
        row[COL["Decision Variable"]] = self.decision_variable or ""
        row[COL["What Next?"]] = "|".join(f"{k}~{v}" for k, v in self.what_next.items())
        row[COL["Node Tags"]] = self.node_tags or ""
        row[COL["Skill Tag"]] = self.skill_tag or ""
        row[COL["Variable"]] = self.variable or ""
        row[COL["Platform Flag"]] = self.platform_flag or ""
        row[COL["Flows"]] = self.flows or ""
        row[COL["CSS Classname"]] = self.css_classname or ""
        return row

    def routing_targets(self) -> List[int]:
        targets = list(self.next_nodes) + list(self.what_next.values())
        if self.rich_asset is not None:
            targets.extend(self.rich_asset.destinations())
        seen = set()
        out = []
        for t in targets:
            if t not in seen:
                seen.add(t)
                out.append(t)
        return out

    @classmethod
    def from_fields(cls, fields: List[str]) -> "Node":
        f = list(fields) + [""] * (FIELD_COUNT - len(fields))
        number = _as_int(f[COL["Node Number"]])
        if number is None:
            raise SchemaError(f"Node Number is not an integer: {f[0]!r}")
        rich_type = f[COL["Rich Asset Type"]].strip()
        rich_content = f[COL["Rich Asset Content"]]
        rich = RichAsset(rich_type, _maybe_json(rich_content)) if (rich_type or rich_content.strip()) else None
        return cls(
            number=number,
            kind=parse_kind(f[COL["Node Type"]]) or "",
            name=f[COL["Node Name"]],
            intent=f[COL["Intent"]],
            entity_type=f[COL["Entity Type"]],
            entity=f[COL["Entity"]],
            nlu_disabled=f[COL["NLU Disabled?"]],
            next_nodes=parse_next_nodes(f[COL["Next Nodes"]]),
            message=f[COL["Message"]],
            rich_asset=rich,
            answer_required=f[COL["Answer Required?"]],
            behaviors=f[COL["Behaviors"]],
            command=f[COL["Command"]],
            description=f[COL["Description"]],
            output=f[COL["Output"]],
            node_input=f[COL["Node Input"]],
            parameter_input=_maybe_json(f[COL["Parameter Input"]]),
            decision_variable=f[COL["Decision Variable"]],
            what_next=parse_what_next(f[COL["What Next?"]]),
            node_tags=f[COL["Node Tags"]],
            skill_tag=f[COL["Skill Tag"]],
            variable=f[COL["Variable"]],
            platform_flag=f[COL["Platform Flag"]],
            flows=f[COL["Flows"]],
            css_classname=f[COL["CSS Classname"]],
        )

    @staticmethod
    def normalize_mapping(data: dict) -> dict:
        out: dict = {}
        for k, v in (data or {}).items():
            attr = _ATTR_ALIASES.get(_norm_key(k))
            if attr and attr not in out:
                out[attr] = v
        return out

    @classmethod
    def mapping_is_complete(cls, data) -> bool:
        """Identifier, kind and name must all be present and usable."""
        if not isinstance(data, dict):
            return False
        m = cls.normalize_mapping(data)
        return (
            _as_int(m.get("number")) is not None
            and parse_kind(m.get("kind")) is not None
            and bool(str(m.get("name") or "").strip())
        )

    @classmethod
    def from_mapping(cls, data: dict) -> "Node":
        m = cls.normalize_mapping(data)
        number = _as_int(m.get("number"))
        kind = parse_kind(m.get("kind"))
        if number is None or kind is None:
            raise SchemaError(f"Node mapping lacks a usable number/kind: {data!r}")

        rich = None
        if isinstance(m.get("rich_asset"), dict):
            ra = m["rich_asset"]
            rich = RichAsset(str(ra.get("type") or ""), ra.get("content", ""))
        elif m.get("rich_asset_type") or m.get("rich_asset_content"):
            content = m.get("rich_asset_content") or ""
            if isinstance(content, str):
                content = _maybe_json(content)
            rich = RichAsset(str(m.get("rich_asset_type") or ""), content)

        def s(key):
            v = m.get(key)
            return "" if v is None else str(v)

        return cls(
            number=number,
            kind=kind,
            name=s("name"),
            intent=s("intent"),
            entity_type=s("entity_type"),
            entity=s("entity"),
            nlu_disabled=_as_flag(m.get("nlu_disabled")),
            next_nodes=parse_next_nodes(m.get("next_nodes")),
            message=s("message"),
            rich_asset=rich,
            answer_required=_as_flag(m.get("answer_required")),
            behaviors=s("behaviors"),
            command=s("command"),
            description=s("description"),
            output=s("output"),
            node_input=s("node_input"),
            parameter_input=m.get("parameter_input") or "",
            decision_variable=s("decision_variable"),
            what_next=parse_what_next(m.get("what_next")),
            node_tags=s("node_tags"),
            skill_tag=s("skill_tag"),
            variable=s("variable"),
            platform_flag=s("platform_flag"),
            flows=s("flows"),
            css_classname=s("css_classname"),
        )


@dataclass
class DocumentRow:
    number: int
    fields: List[str]
    raw: str

    @classmethod
    def from_record(cls, record: str) -> "DocumentRow":
        fields = tokenize(record)
        if len(fields) != FIELD_COUNT:
            raise SchemaError(f"Expected {FIELD_COUNT} fields, found {len(fields)}: {record[:80]!r}")
        number = _as_int(fields[0])
        if number is None:
            raise SchemaError(f"Node Number is not an integer: {fields[0]!r}")
        return cls(number=number, fields=fields, raw=record)

    @classmethod
    def from_node(cls, node: Node) -> "DocumentRow":
        fields = node.to_fields()
        return cls(number=node.number, fields=fields, raw=format_row(fields))


class FlowDocument:
    """
    Ordered rows plus the fixed header.

    Rows are held in an arena keyed by node number; routing references are
    resolved by lookup when needed, never by position or construction order.
    Each row keeps its exact source text so untouched rows can be written back
    unchanged.
    """

    def __init__(self, rows: List[DocumentRow], header: str = HEADER):
        self.header = header
        self._order: List[int] = []
        self.rows_by_number: Dict[int, DocumentRow] = {}
        for row in rows:
            if row.number in self.rows_by_number:
                raise SchemaError(f"Duplicate node number: {row.number}")
            self.rows_by_number[row.number] = row
            self._order.append(row.number)

    # -----------------------
    # Construction
    # -----------------------

    @classmethod
    def from_nodes(cls, nodes: Iterable[Node]) -> "FlowDocument":
        return cls([DocumentRow.from_node(n) for n in nodes])

    @classmethod
    def from_text(cls, text: str) -> "FlowDocument":
        records = [r for r in split_records(text or "") if r.strip()]
        if not records or not is_header(records[0]):
            raise SchemaError("Document does not start with the expected header row")
        rows: List[DocumentRow] = []
        for i, record in enumerate(records[1:], start=2):
            try:
                rows.append(DocumentRow.from_record(record))
            except SchemaError as e:
                raise SchemaError(f"Row {i}: {e}") from e
        return cls(rows, header=records[0])

    def to_text(self) -> str:
        return "\n".join([self.header] + [self.rows_by_number[n].raw for n in self._order])

    # -----------------------
    # Lookup
    # -----------------------

    def __len__(self) -> int:
        return len(self._order)

    def numbers(self) -> List[int]:
        return list(self._order)

    def rows(self) -> List[DocumentRow]:
        return [self.rows_by_number[n] for n in self._order]

    def row(self, number: int) -> Optional[DocumentRow]:
        return self.rows_by_number.get(number)

    def index_of(self, number: int) -> int:
        return self._order.index(number)

    def neighbors(self, number: int) -> Tuple[Optional[int], Optional[int]]:
        idx = self.index_of(number)
        prev_n = self._order[idx - 1] if idx > 0 else None
        next_n = self._order[idx + 1] if idx + 1 < len(self._order) else None
        return prev_n, next_n

    def node(self, number: int) -> Node:
        row = self.rows_by_number[number]
        return Node.from_fields(row.fields)

    def nodes(self) -> List[Node]:
        return [self.node(n) for n in self._order]

    # -----------------------
    # Analysis
    # -----------------------

    def dangling_references(self) -> List[Tuple[int, int]]:
        known = set(self.rows_by_number)
        out = []
        for node in self.nodes():
            for target in node.routing_targets():
                if target not in known:
                    out.append((node.number, target))
        return out

    def stats(self) -> dict:
        decision = action = 0
        commands = set()
        system_commands = set()
        for row in self.rows():
            kind = parse_kind(row.fields[COL["Node Type"]])
            if kind == KIND_DECISION:
                decision += 1
            elif kind == KIND_ACTION:
                action += 1
                cmd = row.fields[COL["Command"]].strip()
                if cmd:
                    (system_commands if cmd in SYSTEM_ACTION_NODES else commands).add(cmd)
        return {
            "total_nodes": len(self),
            "decision_nodes": decision,
            "action_nodes": action,
            "commands": sorted(commands),
            "system_commands": sorted(system_commands),
        }

    def local_warnings(self) -> List[str]:
        warnings: List[str] = []
        for required in RECOMMENDED_SYSTEM_NODES:
            if required not in self.rows_by_number:
                warnings.append(f"Missing recommended system node: {required}")

        for number, target in self.dangling_references():
            warnings.append(f"Node {number}: routing reference \"{target}\" does not exist")

        for row in self.rows():
            f = row.fields
            kind = parse_kind(f[COL["Node Type"]])
            what_next = f[COL["What Next?"]]
            if kind == KIND_ACTION and "error" not in what_next.lower():
                warnings.append(f"Node {row.number} ({f[COL['Node Name']]}): What Next should include an error path")
            message = f[COL["Message"]]
            if message and re.search(r"[*=]", message):
                warnings.append(f"Node {row.number}: Message contains reserved characters (* or =)")
            if len(message) > MAX_MESSAGE_CHARS:
                warnings.append(f"Node {row.number}: Message is {len(message)} chars - consider splitting")
        return warnings
