# botflow/repair_engine.py

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from botflow.base_utils import BaseUtils
from botflow.error_signatures import format_errors_for_prompt, format_known_fixes_for_prompt
from botflow.flow_csv import FIELD_COUNT, HEADER
from botflow.flow_document import DocumentRow, FlowDocument
from botflow.prompts import REPAIR_DOCUMENT_PROMPT, REPAIR_ROWS_PROMPT
from botflow.response_parser import parse_rows
from botflow.validation_errors import ValidationError, normalize_errors

logger = logging.getLogger("botflow_backend")

ROW_LEVEL = "row_level"
FULL_DOCUMENT = "full_document"
NO_REPAIR = "none"

# broken/total at or below this ratio sends only the broken rows
ROW_LEVEL_RATIO = 0.5


@dataclass
class RepairPlan:
    broken: List[int]
    context: List[int]
    strategy: str
    ratio: float

    @property
    def selected(self) -> Set[int]:
        return set(self.broken) | set(self.context)


@dataclass
class RefinementResult:
    document: FlowDocument
    fixes_made: List[str] = field(default_factory=list)
    still_broken: List[int] = field(default_factory=list)
    strategy: str = NO_REPAIR
    warnings: List[str] = field(default_factory=list)


def plan(document: FlowDocument, errors: List[ValidationError], ratio_threshold: float = ROW_LEVEL_RATIO) -> RepairPlan:
    """
    Broken rows are the rows named by the errors; context rows are the
    direct neighbours of a broken row that are not broken themselves.
    Errors without a node number, or naming a node the document does not
    have, cannot be patched row by row and are left out.
    """
    addressed = {e.node_number for e in errors if e.is_row_addressed}
    broken = [n for n in document.numbers() if n in addressed]
    broken_set = set(broken)

    context: List[int] = []
    for n in broken:
        for neighbor in document.neighbors(n):
            if neighbor is not None and neighbor not in broken_set and neighbor not in context:
                context.append(neighbor)
    order = {n: i for i, n in enumerate(document.numbers())}
    context.sort(key=lambda n: order[n])

    total = len(document)
    ratio = (len(broken) / total) if total else 0.0
    if not broken:
        strategy = NO_REPAIR
    elif ratio <= ratio_threshold:
        strategy = ROW_LEVEL
    else:
        strategy = FULL_DOCUMENT
    return RepairPlan(broken, context, strategy, ratio)


def splice(
    document: FlowDocument,
    patch: Iterable[DocumentRow],
    allowed: Iterable[int],
) -> Tuple[FlowDocument, List[int], List[str]]:
    """
    Fresh copy of `document` where rows in `allowed` are replaced by the
    patch row with the same number. Patch rows for any other number are
    dropped; when a number repeats, the last row wins. Returns the new
    document, the numbers replaced and the warnings raised.
    """
    allowed_set = set(allowed)
    replacements: Dict[int, DocumentRow] = {}
    warnings: List[str] = []

    for row in patch:
        if row.number not in allowed_set:
            warnings.append(f"Ignored patch row for node {row.number}: it was not marked for repair")
            continue
        if row.number in replacements:
            logger.warning(f"[Repair] patch repeats node {row.number}; keeping the last occurrence")
            warnings.append(f"Patch contained node {row.number} more than once; used the last one")
        replacements[row.number] = row

    rows = []
    for n in document.numbers():
        source = replacements.get(n) or document.row(n)
        rows.append(DocumentRow(source.number, list(source.fields), source.raw))

    replaced = [n for n in document.numbers() if n in replacements]
    return FlowDocument(rows, header=document.header), replaced, warnings


class RepairEngine(BaseUtils):
    """
    Repairs the rows a validator rejected and splices them back into an
    untouched copy of the document. The collaborator only needs
    `invoke(prompt) -> str`.
    """

    def __init__(self, llm, ratio_threshold: float = ROW_LEVEL_RATIO):
        self.llm = llm
        self.ratio_threshold = ratio_threshold

    def build_prompt(
        self,
        document: FlowDocument,
        errors: List[ValidationError],
        repair_plan: RepairPlan,
        known_fixes=None,
    ) -> str:
        relevant = [e for e in errors if e.node_number in set(repair_plan.broken)]
        fixes_text = format_known_fixes_for_prompt(known_fixes)
        common = dict(
            header=HEADER,
            field_count=FIELD_COUNT,
            errors=format_errors_for_prompt(relevant),
            known_fixes=fixes_text,
        )
        if repair_plan.strategy == ROW_LEVEL:
            return self.unsafe_string_format(
                REPAIR_ROWS_PROMPT,
                broken_rows="\n".join(document.row(n).raw for n in repair_plan.broken),
                context_rows="\n".join(document.row(n).raw for n in repair_plan.context) or "(none)",
                **common,
            )
        return self.unsafe_string_format(REPAIR_DOCUMENT_PROMPT, document=document.to_text(), **common)

    def refine(
        self,
        document: FlowDocument,
        errors,
        iteration: int = 1,
        known_fixes=None,
    ) -> RefinementResult:
        errors = normalize_errors(errors) if errors else []
        if not errors:
            return RefinementResult(document)

        repair_plan = plan(document, errors, self.ratio_threshold)
        if repair_plan.strategy == NO_REPAIR:
            logger.info(f"[Repair] iteration {iteration}: no error addresses a row of the document; nothing to patch")
            return RefinementResult(document, warnings=["No row-addressed errors to repair"])

        self.color_print(
            f"[Repair] iteration {iteration}: {len(repair_plan.broken)}/{len(document)} rows broken "
            f"(ratio {repair_plan.ratio:.2f}) -> {repair_plan.strategy}",
            color="cyan",
        )

        prompt = self.build_prompt(document, errors, repair_plan, known_fixes)
        response = self.llm.invoke(prompt)

        parsed = parse_rows(response)
        if not parsed.ok:
            logger.warning(f"[Repair] iteration {iteration}: response had no usable rows ({parsed.reason})")
            return RefinementResult(
                document,
                still_broken=list(repair_plan.broken),
                strategy=repair_plan.strategy,
                warnings=[f"Repair response could not be parsed: {parsed.reason}"],
            )

        repaired, replaced, warnings = splice(document, parsed.rows(), repair_plan.broken)
        still_broken = [n for n in repair_plan.broken if n not in set(replaced)]
        fixes_made = [f"Node {n}: row replaced" for n in replaced]

        extra_notes = parsed.extras.get("fixesMade")
        if isinstance(extra_notes, list):
            warnings.extend(f"Model note: {note}" for note in extra_notes if isinstance(note, str))

        logger.info(
            f"[Repair] iteration {iteration}: replaced {replaced or 'nothing'}; still broken {still_broken or 'nothing'}"
        )
        return RefinementResult(repaired, fixes_made, still_broken, repair_plan.strategy, warnings)
