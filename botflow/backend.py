# botflow/backend.py

import asyncio
import json
import logging
import traceback
from typing import Callable, List, Optional, Tuple

from botflow.base_utils import BaseUtils
from botflow.error_signatures import categorize_error, normalize_error_signature, signatures
from botflow.errors import ContentValidationError, InvalidRequestError, ParseError, SchemaError
from botflow.flow_csv import FIELD_COUNT, HEADER
from botflow.flow_document import MAX_MESSAGE_CHARS, FlowDocument
from botflow.prompts import GENERATE_PROMPT
from botflow.reference_lookup import ReferenceLookup
from botflow.repair_engine import NO_REPAIR, RepairEngine
from botflow.response_parser import parse_document
from botflow.row_fixes import apply_row_fixes
from botflow.settings import MAX_REFINE_ITERATIONS, REFERENCE_TEXT_CACHE
from botflow.validation_errors import normalize_errors
from botflow.validator_client import ValidatorClient
from botflow.version_manager import VersionManager, validate_artifact_id

logger = logging.getLogger("botflow_backend")


class Backend(BaseUtils):
    """
    Request handlers. Each handler takes the camelCase payload of one request
    and returns a plain dict. Typed errors from botflow.errors propagate to the
    transport, which maps them to status codes.
    """

    def __init__(
        self,
        validator: Optional[ValidatorClient] = None,
        reference: Optional[ReferenceLookup] = None,
        llm_factory: Optional[Callable[[dict], object]] = None,
    ):
        self._validator = validator
        self.reference = reference
        self._llm_factory = llm_factory or self._build_llm_for_payload

    @property
    def validator(self) -> ValidatorClient:
        if self._validator is None:
            self._validator = ValidatorClient()
        return self._validator

    @property
    def versions(self) -> VersionManager:
        return VersionManager(self.validator)

    def _process_request_data(self, request_data: dict) -> dict:
        """
        Dispatch one request by its `type`. Returns the response_data dict.
        """
        try:
            request_type = request_data.get("type")
            payload = request_data.get("payload") or {}

            try:
                preview = json.dumps(request_data, indent=2)[:2000]
            except (TypeError, ValueError):
                preview = str(request_data)[:2000]
            logger.debug(f"process_request request {preview}")

            response_data = {"status": "success", "message": ""}

            if request_type == "generate":
                response_data["data"] = self.handle_generate(payload)
            elif request_type == "refine":
                response_data["data"] = self.handle_refine(payload)
            elif request_type == "validate":
                response_data["data"] = self.handle_validate(payload)
            elif request_type == "publish":
                response_data["data"] = self.handle_publish(payload)
            elif request_type == "refine_loop":
                response_data["data"] = self.handle_refine_loop(payload)
            else:
                response_data["status"] = "error"
                response_data["message"] = f"Unknown request type: {request_type}"

            return response_data

        except Exception as e:
            logger.info(f"Error while processing request data: {e}")
            traceback.print_exc()
            raise

    # -----------------------
    # Helpers
    # -----------------------

    def _require_artifact_id(self, payload: dict) -> str:
        artifact_id = str(payload.get("artifactId") or "").strip()
        ok, err = validate_artifact_id(artifact_id)
        if not ok:
            raise InvalidRequestError(err)
        return artifact_id

    def _document_from_payload(self, payload: dict) -> FlowDocument:
        text = payload.get("document")
        if isinstance(text, list):
            return parse_document(text).document()
        return FlowDocument.from_text(text or "")

    def _reference_text(self, payload: dict) -> Tuple[str, List[str]]:
        warnings: List[str] = []
        parts = [REFERENCE_TEXT_CACHE.get(), self._coerce_field_to_str(payload.get("referenceMaterial"))]
        queries = payload.get("referenceQueries") or []
        if queries and self.reference is None:
            logger.warning(f"[Generate] {len(queries)} reference queries ignored: no reference service configured")
            warnings.append("Reference queries were ignored: no reference service is configured")
        elif queries:
            parts.extend(asyncio.run(self.reference.fetch_many(queries)))
        return "\n\n".join(p for p in parts if p) or "(none)", warnings

    def _scripts_from_payload(self, payload: dict) -> List[dict]:
        scripts = payload.get("scripts") or []
        if not isinstance(scripts, list):
            raise InvalidRequestError("scripts must be a list of {name, content} objects")
        for script in scripts:
            if not isinstance(script, dict) or not str(script.get("name") or "").strip() or "content" not in script:
                raise InvalidRequestError(f"Invalid script entry: {script!r}")
        return [{"name": str(s["name"]).strip(), "content": str(s["content"] or "")} for s in scripts]

    # -----------------------
    # Handlers
    # -----------------------

    def handle_generate(self, payload: dict) -> dict:
        reference_material, reference_warnings = self._reference_text(payload)
        prompt = self.unsafe_string_format(
            GENERATE_PROMPT,
            header=HEADER,
            field_count=FIELD_COUNT,
            max_message_chars=MAX_MESSAGE_CHARS,
            config=self._coerce_field_to_str(payload.get("config")),
            prior_answers=self._coerce_field_to_str(payload.get("priorAnswers")) or "(none)",
            reference_material=reference_material,
        )
        llm = self._llm_factory(payload)
        output = llm.invoke(prompt)

        result = parse_document(output)
        document = result.document()
        self.color_print(f"[Generate] {len(document)} nodes extracted by {result.strategy}", color="green")

        warnings = reference_warnings + list(result.extras.get("warnings") or []) + document.local_warnings()
        return {
            "document": document.to_text(),
            "warnings": warnings,
            "strategy": result.strategy,
            "nodeCount": len(document),
            "stats": document.stats(),
        }

    def handle_refine(self, payload: dict) -> dict:
        errors = normalize_errors(payload.get("errors"))
        if not errors:
            return {
                "document": payload.get("document") or "",
                "fixesMade": [],
                "stillBroken": [],
                "strategy": NO_REPAIR,
            }

        document = self._document_from_payload(payload)
        engine = RepairEngine(self._llm_factory(payload))
        result = engine.refine(
            document,
            errors,
            iteration=int(payload.get("iteration") or 1),
            known_fixes=payload.get("knownFixes"),
        )
        return {
            "document": result.document.to_text(),
            "fixesMade": result.fixes_made,
            "stillBroken": result.still_broken,
            "strategy": result.strategy,
            "warnings": result.warnings,
        }

    def handle_validate(self, payload: dict) -> dict:
        artifact_id = self._require_artifact_id(payload)
        document = self._document_from_payload(payload)
        resolved = self.versions.resolve_writable_version(
            artifact_id, document.to_text(), last_known_locked=payload.get("lastKnownLocked")
        )
        if resolved.accepted:
            return {"accepted": True, "versionId": resolved.version_id}
        return {
            "accepted": False,
            "versionId": resolved.version_id,
            "errors": [e.to_dict() for e in resolved.errors],
        }

    def handle_publish(self, payload: dict) -> dict:
        artifact_id = self._require_artifact_id(payload)
        document = self._document_from_payload(payload)
        scripts = self._scripts_from_payload(payload)
        result = self.versions.publish(
            artifact_id,
            document.to_text(),
            version_id=payload.get("versionId"),
            environment=payload.get("environment"),
            scripts=scripts,
        )
        out = {"success": result.success, "versionId": result.version_id, "deployed": result.deployed}
        if result.preview_locator:
            out["previewLocator"] = result.preview_locator
        if result.scripts_uploaded:
            out["scriptsUploaded"] = result.scripts_uploaded
        if result.errors:
            out["errors"] = [e.to_dict() for e in result.errors]

        supplied = {s["name"] for s in scripts}
        missing = [c for c in document.stats()["commands"] if c not in supplied]
        if missing:
            out["warnings"] = [f"No script supplied for custom command {c}" for c in missing]
        return out

    def handle_refine_loop(self, payload: dict) -> dict:
        artifact_id = self._require_artifact_id(payload)
        document = self._document_from_payload(payload)
        return self.validate_and_refine(
            document,
            artifact_id,
            llm=self._llm_factory(payload),
            max_iterations=int(payload.get("maxIterations") or MAX_REFINE_ITERATIONS),
            known_fixes=payload.get("knownFixes"),
        )

    # -----------------------
    # Validate / repair loop
    # -----------------------

    def validate_and_refine(
        self,
        document: FlowDocument,
        artifact_id: str,
        llm,
        max_iterations: int = MAX_REFINE_ITERATIONS,
        known_fixes=None,
    ) -> dict:
        """
        Validate, repair the rejected rows, validate again, until the
        validator accepts or `max_iterations` validations have run. Every
        iteration first applies the deterministic row fixes.

        When an iteration reports exactly the same error signatures as the one
        before, those signatures are marked unfixable and left out of further
        repairs. Two stuck iterations in a row end the loop.
        """
        engine = RepairEngine(llm)
        versions = self.versions

        fixes_made = []
        unfixable: set = set()
        previous: Optional[set] = None
        stuck_count = 0
        errors = []
        version_id = None
        iteration = 0

        for iteration in range(1, max_iterations + 1):
            document, row_fixes = apply_row_fixes(document)
            fixes_made.extend(f"Iteration {iteration}: {fix}" for fix in row_fixes)

            resolved = versions.resolve_writable_version(artifact_id, document.to_text())
            version_id = resolved.version_id
            try:
                resolved.raise_for_content()
            except ContentValidationError as e:
                errors = e.errors
            else:
                self.color_print(f"[Loop] accepted at iteration {iteration} ({version_id})", color="green")
                return {
                    "document": document.to_text(),
                    "accepted": True,
                    "iterations": iteration,
                    "maxIterationsReached": False,
                    "fixesMade": fixes_made,
                    "remainingErrors": [],
                    "versionId": version_id,
                }

            current = signatures(errors)
            if previous is not None and current == previous:
                stuck_count += 1
                unfixable |= current
                logger.warning(f"[Loop] iteration {iteration}: same {len(current)} error signature(s) as before")
                if stuck_count >= 2:
                    logger.warning("[Loop] stuck for two iterations, stopping")
                    break
            else:
                stuck_count = 0
            previous = current

            if iteration == max_iterations:
                break

            fixable = [e for e in errors if normalize_error_signature(e) not in unfixable]
            if not fixable:
                logger.info(f"[Loop] iteration {iteration}: every remaining error is marked unfixable")
                break

            try:
                result = engine.refine(document, fixable, iteration=iteration, known_fixes=known_fixes)
            except (ParseError, SchemaError) as e:
                logger.warning(f"[Loop] iteration {iteration}: repair failed: {e}")
                continue
            document = result.document
            fixes_made.extend(f"Iteration {iteration}: {fix}" for fix in result.fixes_made)

        remaining = []
        for e in errors:
            item = e.to_dict()
            item["errorType"] = categorize_error(e)
            item["unfixable"] = normalize_error_signature(e) in unfixable
            remaining.append(item)

        return {
            "document": document.to_text(),
            "accepted": False,
            "iterations": iteration,
            "maxIterationsReached": iteration >= max_iterations,
            "fixesMade": fixes_made,
            "remainingErrors": remaining,
            "versionId": version_id,
        }
