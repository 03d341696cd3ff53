# botflow/base_utils.py


import json
import logging
import re
from collections import OrderedDict

import commentjson
import yaml
from json_repair import repair_json

from botflow.llm_client import LlmClient
from botflow.settings import DEFAULT_MODEL, LLM_TIMEOUT_SECONDS, PROJECT_ID, REGION


logger = logging.getLogger("botflow_backend")


class BaseUtils():
    llm_timeout = LLM_TIMEOUT_SECONDS

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value, indent=2)
        except TypeError:
            return str(value).strip()

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        it works differently from the standard "format" method as instead of looking for all the potential keys,
        looks only for the keys as passed in kwargs, so JSON braces inside prompts survive untouched.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            else:
                missing_keys.append(key)
                return match.group(0)  # Leave the placeholder unchanged

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.info(f"\033[93m\033[3mMissing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}\033[0m")
        return result

    def load_fault_tolerant_json(self, json_str, ensure_ordered=False):
        """
        Attempts to load a JSON-like string: commentjson first, then pyyaml over a
        sanitized copy, then json_repair.
        Raises ValueError when nothing yields a structured value.
        """
        def sanitize_json_string(input_str):
            """
            Escapes problematic characters inside string literals and drops
            // and /* */ comments so YAML can take over where JSON gives up.
            """
            def process_string_segment(match):
                content = match.group(1)
                content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
                content = re.sub(r'(?<!\\)\n', r'\\n', content)
                content = re.sub(r'(?<!\\)"', r'\"', content)
                return f'"{content}"'

            def remove_comments(input_str):
                return re.sub(r'//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)

            def sanitize_strings(input_str):
                return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', process_string_segment, input_str, flags=re.DOTALL)

            input_str = self.clean_triple_backticks(input_str)
            input_str = remove_comments(input_str)
            return sanitize_strings(input_str)

        def load_json(json_str, ensure_ordered):
            err, data = "", None
            try:
                if ensure_ordered:
                    data = commentjson.loads(self.clean_triple_backticks(json_str), object_pairs_hook=OrderedDict)
                else:
                    data = commentjson.loads(self.clean_triple_backticks(json_str))
                return data, ""
            except Exception as e:
                err = str(e)
                data = None
            try:
                data = yaml.safe_load(sanitize_json_string(json_str))
                if not isinstance(data, (dict, list)):
                    raise ValueError("load_fault_tolerant_json: YAML parsing did not yield an object.")
                return data, ""
            except Exception as e:
                err += "\n--\n" + str(e)
                data = None
            return data, err

        data, err = load_json(json_str, ensure_ordered)
        if isinstance(data, (dict, list)):
            return data
        repaired_json_str = repair_json(json_str)
        r_data, r_err = load_json(repaired_json_str, ensure_ordered)
        if isinstance(r_data, (dict, list)) and r_data:
            return r_data
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {r_err}")

    # -----------------------
    # LLM base plumbing
    # -----------------------

    def _detect_llm_model_in_payload(self, payload) -> str | None:
        if not isinstance(payload, dict):
            return None
        for key in ("model", "llm_model", "llmModel"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def _build_llm_for_model(self, model_name: str, timeout: float | None = None) -> LlmClient:
        """
        Build a per-request LLM instance for the given model name.
        """
        if not timeout:
            timeout = self.llm_timeout
        return LlmClient(
            model_name=model_name,
            vertex_project=PROJECT_ID,
            vertex_region=REGION,
            timeout=timeout
        )

    def _build_llm_for_payload(self, payload) -> LlmClient:
        model_name = self._detect_llm_model_in_payload(payload) or DEFAULT_MODEL
        return self._build_llm_for_model(model_name)
