# ens_assessment/base_utils.py


import json
import logging
import re
from collections import OrderedDict

import commentjson
import yaml
from json_repair import repair_json


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("ens_assessment")


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None, level=logging.INFO):
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
        logger.log(level, str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code or "")

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        if isinstance(value, bool):
            return "yes" if value else "no"
        if isinstance(value, (list, tuple)):
            return ", ".join(self._coerce_field_to_str(v) for v in value if v is not None)
        try:
            return json.dumps(value)
        except TypeError:
            return str(value).strip()

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Replaces {key} placeholders only for the keys passed in kwargs.
        Unknown placeholders (e.g. literal JSON braces in a prompt) are left untouched.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            missing_keys.append(key)
            return match.group(0)

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"Missing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}")
        return result

    # -----------------------
    # Fault tolerant JSON
    # -----------------------

    def load_fault_tolerant_json(self, json_str, ensure_ordered=False, llm=None):
        """
        Loads a JSON-like string produced by an LLM.

        Tries, in order: commentjson, YAML on a sanitized copy, json_repair,
        and finally (if an llm is given) asks the model to fix its own output.
        Raises ValueError when nothing yields a dict/list.
        """
        def sanitize_json_string(input_str):
            def process_string_segment(match):
                content = match.group(1)
                content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
                content = re.sub(r'(?<!\\)\n', r'\\n', content)
                return f'"{content}"'

            def remove_comments(input_str):
                return re.sub(r'//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)

            input_str = self.clean_triple_backticks(input_str)
            input_str = remove_comments(input_str)
            return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', process_string_segment, input_str, flags=re.DOTALL)

        def load_json(json_str):
            err, data = "", None
            try:
                if ensure_ordered:
                    data = commentjson.loads(self.clean_triple_backticks(json_str), object_pairs_hook=OrderedDict)
                else:
                    data = commentjson.loads(self.clean_triple_backticks(json_str))
                if isinstance(data, (dict, list)):
                    return data, ""
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(sanitize_json_string(json_str))
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nYAML parsing did not produce an object"
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        data, err = load_json(json_str or "")
        if data is not None:
            return data

        repaired_json_str = repair_json(self.clean_triple_backticks(json_str or ""))
        r_data, r_err = load_json(repaired_json_str)
        if r_data is not None:
            return r_data

        self.color_print(f"load_fault_tolerant_json: JSON parsing failed: {r_err}. Trying LLM recovery...", color="red", level=logging.WARNING)
        if llm:
            prompt = (
                "I encountered an issue while parsing the following JSON data:\n"
                f"```\n{json_str}\n```\n"
                f"The error message was: {r_err}\n"
                "Return the corrected JSON and nothing else."
            )
            r_data, r_err = load_json(llm.invoke(prompt))
            if r_data is not None:
                return r_data
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {r_err}\n- Original JSON: {json_str}")
