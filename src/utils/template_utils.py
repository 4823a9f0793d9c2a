import json
import re
from typing import Any, Dict

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_template(text: str, variables: Dict[str, Any]) -> str:
    """
    Replace {{name}} placeholders with values from variables.
    Unknown placeholders are left untouched so missing data stays visible.
    """
    if not text:
        return text or ""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return _stringify(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def render_object(value: Any, variables: Dict[str, Any]) -> Any:
    """Apply render_template to every string inside a dict/list structure."""
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, list):
        return [render_object(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: render_object(item, variables) for key, item in value.items()}
    return value
