# /leadflow/workflows/renderer.py

import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(text: str, values: Mapping[str, Any]) -> str:
    """
    Substitutes {{placeholder}} tokens (case-insensitive) from `values`.
    Missing or empty values, and unknown placeholders, render as "".
    """
    if not text:
        return ""

    def _substitute(match: re.Match) -> str:
        value = values.get(match.group(1).lower())
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_substitute, text)
