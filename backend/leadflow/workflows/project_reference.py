# /leadflow/workflows/project_reference.py

"""
Derives a project name from a shared property link, e.g.
https://example.com/properties/marina-heights-tower -> "Marina Heights Tower".
"""

import re
from typing import NamedTuple, Optional
from urllib.parse import urlsplit

_URL = re.compile(r"https?://[^\s]+", re.IGNORECASE)
_WORD_START = re.compile(r"\b\w")

PROPERTIES_SEGMENT = "properties"


class ProjectReference(NamedTuple):
    """page_url is the matched property link only, not the surrounding message text."""
    project_name: str
    page_url: str


def slug_to_title(slug: str) -> str:
    # Upper-cases the first character of each word and leaves the rest alone
    return _WORD_START.sub(lambda m: m.group(0).upper(), slug.replace("-", " ")).strip()


def extract_project_reference(text: Optional[str]) -> Optional[ProjectReference]:
    if not text or "http" not in text.lower():
        return None

    for url in _URL.findall(text):
        url = url.rstrip(".,;:!?)")
        try:
            path = urlsplit(url).path
        except ValueError:
            continue
        parts = [p for p in path.split("/") if p]
        if PROPERTIES_SEGMENT not in parts:
            continue
        index = parts.index(PROPERTIES_SEGMENT)
        if index + 1 < len(parts):
            name = slug_to_title(parts[index + 1])
            if name:
                return ProjectReference(project_name=name, page_url=url)
    return None
