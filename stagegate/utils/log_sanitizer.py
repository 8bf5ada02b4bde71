"""
Helpers for writing caller-supplied text to logs.

Commit messages, image references and run ids arrive from CI and operators.
They are flattened to one printable line before being logged so a crafted
value cannot forge extra log entries.
"""

import re
from typing import Any

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]+")
_IDENTIFIER_REJECT = re.compile(r"[^a-zA-Z0-9_.:-]")


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Flatten ``value`` to a single printable line of at most ``max_length``
    characters, plus an ellipsis when truncated.
    """
    text = _CONTROL_CHARS.sub(" ", str(value)).strip()
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}..."


def sanitize_identifier(identifier: str, max_length: int = 64) -> str:
    """Keep only the characters run ids, commit shas and revision refs use."""
    return _IDENTIFIER_REJECT.sub("", identifier)[:max_length]
