"""
Placeholder substitution for reply templates.

``{{ Name }}`` is replaced by ``str(context["Name"])``; unknown or ``None``
values render as an empty string. Single pass, no escaping.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

_PLACEHOLDER_RE = re.compile(r"{{\s*(\w+)\s*}}")


def render(template: str, context: Mapping[str, Any]) -> str:
    def _sub(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        if value is None:
            return ""
        return str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)
