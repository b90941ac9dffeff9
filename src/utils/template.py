from __future__ import annotations

import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def render_template(template: str, variables: dict[str, Any], *, missing: str = "") -> str:
    """Render a {{var}} template; unknown keys become `missing`.

    Runs of blank lines left by empty variables are collapsed to one.
    """

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group("key"))
        if value is None:
            return missing
        return str(value)

    rendered = _VAR_RE.sub(_replace, template)
    return _BLANK_RUN_RE.sub("\n\n", rendered).strip() + "\n"
