from __future__ import annotations

import re


def _heading_re(heading: str, *, exact: bool) -> re.Pattern[str]:
    tail = r"[ \t]*$" if exact else r"[^\n]*$"
    return re.compile(rf"^##[ \t]*{re.escape(heading)}{tail}", re.IGNORECASE | re.MULTILINE)


_NEXT_HEADING_RE = re.compile(r"^##[ \t]", re.MULTILINE)


def extract_section(body: str, heading: str) -> str:
    """Content under the first `## <heading>...` line, up to the next `## ` heading.

    The heading matches by prefix, so "Acceptance criteria" also finds
    "## Acceptance criteria (UI-only)".
    """
    text = body or ""
    m = _heading_re(heading, exact=False).search(text)
    if m is None:
        return ""
    rest = text[m.end() :]
    nxt = _NEXT_HEADING_RE.search(rest)
    return (rest[: nxt.start()] if nxt else rest).strip()


def upsert_section(body: str, heading: str, content: str) -> str:
    """Replace the content of `## <heading>` (exact match) or append the section."""
    text = (body or "").rstrip()
    section = f"## {heading}\n\n{content.strip()}\n"
    m = _heading_re(heading, exact=True).search(text)
    if m is None:
        return f"{text}\n\n{section}" if text else section
    rest = text[m.end() :]
    nxt = _NEXT_HEADING_RE.search(rest)
    tail = rest[nxt.start() :] if nxt else ""
    head = text[: m.start()]
    out = head + section
    if tail:
        out += "\n" + tail.rstrip() + "\n"
    return out
