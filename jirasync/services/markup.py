"""GitHub Markdown to Jira wiki markup conversion"""

import re
from typing import List, Optional

_FENCE_RE = re.compile(r"^\s*(```|~~~)\s*([\w+#.-]*)\s*$")
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_HR_RE = re.compile(r"^\s*([-*_])(?:\s*\1){2,}\s*$")
_QUOTE_RE = re.compile(r"^\s*>\s?(.*)$")
_BULLET_RE = re.compile(r"^(\s*)[-*+]\s+(.*)$")
_NUMBERED_RE = re.compile(r"^(\s*)\d+[.)]\s+(.*)$")
_TABLE_SEP_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")

_CODE_SPAN_RE = re.compile(r"(`+)(.+?)\1")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_BOLD_RE = re.compile(r"\*\*(?=\S)(.+?)(?<=\S)\*\*|(?<!\w)__(?=\S)(.+?)(?<=\S)__(?!\w)")
_ITALIC_RE = re.compile(r"(?<![\w*])\*(?=\S)(.+?)(?<=\S)\*(?![\w*])")
_STRIKE_RE = re.compile(r"~~(?=\S)(.+?)(?<=\S)~~")
_PLACEHOLDER_RE = re.compile("\x00(\\d+)\x00")


def _emphasis(text: str) -> str:
    text = _ITALIC_RE.sub(r"_\1_", text)
    return _STRIKE_RE.sub(r"-\1-", text)


def _inline(text: str) -> str:
    stash: List[str] = []

    def keep(value: str) -> str:
        stash.append(value)
        return f"\x00{len(stash) - 1}\x00"

    text = _CODE_SPAN_RE.sub(lambda m: keep("{{" + m.group(2).strip() + "}}"), text)
    text = _IMAGE_RE.sub(lambda m: keep(f"!{m.group(2)}!"), text)
    text = _LINK_RE.sub(lambda m: keep(f"[{m.group(1)}|{m.group(2)}]"), text)
    text = _BOLD_RE.sub(lambda m: keep("*" + _emphasis(m.group(1) or m.group(2)) + "*"), text)
    text = _emphasis(text)

    # Stashed values may themselves hold placeholders (a link inside bold text).
    while True:
        restored = _PLACEHOLDER_RE.sub(lambda m: stash[int(m.group(1))], text)
        if restored == text:
            return restored
        text = restored


def _list_depth(indent: str) -> int:
    return len(indent.replace("\t", "  ")) // 2 + 1


def _table_header(row: str) -> Optional[str]:
    stripped = row.strip()
    if not stripped.startswith("|"):
        return None
    cells = [c.strip() for c in stripped.strip("|").split("|")]
    return "||" + "||".join(cells) + "||"


def markdown_to_jira(text: Optional[str]) -> str:
    """Convert GitHub-flavoured Markdown into Jira wiki markup.

    Fenced code blocks are emitted verbatim inside ``{code}`` macros; everything
    else is converted line by line.
    """
    if not text:
        return ""

    out: List[str] = []
    in_code = False
    for line in text.replace("\r\n", "\n").split("\n"):
        fence = _FENCE_RE.match(line)
        if fence:
            if in_code:
                out.append("{code}")
            else:
                lang = fence.group(2)
                out.append(f"{{code:{lang}}}" if lang else "{code}")
            in_code = not in_code
            continue
        if in_code:
            out.append(line)
            continue

        if _TABLE_SEP_RE.match(line) and "|" in line and out:
            header = _table_header(out[-1])
            if header is not None:
                out[-1] = header
                continue

        m = _HEADING_RE.match(line)
        if m:
            out.append(f"h{len(m.group(1))}. {_inline(m.group(2))}")
            continue
        if _HR_RE.match(line):
            out.append("----")
            continue
        m = _QUOTE_RE.match(line)
        if m:
            out.append(f"bq. {_inline(m.group(1))}")
            continue
        m = _BULLET_RE.match(line)
        if m:
            out.append("*" * _list_depth(m.group(1)) + " " + _inline(m.group(2)))
            continue
        m = _NUMBERED_RE.match(line)
        if m:
            out.append("#" * _list_depth(m.group(1)) + " " + _inline(m.group(2)))
            continue
        out.append(_inline(line))

    if in_code:
        out.append("{code}")
    return "\n".join(out)
