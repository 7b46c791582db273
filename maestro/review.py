"""Review artifact parsing.

The reviewer writes ``REVIEW.md`` with a ``STATUS: PASS`` or
``STATUS: FAIL`` line. Anything else is ``PENDING``: a missing or
unparseable review is never read as acceptance.
"""

import re
from pathlib import Path
from typing import List, Optional, Tuple

from .models import ReviewVerdict

# Tolerates markdown emphasis around the label, e.g. "**STATUS:** FAIL"
STATUS_PATTERN = re.compile(r"STATUS:(?:\*\*|__)?[ \t]*(?:\*\*|__)?(PASS|FAIL)\b")
FORCED_SUFFIX = " (forced)"

_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.*)$")
_BULLET = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.*\S)\s*$")
_UNCHECKED = re.compile(r"^\s*[-*+]\s+\[ \]\s+(.*\S)\s*$")
_ISSUE_HEADINGS = re.compile(r"issue|finding|blocker|problem|required|fix", re.IGNORECASE)


def parse_review_status(text: Optional[str]) -> ReviewVerdict:
    """Extract the verdict from review text. FAIL wins over PASS."""
    if not text:
        return ReviewVerdict.PENDING
    tokens = {match.group(1) for match in STATUS_PATTERN.finditer(text)}
    if "FAIL" in tokens:
        return ReviewVerdict.FAIL
    if "PASS" in tokens:
        return ReviewVerdict.PASS
    return ReviewVerdict.PENDING


def read_review_status(path: Path) -> ReviewVerdict:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
        return ReviewVerdict.PENDING
    return parse_review_status(text)


def force_pass(text: str) -> Tuple[str, int]:
    """Rewrite every FAIL status token to ``PASS (forced)``.

    Returns the new text and the number of tokens rewritten.
    """
    rewritten = 0

    def _replace(match: "re.Match[str]") -> str:
        nonlocal rewritten
        if match.group(1) != "FAIL":
            return match.group(0)
        rewritten += 1
        prefix = match.group(0)[: match.start(1) - match.start(0)]
        return prefix + "PASS" + FORCED_SUFFIX

    return STATUS_PATTERN.sub(_replace, text), rewritten


def extract_issues(text: Optional[str]) -> List[str]:
    """List the unresolved issues a review reports.

    Bullets under headings that look like an issue list are preferred;
    otherwise unchecked task-list items are returned.
    """
    if not text:
        return []

    issues: List[str] = []
    in_issue_section = False
    for line in text.splitlines():
        heading = _HEADING.match(line)
        if heading:
            in_issue_section = bool(_ISSUE_HEADINGS.search(heading.group(1)))
            continue
        if in_issue_section:
            bullet = _BULLET.match(line)
            if bullet:
                issues.append(bullet.group(1))

    if issues:
        return issues
    return [match.group(1) for match in map(_UNCHECKED.match, text.splitlines()) if match]
