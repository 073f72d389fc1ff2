"""
Stable identities for detected issues.

An issue's *fingerprint* keeps identifiers and abstracts literals, so the same
defect survives edits to unrelated lines and string contents. The *pattern key*
abstracts identifiers too and is shared by every occurrence of the same defect
shape across the codebase; learned fix templates are stored under it.
"""
from __future__ import annotations

import builtins
import hashlib
import keyword
import re
from collections import OrderedDict
from typing import Dict, Iterable, List, NamedTuple

from pydantic import BaseModel

from codemend.models import DetectedIssue

_TOKEN_RE = re.compile(
    r"""
    (?P<comment>\#[^\n]*)
  | (?P<string>(?:[rRbBuUfF]{1,2})?(?:\"\"\"[\s\S]*?\"\"\"|'''[\s\S]*?'''|"(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*'))
  | (?P<number>\b\d[\d_]*(?:\.\d*)?(?:[eE][+-]?\d+)?[jJ]?\b|\.\d+\b)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>\*\*=?|//=?|->|:=|==|!=|<=|>=|<<=?|>>=?|[-+*/%&|^@]=|\S)
    """,
    re.VERBOSE,
)

# Names that carry meaning on their own and are never abstracted.
RESERVED_NAMES = frozenset(keyword.kwlist) | frozenset(getattr(keyword, "softkwlist", [])) | frozenset(dir(builtins))


class Token(NamedTuple):
    kind: str
    text: str
    start: int
    end: int


class Finding(BaseModel):
    """A detected issue with its identity keys and the number of locations sharing them."""

    detected: DetectedIssue
    fingerprint: str
    pattern_key: str
    occurrences: int = 1


def tokenize(source: str) -> List[Token]:
    tokens = []
    for match in _TOKEN_RE.finditer(source):
        kind = match.lastgroup
        if kind == "comment":
            continue
        tokens.append(Token(kind, match.group(), match.start(), match.end()))
    return tokens


def is_placeholder_token(token: Token) -> bool:
    if token.kind in ("string", "number"):
        return True
    return token.kind == "name" and token.text not in RESERVED_NAMES


def code_shape(snippet: str, abstract_identifiers: bool = False) -> str:
    parts = []
    for token in tokenize(snippet):
        if token.kind in ("string", "number"):
            parts.append("LIT")
        elif abstract_identifiers and is_placeholder_token(token):
            parts.append("ID")
        else:
            parts.append(token.text)
    return " ".join(parts)


def normalize_message(message: str) -> str:
    message = re.sub(r"\b\d+\b", "N", message)
    return " ".join(message.lower().split())


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def fingerprint(issue: DetectedIssue) -> str:
    return _digest(
        issue.rule_id,
        issue.category.value,
        normalize_message(issue.message),
        issue.scope,
        code_shape(issue.snippet),
    )


def pattern_key(issue: DetectedIssue) -> str:
    # Rules whose fix depends on more than the code shape say so in a pattern hint.
    hint = str(issue.extra.get("pattern_hint", ""))
    return _digest(issue.rule_id, issue.category.value, code_shape(issue.snippet, abstract_identifiers=True), hint)


def fingerprint_issues(detected: Iterable[DetectedIssue]) -> List[Finding]:
    """Groups raw detections by fingerprint; the first location wins, the rest count as occurrences."""
    grouped: "OrderedDict[str, Finding]" = OrderedDict()
    for issue in detected:
        key = fingerprint(issue)
        if key in grouped:
            grouped[key].occurrences += 1
        else:
            grouped[key] = Finding(detected=issue, fingerprint=key, pattern_key=pattern_key(issue))
    return list(grouped.values())


def occurrence_counts(findings: Iterable[Finding]) -> Dict[str, int]:
    return {f.fingerprint: f.occurrences for f in findings}
