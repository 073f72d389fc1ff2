"""
Fix templates: a before/after pair generalised so it can be replayed on other
code with the same shape.

Identifiers and literals of the *before* snippet become numbered
placeholders; wherever the *after* text reuses one of them it refers to the
placeholder instead. Replaying a template tokenises the target snippet,
requires every fixed token to match and binds the placeholders.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import structlog

from codemend.remediation.patch import leading_indent
from codemend.scanner.fingerprint import is_placeholder_token, tokenize

logger = structlog.get_logger()

TEMPLATE_VERSION = 1


def _base_indent(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return leading_indent(line)
    return ""


def _strip_indent(text: str, indent: str) -> str:
    if not indent:
        return text
    out = []
    for line in text.splitlines(keepends=True):
        if line.startswith(indent):
            out.append(line[len(indent):])
        else:
            out.append(line.lstrip(" \t") if line.strip() else line)
    return "".join(out)


def _add_indent(text: str, indent: str) -> str:
    if not indent:
        return text
    return "".join(indent + line if line.strip() else line for line in text.splitlines(keepends=True))


def _kind_group(kind: str) -> str:
    return "name" if kind == "name" else "literal"


def generalize(before: str, after: str, imports: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    """Builds a template from a concrete fix. Returns None for an empty before snippet."""
    indent = _base_indent(before)
    before_body = _strip_indent(before, indent)
    after_body = _strip_indent(after, indent)

    tokens = tokenize(before_body)
    if not tokens:
        return None
    placeholders: Dict[str, int] = {}
    shape: List[List[Any]] = []
    for token in tokens:
        if is_placeholder_token(token):
            index = placeholders.setdefault(token.text, len(placeholders))
            shape.append(["p", index, _kind_group(token.kind)])
        else:
            shape.append(["f", token.text])

    segments: List[List[Any]] = []
    cursor = 0

    def literal(text: str) -> None:
        if not text:
            return
        if segments and segments[-1][0] == "t":
            segments[-1][1] += text
        else:
            segments.append(["t", text])

    for token in tokenize(after_body):
        literal(after_body[cursor:token.start])
        if is_placeholder_token(token) and token.text in placeholders:
            segments.append(["p", placeholders[token.text]])
        else:
            literal(token.text)
        cursor = token.end
    literal(after_body[cursor:])

    return {
        "version": TEMPLATE_VERSION,
        "shape": shape,
        "after": segments,
        "imports": list(imports),
        "placeholders": len(placeholders),
    }


def bind(template: Dict[str, Any], snippet: str) -> Optional[Dict[int, str]]:
    """Matches ``snippet`` against the template's before shape and returns the placeholder bindings."""
    shape = template.get("shape") or []
    tokens = tokenize(_strip_indent(snippet, _base_indent(snippet)))
    if len(tokens) != len(shape):
        return None
    bindings: Dict[int, str] = {}
    for token, element in zip(tokens, shape):
        if element[0] == "f":
            if token.text != element[1] or is_placeholder_token(token):
                return None
            continue
        index, group = element[1], element[2]
        if not is_placeholder_token(token) or _kind_group(token.kind) != group:
            return None
        if bindings.setdefault(index, token.text) != token.text:
            return None
    return bindings


def instantiate(template: Dict[str, Any], snippet: str) -> Optional[str]:
    """Renders the template's after text for ``snippet``, or None when the shapes differ."""
    if template.get("version") != TEMPLATE_VERSION:
        return None
    bindings = bind(template, snippet)
    if bindings is None:
        return None
    parts = []
    for segment in template.get("after") or []:
        if segment[0] == "t":
            parts.append(segment[1])
        else:
            value = bindings.get(segment[1])
            if value is None:
                return None
            parts.append(value)
    rendered = _add_indent("".join(parts), _base_indent(snippet))
    if snippet.endswith("\n") and rendered and not rendered.endswith("\n"):
        rendered += "\n"
    return rendered


def matches(template: Dict[str, Any], snippet: str) -> bool:
    return bind(template, snippet) is not None
