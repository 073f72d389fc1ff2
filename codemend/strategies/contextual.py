"""
Rule-specific fixers that write code the way the surrounding module does.

Each fixer receives the current file content and the located span of the
issue snippet and returns the replacement text for that span.
"""
from __future__ import annotations

import ast
import re
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import structlog

from codemend.detectors.python_detector import is_mutable_default, params_with_defaults
from codemend.models import Issue
from codemend.remediation.patch import detect_newline, leading_indent, locate_snippet, snippet_candidate
from codemend.scanner.fingerprint import tokenize
from codemend.strategies.base import BaseStrategy, Proposal, StrategyContext
from codemend.strategies.conventions import ModuleConventions, analyze

logger = structlog.get_logger()

MIXED_INDENT_PENALTY = 0.1

BASE_CONFIDENCE: Dict[str, float] = {
    "null-dereference": 0.72,
    "none-comparison": 0.9,
    "bare-except": 0.85,
    "mutable-default-arg": 0.75,
    "unused-import": 0.8,
}

_BARE_EXCEPT_RE = re.compile(r"^(\s*)except\s*:")
_HOIST_BLOCKERS = (ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp, ast.BoolOp, ast.IfExp)


class Fix(NamedTuple):
    after: str
    imports: List[str]
    description: str


Span = Tuple[int, int]
Fixer = Callable[[Issue, str, Span, ModuleConventions], Optional[Fix]]


def _char_col(text: str, byte_col: int) -> int:
    """ast offsets count UTF-8 bytes."""
    return len(text.encode("utf-8")[:byte_col].decode("utf-8", errors="ignore"))


def _span_lines(content: str, span: Span) -> List[str]:
    return content.splitlines(keepends=True)[span[0] - 1:span[1]]


def fix_none_comparison(issue: Issue, content: str, span: Span, conventions: ModuleConventions) -> Optional[Fix]:
    snippet = "".join(_span_lines(content, span))
    tokens = tokenize(snippet)
    edits = []
    for index, token in enumerate(tokens):
        if token.kind != "op" or token.text not in ("==", "!="):
            continue
        neighbours = tokens[index - 1:index] + tokens[index + 1:index + 2]
        if any(n.text == "None" for n in neighbours):
            edits.append((token.start, token.end, "is" if token.text == "==" else "is not"))
    if not edits:
        return None
    for start, end, replacement in reversed(edits):
        snippet = snippet[:start] + replacement + snippet[end:]
    return Fix(snippet, [], "Compare to None by identity")


def fix_bare_except(issue: Issue, content: str, span: Span, conventions: ModuleConventions) -> Optional[Fix]:
    lines = _span_lines(content, span)
    if not lines or not _BARE_EXCEPT_RE.match(lines[0]):
        return None
    lines[0] = _BARE_EXCEPT_RE.sub(r"\1except Exception:", lines[0], count=1)
    return Fix("".join(lines), [], "Catch Exception instead of everything")


def fix_unused_import(issue: Issue, content: str, span: Span, conventions: ModuleConventions) -> Optional[Fix]:
    lines = _span_lines(content, span)
    indent = leading_indent(lines[0]) if lines else ""
    try:
        node = ast.parse("".join(line[len(indent):] if line.startswith(indent) else line for line in lines)).body[0]
    except (SyntaxError, IndexError):
        return None
    if not isinstance(node, (ast.Import, ast.ImportFrom)):
        return None

    name = issue.extra.get("name")
    bound = issue.extra.get("bound")
    kept = [a for a in node.names if not (a.name == name and (a.asname or a.name.split(".")[0]) == bound)]
    if len(kept) == len(node.names):
        return None
    if not kept:
        return Fix("", [], f"Remove unused import {name}")
    node.names = kept
    return Fix(indent + ast.unparse(node) + detect_newline(content), [], f"Remove unused import {name}")


def fix_mutable_default(issue: Issue, content: str, span: Span, conventions: ModuleConventions) -> Optional[Fix]:
    try:
        tree = ast.parse(content)
    except SyntaxError:
        return None
    func = next(
        (n for n in ast.walk(tree) if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef)) and n.lineno == span[0]),
        None,
    )
    if func is None or func.body[0].lineno == func.lineno:
        return None

    params = set(issue.extra.get("params") or [])
    targets = [(name, default) for name, default in params_with_defaults(func.args) if name in params and is_mutable_default(default)]
    if not targets:
        return None

    lines = _span_lines(content, span)
    base = span[0]
    for _, default in sorted(targets, key=lambda t: (t[1].lineno, t[1].col_offset), reverse=True):
        first, last = default.lineno - base, default.end_lineno - base
        if last >= len(lines):
            return None
        head = lines[first][:_char_col(lines[first], default.col_offset)]
        tail = lines[last][_char_col(lines[last], default.end_col_offset):]
        lines[first:last + 1] = [head + "None" + tail]

    newline = detect_newline(content)
    body_indent = leading_indent(content.splitlines()[func.body[0].lineno - 1])
    guards = []
    for name, default in sorted(targets, key=lambda t: (t[1].lineno, t[1].col_offset)):
        guards.append(f"{body_indent}if {name} is None:{newline}")
        guards.append(f"{body_indent}{conventions.indent_unit}{name} = {ast.unparse(default)}{newline}")
    names = ", ".join(name for name, _ in targets)
    return Fix("".join(lines) + "".join(guards), [], f"Default {names} to None and build the value per call")


def fix_null_dereference(issue: Issue, content: str, span: Span, conventions: ModuleConventions) -> Optional[Fix]:
    if span[0] != span[1]:
        return None
    line = _span_lines(content, span)[0]
    indent = leading_indent(line)
    text = line[len(indent):].rstrip("\r\n")

    try:
        tree = ast.parse(text)
    except SyntaxError:
        if not text.rstrip().endswith(":"):
            return None
        try:
            tree = ast.parse(text + " pass")
        except SyntaxError:
            return None
    stmt = tree.body[0]
    if isinstance(stmt, (ast.While, ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        return None

    call = _find_dereferenced_call(stmt, issue.extra.get("call"), issue.extra.get("attr"))
    if call is None:
        return None

    callee = call.func.attr if isinstance(call.func, ast.Attribute) else getattr(call.func, "id", "call")
    variable = conventions.variable_name("match" if callee in ("match", "search", "fullmatch") else "value")
    start, end = _char_col(text, call.col_offset), _char_col(text, call.end_col_offset)
    call_src = text[start:end]
    rewritten = text[:start] + variable + text[end:]

    newline = detect_newline(content)
    message = conventions.string(f"{callee}() returned None")
    after = (
        f"{indent}{variable} = {call_src}{newline}"
        f"{indent}if {variable} is None:{newline}"
        f"{indent}{conventions.indent_unit}raise ValueError({message}){newline}"
        f"{indent}{rewritten}{newline}"
    )
    return Fix(after, [], f"Check the result of {callee}() for None before using it")


def _find_dereferenced_call(stmt: ast.stmt, call_src: Optional[str], attr: Optional[str]) -> Optional[ast.Call]:
    parents: Dict[ast.AST, ast.AST] = {}
    for parent in ast.walk(stmt):
        for child in ast.iter_child_nodes(parent):
            parents[child] = parent

    for node in ast.walk(stmt):
        if not (isinstance(node, ast.Attribute) and isinstance(node.value, ast.Call)):
            continue
        if attr and node.attr != attr:
            continue
        if call_src and ast.unparse(node.value) != call_src:
            continue
        if node.value.lineno != 1 or node.value.end_lineno != 1:
            return None
        ancestor = parents.get(node)
        while ancestor is not None:
            if isinstance(ancestor, _HOIST_BLOCKERS):
                # Hoisting would evaluate the call where it used to be skipped or repeated.
                return None
            ancestor = parents.get(ancestor)
        return node.value
    return None


FIXERS: Dict[str, Fixer] = {
    "null-dereference": fix_null_dereference,
    "none-comparison": fix_none_comparison,
    "bare-except": fix_bare_except,
    "mutable-default-arg": fix_mutable_default,
    "unused-import": fix_unused_import,
}


class ContextualStrategy(BaseStrategy):
    """Hand-written fixers for well understood rules, adapted to the module's conventions."""

    name = "contextual"

    def __init__(self, fixers: Optional[Dict[str, Fixer]] = None, confidences: Optional[Dict[str, float]] = None):
        self.fixers = dict(FIXERS if fixers is None else fixers)
        self.confidences = dict(BASE_CONFIDENCE if confidences is None else confidences)

    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        fixer = self.fixers.get(issue.rule_id)
        if fixer is None:
            return None
        span = locate_snippet(ctx.content, issue.line, issue.snippet)
        if span is None:
            return None
        conventions = analyze(ctx.content)
        fix = fixer(issue, ctx.content, span, conventions)
        if fix is None:
            logger.debug("contextual_fixer_declined", issue_id=issue.id, rule=issue.rule_id)
            return None
        candidate = snippet_candidate(ctx.rel_path, ctx.content, issue, fix.after, fix.imports, fix.description)
        if candidate is None:
            return None
        confidence = self.confidences.get(issue.rule_id, 0.5)
        if conventions.mixed_indentation:
            confidence -= MIXED_INDENT_PENALTY
        return Proposal(patch=candidate, confidence=max(0.0, confidence), notes=fix.description)
