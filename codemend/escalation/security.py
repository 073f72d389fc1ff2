"""
Security escalation: rewrites dangerous constructs into their safe
equivalents and scores the result step by step.

Confidence is built up from evidence: the rule has a known rewrite, the
rewrite parses, the construct is gone when the file is scanned again, and
no other security finding appeared.
"""
from __future__ import annotations

import ast
import re
import shlex
from collections import Counter
from typing import Callable, Dict, List, NamedTuple, Optional

import structlog

from codemend.detectors.base import BaseDetector
from codemend.escalation.base import EscalationHandler
from codemend.models import Category, DetectedIssue, Issue
from codemend.remediation.patch import leading_indent, reindent, snippet_candidate
from codemend.scanner.fingerprint import fingerprint
from codemend.strategies.base import Proposal, StrategyContext
from codemend.strategies.conventions import ModuleConventions, analyze

logger = structlog.get_logger()

RECOGNIZED = 0.3
CLEAN_TRANSFORM = 0.3
CONSTRUCT_REMOVED = 0.2
NOTHING_INTRODUCED = 0.1

_EVAL_RE = re.compile(r"(?<![\w.])eval(\s*\()")
_SHELL_METACHARACTERS = set("|&;<>$`*?(){}[]~\n")


class Rewrite(NamedTuple):
    after: str
    imports: List[str]
    description: str


def _dedent(snippet: str):
    lines = snippet.splitlines(keepends=True)
    indent = leading_indent(lines[0]) if lines else ""
    body = "".join(line[len(indent):] if line.startswith(indent) else line for line in lines)
    return indent, body


def _splice(text: str, node: ast.AST, replacement: str) -> Optional[str]:
    """Replaces a single-line node inside ``text`` using its ast offsets."""
    if node.lineno != node.end_lineno:
        return None
    lines = text.splitlines(keepends=True)
    line = lines[node.lineno - 1]
    encoded = line.encode("utf-8")
    lines[node.lineno - 1] = (
        encoded[: node.col_offset].decode("utf-8") + replacement + encoded[node.end_col_offset:].decode("utf-8")
    )
    return "".join(lines)


def rewrite_eval(issue: Issue, conventions: ModuleConventions) -> Optional[Rewrite]:
    if not _EVAL_RE.search(issue.snippet):
        return None
    after = _EVAL_RE.sub(r"ast.literal_eval\1", issue.snippet)
    return Rewrite(after, ["import ast"], "Evaluate literals only, with ast.literal_eval")


def rewrite_secret(issue: Issue, conventions: ModuleConventions) -> Optional[Rewrite]:
    indent, body = _dedent(issue.snippet)
    try:
        node = ast.parse(body).body[0]
    except (SyntaxError, IndexError):
        return None
    if not isinstance(node, ast.Assign) or not isinstance(node.value, ast.Constant):
        return None
    target = issue.extra.get("target") or ""
    env_name = re.sub(r"\W+", "_", target).strip("_").upper()
    if not env_name:
        return None
    lookup = f"os.environ.get({conventions.string(env_name)}, {conventions.string('')})"
    rewritten = _splice(body, node.value, lookup)
    if rewritten is None:
        return None
    return Rewrite(reindent(rewritten, indent), ["import os"], f"Read {env_name} from the environment")


def rewrite_shell(issue: Issue, conventions: ModuleConventions) -> Optional[Rewrite]:
    indent, body = _dedent(issue.snippet)
    try:
        tree = ast.parse(body)
    except SyntaxError:
        return None
    call = next(
        (
            n for n in ast.walk(tree)
            if isinstance(n, ast.Call)
            and any(k.arg == "shell" and isinstance(k.value, ast.Constant) and k.value.value is True for k in n.keywords)
        ),
        None,
    )
    if call is None or not call.args:
        return None

    command = call.args[0]
    imports: List[str] = []
    if isinstance(command, ast.Constant) and isinstance(command.value, str):
        if _SHELL_METACHARACTERS & set(command.value):
            # Pipes, globs and redirects need a shell; an argument list would change behaviour.
            return None
        try:
            argv = shlex.split(command.value)
        except ValueError:
            return None
        new_command: ast.expr = ast.List(elts=[ast.Constant(value=a) for a in argv], ctx=ast.Load())
    elif isinstance(command, (ast.List, ast.Tuple)):
        new_command = command
    else:
        new_command = ast.Call(
            func=ast.Attribute(value=ast.Name(id="shlex", ctx=ast.Load()), attr="split", ctx=ast.Load()),
            args=[command],
            keywords=[],
        )
        imports.append("import shlex")

    new_call = ast.Call(
        func=call.func,
        args=[new_command] + list(call.args[1:]),
        keywords=[k for k in call.keywords if k.arg != "shell"],
    )
    rewritten = _splice(body, call, ast.unparse(new_call))
    if rewritten is None:
        return None
    return Rewrite(reindent(rewritten, indent), imports, "Pass the command as an argument list without a shell")


REWRITES: Dict[str, Callable[[Issue, ModuleConventions], Optional[Rewrite]]] = {
    "eval-usage": rewrite_eval,
    "hardcoded-secret": rewrite_secret,
    "shell-true": rewrite_shell,
}


class SecurityEscalation(EscalationHandler):
    name = "security"

    def __init__(self, detector: BaseDetector, rewrites=None):
        self.detector = detector
        self.rewrites = dict(REWRITES if rewrites is None else rewrites)

    def can_handle(self, issue: Issue) -> bool:
        return issue.category == Category.SECURITY and issue.rule_id in self.rewrites

    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        rewrite = self.rewrites[issue.rule_id](issue, analyze(ctx.content))
        if rewrite is None:
            return None
        candidate = snippet_candidate(ctx.rel_path, ctx.content, issue, rewrite.after, rewrite.imports, rewrite.description)
        if candidate is None:
            return None
        new_content = candidate.files[0].content

        confidence = RECOGNIZED
        evidence = ["recognized"]
        try:
            ast.parse(new_content)
        except SyntaxError:
            logger.info("security_rewrite_unparseable", issue_id=issue.id, rule=issue.rule_id)
        else:
            confidence += CLEAN_TRANSFORM
            evidence.append("parses")

        before = self.detector.detect(ctx.rel_path, ctx.content)
        after = self.detector.detect(ctx.rel_path, new_content)
        if _count(after, issue.rule_id) < _count(before, issue.rule_id):
            confidence += CONSTRUCT_REMOVED
            evidence.append("construct-removed")
        introduced = _security_fingerprints(after) - _security_fingerprints(before)
        if not introduced:
            confidence += NOTHING_INTRODUCED
            evidence.append("nothing-introduced")

        return Proposal(patch=candidate, confidence=round(confidence, 4), notes=", ".join(evidence))


def _count(findings: List[DetectedIssue], rule_id: str) -> int:
    return sum(1 for f in findings if f.rule_id == rule_id)


def _security_fingerprints(findings: List[DetectedIssue]) -> Counter:
    return Counter(fingerprint(f) for f in findings if f.category == Category.SECURITY)
