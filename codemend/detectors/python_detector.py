from __future__ import annotations

import ast
import re
from pathlib import Path
from typing import Dict, List, Optional, Set

import structlog

from codemend.detectors.base import BaseDetector
from codemend.detectors.modules import ModuleIndex, resolve_from_import
from codemend.models import Category, DetectedIssue, Severity

logger = structlog.get_logger()

RULES: Dict[str, tuple] = {
    "syntax-error": (Category.SYNTAX, Severity.CRITICAL),
    "bare-except": (Category.RELIABILITY, Severity.MEDIUM),
    "none-comparison": (Category.STYLE, Severity.LOW),
    "null-dereference": (Category.RELIABILITY, Severity.HIGH),
    "mutable-default-arg": (Category.RELIABILITY, Severity.MEDIUM),
    "unused-import": (Category.STYLE, Severity.LOW),
    "eval-usage": (Category.SECURITY, Severity.HIGH),
    "hardcoded-secret": (Category.SECURITY, Severity.HIGH),
    "shell-true": (Category.SECURITY, Severity.HIGH),
    "unresolved-import": (Category.DEPENDENCY, Severity.HIGH),
}

# Calls that return None when nothing matches.
OPTIONAL_RESULT_CALLS = {"match", "search", "fullmatch", "get"}
SUBPROCESS_CALLS = {"run", "call", "check_call", "check_output", "Popen", "getoutput", "getstatusoutput"}
SECRET_NAME_RE = re.compile(r"(pass(word|wd)?|secret|api_?key|token|private_?key|access_?key|auth_?key)$", re.IGNORECASE)
MUTABLE_FACTORIES = {"list", "dict", "set", "bytearray"}


class PythonDetector(BaseDetector):
    language = "python"
    extensions = (".py",)

    def __init__(self, module_index: Optional[ModuleIndex] = None, rules: Optional[Set[str]] = None):
        self.module_index = module_index
        self.rules = set(rules) if rules is not None else set(RULES)

    @classmethod
    def for_project(cls, root: str | Path) -> "PythonDetector":
        return cls(module_index=ModuleIndex.build(root))

    def detect(self, path: str, content: str) -> List[DetectedIssue]:
        lines = content.splitlines(keepends=True)
        try:
            tree = ast.parse(content, filename=path)
        except SyntaxError as e:
            if "syntax-error" not in self.rules:
                return []
            line = e.lineno or 1
            return [self._issue("syntax-error", f"Syntax error: {e.msg}", lines, line, line, column=(e.offset or 1) - 1)]

        visitor = _RuleVisitor(self, path, lines)
        visitor.visit(tree)
        visitor.finish(tree)
        findings = [f for f in visitor.findings if f.rule_id in self.rules]
        findings.sort(key=lambda f: (f.line, f.column, f.rule_id))
        return findings

    def _issue(
        self,
        rule_id: str,
        message: str,
        lines: List[str],
        line: int,
        end_line: int,
        column: int = 0,
        scope: str = "<module>",
        **extra,
    ) -> DetectedIssue:
        category, severity = RULES[rule_id]
        snippet = "".join(lines[line - 1:end_line])
        return DetectedIssue(
            rule_id=rule_id,
            category=category,
            severity=severity,
            message=message,
            line=line,
            end_line=end_line,
            column=column,
            snippet=snippet,
            scope=scope,
            extra=extra,
        )


class _RuleVisitor(ast.NodeVisitor):
    def __init__(self, detector: PythonDetector, path: str, lines: List[str]):
        self.detector = detector
        self.path = path
        self.lines = lines
        self.findings: List[DetectedIssue] = []
        self.scopes: List[str] = []
        self.statements: List[ast.stmt] = []

    @property
    def scope(self) -> str:
        return ".".join(self.scopes) or "<module>"

    def report(self, rule_id: str, message: str, line: int, end_line: Optional[int] = None, column: int = 0, **extra):
        self.findings.append(
            self.detector._issue(rule_id, message, self.lines, line, end_line or line, column, self.scope, **extra)
        )

    def generic_visit(self, node):
        if isinstance(node, ast.stmt):
            self.statements.append(node)
            super().generic_visit(node)
            self.statements.pop()
        else:
            super().generic_visit(node)

    def _visit_scope(self, node, name: str):
        self.scopes.append(name)
        self.generic_visit(node)
        self.scopes.pop()

    def visit_ClassDef(self, node: ast.ClassDef):
        self._visit_scope(node, node.name)

    def visit_FunctionDef(self, node):
        self._check_mutable_defaults(node)
        self._visit_scope(node, node.name)

    visit_AsyncFunctionDef = visit_FunctionDef

    @property
    def statement(self) -> Optional[ast.stmt]:
        return self.statements[-1] if self.statements else None

    def _statement_span(self, node: ast.AST):
        stmt = self.statement
        if stmt is None or hasattr(stmt, "body"):
            # Compound statements: only the expression itself.
            stmt = node
        return stmt.lineno, getattr(stmt, "end_lineno", None) or stmt.lineno

    # -- rules -----------------------------------------------------------

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        if node.type is None:
            self.report("bare-except", "Bare 'except:' also catches SystemExit and KeyboardInterrupt", node.lineno, column=node.col_offset)
        self.generic_visit(node)

    def visit_Compare(self, node: ast.Compare):
        operands = [node.left] + list(node.comparators)
        for index, op in enumerate(node.ops):
            if not isinstance(op, (ast.Eq, ast.NotEq)):
                continue
            left, right = operands[index], operands[index + 1]
            if _is_none(left) or _is_none(right):
                symbol = "==" if isinstance(op, ast.Eq) else "!="
                self.report(
                    "none-comparison",
                    f"Comparison to None with '{symbol}'",
                    node.lineno,
                    node.end_lineno,
                    column=node.col_offset,
                )
                break
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute):
        value = node.value
        if isinstance(value, ast.Call) and _may_return_none(value):
            callee = _callee_name(value.func)
            start, end = self._statement_span(node)
            self.report(
                "null-dereference",
                f"Attribute '{node.attr}' accessed on the result of '{callee}()', which may be None",
                start,
                end,
                column=node.col_offset,
                call=ast.unparse(value),
                attr=node.attr,
            )
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call):
        if isinstance(node.func, ast.Name) and node.func.id == "eval":
            start, end = self._statement_span(node)
            self.report("eval-usage", "Use of eval() on dynamic input", start, end, column=node.col_offset)
        callee = _callee_name(node.func)
        for kw in node.keywords:
            if kw.arg == "shell" and isinstance(kw.value, ast.Constant) and kw.value.value is True:
                if callee in SUBPROCESS_CALLS:
                    start, end = self._statement_span(node)
                    self.report(
                        "shell-true",
                        f"subprocess.{callee}() called with shell=True",
                        start,
                        end,
                        column=node.col_offset,
                    )
        self.generic_visit(node)

    def visit_Assign(self, node: ast.Assign):
        if len(node.targets) == 1 and isinstance(node.value, ast.Constant) and isinstance(node.value.value, str):
            name = _target_name(node.targets[0])
            if name and SECRET_NAME_RE.search(name) and len(node.value.value) >= 4:
                self.report(
                    "hardcoded-secret",
                    f"Hard-coded credential assigned to '{name}'",
                    node.lineno,
                    node.end_lineno,
                    column=node.col_offset,
                    target=name,
                )
        self.generic_visit(node)

    def _check_mutable_defaults(self, node):
        defaults = list(node.args.defaults) + [d for d in node.args.kw_defaults if d is not None]
        params = params_with_defaults(node.args)
        mutable = [name for name, default in params if is_mutable_default(default)]
        if not mutable or not any(is_mutable_default(d) for d in defaults):
            return
        first = node.body[0]
        if _is_docstring(first):
            end = first.end_lineno
        else:
            end = first.lineno - 1
        end = max(end, node.lineno)
        qualified = ".".join(self.scopes + [node.name])
        self.report(
            "mutable-default-arg",
            f"Mutable default for parameter(s) {', '.join(mutable)} of '{qualified}'",
            node.lineno,
            end,
            column=node.col_offset,
            params=mutable,
            body_line=first.lineno,
        )

    # -- module level rules ----------------------------------------------

    def finish(self, tree: ast.Module) -> None:
        self._check_unused_imports(tree)
        self._check_unresolved_imports(tree)

    def _check_unused_imports(self, tree: ast.Module) -> None:
        if Path(self.path).name == "__init__.py":
            return
        used: Set[str] = set()
        exported: Set[str] = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Name):
                used.add(node.id)
            elif isinstance(node, ast.Constant) and isinstance(node.value, str):
                used.update(re.findall(r"[A-Za-z_][A-Za-z0-9_]*", node.value))
            elif isinstance(node, ast.Assign) and any(_target_name(t) == "__all__" for t in node.targets):
                if isinstance(node.value, (ast.List, ast.Tuple)):
                    exported.update(e.value for e in node.value.elts if isinstance(e, ast.Constant))

        for stmt in tree.body:
            if isinstance(stmt, ast.ImportFrom) and stmt.module == "__future__":
                continue
            if not isinstance(stmt, (ast.Import, ast.ImportFrom)):
                continue
            for position, alias in enumerate(stmt.names):
                if alias.name == "*":
                    continue
                bound = alias.asname or alias.name.split(".")[0]
                if bound in used or bound in exported:
                    continue
                self.report(
                    "unused-import",
                    f"'{alias.name}' imported but unused",
                    stmt.lineno,
                    stmt.end_lineno,
                    column=stmt.col_offset,
                    name=alias.name,
                    bound=bound,
                    pattern_hint=f"{position}/{len(stmt.names)}",
                )

    def _check_unresolved_imports(self, tree: ast.Module) -> None:
        index = self.detector.module_index
        if index is None:
            return
        for node in ast.walk(tree):
            if isinstance(node, ast.ImportFrom):
                if node.module is None:
                    continue
                resolved = resolve_from_import(self.path, node)
                if not resolved or not index.is_project_module(resolved) or index.exists(resolved):
                    continue
                self.report(
                    "unresolved-import",
                    f"Module '{resolved}' does not exist in the project",
                    node.lineno,
                    node.end_lineno,
                    column=node.col_offset,
                    module=resolved,
                    names=[a.name for a in node.names],
                )
            elif isinstance(node, ast.Import):
                for alias in node.names:
                    if index.is_project_module(alias.name) and not index.exists(alias.name):
                        self.report(
                            "unresolved-import",
                            f"Module '{alias.name}' does not exist in the project",
                            node.lineno,
                            node.end_lineno,
                            column=node.col_offset,
                            module=alias.name,
                            names=[],
                        )


def _is_none(node: ast.AST) -> bool:
    return isinstance(node, ast.Constant) and node.value is None


def _is_docstring(node: ast.stmt) -> bool:
    return isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant) and isinstance(node.value.value, str)


def _callee_name(func: ast.AST) -> Optional[str]:
    if isinstance(func, ast.Attribute):
        return func.attr
    if isinstance(func, ast.Name):
        return func.id
    return None


def _target_name(target: ast.AST) -> Optional[str]:
    if isinstance(target, ast.Name):
        return target.id
    if isinstance(target, ast.Attribute):
        return target.attr
    return None


def is_mutable_default(node: Optional[ast.AST]) -> bool:
    if isinstance(node, (ast.List, ast.Dict, ast.Set)):
        return True
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in MUTABLE_FACTORIES
        and not node.args
        and not node.keywords
    )


def params_with_defaults(args: ast.arguments):
    positional = list(args.posonlyargs) + list(args.args)
    pairs = list(zip(positional[len(positional) - len(args.defaults):], args.defaults))
    pairs += [(a, d) for a, d in zip(args.kwonlyargs, args.kw_defaults) if d is not None]
    return [(arg.arg, default) for arg, default in pairs]


def _may_return_none(call: ast.Call) -> bool:
    callee = _callee_name(call.func)
    if callee not in OPTIONAL_RESULT_CALLS:
        return False
    receiver = call.func.value if isinstance(call.func, ast.Attribute) else None
    # HTTP client helpers named get() always return a response.
    if isinstance(receiver, ast.Name) and receiver.id in {"requests", "httpx", "session", "client"}:
        return False
    return True
