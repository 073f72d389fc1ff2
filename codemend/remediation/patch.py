"""Text-level helpers for building candidate patches."""
from __future__ import annotations

import ast
import difflib
import re
import textwrap
from typing import Iterable, List, Optional, Tuple

import structlog

from codemend.models import CandidatePatch, FilePatch, Issue
from codemend.utils.file_utils import hash_text

logger = structlog.get_logger()


def create_diff(original: str, new: str, filename: str = "file") -> str:
    diff = difflib.unified_diff(
        original.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=f"a/{filename}",
        tofile=f"b/{filename}",
    )
    return "".join(diff)


def extract_code_block(response: str, language: str = "") -> Optional[str]:
    """
    Extracts the content of a markdown code block.
    Prioritizes blocks marked with the specific language.
    """
    if language:
        pattern = re.compile(rf"```{language}\s*\n(.*?)\n```", re.DOTALL)
        match = pattern.search(response)
        if match:
            return match.group(1)

    pattern = re.compile(r"```(?:\w+)?\s*\n(.*?)\n```", re.DOTALL)
    match = pattern.search(response)
    if match:
        return match.group(1)

    return None


def build_file_patch(rel_path: str, original: str, new_content: str) -> FilePatch:
    return FilePatch(
        path=rel_path,
        base_hash=hash_text(original),
        content=new_content,
        diff=create_diff(original, new_content, rel_path),
    )


def detect_newline(content: str) -> str:
    return "\r\n" if "\r\n" in content else "\n"


def leading_indent(line: str) -> str:
    return line[: len(line) - len(line.lstrip(" \t"))]


def reindent(text: str, indent: str) -> str:
    dedented = textwrap.dedent(text)
    return "".join(indent + line if line.strip() else line for line in dedented.splitlines(keepends=True))


def locate_snippet(content: str, line: int, snippet: str) -> Optional[Tuple[int, int]]:
    """
    Finds ``snippet`` in ``content`` and returns its 1-based inclusive line span.

    Earlier fixes in the same file can shift lines, so the recorded line is
    only a hint: the closest exact match wins.
    """
    target = snippet.splitlines()
    if not target:
        return None
    lines = content.splitlines()
    span = len(target)
    candidates = []
    for start in range(0, len(lines) - span + 1):
        if lines[start:start + span] == target:
            candidates.append(start + 1)
    if not candidates:
        return None
    best = min(candidates, key=lambda c: abs(c - line))
    return best, best + span - 1


def replace_span(content: str, start: int, end: int, replacement: str) -> str:
    lines = content.splitlines(keepends=True)
    if replacement and not replacement.endswith(("\n", "\r")):
        replacement += detect_newline(content)
    return "".join(lines[: start - 1]) + replacement + "".join(lines[end:])


def _import_signature(node: ast.stmt) -> str:
    return ast.unparse(node)


def ensure_imports(content: str, imports: Iterable[str]) -> str:
    """Adds the given import statements after the module's existing imports, skipping ones already present."""
    imports = [i.strip() for i in imports if i and i.strip()]
    if not imports:
        return content
    try:
        tree = ast.parse(content)
    except SyntaxError:
        return content

    present = {_import_signature(n) for n in tree.body if isinstance(n, (ast.Import, ast.ImportFrom))}
    bound = set()
    for node in tree.body:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            bound.update(a.asname or a.name for a in node.names)
    missing: List[str] = []
    for statement in imports:
        try:
            parsed = ast.parse(statement).body[0]
        except (SyntaxError, IndexError):
            logger.warning("invalid_import_statement", statement=statement)
            continue
        if _import_signature(parsed) in present:
            continue
        if isinstance(parsed, (ast.Import, ast.ImportFrom)) and all((a.asname or a.name) in bound for a in parsed.names):
            continue
        missing.append(statement)
    if not missing:
        return content

    insert_after = 0
    for index, node in enumerate(tree.body):
        is_doc = index == 0 and isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant) and isinstance(node.value.value, str)
        if is_doc or isinstance(node, (ast.Import, ast.ImportFrom)):
            insert_after = node.end_lineno
            continue
        break

    newline = detect_newline(content)
    lines = content.splitlines(keepends=True)
    if lines and not lines[-1].endswith(("\n", "\r")) and insert_after >= len(lines):
        lines[-1] += newline
    block = "".join(statement + newline for statement in missing)
    return "".join(lines[:insert_after]) + block + "".join(lines[insert_after:])


def snippet_candidate(
    rel_path: str,
    content: str,
    issue: Issue,
    after: str,
    imports: Iterable[str] = (),
    description: str = "",
) -> Optional[CandidatePatch]:
    """Replaces the issue's snippet in ``content`` with ``after``; None when the snippet moved away or nothing changes."""
    span = locate_snippet(content, issue.line, issue.snippet)
    if span is None:
        logger.debug("snippet_not_found", issue_id=issue.id, file=rel_path, line=issue.line)
        return None
    imports = list(imports)
    new_content = ensure_imports(replace_span(content, span[0], span[1], after), imports)
    if new_content == content:
        return None
    return CandidatePatch(
        files=[build_file_patch(rel_path, content, new_content)],
        before=issue.snippet,
        after=after,
        imports=imports,
        description=description,
    )
