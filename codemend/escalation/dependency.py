from __future__ import annotations

import ast
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx
import structlog

from codemend.detectors.modules import imported_modules, iter_python_files, module_name_for, resolve_from_import
from codemend.escalation.base import EscalationHandler
from codemend.models import CandidatePatch, Category, Issue
from codemend.remediation.patch import build_file_patch, detect_newline, leading_indent
from codemend.strategies.base import Proposal, StrategyContext
from codemend.utils.file_utils import read_text

logger = structlog.get_logger()

UNIQUE_CONFIDENCE = 0.9
AMBIGUOUS_CONFIDENCE = 0.65


def top_level_definitions(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.Assign):
            names.update(t.id for t in node.targets if isinstance(t, ast.Name))
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            names.add(node.target.id)
    return names


class SymbolIndex:
    """Which project module defines which top-level names, plus the module import graph."""

    def __init__(self) -> None:
        self.graph = nx.DiGraph()
        self.definitions: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def build(cls, root: str | Path) -> "SymbolIndex":
        index = cls()
        root = Path(root)
        for rel in iter_python_files(root):
            module = module_name_for(rel)
            index.graph.add_node(module, file=rel)
            try:
                tree = ast.parse(read_text(root / rel), filename=rel)
            except (SyntaxError, UnicodeDecodeError, OSError) as e:
                logger.debug("symbol_index_skipped", file=rel, error=str(e))
                continue
            for name in top_level_definitions(tree):
                index.definitions[name].add(module)
            for imported in imported_modules(rel, tree):
                index.graph.add_edge(module, imported)
        return index

    def modules(self) -> Set[str]:
        return {m for m, data in self.graph.nodes(data=True) if "file" in data}

    def defining(self, names: Iterable[str]) -> Set[str]:
        sets = [self.definitions.get(name, set()) for name in names]
        return set.intersection(*sets) if sets else set()

    def named_like(self, module: str) -> Set[str]:
        leaf = module.rsplit(".", 1)[-1]
        return {m for m in self.modules() if m.rsplit(".", 1)[-1] == leaf}

    def importers_of(self, module: str) -> Set[str]:
        if module not in self.graph:
            return set()
        return {
            self.graph.nodes[m]["file"] for m in self.graph.predecessors(module) if "file" in self.graph.nodes[m]
        }


def _shared_prefix(a: str, b: str) -> int:
    count = 0
    for left, right in zip(a.split("."), b.split(".")):
        if left != right:
            break
        count += 1
    return count


def rewrite_imports(rel_path: str, content: str, missing: str, target: str) -> Optional[str]:
    """Points every import of ``missing`` in ``content`` at ``target``. None when one cannot be rewritten."""
    try:
        tree = ast.parse(content)
    except SyntaxError:
        return None
    lines = content.splitlines(keepends=True)
    newline = detect_newline(content)
    edits = []
    for node in ast.walk(tree):
        if isinstance(node, ast.ImportFrom) and resolve_from_import(rel_path, node) == missing:
            replacement = ast.ImportFrom(module=target, names=node.names, level=0)
        elif isinstance(node, ast.Import) and any(a.name == missing for a in node.names):
            if any(a.name == missing and not a.asname for a in node.names):
                # ``import a.b`` is used as ``a.b.x``; renaming the module changes every use.
                return None
            replacement = ast.Import(
                names=[ast.alias(name=target if a.name == missing else a.name, asname=a.asname) for a in node.names]
            )
        else:
            continue
        indent = leading_indent(lines[node.lineno - 1])
        edits.append((node.lineno, node.end_lineno, indent + ast.unparse(replacement) + newline))

    if not edits:
        return None
    for start, end, text in sorted(edits, reverse=True):
        lines[start - 1:end] = [text]
    return "".join(lines)


class DependencyEscalation(EscalationHandler):
    """
    Repairs imports of project modules that do not exist by pointing them at
    the module that actually defines the imported names, in every file that
    imports the missing module.
    """

    name = "dependency"

    def can_handle(self, issue: Issue) -> bool:
        return issue.category == Category.DEPENDENCY and bool(issue.extra.get("module"))

    def propose(self, issue: Issue, ctx: StrategyContext) -> Optional[Proposal]:
        missing = issue.extra["module"]
        names: List[str] = [n for n in issue.extra.get("names") or [] if n != "*"]
        index = SymbolIndex.build(ctx.root)

        candidates = index.defining(names) if names else index.named_like(missing)
        candidates.discard(missing)
        if not candidates:
            logger.info("dependency_target_not_found", issue_id=issue.id, module=missing, names=names)
            return None
        target = sorted(candidates, key=lambda m: (-_shared_prefix(m, missing), m.count("."), m))[0]
        confidence = UNIQUE_CONFIDENCE if len(candidates) == 1 else AMBIGUOUS_CONFIDENCE

        importers = index.importers_of(missing) | {ctx.rel_path}
        files = []
        for rel in sorted(importers):
            content = ctx.content if rel == ctx.rel_path else read_text(ctx.root / rel)
            new_content = rewrite_imports(rel, content, missing, target)
            if new_content is None:
                if rel == ctx.rel_path:
                    return None
                logger.info("dependency_importer_skipped", file=rel, module=missing)
                continue
            files.append(build_file_patch(rel, content, new_content))

        issue_patch = next(f for f in files if f.path == ctx.rel_path)
        candidate = CandidatePatch(
            files=files,
            before=issue.snippet,
            after=_changed_import(issue_patch.content, issue.line),
            description=f"Import from {target} instead of missing {missing} in {len(files)} file(s)",
        )
        return Proposal(
            patch=candidate,
            confidence=confidence,
            notes=f"{len(candidates)} candidate module(s): {', '.join(sorted(candidates))}",
        )


def _changed_import(content: str, line: int) -> str:
    lines = content.splitlines(keepends=True)
    return lines[line - 1] if 0 < line <= len(lines) else ""
