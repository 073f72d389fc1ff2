"""Project module index used to tell project imports that resolve from ones that do not."""
from __future__ import annotations

import ast
import os
from pathlib import Path
from typing import Iterable, List, Optional, Set

SKIP_DIRS = {".git", ".codemend", "__pycache__", ".venv", "venv", "node_modules", ".tox", "build", "dist"}


def module_name_for(rel_path: str) -> str:
    """``pkg/sub/mod.py`` -> ``pkg.sub.mod``; ``pkg/__init__.py`` -> ``pkg``."""
    parts = list(Path(rel_path).with_suffix("").parts)
    if parts and parts[0] == "src":
        parts = parts[1:]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def iter_python_files(root: str | Path) -> Iterable[str]:
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.endswith(".egg-info"))
        for name in sorted(filenames):
            if name.endswith(".py"):
                yield (Path(dirpath) / name).relative_to(root).as_posix()


class ModuleIndex:
    def __init__(self, modules: Iterable[str], packages: Iterable[str] = ()):
        self.modules: Set[str] = {m for m in modules if m}
        self.packages: Set[str] = set(packages)
        self.top_level: Set[str] = {m.split(".")[0] for m in self.modules}

    @classmethod
    def build(cls, root: str | Path) -> "ModuleIndex":
        modules, packages = [], []
        for rel in iter_python_files(root):
            name = module_name_for(rel)
            modules.append(name)
            if rel.endswith("__init__.py"):
                packages.append(name)
        return cls(modules, packages)

    def is_project_module(self, dotted: str) -> bool:
        return dotted.split(".")[0] in self.top_level

    def exists(self, dotted: str) -> bool:
        return dotted in self.modules


def resolve_from_import(rel_path: str, node: ast.ImportFrom) -> Optional[str]:
    """Absolute dotted module an ``ImportFrom`` refers to, or None if it climbs above the root."""
    if node.level == 0:
        return node.module
    package_parts = module_name_for(rel_path).split(".")
    if not rel_path.endswith("__init__.py"):
        package_parts = package_parts[:-1]
    if node.level - 1 > len(package_parts):
        return None
    base = package_parts[: len(package_parts) - (node.level - 1)]
    if node.module:
        base = base + node.module.split(".")
    return ".".join(base) or None


def imported_modules(rel_path: str, tree: ast.AST) -> List[str]:
    found = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            found.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            resolved = resolve_from_import(rel_path, node)
            if resolved:
                found.append(resolved)
    return found
