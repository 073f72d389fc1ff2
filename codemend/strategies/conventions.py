"""Coding conventions of a single module, read before writing code into it."""
from __future__ import annotations

import ast
import re
from collections import Counter
from dataclasses import dataclass, field
from functools import reduce
from math import gcd
from typing import Set

from codemend.scanner.fingerprint import tokenize

_CAMEL_RE = re.compile(r"^[a-z]+(?:[A-Z][a-z0-9]*)+$")
_SNAKE_RE = re.compile(r"^[a-z][a-z0-9]*(?:_[a-z0-9]+)+$")
_STRING_PREFIX_RE = re.compile(r"^[rRbBuUfF]{0,2}")


@dataclass
class ModuleConventions:
    indent_unit: str = "    "
    mixed_indentation: bool = False
    quote: str = '"'
    naming: str = "snake_case"
    names: Set[str] = field(default_factory=set)
    imported: Set[str] = field(default_factory=set)

    def variable_name(self, *words: str) -> str:
        """A fresh local name in the module's naming style that shadows nothing."""
        if self.naming == "camelCase":
            base = words[0] + "".join(w.capitalize() for w in words[1:])
        else:
            base = "_".join(words)
        candidate, suffix = base, 1
        while candidate in self.names:
            candidate = f"{base}_{suffix}" if self.naming != "camelCase" else f"{base}{suffix}"
            suffix += 1
        self.names.add(candidate)
        return candidate

    def string(self, text: str) -> str:
        escaped = text.replace("\\", "\\\\").replace(self.quote, "\\" + self.quote)
        return f"{self.quote}{escaped}{self.quote}"


def analyze(content: str) -> ModuleConventions:
    conventions = ModuleConventions()
    lines = content.splitlines()

    tab_lines = space_lines = 0
    widths = []
    for line in lines:
        if not line.strip():
            continue
        indent = line[: len(line) - len(line.lstrip(" \t"))]
        if not indent:
            continue
        if "\t" in indent:
            tab_lines += 1
        if " " in indent:
            space_lines += 1
            if "\t" not in indent:
                widths.append(len(indent))
    conventions.mixed_indentation = tab_lines > 0 and space_lines > 0
    if tab_lines > space_lines:
        conventions.indent_unit = "\t"
    elif widths:
        unit = reduce(gcd, widths)
        conventions.indent_unit = " " * unit if unit in (2, 3, 4, 8) else "    "

    quotes: Counter = Counter()
    for token in tokenize(content):
        if token.kind == "name":
            conventions.names.add(token.text)
        elif token.kind == "string":
            body = _STRING_PREFIX_RE.sub("", token.text)
            if body[:3] not in ('"""', "'''"):
                quotes[body[0]] += 1
    if quotes["'"] > quotes['"']:
        conventions.quote = "'"

    try:
        tree = ast.parse(content)
    except SyntaxError:
        return conventions

    naming: Counter = Counter()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
            if _CAMEL_RE.match(node.id):
                naming["camelCase"] += 1
            elif _SNAKE_RE.match(node.id):
                naming["snake_case"] += 1
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            conventions.imported.update(a.asname or a.name.split(".")[0] for a in node.names)
    if naming["camelCase"] > naming["snake_case"]:
        conventions.naming = "camelCase"
    return conventions
