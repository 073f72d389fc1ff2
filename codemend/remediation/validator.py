"""
Validation gates run against a scratch copy before a patch may touch live files.

Gate order: syntax, type check, lint, tests. Type check and lint compare the
patched file with the original and fail only on *new* findings. A gate whose
tool is not configured or not installed is recorded as skipped.
"""
from __future__ import annotations

import ast
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from codemend.config.validation import ValidationConfig
from codemend.errors import ValidationFailure
from codemend.models import CandidatePatch
from codemend.remediation.sandbox import Sandbox
from codemend.utils.file_utils import detect_language, read_text

logger = structlog.get_logger()

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"


class GateResult(BaseModel):
    name: str
    status: str
    detail: str = ""


class ValidationReport(BaseModel):
    passed: bool = False
    gates: List[GateResult] = Field(default_factory=list)

    @property
    def failed_gate(self) -> Optional[GateResult]:
        for gate in self.gates:
            if gate.status == FAILED:
                return gate
        return None

    def as_dict(self) -> Dict[str, Dict[str, str]]:
        return {g.name: {"status": g.status, "detail": g.detail[:2000]} for g in self.gates}


class PatchValidator:
    def __init__(self, config: Optional[ValidationConfig] = None, sandbox: Optional[Sandbox] = None):
        self.config = config or ValidationConfig.default()
        self.sandbox = sandbox or Sandbox(timeout=self.config.command_timeout)

    def validate(self, root: str | Path, patch: CandidatePatch) -> ValidationReport:
        root = Path(root)
        report = ValidationReport()
        with tempfile.TemporaryDirectory(prefix="codemend-") as scratch:
            scratch_path = Path(scratch)
            before_dir = scratch_path / "before"
            after_dir = scratch_path / "after"
            for file_patch in patch.files:
                original = root / file_patch.path
                _write(before_dir / file_patch.path, read_text(original) if original.exists() else "")
                _write(after_dir / file_patch.path, file_patch.content)

            checks = [
                ("syntax", lambda: self._check_syntax(patch, after_dir)),
                ("type_check", lambda: self._compare("type_check", self.config.type_check_commands, patch, before_dir, after_dir)),
                ("lint", lambda: self._compare("lint", self.config.lint_commands, patch, before_dir, after_dir)),
                ("tests", lambda: self._run_tests(root, patch, scratch_path)),
            ]
            for name, check in checks:
                try:
                    report.gates.append(check())
                except ValidationFailure as e:
                    logger.info("validation_gate_failed", gate=name, files=patch.paths)
                    report.gates.append(GateResult(name=name, status=FAILED, detail=e.detail))
                    return report

        report.passed = True
        return report

    def _check_syntax(self, patch: CandidatePatch, after_dir: Path) -> GateResult:
        ran = False
        for file_patch in patch.files:
            language = detect_language(Path(file_patch.path))
            if language == "python":
                ran = True
                try:
                    ast.parse(file_patch.content, filename=file_patch.path)
                except SyntaxError as e:
                    raise ValidationFailure("syntax", f"{file_patch.path}:{e.lineno}: {e.msg}")
                continue
            template = self.config.syntax_commands.get(language)
            if not template or not self.sandbox.is_available(template):
                continue
            ran = True
            success, output = self.sandbox.run(template.format(file=str(after_dir / file_patch.path)))
            if not success:
                raise ValidationFailure("syntax", output)
        return GateResult(name="syntax", status=PASSED if ran else SKIPPED)

    def _compare(
        self,
        name: str,
        commands: Dict[str, str],
        patch: CandidatePatch,
        before_dir: Path,
        after_dir: Path,
    ) -> GateResult:
        ran = False
        for file_patch in patch.files:
            template = commands.get(detect_language(Path(file_patch.path)))
            if not template or not self.sandbox.is_available(template):
                continue
            ran = True
            before_ok, before_out = self.sandbox.run(template.format(file=str(before_dir / file_patch.path)), cwd=str(before_dir))
            after_ok, after_out = self.sandbox.run(template.format(file=str(after_dir / file_patch.path)), cwd=str(after_dir))
            before_count = _count_findings(before_ok, before_out)
            after_count = _count_findings(after_ok, after_out)
            if after_count > before_count:
                raise ValidationFailure(name, f"{file_patch.path}: {after_count - before_count} new finding(s)\n{after_out}")
        return GateResult(name=name, status=PASSED if ran else SKIPPED)

    def _run_tests(self, root: Path, patch: CandidatePatch, scratch_path: Path) -> GateResult:
        if not self.config.run_tests:
            return GateResult(name="tests", status=SKIPPED, detail="disabled")
        language = detect_language(Path(patch.files[0].path))
        template = self.config.test_commands.get(language)
        if not template or not self.sandbox.is_available(template.format(scope="")):
            return GateResult(name="tests", status=SKIPPED, detail="no test command")
        related = sorted({t for fp in patch.files for t in resolve_related_tests(root, fp.path)})
        if not related:
            return GateResult(name="tests", status=SKIPPED, detail="no related tests")

        project_copy = scratch_path / "project"
        shutil.copytree(root, project_copy, ignore=shutil.ignore_patterns(*self.config.copy_ignore), symlinks=True)
        for file_patch in patch.files:
            _write(project_copy / file_patch.path, file_patch.content)
        success, output = self.sandbox.run(template.format(scope=" ".join(related)), cwd=str(project_copy))
        logger.info("related_tests_ran", tests=related, success=success)
        if not success:
            raise ValidationFailure("tests", output)
        return GateResult(name="tests", status=PASSED, detail=output)


def resolve_related_tests(root: str | Path, rel_path: str) -> List[str]:
    """
    Test files that exercise ``rel_path``, found by naming convention.
    Python: test_foo.py / foo_test.py beside the module or anywhere under tests/.
    Go: foo_test.go beside the file.
    """
    root = Path(root)
    path = Path(rel_path)
    related = set()
    if path.suffix == ".py":
        if path.name.startswith("test_") or path.stem.endswith("_test"):
            return [path.as_posix()]
        names = {f"test_{path.name}", f"{path.stem}_test.py"}
        for name in names:
            sibling = path.parent / name
            if (root / sibling).is_file():
                related.add(sibling.as_posix())
        tests_dir = root / "tests"
        if tests_dir.is_dir():
            for name in names:
                for found in tests_dir.rglob(name):
                    related.add(found.relative_to(root).as_posix())
    elif path.suffix == ".go":
        sibling = path.with_name(f"{path.stem}_test.go")
        if (root / sibling).is_file():
            related.add(sibling.as_posix())
    return sorted(related)


def _count_findings(success: bool, output: str) -> int:
    if success:
        return 0
    return max(1, len([line for line in output.splitlines() if line.strip()]))


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)
