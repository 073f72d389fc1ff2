import asyncio
import time

import pytest

from codemend.config.remediation import SchedulerConfig
from codemend.detectors.base import BaseDetector, DetectorRegistry
from codemend.detectors.python_detector import PythonDetector
from codemend.models import Category, FileSnapshot, Issue, IssueState, Severity
from codemend.scanner.scheduler import Scanner, ScanStats, health_score


def _issue(severity, state=IssueState.DETECTED):
    return Issue(
        id=severity.value,
        project="p",
        file_path="a.py",
        fingerprint="f",
        pattern_key="k",
        rule_id="r",
        category=Category.STYLE,
        severity=severity,
        message="m",
        line=1,
        state=state,
    )


async def _collect(scanner, root, stats):
    return [item async for item in scanner.scan(root, stats=stats)]


@pytest.fixture
def scanner(issue_store, snapshot_store, project_root):
    return Scanner(project_root.name, DetectorRegistry([PythonDetector()]), issue_store, snapshot_store, concurrency=2)


def test_health_score_weights_open_issues_by_severity():
    issues = [_issue(Severity.CRITICAL), _issue(Severity.LOW), _issue(Severity.HIGH, IssueState.RESOLVED)]
    assert health_score(issues) == 72.0
    assert health_score([_issue(Severity.CRITICAL)] * 5) == 0.0


def test_select_orders_files_by_tier(scanner, project_root, snapshot_store, detect_issues):
    (project_root / "a.py").write_text("x = 1\n")
    detect_issues(project_root, "b.py", "if x == None:\n    pass\n")
    (project_root / "c.py").write_text("y = 2\n")
    (project_root / "d.py").write_text("z = 3\n")
    snapshot_store.mark_dirty(project_root.name, "c.py")
    snapshot_store.save(FileSnapshot(project=project_root.name, path="d.py", content_hash="old", health_score=40.0))

    assert scanner.select(project_root) == ["b.py", "c.py", "d.py", "a.py"]


def test_unchanged_files_are_served_from_cache(scanner, project_root):
    (project_root / "clean.py").write_text("x = 1\n")
    (project_root / "broken.py").write_text("def f(items=[]):\n    return items\n")

    first = ScanStats()
    items = asyncio.run(_collect(scanner, project_root, first))
    assert first.files_scanned == 2
    assert first.issues_created == 1
    assert [item.file_path for item in items] == ["broken.py", "clean.py"]
    assert [i.rule_id for i in items[0].issues] == ["mutable-default-arg"]

    second = ScanStats()
    items = asyncio.run(_collect(scanner, project_root, second))
    assert second.files_scanned == 0
    assert second.cache_hits == 2
    # Only the file with actionable issues comes back.
    assert [item.file_path for item in items] == ["broken.py"]


def test_changed_file_is_detected_again(scanner, project_root):
    target = project_root / "mod.py"
    target.write_text("def f(items=[]):\n    return items\n")
    asyncio.run(_collect(scanner, project_root, ScanStats()))

    target.write_text("def f(items=None):\n    return items\n")
    stats = ScanStats()
    items = asyncio.run(_collect(scanner, project_root, stats))

    assert stats.files_scanned == 1
    assert stats.issues_closed == 1
    assert items[0].issues == []


class _ExplodingDetector(BaseDetector):
    language = "python"
    extensions = (".py",)

    def detect(self, path, content):
        if path == "bad.py":
            raise RuntimeError("parser crashed")
        return PythonDetector().detect(path, content)


class _SlowDetector(BaseDetector):
    language = "python"
    extensions = (".py",)

    def detect(self, path, content):
        time.sleep(0.5)
        return []


def test_detector_failure_stays_with_its_file(issue_store, snapshot_store, project_root):
    (project_root / "bad.py").write_text("x = 1\n")
    (project_root / "good.py").write_text("if x == None:\n    pass\n")
    scanner = Scanner(project_root.name, DetectorRegistry([_ExplodingDetector()]), issue_store, snapshot_store)

    stats = ScanStats()
    items = asyncio.run(_collect(scanner, project_root, stats))

    assert stats.detector_failures == 1
    assert [item.file_path for item in items] == ["good.py"]
    snapshot = snapshot_store.get(project_root.name, "bad.py")
    assert "parser crashed" in snapshot.last_error

    # A failed file is never considered fresh.
    stats = ScanStats()
    asyncio.run(_collect(scanner, project_root, stats))
    assert stats.detector_failures == 1


def test_detector_timeout_is_a_failure(issue_store, snapshot_store, project_root):
    (project_root / "slow.py").write_text("x = 1\n")
    scanner = Scanner(
        project_root.name,
        DetectorRegistry([_SlowDetector()]),
        issue_store,
        snapshot_store,
        config=SchedulerConfig(detector_timeout=0.05),
    )

    stats = ScanStats()
    items = asyncio.run(_collect(scanner, project_root, stats))

    assert items == []
    assert stats.detector_failures == 1
    assert "timed out" in snapshot_store.get(project_root.name, "slow.py").last_error


def test_mark_dirty_forces_a_detector_pass(scanner, project_root):
    (project_root / "mod.py").write_text("x = 1\n")
    asyncio.run(_collect(scanner, project_root, ScanStats()))

    scanner.mark_dirty("mod.py")
    stats = ScanStats()
    asyncio.run(_collect(scanner, project_root, stats))
    assert stats.files_scanned == 1


def test_undecodable_file_is_recorded_as_a_failure(scanner, project_root, snapshot_store):
    (project_root / "latin.py").write_text("x = 1\n")
    asyncio.run(_collect(scanner, project_root, ScanStats()))
    known_hash = snapshot_store.get(project_root.name, "latin.py").content_hash

    (project_root / "latin.py").write_bytes(b"name = '\xff\xfe'\n")
    (project_root / "fresh.py").write_bytes(b"\xc3\x28 = 1\n")
    stats = ScanStats()
    items = asyncio.run(_collect(scanner, project_root, stats))

    assert items == []
    assert stats.detector_failures == 2
    latin = snapshot_store.get(project_root.name, "latin.py")
    assert "unreadable" in latin.last_error
    assert latin.content_hash == known_hash
    fresh = snapshot_store.get(project_root.name, "fresh.py")
    assert "unreadable" in fresh.last_error
    assert fresh.content_hash is None
