import pytest

from codemend.models import CandidatePatch, FixAttempt, IssueState
from codemend.remediation.monitor import MonitoringWindow
from codemend.remediation.patch import build_file_patch

ORIGINAL = "def f(a):\n    return a == None\n\n\ndef g(b):\n    return b == None\n"
FIRST = ORIGINAL.replace("a == None", "a is None")
SECOND = FIRST.replace("b == None", "b is None")


@pytest.fixture
def monitor(issue_store, applier, learning):
    return MonitoringWindow(issue_store, applier, applier.backups, learning)


def _apply(applier, issue_store, issue, original, fixed, strategy="contextual"):
    issue_store.transition(issue.id, IssueState.ATTEMPTING)
    candidate = CandidatePatch(
        files=[build_file_patch(issue.file_path, original, fixed)],
        before=issue.snippet,
        after=issue.snippet.replace("== None", "is None"),
    )
    attempt = issue_store.add_attempt(
        FixAttempt(issue_id=issue.id, strategy=strategy, raw_confidence=0.9, calibrated_confidence=0.9, patch=candidate)
    )
    result = applier.apply(issue_store.require(issue.id), attempt)
    assert result.applied
    return result


def test_clean_pass_resolves_and_promotes(monitor, applier, issue_store, pattern_store, calibrator, project_root, detect_issues):
    first, _ = detect_issues(project_root, "mod.py", ORIGINAL)
    result = _apply(applier, issue_store, first, ORIGINAL, FIRST)

    report = monitor.observe(project_root.name, "mod.py", {})

    assert report.resolved == [first.id]
    assert issue_store.require(first.id).state == IssueState.RESOLVED
    assert not any(applier.backups.exists(p) for p in result.attempt.backups.values())
    assert calibrator.stats("contextual", "style").successes == 1
    pattern = pattern_store.get(first.pattern_key)
    assert (pattern.occurrence_count, pattern.success_count) == (1, 1)


def test_regression_restores_the_pre_image(monitor, applier, issue_store, calibrator, project_root, detect_issues):
    first, _ = detect_issues(project_root, "mod.py", ORIGINAL)
    _apply(applier, issue_store, first, ORIGINAL, FIRST)

    report = monitor.observe(project_root.name, "mod.py", {first.fingerprint: 1})

    assert report.rolled_back == [first.id]
    assert report.restored_files == {"mod.py"}
    assert (project_root / "mod.py").read_text() == ORIGINAL
    assert issue_store.require(first.id).state == IssueState.ROLLED_BACK
    stats = calibrator.stats("contextual", "style")
    assert (stats.observations, stats.successes) == (1, 0)


def test_later_fixes_to_the_file_are_rolled_back_first(monitor, applier, issue_store, project_root, detect_issues):
    first, second = detect_issues(project_root, "mod.py", ORIGINAL)
    _apply(applier, issue_store, first, ORIGINAL, FIRST)
    _apply(applier, issue_store, second, FIRST, SECOND)

    report = monitor.observe(project_root.name, "mod.py", {first.fingerprint: 1})

    assert report.rolled_back == [second.id, first.id]
    assert (project_root / "mod.py").read_text() == ORIGINAL
    collateral = issue_store.require(second.id)
    assert collateral.state == IssueState.ROLLED_BACK
    assert collateral.attempts[-1].validation["rollback"] == "collateral"


def test_externally_changed_file_goes_to_review(monitor, applier, issue_store, project_root, detect_issues):
    first, _ = detect_issues(project_root, "mod.py", ORIGINAL)
    _apply(applier, issue_store, first, ORIGINAL, FIRST)
    edited = FIRST + "# someone else\n"
    (project_root / "mod.py").write_text(edited)

    report = monitor.observe(project_root.name, "mod.py", {first.fingerprint: 1})

    assert report.needs_review == [first.id]
    assert report.rolled_back == []
    assert (project_root / "mod.py").read_text() == edited
    issue = issue_store.require(first.id)
    assert issue.state == IssueState.NEEDS_REVIEW
    assert "changed externally" in issue.attempts[-1].error


def test_passes_count_down_before_resolving(issue_store, applier, learning, project_root, detect_issues):
    applier.monitoring.passes = 2
    monitor = MonitoringWindow(issue_store, applier, applier.backups, learning)
    first, _ = detect_issues(project_root, "mod.py", ORIGINAL)
    _apply(applier, issue_store, first, ORIGINAL, FIRST)

    assert monitor.observe(project_root.name, "mod.py", {}).resolved == []
    assert issue_store.require(first.id).state == IssueState.MONITORING
    assert monitor.observe(project_root.name, "mod.py", {}).resolved == [first.id]


def test_collateral_rollback_counts_against_its_strategy(monitor, applier, issue_store, calibrator, project_root, detect_issues):
    first, second = detect_issues(project_root, "mod.py", ORIGINAL)
    _apply(applier, issue_store, first, ORIGINAL, FIRST)
    _apply(applier, issue_store, second, FIRST, SECOND, strategy="codebase_similarity")

    monitor.observe(project_root.name, "mod.py", {first.fingerprint: 1})

    collateral = calibrator.stats("codebase_similarity", "style")
    assert (collateral.observations, collateral.successes) == (1, 0)
    regressed = calibrator.stats("contextual", "style")
    assert (regressed.observations, regressed.successes) == (1, 0)
