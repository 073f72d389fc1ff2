import threading
from unittest.mock import patch as mock_patch

from codemend.models import AttemptOutcome, CandidatePatch, FixAttempt, IssueState
from codemend.remediation.applier import APPLIED, COMMIT_FAILED, PENDING_REVIEW, STALE, VALIDATION_FAILED
from codemend.remediation.patch import build_file_patch

ORIGINAL = "def f(value):\n    return value == None\n"
FIXED = "def f(value):\n    return value is None\n"


def _propose(issue_store, issue, original, fixed, confidence=0.9, strategy="contextual"):
    issue_store.transition(issue.id, IssueState.ATTEMPTING)
    candidate = CandidatePatch(
        files=[build_file_patch(issue.file_path, original, fixed)],
        before=issue.snippet,
        after=issue.snippet.replace("== None", "is None"),
    )
    attempt = issue_store.add_attempt(
        FixAttempt(
            issue_id=issue.id,
            strategy=strategy,
            raw_confidence=confidence,
            calibrated_confidence=confidence,
            patch=candidate,
        )
    )
    return issue_store.require(issue.id), attempt


def test_validated_fix_is_committed(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED)

    result = applier.apply(issue, attempt)

    assert result.status == APPLIED
    assert (project_root / "mod.py").read_text() == FIXED
    assert result.issue.state == IssueState.MONITORING
    assert result.attempt.applied
    assert result.attempt.occurrences_at_apply == 1
    assert result.attempt.monitor_passes_remaining == 1
    assert all(applier.backups.exists(p) for p in result.attempt.backups.values())


def test_low_confidence_is_held_for_review(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED, confidence=0.65)

    result = applier.apply(issue, attempt)

    assert result.status == PENDING_REVIEW
    assert result.issue.state == IssueState.NEEDS_REVIEW
    assert result.attempt.outcome == AttemptOutcome.PENDING_REVIEW
    assert result.attempt.validation["syntax"]["status"] == "passed"
    assert (project_root / "mod.py").read_text() == ORIGINAL


def test_auto_apply_disabled_holds_every_fix(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED, confidence=0.99)

    assert applier.apply(issue, attempt, auto_apply=False).status == PENDING_REVIEW
    assert (project_root / "mod.py").read_text() == ORIGINAL


def test_approval_lifts_the_confidence_gate(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED, confidence=0.1)
    held = applier.apply(issue, attempt)

    result = applier.apply(held.issue, held.attempt, approved=True)
    assert result.status == APPLIED
    assert (project_root / "mod.py").read_text() == FIXED


def test_stale_patch_is_not_written(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED)
    (project_root / "mod.py").write_text(ORIGINAL + "# edited\n")

    result = applier.apply(issue, attempt)

    assert result.status == STALE
    assert result.attempt.outcome == AttemptOutcome.ROLLED_BACK
    assert result.attempt.validation == {"rollback": "stale"}
    assert result.issue.state == IssueState.ROLLED_BACK
    assert (project_root / "mod.py").read_text() == ORIGINAL + "# edited\n"


def test_repeated_validation_failures_go_to_review(applier, issue_store, calibrator, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    states = []
    for _ in range(3):
        issue, attempt = _propose(issue_store, issue, ORIGINAL, "def f(value:\n")
        result = applier.apply(issue, attempt)
        assert result.status == VALIDATION_FAILED
        assert result.report.failed_gate.name == "syntax"
        issue = result.issue
        states.append(issue.state)

    assert states == [IssueState.ROLLED_BACK, IssueState.ROLLED_BACK, IssueState.NEEDS_REVIEW]
    assert issue.validation_failures == 3
    assert calibrator.stats("contextual", "style").observations == 3
    assert (project_root / "mod.py").read_text() == ORIGINAL
    assert not any(applier.backups.backup_root.rglob("*.py"))


def test_failed_write_leaves_the_file_untouched(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED)

    with mock_patch("codemend.remediation.applier.write_atomic", side_effect=OSError("disk full")):
        result = applier.apply(issue, attempt)

    assert result.status == COMMIT_FAILED
    assert result.issue.state == IssueState.ROLLED_BACK
    assert result.attempt.validation["rollback"] == "commit"
    assert (project_root / "mod.py").read_text() == ORIGINAL


def test_rollback_restores_and_clears_applied(applier, issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", ORIGINAL)[0]
    issue, attempt = _propose(issue_store, issue, ORIGINAL, FIXED)
    applied = applier.apply(issue, attempt)

    result = applier.rollback(applied.issue, applied.attempt, reason="manual")

    assert result.restored
    assert (project_root / "mod.py").read_text() == ORIGINAL
    refreshed = issue_store.require(issue.id)
    assert refreshed.state == IssueState.ROLLED_BACK
    assert refreshed.applied_attempt is None
    assert refreshed.attempts[-1].validation["rollback"] == "regression"


def test_group_rollback_waits_for_an_apply_in_flight(applier, issue_store, project_root, detect_issues):
    first = detect_issues(project_root, "a.py", ORIGINAL)[0]
    second = detect_issues(project_root, "b.py", ORIGINAL)[0]
    issue_store.transition(first.id, IssueState.ATTEMPTING)
    group = issue_store.add_attempt(
        FixAttempt(
            issue_id=first.id,
            strategy="contextual",
            raw_confidence=0.9,
            calibrated_confidence=0.9,
            patch=CandidatePatch(
                files=[build_file_patch("a.py", ORIGINAL, FIXED), build_file_patch("b.py", ORIGINAL, FIXED)]
            ),
        )
    )
    landed = applier.apply(issue_store.require(first.id), group)
    assert landed.applied

    edited = FIXED + "# follow-up\n"
    issue, follow_up = _propose(issue_store, second, FIXED, edited)
    entered, release = threading.Event(), threading.Event()
    validate = applier.validator.validate

    def slow_validate(root, patch):
        entered.set()
        release.wait(5)
        return validate(root, patch)

    results = {}
    with mock_patch.object(applier.validator, "validate", side_effect=slow_validate):
        applying = threading.Thread(target=lambda: results.update(apply=applier.apply(issue, follow_up)))
        applying.start()
        assert entered.wait(5)

        rolling = threading.Thread(
            target=lambda: results.update(rollback=applier.rollback(landed.issue, landed.attempt, reason="regression"))
        )
        rolling.start()
        rolling.join(0.2)
        assert rolling.is_alive()

        release.set()
        applying.join(5)
        rolling.join(5)

    assert results["apply"].status == APPLIED
    assert not results["rollback"].restored
    assert "b.py changed externally" in results["rollback"].detail
    assert (project_root / "a.py").read_text() == FIXED
    assert (project_root / "b.py").read_text() == edited
