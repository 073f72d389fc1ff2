import pytest

from codemend.errors import DataStoreFailure, InvalidTransition
from codemend.models import AttemptOutcome, FixAttempt, IssueState, ReviewDecision

CONTENT = "def f(value):\n    return value == None\n"


def test_sync_creates_then_updates(issue_store, project_root, detect_issues):
    issues = detect_issues(project_root, "mod.py", CONTENT)
    assert len(issues) == 1
    issue = issues[0]
    assert issue.state == IssueState.DETECTED
    assert issue.project == project_root.name

    # Same defect pushed down two lines keeps its identity.
    moved = detect_issues(project_root, "mod.py", "import os\n\n" + CONTENT + "print(os)\n")
    assert [i.id for i in moved] == [issue.id]
    assert moved[0].line == 4


def test_sync_closes_issues_no_longer_detected(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    assert detect_issues(project_root, "mod.py", "def f(value):\n    return value is None\n") == []
    assert issue_store.require(issue.id).state == IssueState.RESOLVED


def test_resolved_issue_reopens_when_detected_again(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    detect_issues(project_root, "mod.py", "x = 1\n")

    reopened = detect_issues(project_root, "mod.py", CONTENT)
    assert [i.id for i in reopened] == [issue.id]
    assert reopened[0].state == IssueState.DETECTED


def test_dismissed_issue_stays_suppressed(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    issue_store.transition(issue.id, IssueState.ATTEMPTING)
    issue_store.transition(issue.id, IssueState.ESCALATED)
    issue_store.transition(issue.id, IssueState.NEEDS_REVIEW)
    issue_store.transition(issue.id, IssueState.DISMISSED)

    assert detect_issues(project_root, "mod.py") == []
    assert issue_store.require(issue.id).state == IssueState.DISMISSED


def test_transition_rejects_illegal_edges(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    with pytest.raises(InvalidTransition):
        issue_store.transition(issue.id, IssueState.MONITORING)


def test_transition_is_compare_and_swap(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    issue_store.transition(issue.id, IssueState.ATTEMPTING, expected=[IssueState.DETECTED])
    # A second worker that still believes the issue is Detected loses.
    with pytest.raises(InvalidTransition) as exc:
        issue_store.transition(issue.id, IssueState.ATTEMPTING, expected=[IssueState.DETECTED])
    assert exc.value.current == IssueState.ATTEMPTING.value


def test_attempts_are_numbered_in_order(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    first = issue_store.add_attempt(FixAttempt(issue_id=issue.id, strategy="pattern_match", outcome=AttemptOutcome.NO_ATTEMPT))
    second = issue_store.add_attempt(FixAttempt(issue_id=issue.id, strategy="contextual", raw_confidence=0.9))

    assert (first.sequence, second.sequence) == (1, 2)
    history = issue_store.require(issue.id).attempts
    assert [a.strategy for a in history] == ["pattern_match", "contextual"]


def test_only_one_attempt_per_issue_can_be_applied(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    first = issue_store.add_attempt(FixAttempt(issue_id=issue.id, strategy="contextual"))
    second = issue_store.add_attempt(FixAttempt(issue_id=issue.id, strategy="generative"))

    issue_store.mark_applied(first.id, backups={}, post_apply_hashes={}, monitor_passes=1, occurrences=1)
    with pytest.raises(DataStoreFailure):
        issue_store.mark_applied(second.id, backups={}, post_apply_hashes={}, monitor_passes=1, occurrences=1)

    applied = [a for a in issue_store.require(issue.id).attempts if a.applied]
    assert [a.id for a in applied] == [first.id]


def test_update_attempt_refuses_the_applied_flag(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    attempt = issue_store.add_attempt(FixAttempt(issue_id=issue.id, strategy="contextual"))
    with pytest.raises(ValueError):
        issue_store.update_attempt(attempt.id, applied=True)


def test_review_decision_and_pending_attempt(issue_store, project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", CONTENT)[0]
    assert issue_store.pending_review_attempt(issue.id) is None
    attempt = issue_store.add_attempt(
        FixAttempt(issue_id=issue.id, strategy="contextual", outcome=AttemptOutcome.PENDING_REVIEW)
    )
    issue_store.set_review_decision(issue.id, ReviewDecision.DEFER)

    assert issue_store.pending_review_attempt(issue.id).id == attempt.id
    assert issue_store.require(issue.id).review_decision == ReviewDecision.DEFER


def test_list_issues_filters(issue_store, project_root, detect_issues):
    detect_issues(project_root, "a.py", CONTENT)
    other = detect_issues(project_root, "b.py", CONTENT)[0]
    issue_store.transition(other.id, IssueState.ATTEMPTING)

    assert len(issue_store.list_issues(project_root.name)) == 2
    assert [i.file_path for i in issue_store.list_issues(file_path="a.py")] == ["a.py"]
    attempting = issue_store.list_issues(project_root.name, states=[IssueState.ATTEMPTING])
    assert [i.id for i in attempting] == [other.id]
    assert issue_store.files_with_open_issues(project_root.name) == {"a.py", "b.py"}
