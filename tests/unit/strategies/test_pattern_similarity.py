import pytest

from codemend.models import AttemptOutcome, CandidatePatch, FixAttempt
from codemend.remediation.patch import build_file_patch
from codemend.remediation.templates import generalize
from codemend.strategies.base import StrategyContext
from codemend.strategies.pattern_match import PatternMatchStrategy
from codemend.strategies.similarity import CodebaseSimilarityStrategy

SOURCE = "def f(value):\n    return value == None\n"
TARGET = "def g(item):\n    return item == None\n"


def _ctx(project_root, rel_path, content):
    return StrategyContext(root=project_root, project=project_root.name, rel_path=rel_path, content=content)


def test_pattern_replays_learned_template(pattern_store, project_root, detect_issues):
    issue = detect_issues(project_root, "b.py", TARGET)[0]
    template = generalize("    return value == None\n", "    return value is None\n")
    pattern_store.promote(issue.pattern_key, issue.rule_id, issue.category, template)

    proposal = PatternMatchStrategy(pattern_store).propose(issue, _ctx(project_root, "b.py", TARGET))

    assert proposal.patch.files[0].content == "def g(item):\n    return item is None\n"
    assert proposal.confidence == pytest.approx(2 / 3)

    pattern_store.record_failure(issue.pattern_key, issue.rule_id, issue.category)
    proposal = PatternMatchStrategy(pattern_store).propose(issue, _ctx(project_root, "b.py", TARGET))
    assert proposal.confidence == pytest.approx(0.5)


def test_pattern_without_match_is_no_attempt(pattern_store, project_root, detect_issues):
    issue = detect_issues(project_root, "b.py", TARGET)[0]
    strategy = PatternMatchStrategy(pattern_store)
    assert strategy.propose(issue, _ctx(project_root, "b.py", TARGET)) is None

    other = generalize("    while value == None:\n", "    while value is None:\n")
    pattern_store.promote(issue.pattern_key, issue.rule_id, issue.category, other)
    assert strategy.propose(issue, _ctx(project_root, "b.py", TARGET)) is None


def _resolved_fix(issue_store, issue, before, after, original, fixed):
    issue_store.add_attempt(
        FixAttempt(
            issue_id=issue.id,
            strategy="contextual",
            outcome=AttemptOutcome.RESOLVED,
            patch=CandidatePatch(files=[build_file_patch(issue.file_path, original, fixed)], before=before, after=after),
        )
    )


def test_similarity_adapts_nearest_resolved_fix(issue_store, project_root, detect_issues):
    source = detect_issues(project_root, "a.py", SOURCE)[0]
    _resolved_fix(
        issue_store, source, source.snippet, source.snippet.replace("==", "is"), SOURCE, SOURCE.replace("==", "is")
    )
    issue = detect_issues(project_root, "b.py", TARGET)[0]

    proposal = CodebaseSimilarityStrategy(issue_store).propose(issue, _ctx(project_root, "b.py", TARGET))

    assert proposal.patch.files[0].content == "def g(item):\n    return item is None\n"
    assert 0.5 * 0.9 <= proposal.confidence < 0.9


def test_similarity_ignores_unresolved_and_dissimilar_fixes(issue_store, project_root, detect_issues):
    source = detect_issues(project_root, "a.py", SOURCE)[0]
    issue_store.add_attempt(
        FixAttempt(
            issue_id=source.id,
            strategy="contextual",
            outcome=AttemptOutcome.ROLLED_BACK,
            patch=CandidatePatch(files=[build_file_patch("a.py", SOURCE, SOURCE)], before=source.snippet, after="x"),
        )
    )
    issue = detect_issues(project_root, "b.py", TARGET)[0]
    strategy = CodebaseSimilarityStrategy(issue_store)
    assert strategy.propose(issue, _ctx(project_root, "b.py", TARGET)) is None

    long_form = "def h(x):\n    if x.attribute.compute(1, 2, 3) == None:\n        return 0\n"
    other = detect_issues(project_root, "c.py", long_form)[0]
    _resolved_fix(issue_store, other, other.snippet, other.snippet.replace("==", "is"), long_form, long_form)
    assert CodebaseSimilarityStrategy(issue_store, min_ratio=0.9).propose(issue, _ctx(project_root, "b.py", TARGET)) is None
