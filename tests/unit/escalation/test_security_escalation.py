import pytest

from codemend.detectors.python_detector import PythonDetector
from codemend.escalation.security import SecurityEscalation
from codemend.strategies.base import StrategyContext


def _propose(project_root, detect_issues, content, rule):
    issue = [i for i in detect_issues(project_root, "mod.py", content) if i.rule_id == rule][0]
    ctx = StrategyContext(root=project_root, project=project_root.name, rel_path="mod.py", content=content)
    handler = SecurityEscalation(PythonDetector())
    assert handler.can_handle(issue)
    return handler.propose(issue, ctx)


def test_eval_becomes_literal_eval(project_root, detect_issues):
    proposal = _propose(project_root, detect_issues, "def load(text):\n    return eval(text)\n", "eval-usage")

    assert proposal.patch.files[0].content == "import ast\ndef load(text):\n    return ast.literal_eval(text)\n"
    assert proposal.confidence == pytest.approx(0.9)
    assert proposal.notes == "recognized, parses, construct-removed, nothing-introduced"


def test_secret_moves_to_the_environment(project_root, detect_issues):
    proposal = _propose(project_root, detect_issues, "import os\n\nAPI_KEY = 'sk-live-123456'\nprint(os.sep)\n", "hardcoded-secret")

    assert proposal.patch.files[0].content == (
        "import os\n\nAPI_KEY = os.environ.get('API_KEY', '')\nprint(os.sep)\n"
    )
    assert proposal.confidence == pytest.approx(0.9)


def test_constant_shell_command_becomes_argv(project_root, detect_issues):
    content = "import subprocess\n\n\ndef listing():\n    subprocess.run('ls -la', shell=True)\n"
    proposal = _propose(project_root, detect_issues, content, "shell-true")

    assert proposal.patch.files[0].content == (
        "import subprocess\n\n\ndef listing():\n    subprocess.run(['ls', '-la'])\n"
    )


def test_dynamic_shell_command_is_split(project_root, detect_issues):
    content = "import subprocess\n\n\ndef execute(cmd):\n    return subprocess.check_output(cmd, shell=True)\n"
    proposal = _propose(project_root, detect_issues, content, "shell-true")

    assert proposal.patch.files[0].content == (
        "import subprocess\nimport shlex\n\n\ndef execute(cmd):\n    return subprocess.check_output(shlex.split(cmd))\n"
    )
    assert proposal.patch.imports == ["import shlex"]


def test_shell_features_are_left_alone(project_root, detect_issues):
    content = "import subprocess\n\nsubprocess.run('ls | wc -l', shell=True)\n"
    assert _propose(project_root, detect_issues, content, "shell-true") is None


def test_only_security_rules_are_handled(project_root, detect_issues):
    issue = detect_issues(project_root, "mod.py", "x = 1\nif x == None:\n    pass\n")[0]
    assert not SecurityEscalation(PythonDetector()).can_handle(issue)
