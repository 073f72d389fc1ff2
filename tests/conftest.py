from pathlib import Path

import pytest

from codemend.calibration.calibrator import ConfidenceCalibrator
from codemend.config.defaults import CodemendConfig
from codemend.config.validation import ValidationConfig
from codemend.detectors.python_detector import PythonDetector
from codemend.learning.loop import LearningLoop
from codemend.remediation.applier import Applier
from codemend.remediation.backup import BackupManager
from codemend.remediation.validator import PatchValidator
from codemend.scanner.fingerprint import fingerprint_issues
from codemend.store.engine import StorageEngine
from codemend.store.issue_store import IssueStore
from codemend.store.pattern_store import PatternStore
from codemend.store.snapshot_store import SnapshotStore


@pytest.fixture
def storage(tmp_path: Path):
    return StorageEngine(f"sqlite:///{tmp_path / 'codemend.db'}")


@pytest.fixture
def issue_store(storage):
    return IssueStore(storage)


@pytest.fixture
def pattern_store(storage):
    return PatternStore(storage)


@pytest.fixture
def snapshot_store(storage):
    return SnapshotStore(storage)


@pytest.fixture
def calibrator(storage):
    return ConfidenceCalibrator(storage)


@pytest.fixture
def learning(calibrator, pattern_store):
    return LearningLoop(calibrator, pattern_store)


@pytest.fixture
def project_root(tmp_path: Path):
    """A scan root kept apart from the database file."""
    root = tmp_path / "proj"
    root.mkdir()
    return root


@pytest.fixture
def offline_validation():
    """Syntax gate only; no external linters or test runners."""
    return ValidationConfig(lint_commands={}, test_commands={}, type_check_commands={})


@pytest.fixture
def offline_config(tmp_path: Path, offline_validation):
    config = CodemendConfig.default()
    config.validation = offline_validation
    config.llm.enabled = False
    config.integrations.log_events = False
    config.storage.db_url = f"sqlite:///{tmp_path / 'codemend.db'}"
    return config


@pytest.fixture
def applier(project_root, issue_store, offline_validation, learning):
    backups = BackupManager(project_root)
    return Applier(project_root, issue_store, PatchValidator(offline_validation), backups, learning=learning)


@pytest.fixture
def detect_issues(issue_store):
    """Writes ``content`` (when given), runs the Python detector and syncs the findings."""

    def _detect(root: Path, rel_path: str, content=None):
        path = root / rel_path
        if content is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content.encode("utf-8"))
        text = path.read_bytes().decode("utf-8")
        findings = fingerprint_issues(PythonDetector().detect(rel_path, text))
        return issue_store.sync_file(root.name, rel_path, findings).issues

    return _detect
