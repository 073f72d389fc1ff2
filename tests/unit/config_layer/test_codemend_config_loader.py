import pytest

from codemend.config.loader import PROJECT_CONFIG_NAME, deep_merge, load_config
from codemend.models import Severity


def test_defaults_without_files(tmp_path):
    config = load_config(str(tmp_path), global_dir=tmp_path / "global")
    assert config.strategies.auto_apply_threshold == 0.7
    assert config.strategies.max_validation_failures == 3
    assert config.calibration.window == 200
    assert config.llm.provider == "dummy"


def test_project_overrides_global(tmp_path):
    global_dir = tmp_path / "global"
    global_dir.mkdir()
    (global_dir / "config.yaml").write_text("strategies:\n  default_floor: 0.5\n  auto_apply_threshold: 0.8\n")
    project = tmp_path / "proj"
    project.mkdir()
    (project / PROJECT_CONFIG_NAME).write_text(
        "strategies:\n  auto_apply_threshold: 0.9\nscan:\n  severity_floor: high\n  concurrency: 2\n"
    )

    config = load_config(str(project), global_dir=global_dir)

    assert config.strategies.default_floor == 0.5
    assert config.strategies.auto_apply_threshold == 0.9
    assert config.scan.severity_floor == Severity.HIGH
    assert config.scan.concurrency == 2


def test_invalid_values_raise_value_error(tmp_path):
    (tmp_path / PROJECT_CONFIG_NAME).write_text("scan:\n  strategies: [telepathy]\n")
    with pytest.raises(ValueError, match="Invalid codemend configuration"):
        load_config(str(tmp_path), global_dir=tmp_path / "global")


def test_unparseable_project_file_raises(tmp_path):
    (tmp_path / PROJECT_CONFIG_NAME).write_text("scan: [unclosed\n")
    with pytest.raises(ValueError, match="Error parsing project config"):
        load_config(str(tmp_path), global_dir=tmp_path / "global")


def test_unparseable_global_file_is_skipped(tmp_path):
    global_dir = tmp_path / "global"
    global_dir.mkdir()
    (global_dir / "config.yaml").write_text("scan: [unclosed\n")
    assert load_config(str(tmp_path), global_dir=global_dir).scan.auto_apply


def test_deep_merge_replaces_lists():
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
    merged = deep_merge(base, {"a": {"c": [3]}, "e": 2})
    assert merged == {"a": {"b": 1, "c": [3]}, "d": 1, "e": 2}
    assert base["a"]["c"] == [1, 2]
