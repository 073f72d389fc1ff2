from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field


class ValidationConfig(BaseModel):
    # Use {file} as placeholder. Python is parsed in-process with ast and needs no command.
    syntax_commands: Dict[str, str] = Field(
        default_factory=lambda: {
            "go": "gofmt -e {file}",
        },
        description="Commands to check syntax for non-Python languages.",
    )
    type_check_commands: Dict[str, str] = Field(
        default_factory=dict,
        description="Type-check commands per language, e.g. {'python': 'mypy {file}'}. Empty disables the gate.",
    )
    lint_commands: Dict[str, str] = Field(
        default_factory=lambda: {
            "python": "ruff check --quiet --output-format concise {file}",
        },
        description="Lint commands per language. A patch may not add lint findings.",
    )
    # Use {scope} as placeholder: a space separated list of related test files.
    test_commands: Dict[str, str] = Field(
        default_factory=lambda: {
            "python": "pytest -q -x {scope}",
        },
        description="Commands to run related tests for different languages.",
    )
    run_tests: bool = Field(True, description="Run related tests when they can be discovered.")
    command_timeout: int = Field(60, description="Timeout in seconds for each gate command.")
    copy_ignore: List[str] = Field(
        default_factory=lambda: [".git", ".codemend", "__pycache__", "node_modules", ".venv", "venv"],
        description="Directories left out of the scratch project copy used for tests.",
    )

    @classmethod
    def default(cls) -> "ValidationConfig":
        return cls()
