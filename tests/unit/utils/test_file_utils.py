import hashlib
from pathlib import Path

import pytest

from codemend.utils.file_utils import (
    compute_hash,
    detect_language,
    hash_text,
    read_text,
    scan_directory,
    write_atomic,
)


@pytest.fixture
def test_repo(tmp_path: Path):
    """Creates a temporary directory structure for testing."""
    repo_dir = tmp_path / "test_repo"
    repo_dir.mkdir()

    (repo_dir / ".gitignore").write_text("*.pyc\n__pycache__/\nbuild/\n")
    (repo_dir / "valid.py").write_text("print('hello')")
    (repo_dir / "ignored.pyc").write_text("binary_stuff")

    nested_dir = repo_dir / "src"
    nested_dir.mkdir()
    (nested_dir / "main.go").write_text("package main")
    (nested_dir / "another.py").write_text("import this")

    pycache_dir = repo_dir / "__pycache__"
    pycache_dir.mkdir()
    (pycache_dir / "cachefile.bin").write_text("cached")

    build_dir = nested_dir / "build"
    build_dir.mkdir()
    (build_dir / "output.o").write_text("object file")

    backups = repo_dir / ".codemend" / "backups"
    backups.mkdir(parents=True)
    (backups / "valid.py").write_text("print('old')")

    return repo_dir


def test_scan_directory_respects_gitignore(test_repo: Path):
    relative_files = {p.relative_to(test_repo) for p in scan_directory(str(test_repo))}

    assert relative_files == {
        Path("valid.py"),
        Path("src/main.go"),
        Path("src/another.py"),
        Path(".gitignore"),
        Path(".codemend/backups/valid.py"),
    }


def test_scan_directory_filters_patterns_and_extensions(test_repo: Path):
    scanned = scan_directory(str(test_repo), [".codemend/*"], extensions=[".py"])

    assert [p.relative_to(test_repo).as_posix() for p in scanned] == ["src/another.py", "valid.py"]


def test_compute_file_hash(tmp_path: Path):
    test_file = tmp_path / "test.txt"
    test_file.write_bytes(b"hello world")

    assert compute_hash(test_file) == hashlib.sha256(b"hello world").hexdigest()
    assert hash_text("hello world") == compute_hash(test_file)


def test_detect_language_by_extension():
    assert detect_language(Path("test.go")) == "go"
    assert detect_language(Path("main.py")) == "python"
    assert detect_language(Path("stubs.pyi")) == "python"
    assert detect_language(Path("archive.zip")) == "unknown"
    assert detect_language(Path("Makefile")) == "unknown"


def test_read_text_keeps_line_endings(tmp_path: Path):
    path = tmp_path / "win.py"
    path.write_bytes(b"a = 1\r\nb = 2\r\n")

    assert read_text(path) == "a = 1\r\nb = 2\r\n"


def test_write_atomic_replaces_and_keeps_mode(tmp_path: Path):
    path = tmp_path / "tool.py"
    path.write_text("old\n")
    path.chmod(0o755)

    write_atomic(path, "new\r\n")

    assert path.read_bytes() == b"new\r\n"
    assert path.stat().st_mode & 0o777 == 0o755
    assert list(tmp_path.iterdir()) == [path]
