import fnmatch
import hashlib
import os
from pathlib import Path
from typing import Iterable, List, Optional

from gitignore_parser import parse_gitignore


def scan_directory(
    path: str,
    exclude_patterns: Optional[List[str]] = None,
    extensions: Optional[Iterable[str]] = None,
) -> List[Path]:
    """
    Scans a directory recursively, filtering files based on .gitignore rules,
    exclude patterns and an optional extension allow-list.
    Returned paths are absolute and sorted.
    """
    base_dir = Path(path).resolve()
    gitignore_path = base_dir / ".gitignore"

    matches = None
    if gitignore_path.is_file():
        matches = parse_gitignore(str(gitignore_path), base_dir=str(base_dir))

    allowed = {e.lower() for e in extensions} if extensions else None
    filtered_files = []

    for root, dirs, files in os.walk(base_dir):
        dirs[:] = [d for d in dirs if d != ".git"]
        for name in files:
            file_path = Path(root) / name
            if allowed is not None and file_path.suffix.lower() not in allowed:
                continue
            if matches and matches(str(file_path)):
                continue
            if exclude_patterns and is_excluded(relative_posix(file_path, base_dir), exclude_patterns):
                continue
            filtered_files.append(file_path)

    return sorted(filtered_files)


def is_excluded(rel_path: str, patterns: List[str]) -> bool:
    return any(fnmatch.fnmatch(rel_path, pattern) for pattern in patterns)


def relative_posix(file_path: Path, root: Path) -> str:
    return file_path.resolve().relative_to(root.resolve()).as_posix()


def compute_hash(file_path: Path) -> str:
    """
    Computes the SHA-256 hash of a file.
    """
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(8192):
            sha256.update(chunk)
    return sha256.hexdigest()


def hash_text(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def detect_language(file_path: Path) -> str:
    """
    Detects the programming language of a file based on its extension.
    """
    extension_map = {
        ".py": "python",
        ".pyi": "python",
        ".go": "go",
        ".java": "java",
        ".js": "javascript",
        ".ts": "typescript",
        ".rs": "rust",
    }
    return extension_map.get(Path(file_path).suffix, "unknown")


def read_text(file_path: Path) -> str:
    with open(file_path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def write_atomic(file_path: Path, content) -> None:
    """Writes text or bytes next to the target and swaps it in with os.replace."""
    file_path = Path(file_path)
    tmp_path = file_path.with_name(f".{file_path.name}.codemend-tmp")
    data = content.encode("utf-8") if isinstance(content, str) else content
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    try:
        mode = file_path.stat().st_mode
        os.chmod(tmp_path, mode)
    except FileNotFoundError:
        pass
    os.replace(tmp_path, file_path)
