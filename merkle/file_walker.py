"""Workspace file listing with ignore rules."""

import fnmatch
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

# Common large/build/tooling directories to skip during traversal
DEFAULT_IGNORED_DIRS = {
    '__pycache__', '.git', '.hg', '.svn',
    '.venv', 'venv', 'env', '.env', '.direnv',
    'node_modules', '.pnpm-store', '.yarn',
    '.pytest_cache', '.mypy_cache', '.ruff_cache', '.pytype', '.ipynb_checkpoints',
    'build', 'dist', 'out',
    '.next', '.nuxt', '.svelte-kit', '.angular', '.cache', '.parcel-cache', '.turbo',
    'coverage', '.coverage', '.nyc_output',
    '.gradle', '.idea', '.vscode', '.tox', '.terraform',
    'target', 'bin', 'obj',
}

DEFAULT_IGNORE_PATTERNS = {'*.pyc', '*.pyo', '*.min.js', '*.lock', '.DS_Store', 'Thumbs.db'}

DEFAULT_MAX_FILE_SIZE = 2 * 1024 * 1024
BINARY_SNIFF_BYTES = 8192


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    """Check a relative POSIX path against fnmatch patterns.

    A pattern matches the whole relative path, the file name, or any single
    path segment (so ``generated`` ignores ``src/generated/x.py``).
    """
    path = PurePosixPath(relative_path)
    for pattern in patterns:
        if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(path.name, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in path.parts[:-1]):
            return True
    return False


def is_binary(sample: bytes) -> bool:
    """Heuristic: a NUL byte in the leading sample means binary."""
    return b'\x00' in sample


class FileWalker:
    """Lists indexable files under a workspace root in a stable order."""

    def __init__(
        self,
        ignore_patterns: Optional[Iterable[str]] = None,
        ignored_dirs: Optional[Iterable[str]] = None,
        extensions: Optional[Iterable[str]] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ):
        """Initialize walker.

        Args:
            ignore_patterns: fnmatch patterns added to the defaults
            ignored_dirs: Directory names to prune (defaults when None)
            extensions: Optional whitelist of suffixes such as ``.py``
            max_file_size: Files larger than this are skipped
        """
        self.ignore_patterns: Set[str] = set(DEFAULT_IGNORE_PATTERNS)
        if ignore_patterns:
            self.ignore_patterns.update(ignore_patterns)
        self.ignored_dirs: Set[str] = set(DEFAULT_IGNORED_DIRS if ignored_dirs is None else ignored_dirs)
        self.extensions = {ext.lower() for ext in extensions} if extensions else None
        self.max_file_size = max_file_size
        self.skipped: List[str] = []

    def list_files(self, root: str, ignore_rules: Optional[Iterable[str]] = None) -> List[str]:
        """List files under ``root`` as sorted relative POSIX paths.

        Args:
            root: Workspace root
            ignore_rules: Extra fnmatch patterns for this call only

        Returns:
            Lexicographically sorted relative paths
        """
        root_path = Path(root).resolve()
        patterns = set(self.ignore_patterns)
        if ignore_rules:
            patterns.update(ignore_rules)

        self.skipped = []
        files: List[str] = []

        for dirpath, dirnames, filenames in os.walk(root_path, onerror=self._log_walk_error):
            current = Path(dirpath)
            relative_dir = current.relative_to(root_path).as_posix()
            # Prune in place so os.walk does not descend
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in self.ignored_dirs
                and not matches_any(d if relative_dir == '.' else f"{relative_dir}/{d}", patterns)
            )

            for name in filenames:
                relative = name if relative_dir == '.' else f"{relative_dir}/{name}"
                if matches_any(relative, patterns):
                    continue
                if self.extensions is not None and PurePosixPath(name).suffix.lower() not in self.extensions:
                    continue
                if not self._accept(current / name, relative):
                    continue
                files.append(relative)

        files.sort()
        return files

    def read_file(self, path: str, root: Optional[str] = None) -> bytes:
        """Read a file as bytes; relative paths are resolved against ``root``."""
        file_path = Path(path)
        if root is not None and not file_path.is_absolute():
            file_path = Path(root) / file_path
        with open(file_path, 'rb') as f:
            return f.read()

    def _accept(self, full_path: Path, relative: str) -> bool:
        try:
            if full_path.is_symlink() and not full_path.exists():
                logger.debug(f"Skipping broken symlink: {relative}")
                self.skipped.append(relative)
                return False
            size = full_path.stat().st_size
        except OSError:
            # Let the reader report it as a failed file
            return True

        if size > self.max_file_size:
            logger.warning(f"File {relative} exceeds maximum size limit ({size} bytes, max: {self.max_file_size} bytes)")
            self.skipped.append(relative)
            return False

        try:
            with open(full_path, 'rb') as f:
                if is_binary(f.read(BINARY_SNIFF_BYTES)):
                    logger.debug(f"Skipping binary file: {relative}")
                    self.skipped.append(relative)
                    return False
        except OSError:
            return True

        return True

    @staticmethod
    def _log_walk_error(error: OSError) -> None:
        logger.warning(f"Cannot list directory {getattr(error, 'filename', '?')}: {error}")
