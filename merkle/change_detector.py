"""Scans a workspace and detects changes between snapshots."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .file_walker import FileWalker
from .hash_tree import HashTree, hash_content
from .snapshot import FileRecord, Status, WorkspaceSnapshot
from .snapshot_manager import SnapshotManager

logger = logging.getLogger(__name__)


@dataclass
class FileChanges:
    """Container for file change information."""

    added: List[str]
    removed: List[str]
    modified: List[str]
    unchanged: List[str]
    failed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> List[str]:
        """Files whose chunks must be produced again (modified + added)."""
        return sorted(self.modified + self.added)

    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)

    def total_changed(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def to_dict(self) -> Dict:
        return {
            'added': self.added,
            'removed': self.removed,
            'modified': self.modified,
            'unchanged': self.unchanged,
            'failed': self.failed,
            'summary': {
                'added_count': len(self.added),
                'removed_count': len(self.removed),
                'modified_count': len(self.modified),
                'unchanged_count': len(self.unchanged),
                'failed_count': len(self.failed),
                'total_changed': self.total_changed(),
            },
        }


@dataclass
class ScanResult:
    """Outcome of scanning a workspace."""

    records: List[FileRecord]
    snapshot: WorkspaceSnapshot

    @property
    def failed(self) -> List[FileRecord]:
        return [r for r in self.records if r.status is Status.FAILED]

    @property
    def readable(self) -> List[FileRecord]:
        return [r for r in self.records if r.status is not Status.FAILED]


class ChangeDetector:
    """Builds workspace snapshots and diffs them against the previous run."""

    def __init__(
        self,
        snapshot_manager: Optional[SnapshotManager] = None,
        file_walker: Optional[FileWalker] = None,
        ignore_rules: Optional[Iterable[str]] = None,
    ):
        """Initialize change detector.

        Args:
            snapshot_manager: Snapshot persistence
            file_walker: File listing/reading collaborator
            ignore_rules: Externally supplied fnmatch ignore patterns
        """
        self.snapshot_manager = snapshot_manager or SnapshotManager()
        self.file_walker = file_walker or FileWalker()
        self.ignore_rules = list(ignore_rules or [])

    def _effective_ignore_rules(self, root_path: Path) -> List[str]:
        rules = list(self.ignore_rules)
        # Keep our own snapshot files out of the scan when stored inside the workspace
        try:
            relative_snapshot = self.snapshot_manager.storage_dir.resolve().relative_to(root_path)
            rules.append(relative_snapshot.as_posix())
            rules.append(f"{relative_snapshot.as_posix()}/*")
        except ValueError:
            pass
        return rules

    def scan(self, project_path: str) -> ScanResult:
        """Hash every file and build the workspace hash tree.

        Unreadable files are recorded as failed and left out of the tree; the
        scan never aborts because of a single file.

        Args:
            project_path: Workspace root

        Returns:
            ScanResult with ordered records and the new snapshot
        """
        root_path = Path(project_path).resolve()
        paths = self.file_walker.list_files(str(root_path), self._effective_ignore_rules(root_path))

        records: List[FileRecord] = []
        hashed: List[Tuple[str, str]] = []
        for relative in paths:
            try:
                content = self.file_walker.read_file(relative, root=str(root_path))
            except OSError as e:
                logger.warning(f"Cannot read {relative}: {e}")
                records.append(FileRecord(path=relative, content_hash=None, status=Status.FAILED, error=str(e)))
                continue

            file_hash = hash_content(content)
            records.append(FileRecord(path=relative, content_hash=file_hash, size=len(content)))
            hashed.append((relative, file_hash))

        tree = HashTree()
        result = tree.build([file_hash for _, file_hash in hashed])
        snapshot = WorkspaceSnapshot(
            root_path=str(root_path),
            root_hash=result.root_hash,
            leaf_hashes=[file_hash for _, file_hash in hashed],
            levels=result.levels,
            files=hashed,
        )

        logger.info(
            f"Scanned {len(paths)} files in {root_path} "
            f"({len(hashed)} hashed, {len(records) - len(hashed)} unreadable), root {snapshot.root_hash[:12]}"
        )
        return ScanResult(records=records, snapshot=snapshot)

    def detect_changes(
        self,
        old_snapshot: WorkspaceSnapshot,
        new_snapshot: WorkspaceSnapshot,
        failed: Optional[Iterable[str]] = None,
    ) -> FileChanges:
        """Detect file changes between two snapshots.

        Args:
            old_snapshot: Previous state
            new_snapshot: Current state
            failed: Paths that could not be read in the current scan; they are
                reported as failed instead of removed

        Returns:
            FileChanges object with sorted path lists
        """
        failed_paths = sorted(set(failed or []))
        old_files = old_snapshot.get_file_hashes()
        new_files = new_snapshot.get_file_hashes()

        if (old_snapshot.root_hash == new_snapshot.root_hash
                and old_snapshot.file_count == new_snapshot.file_count
                and old_files.keys() == new_files.keys()):
            return FileChanges(added=[], removed=[], modified=[], unchanged=sorted(new_files), failed=failed_paths)

        old_paths = set(old_files)
        new_paths = set(new_files)

        added = sorted(new_paths - old_paths)
        removed = sorted(old_paths - new_paths - set(failed_paths))

        modified = []
        unchanged = []
        for path in sorted(old_paths & new_paths):
            if old_files[path] != new_files[path]:
                modified.append(path)
            else:
                unchanged.append(path)

        return FileChanges(added=added, removed=removed, modified=modified, unchanged=unchanged, failed=failed_paths)

    def detect_changes_from_snapshot(
        self, project_path: str
    ) -> Tuple[FileChanges, WorkspaceSnapshot, List[FileRecord]]:
        """Scan the workspace and diff it against the saved snapshot.

        Args:
            project_path: Path to project

        Returns:
            Tuple of (FileChanges, current snapshot, scanned records)
        """
        scan = self.scan(project_path)
        failed = [r.path for r in scan.failed]
        old_snapshot = self.snapshot_manager.load_snapshot(project_path)

        if old_snapshot is None:
            changes = FileChanges(
                added=scan.snapshot.get_all_files(),
                removed=[],
                modified=[],
                unchanged=[],
                failed=failed,
            )
        else:
            changes = self.detect_changes(old_snapshot, scan.snapshot, failed)

        return changes, scan.snapshot, scan.records

    def quick_check(self, project_path: str) -> bool:
        """Quick check whether a project changed by comparing roots and leaf counts.

        Returns:
            True if the project changed or no snapshot exists
        """
        old_snapshot = self.snapshot_manager.load_snapshot(project_path)
        if old_snapshot is None:
            return True
        current = self.scan(project_path).snapshot
        return old_snapshot.root_hash != current.root_hash or old_snapshot.file_count != current.file_count

    def get_files_to_reindex(self, changes: FileChanges) -> List[str]:
        return changes.changed

    def get_files_to_remove(self, changes: FileChanges) -> List[str]:
        """Files whose stored chunks must be dropped (removed + modified)."""
        return sorted(changes.removed + changes.modified)
