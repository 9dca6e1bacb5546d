"""Hash tree-based change detection for efficient incremental indexing."""

from .hash_tree import HashTree, HashTreeResult, hash_content
from .file_walker import FileWalker
from .snapshot import FileRecord, Status, WorkspaceSnapshot
from .snapshot_manager import SnapshotManager
from .change_detector import ChangeDetector, FileChanges, ScanResult

__all__ = [
    'ChangeDetector',
    'FileChanges',
    'FileRecord',
    'FileWalker',
    'HashTree',
    'HashTreeResult',
    'ScanResult',
    'SnapshotManager',
    'Status',
    'WorkspaceSnapshot',
    'hash_content',
]
