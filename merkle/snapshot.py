"""Workspace snapshot and per-file records."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Status(str, Enum):
    """Progress status shared by files and chunks."""

    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (Status.COMPLETED, Status.FAILED)


@dataclass
class FileRecord:
    """One scanned file."""

    path: str
    content_hash: Optional[str]
    status: Status = Status.PENDING
    chunk_count: int = 0
    size: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'content_hash': self.content_hash,
            'status': self.status.value,
            'chunk_count': self.chunk_count,
            'size': self.size,
            'error': self.error,
        }


@dataclass
class WorkspaceSnapshot:
    """Hash tree state of a workspace at scan time.

    ``files`` and ``leaf_hashes`` are ordered 1:1 (lexicographic by path).
    """

    root_path: str
    root_hash: str
    leaf_hashes: List[str] = field(default_factory=list)
    levels: List[List[str]] = field(default_factory=list)
    files: List[Tuple[str, str]] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def file_count(self) -> int:
        return len(self.files)

    def get_file_hashes(self) -> Dict[str, str]:
        """Map of relative path to content hash."""
        return dict(self.files)

    def get_all_files(self) -> List[str]:
        return [path for path, _ in self.files]

    def to_dict(self) -> Dict[str, Any]:
        """Convert snapshot to dictionary for serialization."""
        return {
            'root_path': self.root_path,
            'root_hash': self.root_hash,
            'leaf_hashes': self.leaf_hashes,
            'levels': self.levels,
            'files': [[path, file_hash] for path, file_hash in self.files],
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkspaceSnapshot':
        """Create snapshot from dictionary."""
        return cls(
            root_path=data['root_path'],
            root_hash=data['root_hash'],
            leaf_hashes=list(data.get('leaf_hashes', [])),
            levels=[list(level) for level in data.get('levels', [])],
            files=[(path, file_hash) for path, file_hash in data.get('files', [])],
            created_at=data.get('created_at', ''),
        )
