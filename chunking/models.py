"""Chunk model shared by producers, the dispatcher and the delivery stage."""

import hashlib
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, Optional


LANGUAGE_BY_EXTENSION = {
    '.py': 'python',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.cjs': 'javascript',
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.java': 'java',
    '.go': 'go',
    '.rs': 'rust',
    '.c': 'c',
    '.h': 'c',
    '.cc': 'cpp',
    '.cpp': 'cpp',
    '.hpp': 'cpp',
    '.cs': 'csharp',
    '.rb': 'ruby',
    '.php': 'php',
    '.kt': 'kotlin',
    '.swift': 'swift',
    '.scala': 'scala',
    '.sh': 'shell',
    '.sql': 'sql',
    '.md': 'markdown',
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.toml': 'toml',
    '.html': 'html',
    '.css': 'css',
    '.vue': 'vue',
    '.svelte': 'svelte',
}


def detect_language(file_path: str) -> str:
    """Map a file path to a language tag ('unknown' when not recognised)."""
    return LANGUAGE_BY_EXTENSION.get(PurePosixPath(file_path).suffix.lower(), 'unknown')


def make_chunk_id(file_path: str, start_line: int, end_line: int, content: str) -> str:
    """Build a chunk id that is stable across runs for unchanged content.

    Format: ``<stem>_<md5(path)[:8]>_<start>-<end>_<sha256(content)[:8]>``
    """
    stem = PurePosixPath(file_path).stem or 'file'
    path_hash = hashlib.md5(file_path.encode('utf-8')).hexdigest()[:8]
    content_hash = hashlib.sha256(content.encode('utf-8')).hexdigest()[:8]
    return f"{stem}_{path_hash}_{start_line}-{end_line}_{content_hash}"


@dataclass
class Chunk:
    """A contiguous line range of one source file treated as one indexable unit."""

    id: str
    file_path: str  # relative to the workspace root, POSIX separators
    start_line: int
    end_line: int
    content: str
    language: str = 'unknown'
    parser: str = 'readline'
    chunk_type: str = 'block'
    name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        file_path: str,
        start_line: int,
        end_line: int,
        content: str,
        parser: str,
        chunk_type: str = 'block',
        name: Optional[str] = None,
        language: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> 'Chunk':
        """Create a chunk with a derived stable id and language tag."""
        return cls(
            id=make_chunk_id(file_path, start_line, end_line, content),
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            content=content,
            language=language or detect_language(file_path),
            parser=parser,
            chunk_type=chunk_type,
            name=name,
            metadata=dict(metadata or {}),
        )

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode('utf-8'))

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation expected by the embedding service."""
        return {
            'chunkId': self.id,
            'filePath': self.file_path,
            'language': self.language,
            'startLine': self.start_line,
            'endLine': self.end_line,
            'content': self.content,
            'parser': self.parser,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert chunk to dictionary."""
        return {
            'id': self.id,
            'file_path': self.file_path,
            'start_line': self.start_line,
            'end_line': self.end_line,
            'content': self.content,
            'language': self.language,
            'parser': self.parser,
            'chunk_type': self.chunk_type,
            'name': self.name,
            'metadata': self.metadata,
        }
