"""Documents written to and hits read from a vector store."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from chunking.models import Chunk


@dataclass
class VectorDocument:
    """One embedded chunk ready for storage."""

    id: str
    vector: Optional[np.ndarray]
    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str = 'unknown'
    parser: str = 'readline'
    vector_model: str = 'unknown'
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector: Optional[np.ndarray], vector_model: str) -> 'VectorDocument':
        return cls(
            id=chunk.id,
            vector=vector,
            file_path=chunk.file_path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            content=chunk.content,
            language=chunk.language,
            parser=chunk.parser,
            vector_model=vector_model,
            metadata={'chunk_type': chunk.chunk_type, 'name': chunk.name, **chunk.metadata},
        )

    def to_record(self, owner: str, device: str, workspace: str) -> Dict[str, Any]:
        """Field layout used by the remote store's collection schema."""
        return {
            'id': self.id,
            'vector': [] if self.vector is None else [float(v) for v in self.vector],
            'user_id': owner,
            'device_id': device,
            'workspace_path': workspace,
            'file_path': self.file_path,
            'start_line': self.start_line,
            'end_line': self.end_line,
            'code': self.content,
            'language': self.language,
            'parser': self.parser,
            'vector_model': self.vector_model,
            'created_at': datetime.now().isoformat(),
        }

    def to_metadata(self) -> Dict[str, Any]:
        """Everything but the vector, for local metadata storage."""
        return {
            'file_path': self.file_path,
            'start_line': self.start_line,
            'end_line': self.end_line,
            'content': self.content,
            'language': self.language,
            'parser': self.parser,
            'vector_model': self.vector_model,
            **self.metadata,
        }


@dataclass
class SearchHit:
    """A single search result."""

    chunk_id: str
    score: float
    file_path: str = ''
    start_line: int = 0
    end_line: int = 0
    content: str = ''
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpsertOutcome:
    """Result of a gateway upsert: stored in the backend or held in the buffer."""

    stored: List[str] = field(default_factory=list)
    buffered: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.buffered)

    @property
    def accepted_ids(self) -> List[str]:
        return self.stored + self.buffered
