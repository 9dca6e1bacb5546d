"""Chunk producer that picks a parser per file."""

import logging
from typing import List, Optional, Protocol, Union

from .line_chunker import LineWindowChunker
from .models import Chunk
from .tree_sitter import TreeSitterChunker

logger = logging.getLogger(__name__)


class ChunkProducer(Protocol):
    """Anything that turns file content into chunks.

    Implementations may raise; the dispatcher records the file as failed.
    """

    def produce_chunks(self, file_content: Union[bytes, str], file_path: str) -> List[Chunk]:
        ...


class CodeChunkProducer:
    """Unified producer: tree-sitter where a grammar exists, line windows otherwise."""

    def __init__(
        self,
        tree_sitter_chunker: Optional[TreeSitterChunker] = None,
        line_chunker: Optional[LineWindowChunker] = None,
    ):
        """Initialize producer.

        Args:
            tree_sitter_chunker: Semantic chunker for supported languages
            line_chunker: Fallback chunker for everything else
        """
        self.tree_sitter_chunker = tree_sitter_chunker or TreeSitterChunker()
        self.line_chunker = line_chunker or LineWindowChunker()

    def produce_chunks(self, file_content: Union[bytes, str], file_path: str) -> List[Chunk]:
        """Chunk one file.

        Args:
            file_content: Raw bytes (decoded as strict UTF-8) or text
            file_path: Workspace-relative path

        Returns:
            Chunks in source order

        Raises:
            UnicodeDecodeError: If the bytes are not valid UTF-8
        """
        if isinstance(file_content, bytes):
            source = file_content.decode('utf-8')
        else:
            source = file_content

        if not source.strip():
            return []

        if self.tree_sitter_chunker.is_supported(file_path):
            try:
                chunks = self.tree_sitter_chunker.chunk_code(source, file_path)
                if chunks:
                    return chunks
            except Exception as e:
                logger.warning(f"Tree-sitter chunking failed for {file_path}: {e}, falling back to line windows")

        return self.line_chunker.chunk_code(source, file_path)
