"""Chunk model and chunk producers."""

from .models import Chunk, detect_language, make_chunk_id
from .line_chunker import LineWindowChunker
from .producer import ChunkProducer, CodeChunkProducer
from .splitter import MAX_CHUNK_BYTES, split_oversized
from .tree_sitter import TreeSitterChunker

__all__ = [
    'Chunk',
    'ChunkProducer',
    'CodeChunkProducer',
    'LineWindowChunker',
    'MAX_CHUNK_BYTES',
    'TreeSitterChunker',
    'detect_language',
    'make_chunk_id',
    'split_oversized',
]
