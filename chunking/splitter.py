"""Split chunks whose content exceeds the embedding service's size limit."""

import logging
from typing import List

from .models import Chunk

logger = logging.getLogger(__name__)

MAX_CHUNK_BYTES = 10 * 1024
SAFETY_MARGIN = 100


def split_oversized(chunk: Chunk, max_bytes: int = MAX_CHUNK_BYTES) -> List[Chunk]:
    """Split a chunk on line boundaries so that no part exceeds ``max_bytes``.

    Chunks within the limit are returned unchanged. Parts get the id
    ``<id>_part_<n>`` and line numbers that continue from the parent's start
    line. A single line longer than the limit is cut at the byte budget.

    Args:
        chunk: Chunk to split
        max_bytes: Maximum UTF-8 size of one part

    Returns:
        List with the original chunk or its parts, in order
    """
    if chunk.size_bytes <= max_bytes:
        return [chunk]

    budget = max(1, max_bytes - SAFETY_MARGIN)
    parts: List[Chunk] = []
    current: List[str] = []
    current_size = 0
    current_start = chunk.start_line

    def emit(lines: List[str], start_line: int) -> None:
        content = '\n'.join(lines)
        index = len(parts)
        parts.append(Chunk(
            id=f"{chunk.id}_part_{index}",
            file_path=chunk.file_path,
            start_line=start_line,
            end_line=start_line + max(len(lines), 1) - 1,
            content=content,
            language=chunk.language,
            parser=chunk.parser,
            chunk_type=chunk.chunk_type,
            name=chunk.name,
            metadata={**chunk.metadata, 'split_from': chunk.id, 'part': index},
        ))

    for line in chunk.content.split('\n'):
        line_size = len(line.encode('utf-8')) + 1
        if line_size > budget:
            if current:
                emit(current, current_start)
                current_start += len(current)
                current, current_size = [], 0
            # Cut the line itself; every piece keeps the same line number
            encoded = line.encode('utf-8')
            for offset in range(0, len(encoded), budget):
                piece = encoded[offset:offset + budget].decode('utf-8', errors='ignore')
                emit([piece], current_start)
            current_start += 1
            continue

        if current and current_size + line_size > budget:
            emit(current, current_start)
            current_start += len(current)
            current, current_size = [], 0

        current.append(line)
        current_size += line_size

    if current:
        emit(current, current_start)

    logger.info(f"Split oversized chunk {chunk.id} ({chunk.size_bytes} bytes) into {len(parts)} parts")
    return parts
