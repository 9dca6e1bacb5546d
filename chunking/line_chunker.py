"""Fixed line-window chunker used for languages without a tree-sitter grammar."""

from typing import List

from .models import Chunk

PARSER_TAG = 'readline'


class LineWindowChunker:
    """Splits text into windows of at most ``lines_per_chunk`` lines.

    Leading blank lines of a window are skipped so that no chunk starts with
    (or consists only of) whitespace. A window is also closed early once its
    UTF-8 size reaches ``max_chunk_bytes``.
    """

    def __init__(self, lines_per_chunk: int = 15, max_chunk_bytes: int = 9 * 1024):
        if lines_per_chunk < 1:
            raise ValueError("lines_per_chunk must be at least 1")
        self.lines_per_chunk = lines_per_chunk
        self.max_chunk_bytes = max_chunk_bytes

    def chunk_code(self, source_code: str, file_path: str) -> List[Chunk]:
        chunks: List[Chunk] = []
        lines = source_code.split('\n')
        window: List[str] = []
        window_size = 0
        start_line = 1

        def flush() -> None:
            content = '\n'.join(window)
            if content.strip():
                chunks.append(Chunk.create(
                    file_path=file_path,
                    start_line=start_line,
                    end_line=start_line + len(window) - 1,
                    content=content,
                    parser=PARSER_TAG,
                ))

        for line_number, line in enumerate(lines, start=1):
            if not window and not line.strip():
                start_line = line_number + 1
                continue

            window.append(line)
            window_size += len(line.encode('utf-8')) + 1

            if len(window) >= self.lines_per_chunk or window_size >= self.max_chunk_bytes:
                flush()
                window, window_size = [], 0
                start_line = line_number + 1

        if window:
            flush()

        return chunks
