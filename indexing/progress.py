"""Thread-safe progress state machine for files and chunks."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from chunking.models import Chunk
from merkle.snapshot import FileRecord, Status

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    Status.PENDING: {Status.PROCESSING, Status.FAILED},
    Status.PROCESSING: {Status.COMPLETED, Status.FAILED},
    Status.FAILED: {Status.PROCESSING},
    Status.COMPLETED: set(),
}

# Chunks may not skip processing on their way to a terminal state
CHUNK_TRANSITIONS = {
    Status.PENDING: {Status.PROCESSING},
    Status.PROCESSING: {Status.COMPLETED, Status.FAILED},
    Status.FAILED: {Status.PROCESSING},
    Status.COMPLETED: set(),
}

# Never report completion while work is outstanding
MAX_INCOMPLETE_PERCENTAGE = 99.99


@dataclass
class ChunkProgress:
    """Progress entry of one chunk."""

    chunk_id: str
    file_path: str
    status: Status = Status.PENDING
    attempts: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: float = field(default_factory=time.time)


def _empty_counts() -> Dict[Status, int]:
    return {status: 0 for status in Status}


class ProgressTracker:
    """Tracks file and chunk states and keeps aggregate counters current.

    For files and for chunks ``pending + processing + completed + failed ==
    total`` holds after every transition. A file completes on its own once
    all of its chunks are terminal.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._files: Dict[str, FileRecord] = {}
        self._chunks: Dict[str, ChunkProgress] = {}
        self._file_chunks: Dict[str, List[str]] = {}
        self._file_counts = _empty_counts()
        self._chunk_counts = _empty_counts()
        self.started_at = time.time()

    def register_files(self, records: Iterable[FileRecord]) -> None:
        """Register scanned files. Already known paths are ignored."""
        with self._lock:
            for record in records:
                if record.path in self._files:
                    continue
                self._files[record.path] = record
                self._file_chunks.setdefault(record.path, [])
                self._file_counts[record.status] += 1

    def register_chunks(self, file_path: str, chunks: List[Chunk]) -> None:
        """Register the chunks produced for a file.

        A file that produced no chunks is completed immediately.
        """
        with self._lock:
            record = self._ensure_file(file_path)
            chunk_ids = self._file_chunks.setdefault(file_path, [])
            for chunk in chunks:
                if chunk.id in self._chunks:
                    logger.debug(f"Chunk {chunk.id} already registered")
                    continue
                self._chunks[chunk.id] = ChunkProgress(chunk_id=chunk.id, file_path=file_path)
                self._chunk_counts[Status.PENDING] += 1
                chunk_ids.append(chunk.id)
            record.chunk_count = len(chunk_ids)

            if record.status is Status.PENDING:
                self._set_file_status(record, Status.PROCESSING)
            if not chunk_ids and record.status is Status.PROCESSING:
                self._set_file_status(record, Status.COMPLETED)

    def update_file_status(self, file_path: str, status: Status, error: Optional[str] = None) -> bool:
        """Move a file to a new status.

        Returns:
            False if the file is unknown or the transition is invalid
        """
        with self._lock:
            record = self._files.get(file_path)
            if record is None:
                logger.warning(f"Status update for unknown file {file_path}")
                return False
            if status is record.status:
                return True
            if status not in VALID_TRANSITIONS[record.status]:
                logger.warning(f"Invalid file transition {record.status.value} -> {status.value} for {file_path}")
                return False
            self._set_file_status(record, status)
            if error:
                record.error = error
            return True

    def update_chunk_status(
        self, chunk_id: str, status: Status, metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Move a chunk to a new status.

        Returns:
            False if the chunk is unknown or the transition is invalid
        """
        with self._lock:
            entry = self._chunks.get(chunk_id)
            if entry is None:
                logger.warning(f"Status update for unknown chunk {chunk_id}")
                return False
            if status not in CHUNK_TRANSITIONS[entry.status]:
                logger.warning(f"Invalid chunk transition {entry.status.value} -> {status.value} for {chunk_id}")
                return False

            self._chunk_counts[entry.status] -= 1
            self._chunk_counts[status] += 1
            entry.status = status
            entry.updated_at = time.time()
            if status is Status.PROCESSING:
                entry.attempts += 1
            if metadata:
                entry.metadata.update(metadata)
                if 'error' in metadata:
                    entry.error = metadata['error']

            if status.is_terminal:
                self._maybe_complete_file(entry.file_path)
            return True

    def get_chunk(self, chunk_id: str) -> Optional[ChunkProgress]:
        with self._lock:
            return self._chunks.get(chunk_id)

    def get_overall_progress(self) -> Dict[str, Any]:
        """Aggregate counters, percentage and success rate."""
        with self._lock:
            files = self._counts_dict(self._file_counts, len(self._files))
            chunks = self._counts_dict(self._chunk_counts, len(self._chunks))
            percentage = self._percentage()
            success_rate = self._success_rate()
        return {
            'files': files,
            'chunks': chunks,
            'percentage': percentage,
            'success_rate': success_rate,
            'elapsed': time.time() - self.started_at,
        }

    def get_file_progress(self, file_path: Optional[str] = None) -> Dict[str, Any]:
        """Per-file view: one file when a path is given, otherwise all files."""
        with self._lock:
            paths = [file_path] if file_path is not None else sorted(self._files)
            result = {}
            for path in paths:
                record = self._files.get(path)
                if record is None:
                    continue
                chunk_states = _empty_counts()
                for chunk_id in self._file_chunks.get(path, []):
                    chunk_states[self._chunks[chunk_id].status] += 1
                result[path] = {
                    **record.to_dict(),
                    'chunks': {status.value: count for status, count in chunk_states.items()},
                }
        return result[file_path] if file_path is not None and file_path in result else result

    def is_complete(self) -> bool:
        """True once every file and chunk is terminal."""
        with self._lock:
            return (self._file_counts[Status.PENDING] == 0 and self._file_counts[Status.PROCESSING] == 0
                    and self._chunk_counts[Status.PENDING] == 0 and self._chunk_counts[Status.PROCESSING] == 0)

    def get_failed_chunks(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {'chunk_id': entry.chunk_id, 'file_path': entry.file_path,
                 'attempts': entry.attempts, 'error': entry.error}
                for entry in self._chunks.values() if entry.status is Status.FAILED
            ]

    def get_failed_files(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [record.to_dict() for record in self._files.values() if record.status is Status.FAILED]

    def summary(self) -> Dict[str, Any]:
        """Final aggregate; logs a warning when anything failed."""
        progress = self.get_overall_progress()
        chunks = progress['chunks']
        files = progress['files']
        logger.info(
            f"Indexing summary: {chunks['completed']}/{chunks['total']} chunks completed, "
            f"{files['completed']}/{files['total']} files completed, "
            f"success rate {progress['success_rate']:.2f}%"
        )
        if progress['success_rate'] < 100.0 or files['failed']:
            logger.warning(
                f"Indexing incomplete: {chunks['failed']} chunks and {files['failed']} files failed"
            )
        return progress

    def _ensure_file(self, file_path: str) -> FileRecord:
        record = self._files.get(file_path)
        if record is None:
            record = FileRecord(path=file_path, content_hash=None)
            self._files[file_path] = record
            self._file_counts[record.status] += 1
        return record

    def _set_file_status(self, record: FileRecord, status: Status) -> None:
        self._file_counts[record.status] -= 1
        self._file_counts[status] += 1
        record.status = status

    def _maybe_complete_file(self, file_path: str) -> None:
        record = self._files.get(file_path)
        if record is None or record.status is not Status.PROCESSING:
            return
        entries = [self._chunks[chunk_id] for chunk_id in self._file_chunks.get(file_path, [])]
        if not entries or not all(entry.status.is_terminal for entry in entries):
            return
        if all(entry.status is Status.COMPLETED for entry in entries):
            self._set_file_status(record, Status.COMPLETED)
        else:
            failed = sum(1 for entry in entries if entry.status is Status.FAILED)
            self._set_file_status(record, Status.FAILED)
            record.error = f"{failed} of {len(entries)} chunks failed"

    def _percentage(self) -> float:
        if self._chunks:
            completed, total = self._chunk_counts[Status.COMPLETED], len(self._chunks)
        elif self._files:
            completed, total = self._file_counts[Status.COMPLETED], len(self._files)
        else:
            return 100.0

        percentage = min(100.0, max(0.0, completed / total * 100))
        outstanding = (completed < total
                       or self._file_counts[Status.COMPLETED] < len(self._files))
        if outstanding:
            percentage = min(percentage, MAX_INCOMPLETE_PERCENTAGE)
        return percentage

    def _success_rate(self) -> float:
        terminal = self._chunk_counts[Status.COMPLETED] + self._chunk_counts[Status.FAILED]
        if terminal == 0:
            return 100.0 if not self._file_counts[Status.FAILED] else 0.0
        return self._chunk_counts[Status.COMPLETED] / terminal * 100

    @staticmethod
    def _counts_dict(counts: Dict[Status, int], total: int) -> Dict[str, int]:
        return {'total': total, **{status.value: counts[status] for status in Status}}
