"""Unit tests for the concurrent dispatcher."""

import threading
import time
from unittest import TestCase
from unittest.mock import patch

from chunking.line_chunker import LineWindowChunker
from chunking.models import Chunk
from indexing.dispatcher import MODE_FALLBACK, MODE_PARALLEL, MODE_SEQUENTIAL, ConcurrentDispatcher
from indexing.progress import ProgressTracker


class RecordingProducer:
    """Line-window producer that records concurrency and fails on demand."""

    def __init__(self, fail_on=(), delay=0.0):
        self.fail_on = set(fail_on)
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._chunker = LineWindowChunker(lines_per_chunk=2)

    def produce_chunks(self, file_content, file_path):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if file_path in self.fail_on:
                raise ValueError(f"cannot parse {file_path}")
            return self._chunker.chunk_code(file_content.decode('utf-8'), file_path)
        finally:
            with self._lock:
                self.active -= 1


class TestConcurrentDispatcher(TestCase):
    """Test ConcurrentDispatcher class."""

    def setUp(self):
        import tempfile
        self.temp_dir = tempfile.mkdtemp()
        self.files = []
        for i in range(6):
            name = f'file_{i}.txt'
            with open(f'{self.temp_dir}/{name}', 'w') as f:
                f.write(f'a{i}\nb{i}\nc{i}\n')
            self.files.append(name)

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_results_in_input_order(self):
        dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=3)
        chunks = dispatcher.process_files(self.files, RecordingProducer(delay=0.01))

        assert [c.file_path for c in chunks][::2] == self.files
        assert len(chunks) == 12
        assert dispatcher.stats.mode == MODE_PARALLEL
        assert dispatcher.stats.chunks_produced == 12

    def test_concurrency_bounded_by_workers(self):
        producer = RecordingProducer(delay=0.05)
        ConcurrentDispatcher(self.temp_dir, max_workers=2).process_files(self.files, producer)
        assert producer.max_active <= 2

    def test_failed_file_isolated(self):
        tracker = ProgressTracker()
        dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=3, progress_tracker=tracker)
        chunks = dispatcher.process_files(self.files, RecordingProducer(fail_on={'file_2.txt'}))

        assert 'file_2.txt' not in {c.file_path for c in chunks}
        assert len(chunks) == 10
        assert dispatcher.stats.files_failed == 1
        assert 'cannot parse' in dispatcher.stats.errors['file_2.txt']
        failed = tracker.get_failed_files()
        assert [f['path'] for f in failed] == ['file_2.txt']

    def test_missing_file_reported_failed(self):
        dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=2)
        chunks = dispatcher.process_files(['missing.txt', 'file_0.txt'], RecordingProducer())
        assert [c.file_path for c in chunks] == ['file_0.txt', 'file_0.txt']
        assert dispatcher.stats.files_failed == 1

    def test_sequential_with_one_worker(self):
        producer = RecordingProducer()
        dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=1)
        dispatcher.process_files(self.files, producer)
        assert dispatcher.stats.mode == MODE_SEQUENTIAL
        assert producer.max_active == 1

    def test_falls_back_when_pool_unavailable(self):
        with patch('indexing.dispatcher.ThreadPoolExecutor', side_effect=RuntimeError("can't start new thread")):
            dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=4)
            chunks = dispatcher.process_files(self.files, RecordingProducer())

        assert dispatcher.stats.mode == MODE_FALLBACK
        assert len(chunks) == 12
        assert dispatcher.stats.files_processed == 6

    def test_chunks_registered_with_tracker(self):
        tracker = ProgressTracker()
        dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=2, progress_tracker=tracker)
        chunks = dispatcher.process_files(self.files[:2], RecordingProducer())

        progress = tracker.get_overall_progress()
        assert progress['chunks']['total'] == len(chunks) == 4
        assert progress['chunks']['pending'] == 4
        assert progress['files']['processing'] == 2

    def test_oversized_chunks_split(self):
        class BigProducer:
            def produce_chunks(self, file_content, file_path):
                content = '\n'.join('x' * 40 for _ in range(20))
                return [Chunk.create(file_path, 1, 20, content, parser='readline')]

        dispatcher = ConcurrentDispatcher(self.temp_dir, max_workers=1, max_chunk_bytes=300)
        chunks = dispatcher.process_files(['file_0.txt'], BigProducer())
        assert len(chunks) > 1
        assert all(c.size_bytes <= 300 for c in chunks)
