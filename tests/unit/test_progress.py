"""Unit tests for the progress state machine."""

import threading
from unittest import TestCase

from chunking.models import Chunk
from indexing.progress import ProgressTracker
from merkle.snapshot import FileRecord, Status


def make_chunks(path, count):
    return [Chunk.create(path, i, i, f'line {i} of {path}', parser='readline') for i in range(1, count + 1)]


def assert_counters_consistent(tracker):
    progress = tracker.get_overall_progress()
    for kind in ('files', 'chunks'):
        counts = progress[kind]
        assert counts['pending'] + counts['processing'] + counts['completed'] + counts['failed'] == counts['total']


class TestProgressTracker(TestCase):
    """Test ProgressTracker class."""

    def setUp(self):
        self.tracker = ProgressTracker()

    def test_empty_run_is_complete(self):
        progress = self.tracker.get_overall_progress()
        assert progress['percentage'] == 100.0
        assert progress['success_rate'] == 100.0
        assert self.tracker.is_complete()

    def test_file_completes_when_all_chunks_complete(self):
        self.tracker.register_files([FileRecord('a.py', 'h1')])
        chunks = make_chunks('a.py', 2)
        self.tracker.register_chunks('a.py', chunks)
        assert self.tracker.get_file_progress('a.py')['status'] == 'processing'

        for chunk in chunks:
            assert self.tracker.update_chunk_status(chunk.id, Status.PROCESSING)
            assert self.tracker.update_chunk_status(chunk.id, Status.COMPLETED)
            assert_counters_consistent(self.tracker)

        assert self.tracker.get_file_progress('a.py')['status'] == 'completed'
        assert self.tracker.is_complete()
        assert self.tracker.get_overall_progress()['percentage'] == 100.0

    def test_file_fails_when_any_chunk_fails(self):
        chunks = make_chunks('a.py', 3)
        self.tracker.register_chunks('a.py', chunks)
        for chunk in chunks:
            self.tracker.update_chunk_status(chunk.id, Status.PROCESSING)
        self.tracker.update_chunk_status(chunks[0].id, Status.COMPLETED)
        self.tracker.update_chunk_status(chunks[1].id, Status.FAILED, {'error': 'bad chunk'})
        assert self.tracker.get_file_progress('a.py')['status'] == 'processing'

        self.tracker.update_chunk_status(chunks[2].id, Status.COMPLETED)
        file_progress = self.tracker.get_file_progress('a.py')
        assert file_progress['status'] == 'failed'
        assert file_progress['error'] == '1 of 3 chunks failed'

        failed = self.tracker.get_failed_chunks()
        assert failed == [{'chunk_id': chunks[1].id, 'file_path': 'a.py', 'attempts': 1, 'error': 'bad chunk'}]
        progress = self.tracker.summary()
        assert round(progress['success_rate'], 2) == 66.67

    def test_invalid_transitions_rejected(self):
        chunks = make_chunks('a.py', 1)
        self.tracker.register_chunks('a.py', chunks)
        chunk_id = chunks[0].id

        assert not self.tracker.update_chunk_status(chunk_id, Status.COMPLETED)
        assert self.tracker.update_chunk_status(chunk_id, Status.PROCESSING)
        assert self.tracker.update_chunk_status(chunk_id, Status.COMPLETED)
        assert not self.tracker.update_chunk_status(chunk_id, Status.PROCESSING)
        assert not self.tracker.update_chunk_status('missing', Status.PROCESSING)
        assert not self.tracker.update_file_status('missing.py', Status.FAILED)
        assert_counters_consistent(self.tracker)

    def test_failed_chunk_can_retry(self):
        chunks = make_chunks('a.py', 1)
        self.tracker.register_chunks('a.py', chunks)
        chunk_id = chunks[0].id
        self.tracker.update_chunk_status(chunk_id, Status.PROCESSING)
        self.tracker.update_chunk_status(chunk_id, Status.FAILED)
        assert self.tracker.update_chunk_status(chunk_id, Status.PROCESSING)
        assert self.tracker.get_chunk(chunk_id).attempts == 2

    def test_percentage_below_100_while_outstanding(self):
        chunks = make_chunks('a.py', 1)
        self.tracker.register_files([FileRecord('a.py', 'h'), FileRecord('b.py', 'h')])
        self.tracker.register_chunks('a.py', chunks)
        self.tracker.update_chunk_status(chunks[0].id, Status.PROCESSING)
        self.tracker.update_chunk_status(chunks[0].id, Status.COMPLETED)

        progress = self.tracker.get_overall_progress()
        assert progress['percentage'] < 100.0
        assert not self.tracker.is_complete()

    def test_file_without_chunks_completes(self):
        self.tracker.register_files([FileRecord('empty.py', 'h')])
        self.tracker.register_chunks('empty.py', [])
        assert self.tracker.get_file_progress('empty.py')['status'] == 'completed'

    def test_failed_file_lowers_success(self):
        self.tracker.register_files([FileRecord('bad.py', None, status=Status.FAILED, error='denied')])
        assert self.tracker.get_failed_files()[0]['error'] == 'denied'
        assert self.tracker.get_overall_progress()['success_rate'] == 0.0

    def test_concurrent_updates_keep_counters(self):
        chunks = make_chunks('a.py', 200)
        self.tracker.register_chunks('a.py', chunks)

        def worker(part):
            for chunk in part:
                self.tracker.update_chunk_status(chunk.id, Status.PROCESSING)
                self.tracker.update_chunk_status(chunk.id, Status.COMPLETED)

        threads = [threading.Thread(target=worker, args=(chunks[i::4],)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert_counters_consistent(self.tracker)
        assert self.tracker.get_overall_progress()['chunks']['completed'] == 200
        assert self.tracker.is_complete()
