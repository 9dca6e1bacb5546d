"""Unit tests for the embedding services."""

import asyncio
import base64
import json
from unittest import TestCase
from unittest.mock import MagicMock

import httpx
import numpy as np
import pytest

from chunking.models import Chunk
from embeddings.local import LocalEmbedder
from embeddings.remote import EMBED_PATH, RemoteEmbeddingClient, decode_vector
from transport.errors import PermanentServiceError, TransientServiceError


def make_chunks(count):
    return [Chunk.create('src/a.py', i, i, f'x{i} = {i}', parser='readline') for i in range(1, count + 1)]


def run(coro):
    return asyncio.run(coro)


class TestDecodeVector(TestCase):

    def test_plain_vector(self):
        vector = decode_vector({'vector': [0.5, 1.5]})
        assert vector.dtype == np.float32
        assert vector.tolist() == [0.5, 1.5]

    def test_compressed_vector(self):
        raw = np.array([1.0, -2.0, 3.5], dtype='<f4').tobytes()
        item = {'isCompressed': True, 'compressedVector': base64.b64encode(raw).decode()}
        assert decode_vector(item).tolist() == [1.0, -2.0, 3.5]

    def test_missing_vector(self):
        assert decode_vector({}) is None
        assert decode_vector({'isCompressed': True}) is None


class TestRemoteEmbeddingClient(TestCase):
    """Test RemoteEmbeddingClient against httpx.MockTransport."""

    def make_client(self, handler, **kwargs):
        return RemoteEmbeddingClient('http://embed', token='t', unique_id='me_box',
                                     transport=httpx.MockTransport(handler), **kwargs)

    def test_request_shape_and_results(self):
        chunks = make_chunks(2)
        seen = {}

        def handler(request):
            body = json.loads(request.content)
            seen['path'] = request.url.path
            seen['body'] = body
            return httpx.Response(200, json={'success': True, 'data': {'results': [
                {'chunkId': chunks[0].id, 'status': 'success', 'vector': [0.1, 0.2], 'modelVersion': 'm1'},
                {'chunkId': chunks[1].id, 'status': 'error', 'error': 'invalid content'},
            ]}})

        async def go():
            client = self.make_client(handler)
            try:
                return await client.embed(chunks)
            finally:
                await client.close()

        response = run(go())
        assert seen['path'] == EMBED_PATH
        body = seen['body']
        assert body['uniqueId'] == 'me_box'
        assert body['parserVersion'] == 'v0.1.2'
        assert body['processingMode'] == 'sync'
        assert [c['chunkId'] for c in body['codeChunks']] == [c.id for c in chunks]

        results = response.by_chunk_id()
        assert results[chunks[0].id].ok
        assert results[chunks[0].id].model_version == 'm1'
        assert not results[chunks[1].id].ok
        assert results[chunks[1].id].error == 'invalid content'

    def test_missing_result_is_retryable_error(self):
        chunks = make_chunks(2)

        def handler(request):
            return httpx.Response(200, json={'success': True, 'data': {'results': [
                {'chunkId': chunks[0].id, 'status': 'success', 'vector': [1.0]},
            ]}})

        response = run(self.make_client(handler).embed(chunks))
        missing = response.by_chunk_id()[chunks[1].id]
        assert not missing.ok
        assert 'try again' in missing.error

    def test_accepted_and_poll(self):
        chunks = make_chunks(1)
        state = {'polls': 0}

        def handler(request):
            if request.method == 'POST':
                return httpx.Response(200, json={'status': 'accepted', 'data': {
                    'requestId': 'req-1', 'estimatedProcessingTimeMs': 4000}})
            assert request.url.path.endswith('/embed/results/req-1')
            state['polls'] += 1
            if state['polls'] == 1:
                return httpx.Response(200, json={'status': 'processing', 'data': {}})
            return httpx.Response(200, json={'status': 'completed', 'data': {'results': [
                {'chunkId': chunks[0].id, 'status': 'success', 'vector': [1.0, 0.0]}]}})

        async def go():
            client = self.make_client(handler, processing_mode='async')
            accepted = await client.embed(chunks)
            first = await client.poll(accepted.request_id, [chunks[0].id])
            second = await client.poll(accepted.request_id, [chunks[0].id])
            return accepted, first, second

        accepted, first, second = run(go())
        assert accepted.accepted
        assert accepted.estimated_ms == 4000
        assert first is None
        assert second.results[0].ok

    def test_input_validation(self):
        client = self.make_client(lambda request: httpx.Response(500))
        with pytest.raises(ValueError):
            run(client.embed([]))
        with pytest.raises(ValueError):
            run(client.embed(make_chunks(101)))

    def test_payload_limit_is_permanent(self):
        client = self.make_client(lambda request: httpx.Response(200, json={}), max_payload_bytes=100)
        with pytest.raises(PermanentServiceError):
            run(client.embed(make_chunks(3)))

    def test_server_error_is_transient(self):
        client = self.make_client(lambda request: httpx.Response(502, json={'error': 'bad gateway'}))
        with pytest.raises(TransientServiceError):
            run(client.embed(make_chunks(1)))
        assert client.stats['failed_requests'] == 1

    def test_embed_query(self):
        def handler(request):
            chunk_id = json.loads(request.content)['codeChunks'][0]['chunkId']
            return httpx.Response(200, json={'success': True, 'data': {'results': [
                {'chunkId': chunk_id, 'status': 'success', 'vector': [0.3, 0.4]}]}})

        vector = run(self.make_client(handler).embed_query('find auth code'))
        assert vector.tolist() == pytest.approx([0.3, 0.4])


class TestLocalEmbedder(TestCase):
    """Test LocalEmbedder with a mocked model."""

    def make_embedder(self):
        embedder = LocalEmbedder(model_name='test-model', device='cpu')
        model = MagicMock()
        model.encode.side_effect = lambda texts, **kwargs: np.ones((len(texts), 4), dtype=np.float32)
        embedder._model = model
        return embedder, model

    def test_embed_returns_result_per_chunk(self):
        embedder, model = self.make_embedder()
        chunks = make_chunks(3)
        response = run(embedder.embed(chunks))

        assert [r.chunk_id for r in response.results] == [c.id for c in chunks]
        assert all(r.ok for r in response.results)
        assert model.encode.call_count == 1

    def test_model_failure_becomes_item_errors(self):
        embedder, model = self.make_embedder()
        model.encode.side_effect = RuntimeError('CUDA out of memory')
        response = run(embedder.embed(make_chunks(2)))
        assert all(not r.ok for r in response.results)
        assert 'out of memory' in response.results[0].error

    def test_poll_unknown_request_is_permanent(self):
        embedder, _ = self.make_embedder()
        with pytest.raises(PermanentServiceError) as exc_info:
            run(embedder.poll('req-1'))
        assert 'req-1' in str(exc_info.value)
