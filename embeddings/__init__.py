"""Embedding services: remote HTTP client and local sentence-transformers model."""

from .types import EmbedItemResult, EmbedResponse, EmbeddingService
from .remote import MAX_CHUNKS_PER_REQUEST, RemoteEmbeddingClient, decode_vector
from .local import LocalEmbedder

__all__ = [
    'EmbedItemResult',
    'EmbedResponse',
    'EmbeddingService',
    'LocalEmbedder',
    'MAX_CHUNKS_PER_REQUEST',
    'RemoteEmbeddingClient',
    'decode_vector',
]
