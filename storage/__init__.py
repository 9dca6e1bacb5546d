"""Vector storage: gateway, backends and collection naming."""

from .buffer import TemporaryBuffer
from .collection import CollectionIdentity, create_collection_name, validate_collection_name
from .gateway import StorageGateway, VectorStoreBackend
from .local import LocalVectorStore
from .models import SearchHit, UpsertOutcome, VectorDocument
from .remote import RemoteVectorStore

__all__ = [
    'CollectionIdentity',
    'LocalVectorStore',
    'RemoteVectorStore',
    'SearchHit',
    'StorageGateway',
    'TemporaryBuffer',
    'UpsertOutcome',
    'VectorDocument',
    'VectorStoreBackend',
    'create_collection_name',
    'validate_collection_name',
]
