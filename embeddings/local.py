"""Local sentence-transformers embedder with the remote client's interface."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

try:
    from sentence_transformers import SentenceTransformer
except ImportError:
    SentenceTransformer = None

try:
    import torch
except Exception:
    torch = None

from chunking.models import Chunk
from transport.errors import PermanentServiceError

from .types import STATUS_ERROR, EmbedItemResult, EmbedResponse

DEFAULT_MODEL = "google/embeddinggemma-300m"


class LocalEmbedder:
    """Wrapper for a SentenceTransformer model to generate code embeddings offline."""

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        cache_dir: Optional[str] = None,
        device: str = "auto",
        max_chars: int = 6000,
    ):
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.device = device
        self.max_chars = max_chars
        self._model = None
        self._logger = logging.getLogger(__name__)

    @property
    def model(self):
        """Lazy loading of the model."""
        if self._model is None:
            self._load_model()
        return self._model

    def _load_model(self):
        if SentenceTransformer is None:
            raise ImportError(
                "sentence-transformers not found. Install with: "
                "pip install sentence-transformers>=5.0.0"
            )

        self._logger.info(f"Loading model: {self.model_name}")

        model_source = self.model_name
        local_model_dir = self._find_local_model_dir()
        if local_model_dir:
            # Cached locally: skip hub round-trips
            os.environ.setdefault("HF_HUB_OFFLINE", "1")
            os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")
            model_source = str(local_model_dir)
            self._logger.info(f"Loading model from local cache path: {local_model_dir}")

        resolved_device = self._resolve_device(self.device)
        self._model = SentenceTransformer(model_source, cache_folder=self.cache_dir, device=resolved_device)
        self.device = resolved_device
        self._logger.info(f"Model loaded successfully on device: {self._model.device}")

    def create_embedding_content(self, chunk: Chunk) -> str:
        """Content sent to the model, truncated to keep head and tail of long chunks."""
        if len(chunk.content) <= self.max_chars:
            return chunk.content

        lines = chunk.content.split('\n')
        head: List[str] = []
        length = 0
        for line in lines:
            if length + len(line) + 1 > self.max_chars * 0.7:
                break
            head.append(line)
            length += len(line) + 1

        tail: List[str] = []
        remaining = self.max_chars - length - 30
        for line in reversed(lines[len(head):]):
            if sum(len(t) + 1 for t in tail) + len(line) + 1 > remaining:
                break
            tail.insert(0, line)

        return '\n'.join(head) + '\n# ... (truncated) ...\n' + '\n'.join(tail)

    def _encode(self, texts: List[str], prompt_name: str) -> np.ndarray:
        return self.model.encode(texts, prompt_name=prompt_name, show_progress_bar=False)

    async def embed(self, chunks: List[Chunk], processing_mode: Optional[str] = None) -> EmbedResponse:
        """Embed chunks in a worker thread; a model failure fails every chunk of the call."""
        if not chunks:
            raise ValueError("chunks cannot be empty")

        contents = [self.create_embedding_content(chunk) for chunk in chunks]
        try:
            vectors = await asyncio.to_thread(self._encode, contents, "Retrieval-document")
        except (RuntimeError, ValueError) as e:
            self._logger.error(f"Local embedding of {len(chunks)} chunks failed: {e}")
            return EmbedResponse(results=[
                EmbedItemResult(chunk_id=chunk.id, status=STATUS_ERROR, error=str(e)) for chunk in chunks
            ])

        return EmbedResponse(results=[
            EmbedItemResult(chunk_id=chunk.id, vector=np.asarray(vector, dtype=np.float32), model_version=self.model_name)
            for chunk, vector in zip(chunks, vectors)
        ])

    async def poll(self, request_id: str, chunk_ids: Optional[List[str]] = None) -> Optional[EmbedResponse]:
        """Local embedding is always synchronous, so no request id is ever valid."""
        raise PermanentServiceError(f"Local embedder has no asynchronous request {request_id}")

    async def embed_query(self, query: str) -> np.ndarray:
        """Generate embedding for a search query."""
        vectors = await asyncio.to_thread(self._encode, [query], "InstructionRetrieval")
        return np.asarray(vectors[0], dtype=np.float32)

    async def close(self) -> None:
        self._model = None

    def get_model_info(self) -> Dict[str, Any]:
        """Get information about the loaded model."""
        if self._model is None:
            return {"status": "not_loaded"}

        return {
            "model_name": self.model_name,
            "embedding_dimension": self._model.get_sentence_embedding_dimension(),
            "max_seq_length": getattr(self._model, 'max_seq_length', 'unknown'),
            "device": str(self._model.device),
            "status": "loaded",
        }

    def _find_local_model_dir(self) -> Optional[Path]:
        """Locate the cached model directory if available."""
        if not self.cache_dir:
            return None
        cache_root = Path(self.cache_dir)
        if not cache_root.exists():
            return None
        model_key = self.model_name.split('/')[-1].lower()
        for path in cache_root.rglob('config_sentence_transformers.json'):
            if model_key in str(path.parent).lower():
                return path.parent
        return None

    def _resolve_device(self, requested: Optional[str]) -> str:
        """Resolve target device string.
        - "auto": prefer cuda, then mps, else cpu
        - explicit values are validated and coerced to available devices
        """
        req = (requested or "auto").lower()
        if torch is None:
            return "cpu"
        mps_available = hasattr(torch.backends, 'mps') and torch.backends.mps.is_available()
        if req in ("auto", "none", ""):
            if torch.cuda.is_available():
                return "cuda"
            return "mps" if mps_available else "cpu"
        if req.startswith("cuda"):
            return "cuda" if torch.cuda.is_available() else "cpu"
        if req == "mps":
            return "mps" if mps_available else "cpu"
        return "cpu"
