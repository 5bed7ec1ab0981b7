"""Embedding services for converting text to vectors."""

from typing import Dict, List, Optional, Protocol
import logging

import httpx

from lorekeeper.config.models import EmbeddingConfig

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Base exception for embedding failures."""
    pass


class TransientEmbeddingError(EmbeddingError):
    """The call may succeed if retried (timeout, rate limit, provider outage)."""
    pass


class PermanentEmbeddingError(EmbeddingError):
    """Retrying cannot help (empty or malformed input, rejected request)."""
    pass


class Embedder(Protocol):
    """What the retrieval engine and writeback pipeline need from an embedder."""
    
    model_name: str
    
    def embed(self, text: str) -> List[float]:
        ...
    
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


def _check_text(text: str) -> None:
    if not isinstance(text, str):
        raise PermanentEmbeddingError(f"Cannot embed {type(text).__name__}, expected str")
    if not text.strip():
        raise PermanentEmbeddingError("Cannot embed empty text")


class EmbeddingService:
    """Service for generating text embeddings using sentence-transformers."""
    
    # Class-level cache for the model (shared across instances)
    _model_cache = {}
    
    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        """
        Initialize embedding service with specified model.
        
        Args:
            model_name: Name of the sentence-transformers model to use
                       Default: all-MiniLM-L6-v2 (384 dims, fast, good quality)
        """
        from sentence_transformers import SentenceTransformer
        
        self.model_name = model_name
        self._content_cache: Dict[str, List[float]] = {}
        
        # Load or get cached model
        if model_name not in self._model_cache:
            logger.info(f"Loading embedding model: {model_name}")
            self._model_cache[model_name] = SentenceTransformer(model_name, device='cpu')
            logger.info(f"Model loaded: {model_name} (device: CPU)")
        
        self.model = self._model_cache[model_name]
        self.dimensions = self.model.get_sentence_embedding_dimension()
        logger.debug(f"Embedding dimensions: {self.dimensions}")
    
    def embed(self, text: str, use_cache: bool = True) -> List[float]:
        """
        Generate embedding for a single text.
        
        Raises:
            PermanentEmbeddingError: empty or non-string input
            TransientEmbeddingError: the model failed unexpectedly
        """
        _check_text(text)
        
        if use_cache and text in self._content_cache:
            logger.debug(f"Using cached embedding for text (len={len(text)})")
            return self._content_cache[text]
        
        try:
            embedding = self.model.encode(
                text,
                convert_to_numpy=True,
                show_progress_bar=False
            ).tolist()
        except Exception as e:
            logger.error(f"Failed to generate embedding: {e}")
            raise TransientEmbeddingError(f"Embedding model failed: {e}") from e
        
        if use_cache:
            self._content_cache[text] = embedding
        
        logger.debug(f"Generated embedding for text (len={len(text)}, dims={len(embedding)})")
        return embedding
    
    def embed_batch(
        self,
        texts: List[str],
        use_cache: bool = True,
        batch_size: int = 32
    ) -> List[List[float]]:
        """
        Generate embeddings for multiple texts efficiently.
        
        Args:
            texts: List of texts to embed
            use_cache: Whether to check/update cache
            batch_size: Batch size for encoding
            
        Returns:
            List of embedding vectors
        """
        if not texts:
            return []
        for text in texts:
            _check_text(text)
        
        embeddings: List[Optional[List[float]]] = [None] * len(texts)
        uncached_indices = []
        uncached_texts = []
        
        for i, text in enumerate(texts):
            if use_cache and text in self._content_cache:
                embeddings[i] = self._content_cache[text]
            else:
                uncached_indices.append(i)
                uncached_texts.append(text)
        
        if uncached_texts:
            logger.debug(f"Generating {len(uncached_texts)} embeddings in batch")
            try:
                uncached_embeddings = self.model.encode(
                    uncached_texts,
                    convert_to_numpy=True,
                    show_progress_bar=False,
                    batch_size=batch_size
                ).tolist()
            except Exception as e:
                logger.error(f"Failed to generate batch embeddings: {e}")
                raise TransientEmbeddingError(f"Embedding model failed: {e}") from e
            
            for idx, embedding in zip(uncached_indices, uncached_embeddings):
                embeddings[idx] = embedding
                if use_cache:
                    self._content_cache[texts[idx]] = embedding
        
        return embeddings
    
    def clear_cache(self) -> None:
        """Clear the instance-level content cache."""
        cache_size = len(self._content_cache)
        self._content_cache.clear()
        logger.debug(f"Cleared {cache_size} cached embeddings")
    
    @classmethod
    def clear_model_cache(cls) -> None:
        """Clear the class-level model cache. Use when switching models."""
        cls._model_cache.clear()
        logger.info("Model cache cleared")


class OllamaEmbeddingService:
    """
    Embeddings from an Ollama server's ``/api/embed`` endpoint.
    
    HTTP failures are classified: timeouts, transport errors, 429 and 5xx
    are transient; any other 4xx and malformed responses are permanent.
    """
    
    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model_name: str = "nomic-embed-text",
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.model_name = model_name
        self.client = client or httpx.Client(timeout=timeout)
    
    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]
    
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        for text in texts:
            _check_text(text)
        
        try:
            response = self.client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model_name, "input": texts}
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise TransientEmbeddingError(f"Embedding request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise TransientEmbeddingError(f"Embedding provider returned {status}") from e
            raise PermanentEmbeddingError(
                f"Embedding provider rejected request ({status}): {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise TransientEmbeddingError(f"HTTP error during embedding: {e}") from e
        except ValueError as e:
            raise PermanentEmbeddingError(f"Embedding provider returned invalid JSON: {e}") from e
        
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise PermanentEmbeddingError("Embedding provider returned a malformed response")
        
        logger.debug(f"Embedded {len(texts)} texts with {self.model_name}")
        return embeddings
    
    def close(self) -> None:
        self.client.close()


def create_embedder(config: EmbeddingConfig) -> Embedder:
    """Build the embedder selected by configuration."""
    if config.provider == "ollama":
        return OllamaEmbeddingService(
            base_url=config.base_url,
            model_name=config.model,
            timeout=config.timeout_seconds
        )
    return EmbeddingService(model_name=config.model)
