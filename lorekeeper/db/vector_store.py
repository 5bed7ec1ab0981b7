"""Vector database wrapper for long-term memory embeddings."""

from pathlib import Path
from typing import List, Dict, Optional, Any
import logging
import os

# Disable ChromaDB telemetry to avoid noisy warnings
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import chromadb
from chromadb.config import Settings

logger = logging.getLogger(__name__)

EMPTY_QUERY_RESULT = {
    'ids': [[]],
    'distances': [[]],
    'documents': [[]],
    'metadatas': [[]]
}


class VectorStore:
    """
    Wrapper for ChromaDB holding one cosine collection per character.
    
    The relational memories table is the source of truth; this index only
    answers "which memory ids are nearest to this vector". Ids are the
    memory row ids, so writes are idempotent upserts.
    """
    
    def __init__(self, persist_directory: Path):
        """
        Initialize vector store with persistent storage.
        
        Args:
            persist_directory: Path to store ChromaDB data
        """
        self.persist_directory = Path(persist_directory)
        self.persist_directory.mkdir(parents=True, exist_ok=True)
        
        self.client = chromadb.PersistentClient(
            path=str(self.persist_directory),
            settings=Settings(
                anonymized_telemetry=False,
                allow_reset=True
            )
        )
        
        logger.info(f"VectorStore initialized at {persist_directory}")
    
    @staticmethod
    def collection_name(character_id: str) -> str:
        return f"character_{character_id}"
    
    def get_or_create_collection(self, character_id: str) -> Any:
        """
        Get or create the collection for a character.
        
        Args:
            character_id: Unique character identifier
            
        Returns:
            ChromaDB Collection object
        """
        name = self.collection_name(character_id)
        collection = self.client.get_or_create_collection(
            name=name,
            metadata={
                "hnsw:space": "cosine",
                "character_id": character_id
            }
        )
        logger.debug(f"Collection '{name}' ready")
        return collection
    
    def get_collection(self, character_id: str) -> Optional[Any]:
        """
        Get existing collection for a character.
        
        Returns:
            ChromaDB Collection object or None if not found
        """
        name = self.collection_name(character_id)
        try:
            return self.client.get_collection(name=name)
        except Exception:
            logger.debug(f"Collection '{name}' not found")
            return None
    
    def delete_collection(self, character_id: str) -> bool:
        """Delete a character's collection. Returns False if it did not exist."""
        name = self.collection_name(character_id)
        try:
            self.client.delete_collection(name=name)
            logger.info(f"Deleted collection '{name}'")
            return True
        except Exception as e:
            logger.warning(f"Failed to delete collection '{name}': {e}")
            return False
    
    def upsert_memories(
        self,
        character_id: str,
        memory_ids: List[str],
        contents: List[str],
        embeddings: List[List[float]],
        metadatas: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        """
        Insert or replace memory vectors.
        
        Raises whatever the client raises; the writeback pipeline treats a
        failed index write as a transient failure of the attempt.
        """
        if not memory_ids:
            return
        collection = self.get_or_create_collection(character_id)
        collection.upsert(
            ids=memory_ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=[self._clean_metadata(m) for m in metadatas] if metadatas else None
        )
        logger.debug(f"Upserted {len(memory_ids)} vectors for '{character_id}'")
    
    def query_memories(
        self,
        character_id: str,
        query_embedding: List[float],
        n_results: int = 10,
        where: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Query memories using semantic search.
        
        Args:
            character_id: Character identifier
            query_embedding: Query vector
            n_results: Number of results to return
            where: Metadata filter conditions
            
        Returns:
            Query results with ids, distances, documents, metadatas
        """
        collection = self.get_collection(character_id)
        
        if collection is None:
            logger.debug(f"No collection found for character '{character_id}'")
            return EMPTY_QUERY_RESULT
        
        count = collection.count()
        if count == 0 or n_results <= 0:
            return EMPTY_QUERY_RESULT
        
        return collection.query(
            query_embeddings=[query_embedding],
            n_results=min(n_results, count),
            where=where
        )
    
    def delete_memories(self, character_id: str, memory_ids: List[str]) -> bool:
        """
        Delete specific vectors from a collection.
        
        Returns:
            True if the collection existed and the delete was issued
        """
        if not memory_ids:
            return True
        collection = self.get_collection(character_id)
        
        if collection is None:
            logger.debug(f"No collection found for character '{character_id}'")
            return False
        
        try:
            collection.delete(ids=memory_ids)
            logger.debug(f"Deleted {len(memory_ids)} vectors from '{character_id}'")
            return True
        except Exception as e:
            logger.error(f"Failed to delete vectors: {e}")
            return False
    
    def list_ids(self, character_id: str) -> List[str]:
        """Return every vector id stored for a character."""
        collection = self.get_collection(character_id)
        if collection is None:
            return []
        result = collection.get(include=[])
        return list(result.get('ids') or [])
    
    @staticmethod
    def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Chroma metadata values must be scalar and non-null."""
        return {
            key: value for key, value in metadata.items()
            if value is not None and isinstance(value, (str, int, float, bool))
        }
