"""
Memory text chunking.

Long memory text is split at natural boundaries (paragraphs, then
sentences, then words) so that each piece fits the embedding budget. Words
longer than the budget are force-split. Conversation text marks speakers
as ``{user}:`` / ``{assistant}:`` at line start; a chunk that begins in
the middle of a speaker's turn gets a ``{speaker} (continued): `` prefix
so it still reads correctly on its own. Reassembly removes those prefixes.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

SPEAKER_PATTERN = re.compile(r'^\{(user|assistant)\}:', re.IGNORECASE)
CONTINUATION_PATTERN = re.compile(r'^\{(user|assistant)\} \(continued\): ', re.IGNORECASE)
PARAGRAPH_SPLIT = re.compile(r'\n\n+')
SENTENCE_SPLIT = re.compile(r'(?<=[.!?])\s+')
PARAGRAPH_SEPARATOR = "\n\n"


@dataclass
class ChunkResult:
    """Result of splitting one text."""
    chunks: List[str] = field(default_factory=list)
    original_length: int = 0
    was_chunked: bool = False


def detect_speaker(line: str) -> Optional[str]:
    match = SPEAKER_PATTERN.match(line)
    return match.group(1).lower() if match else None


def find_last_speaker(text: str) -> Optional[str]:
    """Speaker of the last marked line in a block."""
    for line in reversed(text.split('\n')):
        speaker = detect_speaker(line)
        if speaker:
            return speaker
    return None


def continuation_prefix(speaker: Optional[str]) -> str:
    return f"{{{speaker}}} (continued): " if speaker else ""


class _Accumulator:
    """Collects pieces into chunks no longer than ``limit`` characters."""
    
    def __init__(self, limit: int):
        self.limit = limit
        self.chunks: List[str] = []
        self.current = ""
    
    def flush(self) -> None:
        if self.current.strip():
            self.chunks.append(self.current.strip())
        self.current = ""
    
    def fits(self, piece: str, separator: str) -> bool:
        if not self.current:
            return len(piece) <= self.limit
        return len(self.current) + len(separator) + len(piece) <= self.limit
    
    def add(self, piece: str, separator: str) -> None:
        self.current = f"{self.current}{separator}{piece}" if self.current else piece


class TextChunker:
    """Split memory text into embedding-sized chunks."""
    
    DEFAULT_MAX_CHARS = 2000
    
    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS):
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        self.max_chars = max_chars
    
    def split(self, text: str) -> ChunkResult:
        """
        Split text if it exceeds ``max_chars``.
        
        Empty or blank text yields no chunks. Text within the limit is
        returned unchanged as a single chunk.
        """
        if not text or not isinstance(text, str) or not text.strip():
            return ChunkResult()
        
        if len(text) <= self.max_chars:
            return ChunkResult(chunks=[text], original_length=len(text))
        
        initial_speaker = detect_speaker(text.split('\n')[0])
        chunks = self._split_natural(text)
        chunks = self._add_continuation_prefixes(chunks, initial_speaker)
        
        logger.debug(f"Split {len(text)} chars into {len(chunks)} chunks (max {self.max_chars})")
        return ChunkResult(chunks=chunks, original_length=len(text), was_chunked=True)
    
    def _split_natural(self, text: str) -> List[str]:
        acc = _Accumulator(self.max_chars)
        
        for paragraph in PARAGRAPH_SPLIT.split(text):
            if len(paragraph) > self.max_chars:
                acc.flush()
                self._add_sentences(SENTENCE_SPLIT.split(paragraph), acc)
            elif acc.fits(paragraph, PARAGRAPH_SEPARATOR):
                acc.add(paragraph, PARAGRAPH_SEPARATOR)
            else:
                acc.flush()
                acc.add(paragraph, PARAGRAPH_SEPARATOR)
        
        acc.flush()
        return [c for c in acc.chunks if c]
    
    def _add_sentences(self, sentences: List[str], acc: _Accumulator) -> None:
        for sentence in sentences:
            if len(sentence) > self.max_chars:
                acc.flush()
                self._add_words(sentence.split(), acc)
            elif acc.fits(sentence, " "):
                acc.add(sentence, " ")
            else:
                acc.flush()
                acc.add(sentence, " ")
    
    def _add_words(self, words: List[str], acc: _Accumulator) -> None:
        for word in words:
            if len(word) > self.max_chars:
                acc.flush()
                # Force split (long URLs, base64 blobs)
                for start in range(0, len(word), self.max_chars):
                    acc.chunks.append(word[start:start + self.max_chars])
            elif acc.fits(word, " "):
                acc.add(word, " ")
            else:
                acc.flush()
                acc.add(word, " ")
    
    @staticmethod
    def _add_continuation_prefixes(chunks: List[str], initial_speaker: Optional[str]) -> List[str]:
        if len(chunks) <= 1:
            return chunks
        
        result = [chunks[0]]
        last_speaker = find_last_speaker(chunks[0]) or initial_speaker
        
        for chunk in chunks[1:]:
            if detect_speaker(chunk.split('\n')[0]):
                result.append(chunk)
            else:
                result.append(continuation_prefix(last_speaker) + chunk)
            last_speaker = find_last_speaker(chunk) or last_speaker
        
        return result


def reassemble_chunks(chunks: Sequence[str]) -> str:
    """
    Rebuild the original text from chunks already sorted by index.
    
    Continuation prefixes are removed from every chunk after the first and
    the pieces are joined with blank lines.
    """
    if not chunks:
        return ""
    if len(chunks) == 1:
        return chunks[0]
    cleaned = [chunks[0]] + [CONTINUATION_PATTERN.sub('', chunk, count=1) for chunk in chunks[1:]]
    return PARAGRAPH_SEPARATOR.join(cleaned)


def sort_chunks_by_index(items: Sequence[Any]) -> List[Any]:
    """Return a new list ordered by ``chunk_index`` (missing index sorts as 0)."""
    return sorted(items, key=lambda item: getattr(item, 'chunk_index', None) or 0)
