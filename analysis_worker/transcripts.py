import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .errors import TranscriptUnavailableError

logger = logging.getLogger(__name__)


class TranscriptSource(ABC):
    """Black-box access to the transcription collaborator's output."""

    @abstractmethod
    def get_transcript(self, media_ref: str) -> str:
        raise NotImplementedError


class DirectoryTranscriptSource(TranscriptSource):
    """Reads ``<root>/<media_ref>.txt`` written by the transcription service."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def get_transcript(self, media_ref: str) -> str:
        path = self.root / f"{media_ref}.txt"
        if not path.exists():
            raise TranscriptUnavailableError(f"no transcript at {path}")
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            raise TranscriptUnavailableError(f"transcript {path} is empty")
        return text


class StaticTranscriptSource(TranscriptSource):
    def __init__(self, transcripts: Optional[Dict[str, str]] = None):
        self.transcripts = dict(transcripts or {})

    def get_transcript(self, media_ref: str) -> str:
        try:
            return self.transcripts[media_ref]
        except KeyError:
            raise TranscriptUnavailableError(f"no transcript for media {media_ref}")


def split_transcript(text: str, chunk_chars: int, overlap_chars: int = 0) -> List[str]:
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=max(50, chunk_chars),
        chunk_overlap=max(0, min(overlap_chars, chunk_chars // 2)),
        separators=["\n\n", "\n", ". ", "? ", "! ", " ", ""],
    )
    return splitter.split_text(text)


def _keyword_hits(chunk: str, keywords: Iterable[str]) -> int:
    low = chunk.lower()
    return sum(low.count(k.lower()) for k in keywords if k)


def relevant_excerpt(text: str, keywords: Iterable[str], max_chars: int) -> str:
    """
    Cut ``text`` down to at most ``max_chars`` characters, keeping the
    segments that mention the field's keywords, in transcript order.

    Without any keyword hit the excerpt samples the start, middle and end.
    """
    text = text.strip()
    if len(text) <= max_chars:
        return text
    keywords = list(keywords)
    chunk_chars = max(200, max_chars // 4)
    chunks = split_transcript(text, chunk_chars, overlap_chars=chunk_chars // 10)
    if not chunks:
        return text[:max_chars]

    scored = [(_keyword_hits(c, keywords), i) for i, c in enumerate(chunks)]
    if any(score for score, _ in scored):
        order = [i for _, i in sorted(scored, key=lambda s: (-s[0], s[1]))]
    else:
        mid = len(chunks) // 2
        order = list(dict.fromkeys([0, mid, len(chunks) - 1] + list(range(len(chunks)))))

    picked: List[int] = []
    used = 0
    for i in order:
        size = len(chunks[i]) + 7
        if used + size > max_chars:
            continue
        picked.append(i)
        used += size
    if not picked:
        return chunks[order[0]][:max_chars]
    return "\n[...]\n".join(chunks[i] for i in sorted(picked))
