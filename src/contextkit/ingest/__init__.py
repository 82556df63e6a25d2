"""contextkit ingest pipeline: chunkers, summarizer, embedding writer."""

from contextkit.ingest.base import BaseChunker, Segment
from contextkit.ingest.source import SourceChunker
from contextkit.ingest.stream import StreamChunker

__all__ = [
    "BaseChunker",
    "Segment",
    "SourceChunker",
    "StreamChunker",
]
