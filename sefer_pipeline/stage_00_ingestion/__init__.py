"""
Stage 0: Ingestion & chunking.

This module handles:
- Source payload normalization
- Hierarchical chunking with overlap
- Theme and keyword tagging of chunks
"""

from sefer_pipeline.stage_00_ingestion.chunker import SemanticChunker, chunk_text

__all__ = ["SemanticChunker", "chunk_text"]
