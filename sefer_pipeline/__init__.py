"""
Sefer Pipeline - ingestion and retrieval stages.

This package contains:
- stage_00_ingestion: Source normalization, analysis and chunking (Stage 0)
- stage_00_embeddings: Embedding providers for chunks and queries (Stage 0)
- stage_01_index: Master index building, caching and lookups (Stage 1)
- stage_02_retrieval: Similarity search, fusion and query orchestration (Stage 2)
- utils: Shared text helpers
"""
