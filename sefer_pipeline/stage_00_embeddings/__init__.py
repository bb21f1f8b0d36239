"""Stage 0: Embedding providers (local sentence-transformers or a remote HTTP service)."""
