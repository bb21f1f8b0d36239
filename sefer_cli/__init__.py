"""
Sefer CLI - Command-line entrypoints.

- ingest_documents: run a YAML ingestion pipeline over source folders
- build_index: rebuild the master index from stored chunks
- search: run a retrieval query and print the selected context
"""
