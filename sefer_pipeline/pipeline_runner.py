"""
Pipeline runner that processes YAML configuration files.

Supported source types:
- folder: a directory of JSON text files (extraction dumps)

Stages run per document: chunk, embed. The index stage rebuilds the master
index once after all sources are ingested.

Example config::

    sources:
      - type: folder
        path: data/books
        max_docs: 200
    stages:
      - name: chunk
        params: {chunk_size: 1000, overlap_percentage: 15}
      - name: embed
        model: sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2
      - name: index
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sefer_core.errors import EmbeddingProviderError, IndexBuildError, IngestError
from sefer_core.schemas import DocumentPayload, IngestResult
from sefer_pipeline.stage_00_embeddings.embedder import EmbeddingProvider, get_embedding_provider
from sefer_pipeline.stage_00_ingestion.chunker import SemanticChunker
from sefer_pipeline.stage_00_ingestion.sources import iter_source_files, load_source_file

logger = logging.getLogger(__name__)

KNOWN_STAGES = ("chunk", "embed", "index")


class PipelineRunner:
    """Runs ingestion based on a YAML configuration."""

    def __init__(
        self,
        config: Dict[str, Any],
        skip_stages: Optional[List[str]] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ):
        self.sources = config.get("sources") or []
        all_stages = config.get("stages") or []

        if skip_stages:
            skip_set = set(skip_stages)
            self.stages = [s for s in all_stages if s.get("name") not in skip_set]
            skipped = [s.get("name") for s in all_stages if s.get("name") in skip_set]
            if skipped:
                print(f"[Pipeline] Skipping stages: {', '.join(skipped)}")
        else:
            self.stages = all_stages

        self.chunk_params: Dict[str, Any] = {}
        self.embed_model: Optional[str] = None
        self.enable_embed = False
        self.enable_index = False
        for stage in self.stages:
            name = stage.get("name")
            if name == "chunk":
                self.chunk_params = stage.get("params") or {}
            elif name == "embed":
                self.enable_embed = True
                self.embed_model = stage.get("model")
            elif name == "index":
                self.enable_index = True
            else:
                print(f"[Pipeline] Unknown stage: {name}, ignoring")

        if session_factory is None:
            from sefer_core.db import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self._embedder = embedder
        self.chunker = SemanticChunker(
            chunk_size=self.chunk_params.get("chunk_size"),
            overlap_percentage=self.chunk_params.get("overlap_percentage"),
        )

    @classmethod
    def from_file(cls, config_path: str, **kwargs) -> "PipelineRunner":
        with open(config_path, "r", encoding="utf-8") as f:
            return cls(yaml.safe_load(f) or {}, **kwargs)

    @property
    def embedder(self) -> EmbeddingProvider:
        if self._embedder is None:
            self._embedder = get_embedding_provider(self.embed_model)
        return self._embedder

    def process_folder_source(self, source_config: Dict[str, Any]) -> Iterable[DocumentPayload]:
        """Yield normalized payloads from a folder; unreadable files are reported and skipped."""
        folder = source_config.get("path", "data")
        pattern = source_config.get("pattern", "*.json")
        max_docs = source_config.get("max_docs")
        count = 0
        for path in iter_source_files(folder, pattern):
            if max_docs is not None and count >= max_docs:
                break
            try:
                payload = load_source_file(path)
            except IngestError as e:
                print(f"[Pipeline] Skipping {path}: {e}")
                continue
            count += 1
            yield payload

    def process_document(self, db: Session, payload: DocumentPayload) -> IngestResult:
        from sefer_api.crud import ingest_payload

        # without the embed stage, embeddings are left for a later run
        embedder = self.embedder if self.enable_embed else None
        return ingest_payload(db, payload, self.chunker, embedder)

    def rebuild_index(self) -> None:
        from sefer_pipeline.stage_01_index.builder import rebuild_master_index

        with self.session_factory() as db:
            result = rebuild_master_index(db)
        print(f"[Pipeline] Master index: {result.themes} themes, {result.concepts} concepts, {result.books} books")

    def run(self) -> Dict[str, int]:
        """Run every source through the stages. Each document commits on its own."""
        stats = {"processed": 0, "ingested": 0, "skipped": 0, "failed": 0}
        for source_config in self.sources:
            source_type = source_config.get("type")
            if source_type != "folder":
                print(f"[Pipeline] Unknown source type: {source_type}, skipping...")
                continue
            print(f"[Pipeline] Processing folder source: {source_config.get('path', 'data')}")

            for payload in self.process_folder_source(source_config):
                stats["processed"] += 1
                with self.session_factory() as db:
                    try:
                        result = self.process_document(db, payload)
                        db.commit()
                    except (IngestError, EmbeddingProviderError, SQLAlchemyError) as e:
                        db.rollback()
                        stats["failed"] += 1
                        print(f"[Pipeline] Failed {payload.name}: {e}")
                        continue
                    except Exception as e:
                        db.rollback()
                        stats["failed"] += 1
                        logger.exception("Unexpected error ingesting %s", payload.name)
                        print(f"[Pipeline] Failed {payload.name}: {type(e).__name__}: {e}")
                        continue
                if result.skipped:
                    stats["skipped"] += 1
                    print(f"[Pipeline] Skipped {payload.name}: {result.reason}")
                else:
                    stats["ingested"] += 1
                    print(f"[Pipeline] {payload.name}: {result.num_chunks} chunks")

        if self.enable_index:
            try:
                self.rebuild_index()
            except IndexBuildError as e:
                print(f"[Pipeline] Index rebuild failed: {e}")

        print(
            f"[Pipeline] Complete! Processed: {stats['processed']}, Ingested: {stats['ingested']}, "
            f"Skipped: {stats['skipped']}, Failed: {stats['failed']}"
        )
        return stats
