"""End-to-end test of the YAML-driven ingestion pipeline."""

import json

import yaml
from sqlalchemy import func, select

from sefer_core.models import Chunk, Document, IndexEntry, INDEX_TYPE_THEME
from sefer_pipeline.pipeline_runner import PipelineRunner
from tests.fixtures.embedders import FakeEmbedder
from tests.fixtures.test_documents import TEST_DOCUMENTS


def write_sources(root):
    for key in ("sections", "parallel_text", "wrapped", "empty"):
        (root / f"{key}.json").write_text(json.dumps(TEST_DOCUMENTS[key], ensure_ascii=False), encoding="utf-8")
    (root / "broken.json").write_text("{oops", encoding="utf-8")
    (root / "extraction_summary.json").write_text("{}", encoding="utf-8")


def config_for(root, stages=("chunk", "embed", "index")):
    all_stages = {
        "chunk": {"name": "chunk", "params": {"chunk_size": 1000, "overlap_percentage": 10}},
        "embed": {"name": "embed", "model": "test-model"},
        "index": {"name": "index"},
    }
    return {
        "sources": [{"type": "folder", "path": str(root)}, {"type": "unknown"}],
        "stages": [all_stages[s] for s in stages],
    }


def test_pipeline_ingests_embeds_and_indexes(tmp_path, session_factory, db_session):
    src = tmp_path / "books"
    src.mkdir()
    write_sources(src)

    embedder = FakeEmbedder()
    stats = PipelineRunner(config_for(src), session_factory=session_factory, embedder=embedder).run()

    # empty.json and broken.json are rejected before processing
    assert stats == {"processed": 3, "ingested": 3, "skipped": 0, "failed": 0}
    names = set(db_session.scalars(select(Document.name)))
    assert names == {"Likutei_Moharan", "Sichot_HaRan", "Sippurei_Maasiyot"}
    assert db_session.scalar(select(func.count()).select_from(Chunk).where(Chunk.embedding.is_(None))) == 0
    joy = db_session.scalar(
        select(IndexEntry).where(IndexEntry.index_type == INDEX_TYPE_THEME, IndexEntry.key_term == "joy")
    )
    assert joy is not None
    assert len(joy.book_references) == 2


def test_skipped_stages(tmp_path, session_factory, db_session):
    src = tmp_path / "books"
    src.mkdir()
    write_sources(src)

    runner = PipelineRunner(config_for(src), skip_stages=["embed", "index"], session_factory=session_factory)
    assert not runner.enable_embed and not runner.enable_index
    runner.run()

    assert db_session.scalar(select(func.count()).select_from(Chunk)) > 0
    assert db_session.scalar(select(func.count()).select_from(Chunk).where(Chunk.embedding.is_not(None))) == 0
    assert db_session.scalar(select(func.count()).select_from(IndexEntry)) == 0


def test_failed_document_does_not_stop_the_batch(tmp_path, session_factory, db_session):
    src = tmp_path / "books"
    src.mkdir()
    # both claim the same chunk reference; the second one alphabetically fails
    (src / "a.json").write_text(json.dumps({"name": "Book_A", "sections": [{"ref": "Shared 1", "text": "One."}]}))
    (src / "b.json").write_text(json.dumps({"name": "Book_B", "sections": [{"ref": "Shared 1", "text": "Two."}]}))
    (src / "c.json").write_text(json.dumps({"name": "Book_C", "content": "Three."}))

    stats = PipelineRunner(config_for(src, ("chunk", "embed")), session_factory=session_factory,
                           embedder=FakeEmbedder()).run()

    assert stats["failed"] == 1
    assert stats["ingested"] == 2
    assert set(db_session.scalars(select(Document.name))) == {"Book_A", "Book_C"}


def test_from_file(tmp_path, session_factory):
    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.safe_dump(config_for(tmp_path)), encoding="utf-8")

    runner = PipelineRunner.from_file(str(path), session_factory=session_factory)
    assert runner.chunker.chunk_size == 1000
    assert runner.chunker.overlap_percentage == 10
    assert runner.embed_model == "test-model"


def test_undecodable_file_is_skipped(tmp_path, session_factory, db_session):
    src = tmp_path / "books"
    src.mkdir()
    (src / "a_bad.json").write_bytes(b'{"name": "Bad", "text": "\xff\xfe bad"}')
    (src / "b_good.json").write_text(json.dumps({"name": "Good", "content": "A good teaching."}), encoding="utf-8")

    stats = PipelineRunner(config_for(src, ("chunk", "embed")), session_factory=session_factory,
                           embedder=FakeEmbedder()).run()

    assert stats["ingested"] == 1
    assert set(db_session.scalars(select(Document.name))) == {"Good"}


class CrashingEmbedder(FakeEmbedder):
    """Raises an error outside the library's own hierarchy for one text."""

    def embed_many(self, texts):
        if any("crash" in t for t in texts):
            raise RuntimeError("device lost")
        return super().embed_many(texts)


def test_unexpected_error_fails_only_that_document(tmp_path, session_factory, db_session):
    src = tmp_path / "books"
    src.mkdir()
    (src / "a.json").write_text(json.dumps({"name": "Book_A", "content": "This will crash."}))
    (src / "b.json").write_text(json.dumps({"name": "Book_B", "content": "This will not."}))

    stats = PipelineRunner(config_for(src, ("chunk", "embed")), session_factory=session_factory,
                           embedder=CrashingEmbedder()).run()

    assert stats["failed"] == 1
    assert stats["ingested"] == 1
    assert set(db_session.scalars(select(Document.name))) == {"Book_B"}
