"""HTTP surface tests. Dependencies are overridden so no real store or model is touched."""

import pytest
from fastapi.testclient import TestClient

from sefer_api import main
from sefer_pipeline.stage_01_index.cache import IndexCache
from sefer_pipeline.stage_02_retrieval.retriever import Retriever
from tests.fixtures.embedders import FailingEmbedder, FakeEmbedder


def book_request(*texts, name="Sichot_HaRan"):
    return {
        "document": {
            "name": name,
            "title": name.replace("_", " "),
            "sections": [{"index": i + 1, "text": t, "ref": f"Sichot HaRan {i + 1}"} for i, t in enumerate(texts)],
        },
        "chunk_size": 1000,
        "overlap_percentage": 0,
    }


@pytest.fixture
def wiring(session_factory):
    state = {"embedder": FakeEmbedder(), "cache": IndexCache()}

    def db_override():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = db_override
    main.app.dependency_overrides[main.get_embedder] = lambda: state["embedder"]
    main.app.dependency_overrides[main.get_cache] = lambda: state["cache"]
    main.app.dependency_overrides[main.get_retriever] = (
        lambda: Retriever(session_factory, state["embedder"], state["cache"])
    )
    yield state
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(wiring):
    # no context manager: startup would load a real model
    return TestClient(main.app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ingest_rebuild_and_query(client):
    resp = client.post("/ingest", json=book_request("Always be joyful, for joy is a great mitzvah.",
                                                    "Speak to God alone in the field."))
    assert resp.status_code == 200
    assert resp.json()["num_chunks"] == 2

    rebuilt = client.post("/admin/rebuild-index")
    assert rebuilt.status_code == 200
    assert rebuilt.json()["books"] == 1

    books = client.get("/query/books").json()
    assert [b["name"] for b in books] == ["Sichot_HaRan"]

    themes = client.get("/query/themes", params={"limit": 5}).json()
    assert "joy" in [t["name"] for t in themes]

    outcome = client.post("/query/retrieve", json={"question": "How can I find joy?"}).json()
    assert not outcome["no_results"]
    joy = next(r for r in outcome["selected"] if r["chunk"]["exact_reference"] == "Sichot HaRan 1")
    assert joy["sources"] == ["vector", "master", "theme"]

    found = client.post("/query/search", json={"query": "speak to God", "search_type": "keyword"}).json()
    assert found[0]["reference"] == "Sichot HaRan 2"

    stats = client.get("/query/stats").json()
    assert stats["total_chunks"] == 2


def test_chunk_by_reference(client):
    client.post("/ingest", json=book_request("One.", "Two."))

    resp = client.get("/query/chunk/Sichot HaRan 2", params={"include_context": True})
    body = resp.json()
    assert resp.status_code == 200
    assert body["chunk"]["content"] == "Two."
    assert "score" not in body["chunk"]
    assert len(body["context"]["context_chunks"]) == 2

    assert client.get("/query/chunk/Nowhere 1").status_code == 404


def test_ingest_errors(client, wiring):
    client.post("/ingest", json=book_request("One.", name="Book_A"))
    clash = client.post("/ingest", json=book_request("Two.", name="Book_B"))
    assert clash.status_code == 422

    wiring["embedder"] = FailingEmbedder()
    assert client.post("/ingest", json=book_request("Changed.", name="Book_A")).status_code == 503


def test_semantic_search_unavailable(client, wiring):
    wiring["embedder"] = FailingEmbedder()
    resp = client.post("/query/search", json={"query": "joy", "search_type": "semantic"})
    assert resp.status_code == 503


def test_request_validation(client):
    assert client.post("/query/retrieve", json={"question": "x"}).status_code == 422
    assert client.get("/query/themes", params={"limit": 0}).status_code == 422


@pytest.mark.parametrize("path,body", [
    ("/query/retrieve", {"question": "joy", "max_results": 0}),
    ("/query/retrieve", {"question": "joy", "max_results": -1}),
    ("/query/search", {"query": "joy", "limit": 0}),
    ("/query/search", {"query": "joy", "limit": 101}),
])
def test_result_limits_are_bounded(client, path, body):
    assert client.post(path, json=body).status_code == 422
