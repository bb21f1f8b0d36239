#!/usr/bin/env python3
"""
Run a retrieval query from the command line.

Example:
    python -m sefer_cli.search "what does the tzaddik teach about joy?"
    python -m sefer_cli.search "hitbodedut" --max-results 5 --show-text
"""

from __future__ import annotations

import argparse
import sys

from sefer_core.config import settings
from sefer_core.db import SessionLocal
from sefer_core.errors import RetrievalError
from sefer_core.logging_config import configure_logging
from sefer_pipeline.stage_00_embeddings.embedder import get_embedding_provider
from sefer_pipeline.stage_01_index.cache import IndexCache
from sefer_pipeline.stage_02_retrieval.retriever import Retriever
from sefer_pipeline.utils.hits import snippet


def main() -> None:
    parser = argparse.ArgumentParser(description="Retrieve context chunks for a question.")
    parser.add_argument("question", help="Question or search phrase.")
    parser.add_argument("--max-results", type=int, default=10, help="Maximum number of chunks to return.")
    parser.add_argument("--show-text", action="store_true", help="Print a snippet of each selected chunk.")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL)
    retriever = Retriever(SessionLocal, get_embedding_provider(), IndexCache())
    try:
        outcome = retriever.retrieve(args.question, args.max_results)
    except RetrievalError as e:
        print(f"Retrieval failed: {e}")
        for stream, err in e.failures.items():
            print(f"  {stream}: {err}")
        sys.exit(1)

    a = outcome.analysis
    if a is not None:
        print(f"Query type: {a.query_type}  themes={a.themes}  books={a.suspected_books}")
    if outcome.failed_streams:
        print(f"Degraded: failed streams {', '.join(outcome.failed_streams)}")
    if outcome.no_results:
        print("No results found.")
        for s in outcome.suggestions:
            print(f"  try: {s}")
        return

    print(f"Selected {len(outcome.selected)} of {outcome.total_candidates} candidates ({outcome.total_tokens} tokens)\n")
    for r in outcome.selected:
        c = r.chunk
        print(f"- [{r.score:.2f}] {c.exact_reference}  ({c.book_title or '?'})  via {'+'.join(r.sources)}")
        if args.show_text:
            print(f"    {snippet(c.content, 240)}")


if __name__ == "__main__":
    main()
