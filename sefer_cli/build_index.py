#!/usr/bin/env python3
"""
Rebuild the master index (themes, concepts, books) from stored chunks.

Example:
    python -m sefer_cli.build_index
    python -m sefer_cli.build_index --top 15
"""

from __future__ import annotations

import argparse
import sys

from sefer_core.config import settings
from sefer_core.db import SessionLocal
from sefer_core.errors import IndexBuildError
from sefer_core.logging_config import configure_logging
from sefer_pipeline.stage_01_index.builder import rebuild_master_index
from sefer_pipeline.stage_01_index.master_index import MasterIndex


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild the master index from stored chunks.")
    parser.add_argument("--top", type=int, default=10, help="Number of top themes to print afterwards.")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL)
    db = SessionLocal()
    try:
        try:
            result = rebuild_master_index(db)
        except IndexBuildError as e:
            print(f"Index rebuild failed: {e}")
            sys.exit(1)

        print(f"Rebuilt master index: {result.themes} themes, {result.concepts} concepts, {result.books} books")
        themes = MasterIndex(db).get_popular_themes(args.top)
        if themes:
            print("\nTop themes:")
            for t in themes:
                he = f" ({t.hebrew})" if t.hebrew else ""
                print(f"  {t.name:15s}{he}  freq={t.frequency}  importance={t.importance:.2f}  books={len(t.books)}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
