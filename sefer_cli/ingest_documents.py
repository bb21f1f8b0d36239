#!/usr/bin/env python3
"""
Ingest source documents with a YAML pipeline configuration.

Example:
    python -m sefer_cli.ingest_documents pipeline.yaml
    python -m sefer_cli.ingest_documents pipeline.yaml --skip index
"""

import argparse
import os
import sys

from sefer_core.config import settings
from sefer_core.db import Base, engine
from sefer_core.logging_config import configure_logging
from sefer_pipeline.pipeline_runner import KNOWN_STAGES, PipelineRunner


def main():
    parser = argparse.ArgumentParser(
        description="Run the Sefer ingestion pipeline with YAML configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ingest, embed and rebuild the index
  python -m sefer_cli.ingest_documents pipeline.yaml

  # Re-chunk without rebuilding the index
  python -m sefer_cli.ingest_documents pipeline.yaml --skip index
        """,
    )
    parser.add_argument("config", help="Path to pipeline YAML configuration file")
    parser.add_argument(
        "--skip",
        action="append",
        dest="skip_stages",
        metavar="STAGE",
        help=f"Skip a stage (can be used multiple times). Valid stages: {', '.join(KNOWN_STAGES)}",
    )
    args = parser.parse_args()

    if not os.path.exists(args.config):
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    configure_logging(settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    stats = PipelineRunner.from_file(args.config, skip_stages=args.skip_stages).run()
    if stats["failed"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
