"""
Stage 2: Retrieval.

Runs the vector, master-index and theme streams, fuses them into one ranking,
and selects what fits the context budget.
"""

from sefer_pipeline.stage_02_retrieval.retriever import Retriever

__all__ = ["Retriever"]
