"""Sefer API - FastAPI application and database helpers used by it."""
