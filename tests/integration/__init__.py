"""Integration tests for Coachmem.

These tests run the whole engine (MemoryService with its background
scheduler) against a file-backed SQLite database:

- test_full_pipeline.py: message -> detection -> storage -> enrichment ->
  consolidation -> retrieval -> system prompt, and persistence across restarts

Providers are the offline ones (heuristic classification, no embeddings or a
fixed vector book), so no network access is needed.

Usage:
    pytest tests/integration/ -v
"""
