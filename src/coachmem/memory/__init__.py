"""Memory pipeline for Coachmem.

Modules:
    - similarity: Text and vector similarity helpers
    - detector: Memory-worthiness detection
    - deduplicator: create / update / merge / skip decisions
    - facts: Atomic fact extraction
    - relationships: Relationship detection between memories
    - consolidator: Contradiction resolution, supersession and merging
    - retrieval: Multi-stage contextual retrieval
    - prompt: Rendering memories for the coaching assistant's prompt
    - locks: Per-user write locks

Submodules are imported directly (``from coachmem.memory.retrieval import
RetrievalPipeline``); this package does not re-export them because the
classification providers depend on ``coachmem.memory.similarity``.
"""
