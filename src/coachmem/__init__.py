"""Coachmem - personalization memory engine for coaching assistants.

Coachmem decides what a user says is worth remembering, stores it without
duplication, and retrieves the most relevant facts to enrich future AI
responses.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
