"""Local persistence.

Modules:
    reading_store — SQLite store for readings, patient profile and insulin shots
"""

from glucolink.store.reading_store import ReadingStore

__all__ = ["ReadingStore"]
