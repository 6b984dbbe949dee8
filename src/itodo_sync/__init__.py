"""
itodo_sync: offline-first synchronization engine for a quadrant todo app.

The embeddable API is itodo_sync.sync.engine.SyncEngine.
"""

__version__ = "0.1.0"
