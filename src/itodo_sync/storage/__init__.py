"""
Storage subsystem.

Components:
- models.py: data structures (Task, TaskList, QueueItem, enums)
- database.py: the SQLite file, schema/migrations and transactions
- local_store.py: Task / TaskList storage
- queue_store.py: durable operation queue
- watermarks.py: per-owner pull watermarks
"""
