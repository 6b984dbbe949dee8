"""
Sync subsystem.

Components:
- translator.py: local <-> remote row mapping
- remote.py: httpx client for the Supabase/PostgREST backend
- offline.py: remote stand-in when no backend is configured
- executor.py: push path (queue drain with retry)
- merge.py: pull path (last-write-wins)
- coordinator.py: session / network triggers
- engine.py: SyncEngine facade
"""
