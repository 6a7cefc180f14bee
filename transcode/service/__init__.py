"""
Service layer for the transcode engine.

Catalog, parameter derivation, sandboxed encoding, segmenting and publication,
usable without going through Django views or tasks. These are used by:
- The Huey background tasks (transcode/tasks.py)
- The CLI management command (management/commands/transcode.py)
"""
