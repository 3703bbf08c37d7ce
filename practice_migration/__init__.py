"""
Practice Migration

A re-runnable migration toolkit that moves a dental practice's legacy Django
database (auth_user and dispatch_* tables) into the Supabase target schema.

Supports:
- Pooled, read-only extraction from the legacy Postgres database
- Legacy ID to target UUID reconciliation against already-migrated rows
- Per-entity transformation with enum remapping and UUID validation
- Idempotent batch upserts with bounded retry and backoff
- A shared status row and run log for dashboards to poll
- Optional embedding generation for case descriptions and messages
"""

__version__ = "0.1.0"
