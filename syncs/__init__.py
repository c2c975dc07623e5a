"""
Sync jobs package.

Every job is written against taskbridge/engine.py and exposes
`run_sync(settings)` / `run_reset(settings)` plus a CLI:

    python -m syncs.classroom_sync [--reset]
    python -m syncs.d2l_sync [--reset]
    python -m syncs.notion_calendar_sync [--reset]
"""
