"""
Batch jobs for the venue dedup engine.

These run as standalone scripts via cron or an operator shell,
NOT inside the FastAPI process.

Usage:
    python scripts/fix_venue_names.py <city_id> [--severity moderate] [--dry-run]
"""
