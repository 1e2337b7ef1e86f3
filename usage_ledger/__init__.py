"""
Usage Ledger.

Ingests JSONL usage logs into a local SQLite ledger and keeps its rollups fresh.
"""

__version__ = "0.1.0"
