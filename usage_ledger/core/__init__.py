"""
Core modules for Usage Ledger.

This package contains the ingestion pipeline, deduplication,
the hybrid read path and the background sync scheduler.
"""
