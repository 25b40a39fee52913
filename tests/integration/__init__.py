"""
Integration tests for the trigger worker.

These tests run full scheduler ticks against an in-memory ledger.
"""
