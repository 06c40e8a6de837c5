"""Sync infrastructure for the sample queue.

Modules:
    scheduler — Drain loop and fixed-interval retry state machine
"""
