"""
Test Suite for ZYRA Loop Sync

This package contains all tests for the sync components:
- models, config, scheduler - data model and infrastructure
- resolver, lifecycle, narrator - phase reconciliation
- client, adapters, session - signal sources and the loop session
- api - HTTP surface
"""
