"""
Integration tests for the load engine.

These tests drive real virtual users, on real threads, against the
Flask target served by the ``live_server`` fixture and demonstrate:
- Executor scheduling under wall-clock time
- Dropped arrivals when the VU pool is exhausted
- Abort-on-fail thresholds and graceful stop
- Setup / teardown lifecycle around the scenarios
"""
