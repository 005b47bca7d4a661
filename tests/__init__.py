"""
Test suite for the vuload load engine.

This package contains:
- unit/: Fast tests of profiles, metrics, thresholds, the HTTP client,
  virtual users, summaries and the CLI (no network)
- integration/: Real virtual users driven against a live Flask target
"""
