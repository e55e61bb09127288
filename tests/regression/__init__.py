"""Regression tests pinning deterministic engine outputs.

Covers reference hash values, significance figures, assignment stability
and the depth limit, plus an end-to-end flow walk. Uses syrupy snapshot
assertions over analysis, progress and execution dumps.
"""
