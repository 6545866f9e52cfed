"""Tenderflow: orchestration core for CV/tender document intelligence.

This package drives uploads, the expert profile workflow, tender matching,
normalization of upstream payloads, and result export.
"""

__version__ = "0.1.0"
