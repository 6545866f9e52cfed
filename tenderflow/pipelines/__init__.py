"""Pipelines for uploads, normalization, the profile workflow, matching, and export.

Each component converts failures into state at its own boundary so callers can
drive them independently.
"""
