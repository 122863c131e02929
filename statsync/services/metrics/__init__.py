"""Canonical metric documents: merge, formulas, producers and queries."""
