"""Standings and matchup aggregation."""
