"""Solver and reporting services."""
