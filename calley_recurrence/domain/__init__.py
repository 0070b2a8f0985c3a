"""Persistence contract, scoped mutations and caller services."""
