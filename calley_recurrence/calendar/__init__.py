"""Recurrence rules, records and expansion."""
