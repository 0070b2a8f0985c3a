"""Configuration, logging and time helpers."""
