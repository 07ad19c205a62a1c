"""Shared helpers: console logging and atomic file writes."""
