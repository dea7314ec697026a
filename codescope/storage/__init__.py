"""Persistent and in-memory index structures."""
