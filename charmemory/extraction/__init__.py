"""Chunked memory extraction."""
