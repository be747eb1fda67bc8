"""Durable storage and document codecs."""
