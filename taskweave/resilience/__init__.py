"""Resilience primitives: circuit breaker and retry with backoff."""
