"""Operational entrypoints: the consumer host and topology bootstrap."""
