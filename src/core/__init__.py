"""Core types: errors, domain models, NDJSON streaming, retry."""
