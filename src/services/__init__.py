"""HTTP collaborators: TORCH, DIMP and NDJSON import."""
