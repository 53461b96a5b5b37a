"""Logging setup, job context and per-job log files."""
