"""Configuration: settings sources and nested config models."""
