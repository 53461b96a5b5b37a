"""aether - resumable FHIR data pipeline orchestrator."""

from aether.version import __version__

__all__ = ["__version__"]
