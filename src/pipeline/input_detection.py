# src/pipeline/input_detection.py — v1
"""Classify the user's input token and pick the matching import step.

Rules, first match wins:
  1. empty token -> validation error
  2. existing directory -> local_directory
  3. http(s) URL with /fhir/extraction/ or /fhir/result/ -> torch_result_url,
     any other http(s) URL -> http_url
  4. .crtdl / .json file holding cohortDefinition and dataExtraction, and
     not a FHIR Parameters resource -> crtdl_file
  5. anything else -> local_directory (the import step reports a missing path)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from aether.core.errors import ClassifiedError, empty_input, file_not_found, invalid_data_file
from aether.core.models import InputType

logger = logging.getLogger(__name__)

TORCH_RESULT_MARKERS: tuple[str, ...] = ("/fhir/extraction/", "/fhir/result/")
CRTDL_SUFFIXES: tuple[str, ...] = (".crtdl", ".json")

IMPORT_STEP_BY_INPUT: dict[str, str] = {
    "local_directory": "local_import",
    "http_url": "http_import",
    "torch_result_url": "torch",
    "crtdl_file": "torch",
}


def _is_http(token: str) -> bool:
    lower = token.lower()
    return lower.startswith("http://") or lower.startswith("https://")


def _load_json_object(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _is_crtdl(data: dict[str, Any]) -> bool:
    if data.get("resourceType") == "Parameters":
        return False
    return "cohortDefinition" in data and "dataExtraction" in data


def detect_input_type(token: str) -> InputType:
    """Classify ``token``.

    Raises:
        ClassifiedError: validation error for an empty token.
    """
    token = token.strip()
    if not token:
        raise empty_input()

    path = Path(token).expanduser()
    if path.is_dir():
        return "local_directory"

    if _is_http(token):
        if any(marker in token for marker in TORCH_RESULT_MARKERS):
            return "torch_result_url"
        return "http_url"

    if path.suffix.lower() in CRTDL_SUFFIXES and path.is_file():
        data = _load_json_object(path)
        if data is not None and _is_crtdl(data):
            return "crtdl_file"
        logger.debug("%s is not a CRTDL file: %s", token, crtdl_hint(path))

    return "local_directory"


def crtdl_hint(path: str | Path) -> str:
    """Explain why ``path`` is not recognised as a CRTDL file ("" if it is)."""
    path = Path(path)
    if path.suffix.lower() not in CRTDL_SUFFIXES:
        return f"file extension {path.suffix or '(none)'} is not .crtdl or .json"
    if not path.is_file():
        return "file does not exist"
    data = _load_json_object(path)
    if data is None:
        return "file is not a JSON object"
    if data.get("resourceType") == "Parameters":
        return "file is a FHIR Parameters resource, not a CRTDL"
    missing = [k for k in ("cohortDefinition", "dataExtraction") if k not in data]
    if missing:
        return f"missing required key(s): {', '.join(missing)}"
    return ""


def validate_crtdl_syntax(path: str | Path) -> dict[str, Any]:
    """Structural check of a CRTDL before submission; returns the parsed document.

    Raises:
        ClassifiedError: filesystem error if missing, validation error if
            the structure is incomplete.
    """
    path = Path(path)
    if not path.is_file():
        raise file_not_found(str(path))
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise invalid_data_file(path.name, cause=e) from e

    problems: list[str] = []
    if not isinstance(data, dict):
        problems.append("CRTDL must be a JSON object")
    else:
        cohort = data.get("cohortDefinition")
        if not isinstance(cohort, dict):
            problems.append("missing or invalid 'cohortDefinition' object")
        elif "inclusionCriteria" not in cohort:
            problems.append("cohortDefinition has no 'inclusionCriteria'")
        extraction = data.get("dataExtraction")
        if not isinstance(extraction, dict):
            problems.append("missing or invalid 'dataExtraction' object")
        elif not extraction.get("attributeGroups"):
            problems.append("dataExtraction has no 'attributeGroups'")

    if problems:
        raise ClassifiedError(
            "validation",
            f"Invalid CRTDL file {path.name}: " + "; ".join(problems),
            guidance=[
                "A CRTDL needs cohortDefinition.inclusionCriteria",
                "and dataExtraction.attributeGroups",
                "Export the CRTDL again from the feasibility portal",
            ],
        )
    return data


def import_step_for(input_type: str) -> str:
    """Import step variant that handles ``input_type``."""
    return IMPORT_STEP_BY_INPUT[input_type]
