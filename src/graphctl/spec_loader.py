"""Configuration document and plan file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES, MAX_PLAN_FILE_SIZE_BYTES
from .models import ConfigDocument
from .planner import Plan

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a document fails to load or validate."""

    pass


def _read_bounded(path: Path, max_bytes: int, kind: str) -> str:
    if not path.exists():
        raise SpecLoadError(f"{kind} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {kind.lower()} {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{kind} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {kind.lower()} {path}: {e}") from e


def load_document(path: Path) -> ConfigDocument:
    """Load and validate a configuration document from YAML.

    Args:
        path: Path of the YAML document.

    Returns:
        Validated ConfigDocument.

    Raises:
        SpecLoadError: If the document cannot be loaded or fails validation.
    """
    content = _read_bounded(path, MAX_CONFIG_FILE_SIZE_BYTES, "Configuration file")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Configuration file must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        document = ConfigDocument.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info(
        "Loaded configuration document",
        extra={
            "path": str(path),
            "project": document.context.project,
            "environment": document.context.environment,
            "resource_count": len(document.resources),
        },
    )
    return document


def resolve_variables(document: ConfigDocument, overrides: dict[str, Any]) -> dict[str, Any]:
    """Combine declared defaults with command-line overrides.

    Raises:
        SpecLoadError: If an override names an undeclared variable or a
            required variable has no value.
    """
    unknown = sorted(set(overrides) - set(document.variables))
    if unknown:
        raise SpecLoadError(f"Undeclared variables: {unknown}")

    values: dict[str, Any] = {}
    missing: list[str] = []
    for name, spec in document.variables.items():
        if name in overrides:
            values[name] = overrides[name]
        elif not spec.required:
            values[name] = spec.default
        else:
            missing.append(name)

    if missing:
        raise SpecLoadError(f"Missing values for required variables: {missing}")
    return values


def parse_var_assignments(assignments: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse "name=value" strings from the command line.

    Raises:
        SpecLoadError: If an assignment has no "=".
    """
    values: dict[str, str] = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name.strip():
            raise SpecLoadError(f"Variable assignment must be name=value: {assignment}")
        values[name.strip()] = value
    return values


def load_plan(path: Path) -> Plan:
    """Load a saved plan file.

    Raises:
        SpecLoadError: If the file cannot be read or is not a valid plan.
    """
    content = _read_bounded(path, MAX_PLAN_FILE_SIZE_BYTES, "Plan file")
    try:
        return Plan.from_dict(json.loads(content))
    except (ValueError, KeyError, TypeError) as e:
        # ValueError covers json.JSONDecodeError and unknown enum values
        raise SpecLoadError(f"Invalid plan file {path}: {e}") from e


def write_plan(plan: Plan, path: Path) -> None:
    """Write a plan file atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(json.dumps(plan.to_dict(), indent=2, default=str), encoding="utf-8")
    os.replace(tmp_path, path)
    logger.info("Wrote plan file", extra={"path": str(path)})
