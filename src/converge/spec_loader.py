"""Declared-state document loading with validation.

All file operations enforce size limits. Input validation is performed at the
boundary so that a malformed document never reaches the graph builder.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_SIZE_BYTES, ConfigurationError
from .models import Document

logger = logging.getLogger(__name__)


class SpecLoadError(ConfigurationError):
    """Raised when document loading or validation fails."""

    pass


def parse_document(raw_data: Any, source: str = "<document>") -> Document:
    """Validate already-parsed YAML data into a Document.

    Args:
        raw_data: Result of yaml.safe_load.
        source: Name used in error messages.

    Raises:
        SpecLoadError: If the data does not describe a valid document.
    """
    if raw_data is None:
        raw_data = {}

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Document must contain a YAML mapping: {source}")

    try:
        return Document.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_detail = "\n".join(errors)
        raise SpecLoadError(f"Document validation failed for {source}:\n{error_detail}") from e


def load_document(path: Path) -> Document:
    """Load and validate a declared-state document from YAML.

    Args:
        path: Path to the YAML document.

    Returns:
        Validated document.

    Raises:
        SpecLoadError: If the document cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Document not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat document {path}: {e}") from e

    if file_size > MAX_DOCUMENT_SIZE_BYTES:
        raise SpecLoadError(
            f"Document exceeds maximum size of {MAX_DOCUMENT_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read document {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SpecLoadError(f"Document is not valid UTF-8: {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    document = parse_document(raw_data, source=str(path))

    logger.info(
        "Loaded document",
        extra={"path": str(path), "resource_count": len(document.resources)},
    )
    return document
