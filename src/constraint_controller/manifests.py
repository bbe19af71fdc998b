"""Constraint manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import Constraint

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifests(path: Path) -> list[Constraint]:
    """Load every constraint document from a YAML file.

    Multi-document files are supported; empty documents are skipped.

    Args:
        path: YAML file holding one or more constraint objects.

    Returns:
        Parsed constraints in file order.

    Raises:
        ManifestLoadError: If the file cannot be read or a document is invalid.
    """
    if not path.is_file():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [d for d in yaml.safe_load_all(content) if d is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    constraints: list[Constraint] = []
    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ManifestLoadError(f"Document {index} in {path} must be a YAML mapping")
        try:
            constraints.append(Constraint.from_object(doc))
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"  - {loc}: {error['msg']}")
            error_list = "\n".join(errors)
            raise ManifestLoadError(
                f"Validation failed for document {index} in {path}:\n{error_list}"
            ) from e

    logger.info("Loaded %d constraint(s) from %s", len(constraints), path)
    return constraints
