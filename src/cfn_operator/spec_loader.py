"""Stack manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

Manifests are Kubernetes-style YAML documents; a file may hold several
documents separated by ``---``:

    apiVersion: cloudformation.linki.space/v1alpha1
    kind: Stack
    metadata:
      name: my-bucket
    spec:
      template: |
        Resources: ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import API_VERSION, KIND, DesiredStack, StackKey
from .store import AlreadyExistsError, NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _format_validation_error(source: str, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        msg = error["msg"]
        errors.append(f"  - {loc}: {msg}")
    error_list = "\n".join(errors)
    return f"Validation failed for {source}:\n{error_list}"


def parse_manifest(document: Any, source: str, namespace: str | None = None) -> DesiredStack:
    """Validate one YAML document as a Stack.

    Args:
        document: Parsed YAML document.
        source: Human-readable origin used in error messages.
        namespace: Namespace applied when the manifest does not set one.

    Raises:
        SpecLoadError: If the document is not a valid Stack.
    """
    if not isinstance(document, dict):
        raise SpecLoadError(f"Manifest must be a YAML mapping: {source}")

    api_version = document.get("apiVersion")
    if api_version != API_VERSION:
        raise SpecLoadError(
            f"Unsupported apiVersion '{api_version}' in {source}; expected '{API_VERSION}'"
        )
    if document.get("kind") != KIND:
        raise SpecLoadError(f"Unsupported kind '{document.get('kind')}' in {source}")

    metadata = document.get("metadata")
    if not isinstance(metadata, dict):
        raise SpecLoadError(f"metadata section must be a mapping: {source}")

    # Status and store-managed fields are never taken from a manifest
    data = {
        "apiVersion": api_version,
        "kind": KIND,
        "metadata": {
            key: value
            for key, value in metadata.items()
            if key in ("name", "namespace", "labels")
        },
        "spec": document.get("spec"),
    }
    if namespace and not data["metadata"].get("namespace"):
        data["metadata"]["namespace"] = namespace

    try:
        return DesiredStack.model_validate(data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(source, e)) from e


def load_manifest_file(path: Path, namespace: str | None = None) -> list[DesiredStack]:
    """Load every Stack document in one manifest file.

    Raises:
        SpecLoadError: If the file cannot be read or any document is invalid.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    stacks = [
        parse_manifest(doc, f"{path} (document {i + 1})", namespace)
        for i, doc in enumerate(documents)
    ]
    logger.info("Loaded %d stack manifest(s) from %s", len(stacks), path)
    return stacks


def load_manifests(specs_dir: Path, namespace: str | None = None) -> list[DesiredStack]:
    """Load all manifests in a directory (not recursive).

    Raises:
        SpecLoadError: If the directory is missing, a file is invalid, or two
            documents declare the same namespace/name.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    stacks: list[DesiredStack] = []
    seen: dict[StackKey, Path] = {}
    for path in sorted(specs_dir.iterdir()):
        if path.suffix not in MANIFEST_SUFFIXES or not path.is_file():
            continue
        for desired in load_manifest_file(path, namespace):
            if desired.key in seen:
                raise SpecLoadError(
                    f"Duplicate stack {desired.key} in {path} "
                    f"(first defined in {seen[desired.key]})"
                )
            seen[desired.key] = path
            stacks.append(desired)
    return stacks


@dataclass
class ApplyResult:
    """What apply_manifests changed in the store."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0


def apply_manifests(
    store: ResourceStore, manifests: list[DesiredStack], namespace: str | None = None
) -> ApplyResult:
    """Make the store hold exactly the given manifests.

    New manifests are created, changed specs or labels are updated and
    objects without a manifest are deleted (which only marks them while the
    controller's finalizer is present). Only objects in ``namespace`` are
    considered when it is set.
    """
    result = ApplyResult()
    wanted = {desired.key: desired for desired in manifests}

    for desired in manifests:
        try:
            current = store.get(desired.key)
        except NotFoundError:
            try:
                store.create(desired)
                result.created += 1
            except AlreadyExistsError:
                result.unchanged += 1
            continue

        if current.is_marked_for_deletion:
            # Recreated manifests wait until the old object is gone
            result.unchanged += 1
            continue
        if current.spec == desired.spec and current.metadata.labels == desired.metadata.labels:
            result.unchanged += 1
            continue

        current.spec = desired.spec
        current.metadata.labels = dict(desired.metadata.labels)
        store.update(current)
        result.updated += 1

    for existing in store.list(namespace):
        if existing.key in wanted or existing.is_marked_for_deletion:
            continue
        try:
            store.delete(existing.key)
        except NotFoundError:
            continue
        result.deleted += 1

    if result.created or result.updated or result.deleted:
        logger.info(
            "Applied manifests",
            extra={
                "created": result.created,
                "updated": result.updated,
                "deleted": result.deleted,
                "unchanged": result.unchanged,
            },
        )
    return result
