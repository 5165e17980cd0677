"""Pydantic models for the Stack resource.

These models provide:
1. Type-safe manifest parsing (camelCase on the wire, snake_case in Python)
2. Validation at the boundary (fail fast, fail loudly)
3. Structural equality for the compare-and-update status write
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import MAX_STACK_NAME_LENGTH, MAX_TEMPLATE_BODY_BYTES

API_VERSION = "cloudformation.linki.space/v1alpha1"
KIND = "Stack"

# Reserved finalizer token owned by this controller
STACK_FINALIZER = "finalizer.cloudformation.linki.space"

DEFAULT_NAMESPACE = "default"

# CloudFormation stack names: letters, digits and hyphens, starting with a letter
VALID_STACK_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9-]*$"


class StackKey(NamedTuple):
    """Unique key of a desired-state object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class StackPhase(str, Enum):
    """Coarse lifecycle phase derived from the provider status string."""

    ABSENT = "absent"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    ROLLING_BACK = "rolling_back"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


def is_terminal_status(status: str | None) -> bool:
    """Check whether a provider stack status signals no operation in progress.

    A status is terminal iff it ends in ``_COMPLETE`` or ``_FAILED``. This is
    the only gate used to decide when polling stops.
    """
    if not status:
        return False
    return status.endswith("_COMPLETE") or status.endswith("_FAILED")


def stack_phase(status: str | None) -> StackPhase:
    """Map a provider status onto a StackPhase.

    Examples:
        CREATE_IN_PROGRESS -> CREATING
        UPDATE_ROLLBACK_IN_PROGRESS -> ROLLING_BACK
        ROLLBACK_COMPLETE -> FAILED (the create never succeeded)
        UPDATE_ROLLBACK_COMPLETE -> CREATED (previous template is live)
    """
    if not status:
        return StackPhase.ABSENT
    if status == "DELETE_COMPLETE":
        return StackPhase.DELETED
    if status.endswith("_FAILED") or status == "ROLLBACK_COMPLETE":
        return StackPhase.FAILED
    if "ROLLBACK" in status and status.endswith("_IN_PROGRESS"):
        return StackPhase.ROLLING_BACK
    if status.startswith("DELETE_"):
        return StackPhase.DELETING
    if status.startswith("CREATE_") and not is_terminal_status(status):
        return StackPhase.CREATING
    if not is_terminal_status(status):
        return StackPhase.UPDATING
    return StackPhase.CREATED


class StackResource(BaseModel):
    """One provider-managed resource inside a stack."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    logical_id: str = Field(alias="logicalID")
    physical_id: str = Field("", alias="physicalID")
    type: str
    status: str
    status_reason: str = Field("", alias="statusReason")


class StackSpec(BaseModel):
    """User-authored intent for one stack."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    template: str
    parameters: dict[str, str] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("template", mode="before")
    @classmethod
    def serialize_template(cls, v: Any) -> Any:
        # Manifests may embed the template as a mapping instead of a string
        if isinstance(v, dict):
            return json.dumps(v, sort_keys=True)
        return v

    @field_validator("template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("template must not be empty")
        if len(v.encode("utf-8")) > MAX_TEMPLATE_BODY_BYTES:
            raise ValueError(f"template exceeds {MAX_TEMPLATE_BODY_BYTES} bytes")
        return v

    @field_validator("parameters", "tags", mode="before")
    @classmethod
    def stringify_values(cls, v: Any) -> Any:
        # YAML turns `Port: 80` into an int; the provider only accepts strings
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v


class StackStatus(BaseModel):
    """Observed state, written only by the controller."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stack_id: str = Field("", alias="stackID")
    stack_status: str = Field("", alias="stackStatus")
    created_time: datetime | None = Field(None, alias="createdTime")
    updated_time: datetime | None = Field(None, alias="updatedTime")
    outputs: dict[str, str] | None = None
    resources: list[StackResource] = Field(default_factory=list)


class ObjectMeta(BaseModel):
    """Identity and bookkeeping fields managed by the resource store."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    namespace: str = DEFAULT_NAMESPACE
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        # The resource name doubles as the CloudFormation stack name
        if len(v) > MAX_STACK_NAME_LENGTH:
            raise ValueError(f"name exceeds {MAX_STACK_NAME_LENGTH} characters")
        if not re.match(VALID_STACK_NAME_PATTERN, v):
            raise ValueError(
                "name must start with a letter and contain only letters, digits and hyphens"
            )
        return v


class DesiredStack(BaseModel):
    """The Stack resource: desired spec plus observed status."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: StackSpec
    status: StackStatus = Field(default_factory=StackStatus)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != KIND:
            raise ValueError(f"kind must be '{KIND}'")
        return v

    @property
    def key(self) -> StackKey:
        return StackKey(self.metadata.namespace, self.metadata.name)

    @property
    def stack_name(self) -> str:
        """Name of the provider-side stack."""
        return self.metadata.name

    @property
    def stack_ref(self) -> str:
        """Identifier used to address the provider stack.

        The stack ID keeps working after the stack has been deleted or its name
        reused, so it is preferred once known.
        """
        return self.status.stack_id or self.metadata.name

    @property
    def is_marked_for_deletion(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, token: str = STACK_FINALIZER) -> bool:
        return token in self.metadata.finalizers

    def add_finalizer(self, token: str = STACK_FINALIZER) -> bool:
        """Add a finalizer token. Returns False if it was already present."""
        if self.has_finalizer(token):
            return False
        self.metadata.finalizers.append(token)
        return True

    def remove_finalizer(self, token: str = STACK_FINALIZER) -> bool:
        """Remove a finalizer token. Returns False if it was absent."""
        if not self.has_finalizer(token):
            return False
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != token]
        return True
