"""Compile provider parameters and tags from a desired Stack.

Tag order is fixed:
1. the controller-identity ownership tag,
2. the owner-reference tag carrying the desired object's uid,
3. globally configured default tags,
4. tags declared on the Stack spec.

Entries are concatenated, never merged. If a default or spec tag reuses a key
from an earlier group the list contains both entries and the CloudFormation
API decides what happens (it currently rejects duplicate keys with a
ValidationError). The compiler does not overwrite silently.
"""

from __future__ import annotations

from collections.abc import Mapping

from .models import DesiredStack

# Controller identity written to every stack this operator creates
CONTROLLER_KEY = "kubernetes.io/controlled-by"
CONTROLLER_VALUE = "cloudformation.linki.space/operator"

# Reference back to the desired-state object that owns the stack
OWNER_KEY = "kubernetes.io/owned-by"


class TagCompileError(Exception):
    """Raised when provider tags cannot be derived from a Stack."""

    pass


def compile_parameters(desired: DesiredStack) -> list[dict[str, str]]:
    """Convert spec parameters to CloudFormation Parameter entries."""
    return [
        {"ParameterKey": key, "ParameterValue": value}
        for key, value in desired.spec.parameters.items()
    ]


def compile_tags(
    desired: DesiredStack, default_tags: Mapping[str, str] | None = None
) -> list[dict[str, str]]:
    """Build the CloudFormation Tag list for a Stack.

    Raises:
        TagCompileError: If the object has no uid to reference.
    """
    uid = desired.metadata.uid
    if not uid:
        raise TagCompileError(f"Stack {desired.key} has no uid; cannot build owner reference")

    tags = [
        {"Key": CONTROLLER_KEY, "Value": CONTROLLER_VALUE},
        {"Key": OWNER_KEY, "Value": uid},
    ]
    tags.extend({"Key": k, "Value": v} for k, v in (default_tags or {}).items())
    tags.extend({"Key": k, "Value": v} for k, v in desired.spec.tags.items())
    return tags
