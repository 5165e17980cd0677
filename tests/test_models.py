"""Tests for the Pydantic models."""

import pytest
from pydantic import ValidationError

from cfn_operator.models import (
    API_VERSION,
    STACK_FINALIZER,
    DesiredStack,
    StackKey,
    StackPhase,
    StackResource,
    StackStatus,
    is_terminal_status,
    stack_phase,
)


class TestTerminalStatus:
    """Tests for the terminal-status classifier."""

    @pytest.mark.parametrize(
        "status",
        [
            "CREATE_COMPLETE",
            "UPDATE_COMPLETE",
            "DELETE_COMPLETE",
            "ROLLBACK_COMPLETE",
            "UPDATE_ROLLBACK_COMPLETE",
            "CREATE_FAILED",
            "DELETE_FAILED",
            "ROLLBACK_FAILED",
            "UPDATE_ROLLBACK_FAILED",
            "IMPORT_COMPLETE",
        ],
    )
    def test_terminal(self, status: str) -> None:
        assert is_terminal_status(status) is True

    @pytest.mark.parametrize(
        "status",
        [
            "CREATE_IN_PROGRESS",
            "UPDATE_IN_PROGRESS",
            "DELETE_IN_PROGRESS",
            "ROLLBACK_IN_PROGRESS",
            "UPDATE_ROLLBACK_IN_PROGRESS",
            "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS",
            "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS",
            "REVIEW_IN_PROGRESS",
            "",
        ],
    )
    def test_not_terminal(self, status: str) -> None:
        assert is_terminal_status(status) is False

    def test_none_is_not_terminal(self) -> None:
        assert is_terminal_status(None) is False


class TestStackPhase:
    """Tests for mapping provider statuses to phases."""

    @pytest.mark.parametrize(
        ("status", "phase"),
        [
            (None, StackPhase.ABSENT),
            ("CREATE_IN_PROGRESS", StackPhase.CREATING),
            ("CREATE_COMPLETE", StackPhase.CREATED),
            ("UPDATE_IN_PROGRESS", StackPhase.UPDATING),
            ("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", StackPhase.UPDATING),
            ("UPDATE_COMPLETE", StackPhase.CREATED),
            ("UPDATE_ROLLBACK_IN_PROGRESS", StackPhase.ROLLING_BACK),
            ("UPDATE_ROLLBACK_COMPLETE", StackPhase.CREATED),
            ("ROLLBACK_COMPLETE", StackPhase.FAILED),
            ("CREATE_FAILED", StackPhase.FAILED),
            ("DELETE_IN_PROGRESS", StackPhase.DELETING),
            ("DELETE_COMPLETE", StackPhase.DELETED),
        ],
    )
    def test_phase(self, status: str | None, phase: StackPhase) -> None:
        assert stack_phase(status) == phase


class TestDesiredStack:
    """Tests for the Stack resource model."""

    def test_valid_manifest(self) -> None:
        """Test parsing a full camelCase manifest."""
        stack = DesiredStack.model_validate(
            {
                "apiVersion": API_VERSION,
                "kind": "Stack",
                "metadata": {"name": "web", "namespace": "prod", "resourceVersion": "7"},
                "spec": {
                    "template": "Resources: {}",
                    "parameters": {"Port": 80, "Debug": None},
                    "tags": {"team": "web"},
                },
                "status": {"stackID": "arn:stack/web/1", "stackStatus": "CREATE_COMPLETE"},
            }
        )

        assert stack.key == StackKey("prod", "web")
        assert str(stack.key) == "prod/web"
        assert stack.metadata.resource_version == "7"
        assert stack.spec.parameters == {"Port": "80", "Debug": ""}
        assert stack.status.stack_id == "arn:stack/web/1"
        assert stack.stack_ref == "arn:stack/web/1"

    def test_default_namespace(self) -> None:
        stack = DesiredStack.model_validate(
            {"metadata": {"name": "web"}, "spec": {"template": "x"}}
        )
        assert stack.metadata.namespace == "default"
        assert stack.stack_ref == "web"

    def test_template_mapping_is_serialized(self) -> None:
        """Test that an inline template mapping becomes a JSON string."""
        stack = DesiredStack.model_validate(
            {
                "metadata": {"name": "web"},
                "spec": {"template": {"Resources": {"Q": {"Type": "AWS::SQS::Queue"}}}},
            }
        )
        assert stack.spec.template == '{"Resources": {"Q": {"Type": "AWS::SQS::Queue"}}}'

    def test_empty_template_rejected(self) -> None:
        with pytest.raises(ValidationError, match="template must not be empty"):
            DesiredStack.model_validate({"metadata": {"name": "web"}, "spec": {"template": " "}})

    def test_oversized_template_rejected(self) -> None:
        with pytest.raises(ValidationError, match="template exceeds"):
            DesiredStack.model_validate(
                {"metadata": {"name": "web"}, "spec": {"template": "x" * 60000}}
            )

    @pytest.mark.parametrize("name", ["1stack", "my_stack", "my.stack", "a" * 129])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ValidationError):
            DesiredStack.model_validate({"metadata": {"name": name}, "spec": {"template": "x"}})

    def test_wrong_kind_rejected(self) -> None:
        with pytest.raises(ValidationError, match="kind must be 'Stack'"):
            DesiredStack.model_validate(
                {"kind": "Bucket", "metadata": {"name": "web"}, "spec": {"template": "x"}}
            )

    def test_finalizer_helpers(self) -> None:
        stack = DesiredStack.model_validate(
            {"metadata": {"name": "web"}, "spec": {"template": "x"}}
        )

        assert stack.has_finalizer() is False
        assert stack.add_finalizer() is True
        assert stack.add_finalizer() is False
        assert stack.metadata.finalizers == [STACK_FINALIZER]
        assert stack.remove_finalizer() is True
        assert stack.remove_finalizer() is False
        assert stack.metadata.finalizers == []

    def test_dump_round_trips_aliases(self) -> None:
        stack = DesiredStack.model_validate(
            {"metadata": {"name": "web"}, "spec": {"template": "x"}}
        )
        manifest = stack.model_dump(by_alias=True, mode="json")

        assert manifest["apiVersion"] == API_VERSION
        assert manifest["metadata"]["resourceVersion"] == ""
        assert manifest["status"]["stackID"] == ""
        assert DesiredStack.model_validate(manifest) == stack


class TestStackStatus:
    """Tests for ObservedStatus equality used by compare-and-update."""

    def test_structural_equality(self) -> None:
        resources = [
            StackResource(logical_id="Q", type="AWS::SQS::Queue", status="CREATE_COMPLETE")
        ]
        a = StackStatus(stack_id="id", stack_status="CREATE_COMPLETE", resources=resources)
        b = StackStatus(stack_id="id", stack_status="CREATE_COMPLETE", resources=list(resources))

        assert a == b
        assert a != b.model_copy(update={"stack_status": "UPDATE_IN_PROGRESS"})

    def test_resource_aliases(self) -> None:
        resource = StackResource.model_validate(
            {"logicalID": "Q", "physicalID": "q-1", "type": "AWS::SQS::Queue", "status": "X"}
        )
        assert resource.logical_id == "Q"
        assert resource.physical_id == "q-1"
        assert resource.status_reason == ""
