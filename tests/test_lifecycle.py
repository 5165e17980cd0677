"""Tests for the stack lifecycle state machine."""

import dataclasses

import pytest
from aws_mock import MockCloudFormationClient
from factories import make_desired

from cfn_operator.config import Config
from cfn_operator.follower import StackFollower
from cfn_operator.lifecycle import OperationResult, StackLifecycle
from cfn_operator.models import DesiredStack
from cfn_operator.provider import StackProvider, StackProviderError
from cfn_operator.status import StatusSynchronizer
from cfn_operator.store import InMemoryStore
from cfn_operator.tags import CONTROLLER_KEY, CONTROLLER_VALUE, OWNER_KEY


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def build(
    store: InMemoryStore, provider: StackProvider, config: Config, **kwargs: object
) -> tuple[StackLifecycle, StackFollower]:
    synchronizer = StatusSynchronizer(provider, store, config)
    follower = StackFollower(provider, synchronizer, config)
    return StackLifecycle(provider, synchronizer, follower, config, **kwargs), follower


def stored(store: InMemoryStore, **kwargs: object) -> DesiredStack:
    return store.create(make_desired(**kwargs))


class TestCreate:
    """Tests for StackLifecycle.create_stack()."""

    @pytest.mark.asyncio
    async def test_create_records_id_and_submits(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        config = dataclasses.replace(
            config,
            default_tags={"team": "platform"},
            default_capabilities=("CAPABILITY_IAM",),
        )
        lifecycle, follower = build(store, provider, config)
        desired = stored(store, parameters={"Env": "prod"}, tags={"app": "web"})

        result = await lifecycle.create_stack(desired)

        assert result is OperationResult.SUBMITTED
        assert cfn.call_count("CreateStack") == 1
        _, kwargs = next(call for call in cfn.calls if call[0] == "CreateStack")
        assert kwargs["StackName"] == "my-stack"
        assert kwargs["Parameters"] == [{"ParameterKey": "Env", "ParameterValue": "prod"}]
        assert kwargs["Tags"] == [
            {"Key": CONTROLLER_KEY, "Value": CONTROLLER_VALUE},
            {"Key": OWNER_KEY, "Value": desired.metadata.uid},
            {"Key": "team", "Value": "platform"},
            {"Key": "app", "Value": "web"},
        ]
        assert kwargs["Capabilities"] == ["CAPABILITY_IAM"]

        stack_id = cfn.live_stacks()[0].stack_id
        assert store.get(desired.key).status.stack_id == stack_id
        assert follower.pending == 1

    @pytest.mark.asyncio
    async def test_create_skipped_when_not_owned(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        cfn.add_stack("my-stack", tags={"team": "other"})
        lifecycle, follower = build(store, provider, config)

        result = await lifecycle.create_stack(stored(store))

        assert result is OperationResult.SKIPPED_NOT_OWNED
        assert cfn.mutating_calls == 0
        assert follower.pending == 0

    @pytest.mark.asyncio
    async def test_create_dry_run(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        lifecycle, follower = build(store, provider, dataclasses.replace(config, dry_run=True))

        result = await lifecycle.create_stack(stored(store))

        assert result is OperationResult.SKIPPED_DRY_RUN
        assert cfn.mutating_calls == 0
        assert follower.pending == 0

    @pytest.mark.asyncio
    async def test_create_failure_propagates(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        cfn.inject_error("CreateStack", "InsufficientCapabilitiesException", "Requires IAM")
        lifecycle, follower = build(store, provider, config)
        desired = stored(store)

        with pytest.raises(StackProviderError):
            await lifecycle.create_stack(desired)

        assert store.get(desired.key).status.stack_id == ""
        assert follower.pending == 0


class TestUpdate:
    """Tests for StackLifecycle.update_stack()."""

    async def _created(
        self,
        lifecycle: StackLifecycle,
        store: InMemoryStore,
        cfn: MockCloudFormationClient,
    ) -> DesiredStack:
        desired = stored(store)
        await lifecycle.create_stack(desired)
        cfn.complete("my-stack")
        await lifecycle.sync_status(store.get(desired.key))
        return store.get(desired.key)

    @pytest.mark.asyncio
    async def test_update_twice_unchanged_is_noop(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        """Each call gets "No updates" and no status write happens."""
        lifecycle, follower = build(store, provider, config)
        desired = await self._created(lifecycle, store, cfn)
        version = desired.metadata.resource_version
        pending = follower.pending

        first = await lifecycle.update_stack(store.get(desired.key))
        second = await lifecycle.update_stack(store.get(desired.key))

        assert first is OperationResult.NO_CHANGES
        assert second is OperationResult.NO_CHANGES
        assert cfn.call_count("UpdateStack") == 2
        assert store.get(desired.key).metadata.resource_version == version
        assert follower.pending == pending

    @pytest.mark.asyncio
    async def test_update_changed_spec_submits(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        lifecycle, follower = build(store, provider, config)
        desired = await self._created(lifecycle, store, cfn)
        desired.spec.parameters["Env"] = "staging"
        desired = store.update(desired)
        pending = follower.pending

        result = await lifecycle.update_stack(desired)

        assert result is OperationResult.SUBMITTED
        _, kwargs = [call for call in cfn.calls if call[0] == "UpdateStack"][-1]
        assert kwargs["StackName"] == desired.status.stack_id
        assert kwargs["Parameters"] == [{"ParameterKey": "Env", "ParameterValue": "staging"}]
        assert cfn.get_stack("my-stack").status == "UPDATE_IN_PROGRESS"
        assert follower.pending == pending + 1

    @pytest.mark.asyncio
    async def test_update_skipped_when_not_owned(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        cfn.add_stack("my-stack", tags={"team": "other"})
        lifecycle, _ = build(store, provider, config)

        assert await lifecycle.update_stack(stored(store)) is OperationResult.SKIPPED_NOT_OWNED
        assert cfn.mutating_calls == 0


class TestDelete:
    """Tests for StackLifecycle.delete_stack()."""

    @pytest.mark.asyncio
    async def test_delete_by_stack_id(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        lifecycle, follower = build(store, provider, config)
        desired = stored(store)
        await lifecycle.create_stack(desired)
        cfn.complete("my-stack")
        desired = store.get(desired.key)

        result = await lifecycle.delete_stack(desired)

        assert result is OperationResult.SUBMITTED
        _, kwargs = [call for call in cfn.calls if call[0] == "DeleteStack"][-1]
        assert kwargs["StackName"] == desired.status.stack_id
        assert cfn.get_stack(desired.status.stack_id).status == "DELETE_IN_PROGRESS"
        assert follower.pending == 2

    @pytest.mark.asyncio
    async def test_delete_skipped_when_not_owned(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        cfn.add_stack("my-stack", tags={"team": "other"})
        lifecycle, _ = build(store, provider, config)

        assert await lifecycle.delete_stack(stored(store)) is OperationResult.SKIPPED_NOT_OWNED
        assert cfn.mutating_calls == 0
        assert cfn.get_stack("my-stack").status == "CREATE_COMPLETE"


class TestWaitForTerminal:
    """Tests for the bounded poll used by the one-shot CLI."""

    @pytest.mark.asyncio
    async def test_waits_until_terminal(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        cfn: MockCloudFormationClient,
        config: Config,
    ) -> None:
        sleep = RecordingSleep()
        lifecycle, _ = build(store, provider, config, sleep=sleep)
        desired = stored(store)
        await lifecycle.create_stack(desired)
        cfn.script_statuses(
            "my-stack", ["CREATE_IN_PROGRESS", "CREATE_IN_PROGRESS", "CREATE_COMPLETE"]
        )

        stack = await lifecycle.wait_for_terminal(store.get(desired.key), timeout=60)

        assert stack is not None
        assert stack["StackStatus"] == "CREATE_COMPLETE"
        assert len(sleep.delays) == 2
        assert store.get(desired.key).status.stack_status == "CREATE_COMPLETE"

    @pytest.mark.asyncio
    async def test_timeout(
        self,
        store: InMemoryStore,
        provider: StackProvider,
        config: Config,
    ) -> None:
        lifecycle, _ = build(store, provider, config, sleep=RecordingSleep())
        desired = stored(store)
        await lifecycle.create_stack(desired)

        with pytest.raises(TimeoutError, match="CREATE_IN_PROGRESS"):
            await lifecycle.wait_for_terminal(store.get(desired.key), timeout=0)

    @pytest.mark.asyncio
    async def test_missing_stack(
        self, store: InMemoryStore, provider: StackProvider, config: Config
    ) -> None:
        lifecycle, _ = build(store, provider, config)

        assert await lifecycle.wait_for_terminal(stored(store), timeout=5) is None
