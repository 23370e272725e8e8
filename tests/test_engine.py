"""End-to-end tests for the reconcile engine against the in-memory provider."""
import asyncio

import pytest
import yaml

from mcp_infra_reconciler.config.settings import EngineSettings
from mcp_infra_reconciler.engine import ChangeType, ReconcileEngine, StepStatus
from mcp_infra_reconciler.providers import (
    InMemoryProvider,
    PermanentProviderError,
    ProviderRegistry,
)
from mcp_infra_reconciler.state_store import FileStateStore


NETWORK = {
    "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}},
    "aws_subnet": {"public": {"vpc_id": "${aws_vpc.main.id}", "cidr_block": "10.0.1.0/24"}},
    "aws_route_table_association": {"public": {"subnet_id": "${aws_subnet.public.id}"}},
}

GAME_SERVER = {
    "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}},
    "aws_security_group": {
        "game": {"name": "game", "vpc_id": "${aws_vpc.main.id}"},
        "admin": {"name": "admin", "vpc_id": "${aws_vpc.main.id}"},
    },
}


def declaration(resources: dict, variables=None) -> dict:
    config = {"resources": resources}
    if variables:
        config["variables"] = variables
    return config


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def engine(tmp_path, provider):
    registry = ProviderRegistry()
    registry.register("aws_", provider)
    settings = EngineSettings(
        home=tmp_path,
        lock_timeout=1,
        backoff_min=0,
        backoff_max=0,
        state_git=False,
    )
    store = FileStateStore(settings.state_dir, git_enabled=False)
    return ReconcileEngine(store, registry, settings=settings, user="tester")


class TestApply:
    """Tests for the apply workflow."""

    @pytest.mark.asyncio
    async def test_create_then_destroy_order(self, engine, provider):
        """Creates run dependencies first; destroy runs in reverse."""
        result = await engine.apply(declaration(NETWORK))

        assert result.success
        assert result.exit_code == 0
        assert [(op, t) for op, t, _ in provider.calls] == [
            ("create", "aws_vpc"),
            ("create", "aws_subnet"),
            ("create", "aws_route_table_association"),
        ]

        provider.calls.clear()
        result = await engine.destroy()

        assert result.success
        assert [(op, t) for op, t, _ in provider.calls] == [
            ("delete", "aws_route_table_association"),
            ("delete", "aws_subnet"),
            ("delete", "aws_vpc"),
        ]
        assert provider.resources == {}
        assert await engine.read_state() == {}

    @pytest.mark.asyncio
    async def test_independent_security_groups(self, engine, provider):
        """Security groups sharing a VPC are independent and both applied."""
        result = await engine.apply(declaration(GAME_SERVER))

        assert result.success
        assert result.plan.independent(
            "create:aws_security_group.game", "create:aws_security_group.admin"
        )
        assert sorted(result.summary.applied) == [
            "aws_security_group.admin",
            "aws_security_group.game",
            "aws_vpc.main",
        ]

    @pytest.mark.asyncio
    async def test_second_apply_is_no_op(self, engine, provider):
        """Applying the same declaration twice changes nothing the second time."""
        await engine.apply(declaration(NETWORK))
        calls = list(provider.calls)

        result = await engine.apply(declaration(NETWORK))

        assert result.success
        assert result.plan.no_change
        assert result.summary is None
        assert {c.change_type for c in result.plan.changes} == {ChangeType.NO_OP}
        assert provider.calls == calls

    @pytest.mark.asyncio
    async def test_added_depends_on_orders_later_destroy(self, engine, provider):
        """depends_on added to an unchanged resource still orders its destroy."""
        resources = {
            "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}},
            "aws_instance": {"game": {"ami": "ami-1"}},
        }
        await engine.apply(declaration(resources))
        calls = list(provider.calls)

        resources["aws_instance"]["game"]["depends_on"] = ["aws_vpc.main"]
        preview = await engine.apply(declaration(resources), dry_run=True)
        assert (await engine.read_state())["aws_instance.game"].dependencies == []

        result = await engine.apply(declaration(resources))

        assert result.success
        assert result.plan.no_change
        assert provider.calls == calls
        assert preview.plan.no_change
        assert (await engine.read_state())["aws_instance.game"].dependencies == ["aws_vpc.main"]

        provider.calls.clear()
        result = await engine.destroy()

        assert "delete:aws_instance.game" in result.plan.get("delete:aws_vpc.main").deps
        assert [(op, t) for op, t, _ in provider.calls] == [
            ("delete", "aws_instance"),
            ("delete", "aws_vpc"),
        ]

    @pytest.mark.asyncio
    async def test_dependencies_refreshed_alongside_changes(self, engine, provider):
        """Unchanged resources get their dependencies rewritten during a normal apply."""
        resources = {
            "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}},
            "aws_security_group": {"game": {"name": "game"}},
        }
        await engine.apply(declaration(resources))

        resources["aws_security_group"]["game"]["depends_on"] = ["aws_vpc.main"]
        resources["aws_s3_bucket"] = {"saves": {"bucket": "saves"}}
        result = await engine.apply(declaration(resources))

        assert result.success
        assert result.plan.counts()["create"] == 1
        state = await engine.read_state()
        assert state["aws_security_group.game"].dependencies == ["aws_vpc.main"]

    @pytest.mark.asyncio
    async def test_removed_resource_destroyed(self, engine, provider):
        """Dropping a resource from the declaration yields exactly one destroy."""
        await engine.apply(declaration(GAME_SERVER))
        state = await engine.read_state()
        admin_id = state["aws_security_group.admin"].resource_id

        resources = {
            "aws_vpc": GAME_SERVER["aws_vpc"],
            "aws_security_group": {"game": GAME_SERVER["aws_security_group"]["game"]},
        }
        result = await engine.apply(declaration(resources))

        assert result.success
        assert result.plan.counts()["destroy"] == 1
        assert provider.calls[-1] == ("delete", "aws_security_group", admin_id)
        assert "aws_security_group.admin" not in await engine.read_state()

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_record(self, engine, provider):
        """A record is only removed once the provider delete succeeds."""
        await engine.apply(declaration(GAME_SERVER))

        def reject_delete(op, resource_type, subject):
            if op == "delete":
                raise PermanentProviderError("dependency violation", resource_type, 409)

        provider.fault_hook = reject_delete
        resources = {
            "aws_vpc": GAME_SERVER["aws_vpc"],
            "aws_security_group": {"game": GAME_SERVER["aws_security_group"]["game"]},
        }
        result = await engine.apply(declaration(resources))

        assert result.exit_code == 1
        assert result.summary.failed == ["aws_security_group.admin"]
        assert "aws_security_group.admin" in await engine.read_state()

    @pytest.mark.asyncio
    async def test_replace(self, engine, provider):
        """Changing a replace-only field recreates the resource and its dependents."""
        await engine.apply(declaration(NETWORK))
        old_vpc = (await engine.read_state())["aws_vpc.main"].resource_id

        resources = dict(NETWORK, aws_vpc={"main": {"cidr_block": "10.1.0.0/16"}})
        result = await engine.apply(declaration(resources))

        assert result.success
        assert result.plan.counts()["replace"] == 3
        state = await engine.read_state()
        assert state["aws_vpc.main"].resource_id != old_vpc
        assert state["aws_subnet.public"].inputs["vpc_id"] == state["aws_vpc.main"].resource_id
        assert ("aws_vpc", old_vpc) not in provider.resources

    @pytest.mark.asyncio
    async def test_update_in_place(self, engine, provider):
        """Updatable fields change without a new id."""
        await engine.apply(declaration({"aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}}}))
        vpc_id = (await engine.read_state())["aws_vpc.main"].resource_id

        result = await engine.apply(declaration({
            "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16", "tags": {"Name": "main"}}},
        }))

        assert result.success
        assert provider.calls[-1] == ("update", "aws_vpc", vpc_id)
        record = (await engine.read_state())["aws_vpc.main"]
        assert record.attributes["tags"] == {"Name": "main"}
        assert record.updated_at is not None

    @pytest.mark.asyncio
    async def test_disabled_resource_destroyed(self, engine, provider):
        """Disabling a resource destroys it and warns."""
        await engine.apply(declaration(GAME_SERVER))

        resources = {
            "aws_vpc": GAME_SERVER["aws_vpc"],
            "aws_security_group": {
                "game": GAME_SERVER["aws_security_group"]["game"],
                "admin": {**GAME_SERVER["aws_security_group"]["admin"], "enabled": False},
            },
        }
        result = await engine.apply(declaration(resources))

        assert result.success
        change = [c for c in result.plan.changes if c.address == "aws_security_group.admin"][0]
        assert change.change_type == ChangeType.DESTROY
        assert change.reason == "disabled"
        assert any("disabled" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_partial_failure(self, engine, provider):
        """A failing step skips only its dependents."""
        def reject_subnet(op, resource_type, subject):
            if resource_type == "aws_subnet":
                raise PermanentProviderError("no capacity", resource_type, 400)

        provider.fault_hook = reject_subnet
        resources = dict(NETWORK, aws_security_group={"game": {"name": "game"}})

        result = await engine.apply(declaration(resources))

        assert not result.success
        assert result.exit_code == 1
        assert not result.fatal
        assert result.summary.failed == ["aws_subnet.public"]
        assert result.summary.skipped == ["aws_route_table_association.public"]
        assert sorted(await engine.read_state()) == ["aws_security_group.game", "aws_vpc.main"]

        # The next apply picks up where the last one stopped
        provider.fault_hook = None
        result = await engine.apply(declaration(resources))
        assert result.success
        assert result.plan.counts()["create"] == 2

    @pytest.mark.asyncio
    async def test_dry_run(self, engine, provider):
        """Dry runs plan without calling providers or writing state."""
        result = await engine.apply(declaration(NETWORK), dry_run=True)

        assert result.success
        assert result.dry_run
        assert result.plan.counts()["create"] == 3
        assert provider.calls == []
        assert await engine.read_state() == {}

    @pytest.mark.asyncio
    async def test_plan_operation(self, engine, provider):
        result = await engine.plan(declaration(NETWORK))

        assert result.operation == "plan"
        assert len(result.plan.steps) == 3
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_variables_and_file(self, engine, provider, tmp_path):
        """Declarations load from YAML files with variables."""
        path = tmp_path / "stack.yaml"
        path.write_text(yaml.safe_dump({
            "variables": {"cidr": {"default": "10.0.0.0/16"}},
            "resources": {"aws_vpc": {"main": {"cidr_block": "${var.cidr}"}}},
        }))

        result = await engine.apply(path, variables={"cidr": "10.5.0.0/16"})

        assert result.success
        record = (await engine.read_state())["aws_vpc.main"]
        assert record.inputs["cidr_block"] == "10.5.0.0/16"

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, engine, provider, tmp_path):
        """A new engine over the same state directory sees the records."""
        await engine.apply(declaration(NETWORK))

        store = FileStateStore(tmp_path / "state", git_enabled=False)
        again = ReconcileEngine(store, engine.registry, settings=engine.settings)
        result = await again.apply(declaration(NETWORK))

        assert result.plan.no_change


class TestFatalErrors:
    """Errors that stop a run before any provider call."""

    @pytest.mark.asyncio
    async def test_cycle(self, engine, provider):
        """A dependency cycle is reported with no provider calls."""
        result = await engine.apply(declaration({
            "aws_security_group": {
                "a": {"peer": "${aws_security_group.b.id}"},
                "b": {"peer": "${aws_security_group.a.id}"},
            }
        }))

        assert result.error_type == "DependencyCycleError"
        assert result.exit_code == 2
        assert result.plan is None
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_parse_error(self, engine):
        result = await engine.apply({"resource": {}})

        assert result.error_type == "ParseError"
        assert result.exit_code == 2

    @pytest.mark.asyncio
    async def test_missing_file(self, engine, tmp_path):
        result = await engine.apply(tmp_path / "missing.yaml")

        assert result.error_type == "ParseError"
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_no_provider(self, engine):
        """Resource types without a provider fail validation."""
        result = await engine.apply(declaration({"gcp_bucket": {"logs": {"name": "logs"}}}))

        assert result.error_type == "ValidationError"
        assert "gcp_bucket" in result.error

    @pytest.mark.asyncio
    async def test_lock_timeout(self, engine, provider):
        """A held lock makes the run fail with the holder named."""
        with engine.store.acquire_lock(timeout=1, holder="alice"):
            result = await engine.apply(declaration(NETWORK), lock_timeout=0.2)

        assert result.error_type == "LockTimeoutError"
        assert "alice" in result.error
        assert result.exit_code == 2
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_corrupt_state(self, engine, provider):
        """Corrupt state is reported, never repaired."""
        await engine.apply(declaration(NETWORK))
        engine.store.journal_path.write_text("not json\n")

        result = await engine.apply(declaration(NETWORK))

        assert result.error_type == "StateCorruptionError"
        assert result.exit_code == 2

    @pytest.mark.asyncio
    async def test_lock_released_after_fatal(self, engine):
        """Fatal errors inside the lock still release it."""
        engine.store.journal_path.write_text("not json\n")

        await engine.apply(declaration(NETWORK))

        assert engine.store.lock_info() is None


class TestCancellation:
    """Tests for cancelling a run."""

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_lock(self, engine):
        """A lock won after the waiter was cancelled is released again."""
        holder = engine.store.acquire_lock(timeout=1, holder="alice")
        task = asyncio.create_task(engine.apply(declaration(NETWORK), lock_timeout=5))
        await asyncio.sleep(0.1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        holder.release()
        for _ in range(30):
            await asyncio.sleep(0.1)
            if engine.store.lock_info() is None:
                break
        assert engine.store.lock_info() is None

    @pytest.mark.asyncio
    async def test_engine_cancel(self, tmp_path):
        """engine.cancel() lets running steps finish and skips the rest."""
        provider = InMemoryProvider(latency=0.1)
        registry = ProviderRegistry()
        registry.register("aws_", provider)
        settings = EngineSettings(home=tmp_path, concurrency=1, backoff_min=0, state_git=False)
        engine = ReconcileEngine(
            FileStateStore(settings.state_dir, git_enabled=False), registry, settings=settings
        )

        task = asyncio.create_task(engine.apply(declaration(GAME_SERVER)))
        await asyncio.sleep(0.05)
        engine.cancel()
        result = await task

        assert result.summary.cancelled
        assert result.summary.outcomes["create:aws_vpc.main"].status == StepStatus.APPLIED
        assert not result.success
        assert list(await engine.read_state()) == ["aws_vpc.main"]
