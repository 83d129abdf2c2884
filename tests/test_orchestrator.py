import threading
from unittest.mock import Mock

import pytest

from fakes import FakeEngine
from stackmigrate.address_map import AddressMapKind
from stackmigrate.config import MigrationSettings
from stackmigrate.engine import AppliedChange, Diagnostic
from stackmigrate.errors import (
    AddressMismatchError, AmbiguousComponentError, EngineError, InputError, MigrationCancelled, ProtocolError,
)
from stackmigrate.events import get_status_from_events, read_events
from stackmigrate.orchestrator import plan_address_map, run_migration
from stackmigrate.snapshot import read_snapshot

RUN_ID = "m-20250101-120000-abcd"


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.setenv("STACKMIGRATE_HOME", str(tmp_path / "home"))
    config_dir = tmp_path / "ws"
    stack_dir = config_dir / "_stacks_generated"
    stack_dir.mkdir(parents=True)
    state_file = config_dir / "terraform.tfstate"
    state_file.write_bytes(b'{"version": 4}')
    return MigrationSettings(
        config_dir=config_dir,
        stack_bundle_dir=stack_dir,
        state_file=state_file,
        output_dir=tmp_path / "out",
        working_dir=config_dir,
    )


def declare(settings, *names):
    blocks = "".join(f'component "{name}" {{\n  source = "./{name}"\n}}\n' for name in names)
    (settings.stack_bundle_dir / "components.tfcomponent.hcl").write_text(blocks)


def lister_for(resources):
    return lambda settings: list(resources)


class TestPlanAddressMap:
    """Test listing, classification and mapping."""

    def test_flat_workspace(self, workspace):
        declare(workspace, "app")

        plan = plan_address_map(workspace, lister=lister_for(["aws_instance.a", "aws_instance.b"]))

        assert not plan.fully_modular
        assert plan.components == {"app"}
        assert plan.address_map.kind is AddressMapKind.RESOURCE
        assert plan.address_map.to_dict() == {
            "aws_instance.a": "component.app",
            "aws_instance.b": "component.app",
        }

    def test_modular_workspace(self, workspace):
        declare(workspace, "net", "db")

        plan = plan_address_map(workspace, lister=lister_for(["module.net.x", "module.db.y"]))

        assert plan.fully_modular
        assert plan.address_map.to_dict() == {"net": "net", "db": "db"}

    def test_errors_name_their_stage(self, workspace):
        declare(workspace, "net")

        with pytest.raises(AddressMismatchError) as exc_info:
            plan_address_map(workspace, lister=lister_for(["module.net.x", "module.db.y"]))

        assert exc_info.value.stage == "mapping"
        assert str(exc_info.value).startswith("[mapping]")

    def test_listing_failure(self, workspace):
        def failing_lister(settings):
            raise InputError("no resources found in the Terraform state")

        with pytest.raises(InputError) as exc_info:
            plan_address_map(workspace, lister=failing_lister)
        assert exc_info.value.stage == "listing"

    def test_empty_listing_fails_classification(self, workspace):
        with pytest.raises(InputError) as exc_info:
            plan_address_map(workspace, lister=lister_for([]))
        assert exc_info.value.stage == "classification"


class TestRunMigration:
    """Test full runs against the in-memory engine."""

    def test_successful_run(self, workspace):
        declare(workspace, "app")
        engine = FakeEngine(events=[
            AppliedChange(raw=[("K", b"first")], descriptions=[("K", {"component": "app"})]),
            AppliedChange(raw=[("K", b"second"), ("L", b"other")]),
        ])

        result = run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert result.run_id == RUN_ID
        assert dict(result.snapshot.raw) == {"K": b"second", "L": b"other"}
        assert result.address_map.to_dict() == {"aws_instance.a": "component.app"}
        assert result.artifact_path == workspace.snapshot_path
        assert read_snapshot(result.artifact_path).raw == {"K": b"second", "L": b"other"}
        assert engine.open_handles == {}
        assert engine.stopped
        assert get_status_from_events(RUN_ID) == "done"
        assert engine.migrate_args[-1] is result.address_map

    def test_diagnostic_writes_nothing(self, workspace):
        declare(workspace, "app")
        engine = FakeEngine(events=[
            AppliedChange(raw=[("K", b"v")]),
            Diagnostic(summary="Invalid resource address"),
            AppliedChange(raw=[("trailing", b"x")]),
        ])

        with pytest.raises(ProtocolError) as exc_info:
            run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert exc_info.value.stage == "streaming"
        assert "Invalid resource address" in str(exc_info.value)
        assert engine.received == 2
        assert not workspace.snapshot_path.exists()
        assert engine.open_handles == {}
        assert engine.stopped
        errors = [e for e in read_events(RUN_ID) if e["type"] == "ERROR"]
        assert len(errors) == 1
        assert errors[0]["data"]["error"] == "ProtocolError"

    def test_ambiguous_components_never_open_session(self, workspace):
        declare(workspace, "app", "db")
        engine = FakeEngine()

        with pytest.raises(AmbiguousComponentError):
            run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert engine.calls == []
        assert engine.stopped
        assert get_status_from_events(RUN_ID) == "failed"

    def test_session_failure(self, workspace):
        declare(workspace, "app")
        engine = FakeEngine(fail_open="lock_file")

        with pytest.raises(EngineError) as exc_info:
            run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert exc_info.value.stage == "session"
        assert exc_info.value.phase == "lock_file"
        assert engine.released == ["stack_config", "config_bundle", "state"]

    def test_release_failure_after_stream(self, workspace):
        declare(workspace, "app")
        engine = FakeEngine(events=[AppliedChange(raw=[("K", b"v")])], fail_release=["state"])

        with pytest.raises(ProtocolError, match="failed to release state handle"):
            run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert not workspace.snapshot_path.exists()

    def test_cancelled_run(self, workspace):
        declare(workspace, "app")
        cancel = threading.Event()
        cancel.set()
        engine = FakeEngine(events=[AppliedChange(raw=[("K", b"v")])])

        with pytest.raises(MigrationCancelled):
            run_migration(workspace, engine, run_id=RUN_ID, cancel=cancel, lister=lister_for(["aws_instance.a"]))

        assert not workspace.snapshot_path.exists()
        assert engine.open_handles == {}

    def test_missing_state_file(self, workspace):
        declare(workspace, "app")
        workspace.state_file.unlink()

        with pytest.raises(InputError) as exc_info:
            run_migration(workspace, FakeEngine(), run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))
        assert exc_info.value.stage == "session"

    def test_unserializable_description_fails_persist(self, workspace):
        declare(workspace, "app")
        engine = FakeEngine(events=[AppliedChange(descriptions=[("component.app", {"blob": b"\x00"})])])

        with pytest.raises(InputError) as exc_info:
            run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert exc_info.value.stage == "persist"
        assert not workspace.snapshot_path.exists()
        assert get_status_from_events(RUN_ID) == "failed"
        errors = [e for e in read_events(RUN_ID) if e["type"] == "ERROR"]
        assert errors[0]["data"]["stage"] == "persist"

    def test_stop_failure_does_not_hide_run_error(self, workspace):
        declare(workspace, "app", "db")
        engine = FakeEngine()
        engine.stop = Mock(side_effect=RuntimeError("engine already gone"))

        with pytest.raises(AmbiguousComponentError):
            run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        engine.stop.assert_called_once()

    def test_stop_failure_after_success(self, workspace):
        declare(workspace, "app")
        engine = FakeEngine(events=[AppliedChange(raw=[("K", b"v")])])
        engine.stop = Mock(side_effect=RuntimeError("engine already gone"))

        result = run_migration(workspace, engine, run_id=RUN_ID, lister=lister_for(["aws_instance.a"]))

        assert result.snapshot.raw == {"K": b"v"}
        assert workspace.snapshot_path.exists()
