import pytest

from fakes import FakeEngine
from stackmigrate.address_map import AddressMap, AddressMapKind
from stackmigrate.config import MigrationSettings
from stackmigrate.errors import EngineError, ProtocolError
from stackmigrate.session import MigrationSession

ORDER = ["state", "config_bundle", "stack_config", "lock_file", "provider_cache"]


@pytest.fixture
def settings(tmp_path):
    return MigrationSettings(
        config_dir=tmp_path / "workspace",
        stack_bundle_dir=tmp_path / "workspace" / "_stacks_generated",
        working_dir=tmp_path,
    )


def test_acquires_in_order_and_releases_in_reverse(settings):
    engine = FakeEngine()

    with MigrationSession(engine, settings, b"{}") as session:
        assert session.is_open
        assert [kind for kind, _ in engine.calls] == ORDER

    assert engine.released == list(reversed(ORDER))
    assert engine.open_handles == {}
    assert not session.is_open


def test_passes_derived_paths(settings, tmp_path):
    engine = FakeEngine()

    with MigrationSession(engine, settings, b"raw") as session:
        calls = dict(engine.calls)
        assert calls["state"] == (b"raw",)
        assert calls["config_bundle"] == (str(tmp_path / "workspace" / "_stacks_generated" / ".terraform" / "modules"),)
        assert calls["stack_config"] == (session.config_bundle, "./workspace/_stacks_generated")
        assert calls["lock_file"] == (session.config_bundle, "./workspace/.terraform.lock.hcl")
        assert calls["provider_cache"] == (str(tmp_path / "workspace" / ".terraform" / "providers"),)


@pytest.mark.parametrize("failing", ORDER)
def test_acquisition_failure_releases_acquired_handles(settings, failing):
    engine = FakeEngine(fail_open=failing)

    with pytest.raises(EngineError) as exc_info:
        with MigrationSession(engine, settings, b"{}"):
            pass

    assert exc_info.value.phase == failing
    acquired = ORDER[:ORDER.index(failing)]
    assert engine.released == list(reversed(acquired))
    assert engine.open_handles == {}


def test_release_failure_does_not_stop_other_releases(settings):
    engine = FakeEngine(fail_release=["lock_file", "config_bundle"])

    with pytest.raises(ProtocolError, match="failed to release lock_file handle"):
        with MigrationSession(engine, settings, b"{}"):
            pass

    assert engine.released == list(reversed(ORDER))


def test_release_failure_does_not_mask_running_error(settings):
    engine = FakeEngine(fail_release=["state"])

    with pytest.raises(KeyError):
        with MigrationSession(engine, settings, b"{}"):
            raise KeyError("stream failed")

    assert engine.released == list(reversed(ORDER))


def test_migrate_uses_session_handles(settings):
    engine = FakeEngine()
    address_map = AddressMap(kind=AddressMapKind.MODULE, entries={"net": "net"})

    with MigrationSession(engine, settings, b"{}") as session:
        list(session.migrate(address_map))
        state, stack_config, lock_file, provider_cache, passed_map = engine.migrate_args

    assert (state.kind, stack_config.kind, lock_file.kind, provider_cache.kind) == (
        "state", "stack_config", "lock_file", "provider_cache"
    )
    assert passed_map is address_map


def test_migrate_requires_open_session(settings):
    session = MigrationSession(FakeEngine(), settings, b"{}")
    with pytest.raises(EngineError, match="not open"):
        session.migrate(AddressMap(kind=AddressMapKind.MODULE))
