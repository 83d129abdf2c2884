import pytest

from stackmigrate.address_map import AddressMap, AddressMapKind, build_address_map
from stackmigrate.errors import AddressMismatchError, AmbiguousComponentError


class TestResourceAddressMap:
    """Non-modular workspaces map every resource to the single component."""

    def test_single_component(self):
        address_map = build_address_map(["aws_instance.a", "aws_instance.b"], {"app"})

        assert address_map.kind is AddressMapKind.RESOURCE
        assert address_map.to_dict() == {
            "aws_instance.a": "component.app",
            "aws_instance.b": "component.app",
        }

    def test_partially_modular_keeps_full_addresses(self):
        resources = ["module.net.aws_vpc.main", "aws_instance.solo"]
        address_map = build_address_map(resources, {"app"})

        assert set(address_map) == set(resources)
        assert address_map["module.net.aws_vpc.main"] == "component.app"

    def test_multiple_components_is_ambiguous(self):
        with pytest.raises(AmbiguousComponentError) as exc_info:
            build_address_map(["aws_instance.a", "aws_instance.b"], {"app", "db"})
        assert exc_info.value.found == 2

    def test_no_components_is_ambiguous(self):
        with pytest.raises(AmbiguousComponentError) as exc_info:
            build_address_map(["aws_instance.a"], set())
        assert exc_info.value.found == 0


class TestModuleAddressMap:
    """Fully modular workspaces map modules onto components of the same name."""

    def test_identity_mapping(self):
        resources = ["module.net.aws_vpc.main", "module.db.aws_db_instance.main[0]"]
        address_map = build_address_map(resources, {"net", "db"})

        assert address_map.kind is AddressMapKind.MODULE
        assert address_map.to_dict() == {"net": "net", "db": "db"}
        assert address_map.module_addresses == {"net": "net", "db": "db"}
        assert address_map.resource_addresses == {}

    def test_missing_component(self):
        resources = ["module.net.aws_vpc.main", "module.db.aws_db_instance.main"]
        with pytest.raises(AddressMismatchError) as exc_info:
            build_address_map(resources, {"net"})

        assert exc_info.value.modules == {"net", "db"}
        assert exc_info.value.components == {"net"}

    def test_extra_component(self):
        with pytest.raises(AddressMismatchError):
            build_address_map(["module.net.aws_vpc.main"], {"net", "cache"})


def test_address_map_is_read_only():
    address_map = AddressMap(kind=AddressMapKind.MODULE, entries={"net": "net"})
    with pytest.raises(TypeError):
        address_map.entries["db"] = "db"
    assert len(address_map) == 1
    assert "net" in address_map
