"""
Stack state snapshot and its binary protobuf encoding.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Union

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from .errors import InputError

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_PACKAGE = "stackmigrate.v1"
_FieldProto = descriptor_pb2.FieldDescriptorProto


@dataclass(frozen=True)
class StackStateSnapshot:
    """
    Final stack state produced by a migration.

    Both maps are always present, empty or not.
    """
    raw: Mapping[str, bytes] = field(default_factory=dict)
    descriptions: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    format_version: int = FORMAT_VERSION

    def __post_init__(self):
        object.__setattr__(self, "raw", MappingProxyType(dict(self.raw or {})))
        object.__setattr__(self, "descriptions", MappingProxyType(dict(self.descriptions or {})))

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly overview of the snapshot."""
        return {
            "format_version": self.format_version,
            "raw_keys": sorted(self.raw),
            "description_keys": sorted(self.descriptions),
        }


def _add_map_field(message: descriptor_pb2.DescriptorProto, name: str, number: int, value_type: int) -> None:
    entry = message.nested_type.add(name=f"{name.title()}Entry")
    entry.options.map_entry = True
    entry.field.add(name="key", number=1, type=_FieldProto.TYPE_STRING, label=_FieldProto.LABEL_OPTIONAL)
    entry.field.add(name="value", number=2, type=value_type, label=_FieldProto.LABEL_OPTIONAL)

    message.field.add(
        name=name,
        number=number,
        type=_FieldProto.TYPE_MESSAGE,
        label=_FieldProto.LABEL_REPEATED,
        type_name=f".{_PACKAGE}.{message.name}.{entry.name}",
    )


def _build_stack_state_message():
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="stackmigrate/v1/stack_state.proto",
        package=_PACKAGE,
        syntax="proto3",
    )
    message = file_proto.message_type.add(name="StackState")
    message.field.add(
        name="format_version",
        number=1,
        type=_FieldProto.TYPE_UINT64,
        label=_FieldProto.LABEL_OPTIONAL,
    )
    _add_map_field(message, "raw", 2, _FieldProto.TYPE_BYTES)
    # descriptions are JSON documents, kept as bytes so numbers keep their type
    _add_map_field(message, "descriptions", 3, _FieldProto.TYPE_BYTES)

    pool = descriptor_pool.Default()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.StackState"))


StackStateMessage = _build_stack_state_message()


def _encode_description(key: str, description: Mapping[str, Any]) -> bytes:
    try:
        return json.dumps(dict(description), sort_keys=True, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise InputError(f"description {key} is not JSON-serializable: {e}") from e


def _decode_description(key: str, data: bytes) -> Dict[str, Any]:
    try:
        description = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InputError(f"invalid description {key} in stack state snapshot: {e}") from e
    if not isinstance(description, dict):
        raise InputError(f"invalid description {key} in stack state snapshot: not an object")
    return description


def encode_snapshot(snapshot: StackStateSnapshot) -> bytes:
    """
    Serialize a snapshot to protobuf binary.

    Raises:
        InputError: If a description cannot be written as JSON
    """
    message = StackStateMessage(format_version=snapshot.format_version)
    for key, payload in snapshot.raw.items():
        message.raw[key] = bytes(payload)
    for key, description in snapshot.descriptions.items():
        message.descriptions[key] = _encode_description(key, description)
    return message.SerializeToString()


def decode_snapshot(data: bytes) -> StackStateSnapshot:
    """
    Deserialize protobuf binary into a snapshot.

    Protobuf does not tell an empty map from a missing one; the decoded
    snapshot always carries both maps.

    Raises:
        InputError: If the data is not a valid stack state message
    """
    message = StackStateMessage()
    try:
        message.ParseFromString(data)
    except DecodeError as e:
        raise InputError(f"invalid stack state snapshot: {e}") from e

    return StackStateSnapshot(
        raw={key: bytes(value) for key, value in message.raw.items()},
        descriptions={
            key: _decode_description(key, value)
            for key, value in message.descriptions.items()
        },
        format_version=message.format_version,
    )


def write_snapshot(snapshot: StackStateSnapshot, path: Union[str, Path]) -> Path:
    """
    Write a snapshot to disk in one piece.

    The data is written to a sibling temporary file first and moved into
    place, so a reader never sees a partial artifact.
    """
    path = Path(path)
    data = encode_snapshot(snapshot)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)

    logger.info(f"Wrote stack state snapshot ({len(data)} bytes) to {path}")
    return path


def read_snapshot(path: Union[str, Path]) -> StackStateSnapshot:
    """Read a snapshot written by write_snapshot."""
    path = Path(path)
    if not path.is_file():
        raise InputError(f"snapshot file {path} does not exist")

    with open(path, "rb") as f:
        return decode_snapshot(f.read())
