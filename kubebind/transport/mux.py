"""
Binding connection handshake.

Both directions use the same framing: a little-endian ``uint16`` length
followed by that many bytes of a serialized protobuf message. The client
writes a ``ConnRequest`` and reads back a ``ConnResponse``; a response with a
non-empty ``error_code`` or ``error_message`` refuses the upgrade.

The message types are built at import time from a descriptor, so no
generated ``_pb2`` module is needed; field numbers and types are wire
compatible with the tunnel's ``conn_header.proto``.
"""

from __future__ import annotations

import asyncio
import struct
from typing import Any, TypeVar

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError, Message
from loguru import logger

from kubebind.core.errors import BindingUpgradeFailure, MuxProtocolError
from kubebind.datastructures.type_aliases import HostAddress, PortNumber

mux_log = logger

HEADER = struct.Struct("<H")
MAX_MESSAGE_SIZE = 0xFFFF

_PACKAGE = "kubebind.mux"
_Field = descriptor_pb2.FieldDescriptorProto


def _add_field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    *,
    label: int = _Field.LABEL_OPTIONAL,
    type_name: str | None = None,
) -> None:
    field = message.field.add(name=name, number=number, type=field_type, label=label)
    if type_name is not None:
        field.type_name = type_name


def _conn_header_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="kubebind/mux/conn_header.proto", package=_PACKAGE, syntax="proto3"
    )

    pod = file_proto.message_type.add(name="PodIdentity")
    _add_field(pod, "uid", 1, _Field.TYPE_STRING)
    _add_field(pod, "name", 2, _Field.TYPE_STRING)
    _add_field(pod, "namespace", 3, _Field.TYPE_STRING)
    entry = pod.nested_type.add(name="AnnotationsEntry")
    _add_field(entry, "key", 1, _Field.TYPE_STRING)
    _add_field(entry, "value", 2, _Field.TYPE_STRING)
    entry.options.map_entry = True
    _add_field(
        pod,
        "annotations",
        4,
        _Field.TYPE_MESSAGE,
        label=_Field.LABEL_REPEATED,
        type_name=f".{_PACKAGE}.PodIdentity.AnnotationsEntry",
    )

    request = file_proto.message_type.add(name="ConnRequest")
    _add_field(request, "host", 1, _Field.TYPE_STRING)
    _add_field(request, "port", 2, _Field.TYPE_INT64)
    _add_field(
        request, "pod_identity", 3, _Field.TYPE_MESSAGE, type_name=f".{_PACKAGE}.PodIdentity"
    )

    response = file_proto.message_type.add(name="ConnResponse")
    _add_field(response, "endpoint_id", 1, _Field.TYPE_STRING)
    _add_field(response, "proto", 2, _Field.TYPE_STRING)
    _add_field(response, "error_code", 3, _Field.TYPE_STRING)
    _add_field(response, "error_message", 4, _Field.TYPE_STRING)

    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_conn_header_file().SerializeToString())

PodIdentity: Any = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{_PACKAGE}.PodIdentity")
)
ConnRequest: Any = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{_PACKAGE}.ConnRequest")
)
ConnResponse: Any = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{_PACKAGE}.ConnResponse")
)


def make_pod_identity(
    uid: str, name: str, namespace: str, annotations: dict[str, str] | None = None
) -> Message:
    identity = PodIdentity(uid=uid, name=name, namespace=namespace)
    identity.annotations.update(annotations or {})
    return identity


async def write_proxy_message(writer: asyncio.StreamWriter, msg: Message) -> None:
    data = msg.SerializeToString()
    if len(data) > MAX_MESSAGE_SIZE:
        raise MuxProtocolError(f"message of {len(data)} bytes does not fit a uint16 length")
    writer.write(HEADER.pack(len(data)) + data)
    await writer.drain()


M = TypeVar("M", bound=Message)


async def read_proxy_message(reader: asyncio.StreamReader, message_type: type[M]) -> M:
    try:
        (length,) = HEADER.unpack(await reader.readexactly(HEADER.size))
    except asyncio.IncompleteReadError as e:
        # usually a failed TLS handshake: bad client cert or wrong ingress endpoint
        raise MuxProtocolError(f"failed to read header length: {e}") from e

    try:
        data = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise MuxProtocolError(f"failed to read header: {e}") from e

    msg = message_type()
    try:
        msg.ParseFromString(data)
    except DecodeError as e:
        raise MuxProtocolError(f"failed to unmarshal header: {e}") from e
    return msg


async def upgrade_to_binding_connection(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    host: HostAddress,
    port: PortNumber,
    pod_identity: Message | None = None,
) -> Message:
    """Run the client side of the handshake and return the ``ConnResponse``.

    Raises ``BindingUpgradeFailure`` when the tunnel refuses the upgrade and
    ``MuxProtocolError`` when the exchange itself breaks.
    """
    request = ConnRequest(host=host, port=port)
    if pod_identity is not None:
        request.pod_identity.CopyFrom(pod_identity)

    await write_proxy_message(writer, request)
    response = await read_proxy_message(reader, ConnResponse)

    if response.error_code or response.error_message:
        raise BindingUpgradeFailure(response.error_code, response.error_message)

    mux_log.debug(
        "Upgraded binding connection to {}:{} (endpoint {}, proto {})",
        host,
        port,
        response.endpoint_id,
        response.proto,
    )
    return response
