"""
Upstream frames — decoded once at ingress into a tagged union.

The Geyser SubscribeUpdate is first flattened into a plain mapping
(camelCase keys, bytes kept as bytes) and then classified by which update
field is set. Every frame keeps that mapping as `raw`, which is what gets
forwarded to consumers.
"""
import json
from dataclasses import dataclass, field
from typing import ClassVar, Union

from google.protobuf.descriptor import FieldDescriptor

from relay.address import decode_address


# ═══════════════════════════════════════════════════════════════
#  PROTOBUF → MAPPING
# ═══════════════════════════════════════════════════════════════


def message_to_dict(message) -> dict:
    """
    Flatten a protobuf message into a dict keyed by JSON field names.

    Unlike json_format.MessageToDict, bytes stay bytes (addresses and
    instruction data are decoded from them) and uint64 stays int.
    Fields at their proto3 default are omitted.
    """
    return {fd.json_name: _convert(fd, value) for fd, value in message.ListFields()}


def _convert(fd, value):
    if fd.message_type is not None and fd.message_type.GetOptions().map_entry:
        value_fd = fd.message_type.fields_by_name["value"]
        return {k: _convert_single(value_fd, v) for k, v in value.items()}
    if fd.is_repeated:
        return [_convert_single(fd, v) for v in value]
    return _convert_single(fd, value)


def _convert_single(fd, value):
    if fd.type == FieldDescriptor.TYPE_MESSAGE:
        return message_to_dict(value)
    if fd.type == FieldDescriptor.TYPE_ENUM:
        enum_value = fd.enum_type.values_by_number.get(value)
        return enum_value.name if enum_value is not None else value
    return value


# ═══════════════════════════════════════════════════════════════
#  FRAME TYPES
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AccountUpdate:
    kind: ClassVar[str] = "account"

    pubkey: str
    owner: str
    lamports: int
    data_len: int
    slot: int
    raw: dict = field(default_factory=dict, repr=False, compare=False)
    filters: tuple = ()


@dataclass(frozen=True)
class TransactionUpdate:
    kind: ClassVar[str] = "transaction"

    payload: dict = field(repr=False)    # SubscribeUpdateTransactionInfo
    slot: int
    raw: dict = field(default_factory=dict, repr=False, compare=False)
    filters: tuple = ()


@dataclass(frozen=True)
class SlotUpdate:
    kind: ClassVar[str] = "slot"

    slot: int
    parent: int | None
    status: str
    raw: dict = field(default_factory=dict, repr=False, compare=False)
    filters: tuple = ()


@dataclass(frozen=True)
class Pong:
    kind: ClassVar[str] = "pong"

    id: int
    raw: dict = field(default_factory=dict, repr=False, compare=False)
    filters: tuple = ()


@dataclass(frozen=True)
class Ping:
    """Server-initiated keepalive."""
    kind: ClassVar[str] = "ping"

    raw: dict = field(default_factory=dict, repr=False, compare=False)
    filters: tuple = ()


@dataclass(frozen=True)
class UnknownUpdate:
    """Any update kind the relay does not model (blocks, entries, ...)."""
    kind: ClassVar[str] = "unknown"

    update_kind: str
    raw: dict = field(default_factory=dict, repr=False, compare=False)
    filters: tuple = ()


Frame = Union[AccountUpdate, TransactionUpdate, SlotUpdate, Pong, Ping, UnknownUpdate]

# Keys on SubscribeUpdate that are metadata, not the update itself
_ENVELOPE_KEYS = ("filters", "createdAt")


def parse_frame(update: dict) -> Frame:
    """
    Classify a flattened SubscribeUpdate.

    Raises InvalidAddressLength if an account update carries a malformed key.
    """
    filters = tuple(update.get("filters", ()))

    if "account" in update:
        container = update["account"]
        info = container.get("account", {})
        return AccountUpdate(
            pubkey=decode_address(info.get("pubkey", b"")),
            owner=decode_address(info.get("owner", b"")),
            lamports=int(info.get("lamports", 0)),
            data_len=len(info.get("data", b"")),
            slot=int(container.get("slot", 0)),
            raw=update,
            filters=filters,
        )

    if "transaction" in update:
        container = update["transaction"]
        return TransactionUpdate(
            payload=container.get("transaction", {}),
            slot=int(container.get("slot", 0)),
            raw=update,
            filters=filters,
        )

    if "slot" in update:
        info = update["slot"]
        parent = info.get("parent")
        return SlotUpdate(
            slot=int(info.get("slot", 0)),
            parent=int(parent) if parent is not None else None,
            status=info.get("status", "SLOT_PROCESSED"),
            raw=update,
            filters=filters,
        )

    if "pong" in update:
        return Pong(id=int(update["pong"].get("id", 0)), raw=update, filters=filters)

    if "ping" in update:
        return Ping(raw=update, filters=filters)

    kinds = [k for k in update if k not in _ENVELOPE_KEYS]
    return UnknownUpdate(
        update_kind=kinds[0] if kinds else "empty",
        raw=update,
        filters=filters,
    )


# ═══════════════════════════════════════════════════════════════
#  DOWNSTREAM SERIALIZATION
# ═══════════════════════════════════════════════════════════════


def _json_default(value):
    # Same shape Node's Buffer.toJSON() produces, which existing clients expect
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": list(bytes(value))}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize(data) -> str:
    return json.dumps(data, default=_json_default, separators=(",", ":"))
