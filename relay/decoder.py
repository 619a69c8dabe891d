"""
Transaction decoder — turns a raw Geyser transaction payload into facts.

Input is the `SubscribeUpdateTransactionInfo` mapping (camelCase keys, bytes
for binary fields) carried by a TransactionUpdate frame:

    signature, isVote, index
    transaction.message.accountKeys / instructions / versioned
    meta.err / fee / innerInstructions / logMessages
    meta.loadedWritableAddresses / loadedReadonlyAddresses

Proto3 omits default values, so a missing programIdIndex means 0 and a
missing data field means the instruction carried no data.

Pure functions, no I/O.
"""
import base64
import binascii
import enum
import re
import struct
from dataclasses import dataclass, field, asdict

from relay.address import decode_address, encode_signature
from relay.constants import (
    TOKEN_PROGRAM,
    SYSTEM_PROGRAM,
    TOKEN_IX_TRANSFER,
    TOKEN_IX_TRANSFER_CHECKED,
    SYSTEM_IX_TRANSFER,
    TOKEN_TRANSFER_AMOUNT_OFFSET,
    SYSTEM_TRANSFER_AMOUNT_OFFSET,
)
from relay.programs import program_name, instruction_name

# Heuristic log scan. Matches the literal shapes emitted by the token
# program and most DEX programs, not a structured format.
TRANSFER_MARKER = "Transfer"
AMOUNT_PATTERN = re.compile(r"amount: (\d+)")


class Classification(str, enum.Enum):
    TOKEN_TRANSFER = "TokenTransfer"
    TOKEN_TRANSFER_CHECKED = "TokenTransferChecked"
    SOL_TRANSFER = "SolTransfer"
    OTHER = "Other"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class DecodedInstruction:
    program_id: str
    program_name: str
    opcode: int | None
    classification: Classification
    instruction_name: str | None = None
    amount: int | None = None

    @property
    def is_transfer(self) -> bool:
        return self.classification in (
            Classification.TOKEN_TRANSFER,
            Classification.TOKEN_TRANSFER_CHECKED,
            Classification.SOL_TRANSFER,
        )


@dataclass(frozen=True)
class InnerInstructionGroup:
    index: int
    instructions: list[DecodedInstruction] = field(default_factory=list)


@dataclass(frozen=True)
class TransferEvidence:
    log: str
    amount: int | None = None


@dataclass(frozen=True)
class DecodedTransaction:
    signature: str
    slot: int | None
    success: bool
    account_keys: list[str]
    instructions: list[DecodedInstruction]
    inner_instruction_groups: list[InnerInstructionGroup]
    transfer_evidence: list[TransferEvidence]
    fee: int = 0

    @property
    def signer(self) -> str | None:
        """Fee payer / first signer is always account 0."""
        return self.account_keys[0] if self.account_keys else None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["signer"] = self.signer
        for ix in data["instructions"]:
            ix["classification"] = ix["classification"].value
        for group in data["inner_instruction_groups"]:
            for ix in group["instructions"]:
                ix["classification"] = ix["classification"].value
        return data


def _instruction_data(ix: dict) -> bytes | None:
    """Raw instruction data, or None when absent or not decodable."""
    data = ix.get("data")
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray, memoryview)):
        raw = bytes(data)
    elif isinstance(data, dict) and data.get("type") == "Buffer":
        raw = bytes(data.get("data", []))
    elif isinstance(data, list):
        raw = bytes(data)
    elif isinstance(data, str):
        # json_format renders bytes as base64
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            return None
    else:
        return None
    return raw or None


def _read_u64(data: bytes, offset: int) -> int | None:
    if len(data) < offset + 8:
        return None
    return struct.unpack_from("<Q", data, offset)[0]


def classify_instruction(program_id: str, data: bytes | None) -> DecodedInstruction:
    """Classify one instruction given its resolved program and raw data."""
    name = program_name(program_id)

    if program_id not in (TOKEN_PROGRAM, SYSTEM_PROGRAM):
        return DecodedInstruction(program_id, name, None, Classification.OTHER)

    if not data:
        return DecodedInstruction(program_id, name, None, Classification.UNKNOWN)

    opcode = data[0]
    ix_name = instruction_name(program_id, opcode)
    amount = None

    if program_id == TOKEN_PROGRAM:
        if opcode == TOKEN_IX_TRANSFER:
            classification = Classification.TOKEN_TRANSFER
        elif opcode == TOKEN_IX_TRANSFER_CHECKED:
            classification = Classification.TOKEN_TRANSFER_CHECKED
        else:
            classification = Classification.OTHER
        if classification is not Classification.OTHER:
            amount = _read_u64(data, TOKEN_TRANSFER_AMOUNT_OFFSET)
    else:
        if opcode == SYSTEM_IX_TRANSFER:
            classification = Classification.SOL_TRANSFER
            amount = _read_u64(data, SYSTEM_TRANSFER_AMOUNT_OFFSET)
        else:
            classification = Classification.OTHER

    return DecodedInstruction(
        program_id=program_id,
        program_name=name,
        opcode=opcode,
        classification=classification,
        instruction_name=ix_name,
        amount=amount,
    )


def decode_instruction(ix: dict, account_keys: list[str]) -> DecodedInstruction:
    """Resolve an instruction's program through the account key list."""
    index = ix.get("programIdIndex", 0)
    if not 0 <= index < len(account_keys):
        return DecodedInstruction("", "", None, Classification.UNKNOWN)
    return classify_instruction(account_keys[index], _instruction_data(ix))


def resolve_account_keys(message: dict, meta: dict) -> list[str]:
    """Static keys, then addresses loaded from lookup tables (v0 messages)."""
    keys = [decode_address(k) for k in message.get("accountKeys", [])]
    keys.extend(decode_address(k) for k in meta.get("loadedWritableAddresses", []))
    keys.extend(decode_address(k) for k in meta.get("loadedReadonlyAddresses", []))
    return keys


def scan_transfer_logs(logs: list[str]) -> list[TransferEvidence]:
    """
    Best-effort transfer evidence from log text.

    A line mentioning "Transfer" is kept verbatim; an "amount: N" field on
    the same line is parsed and attached. Lines with an amount but no
    "Transfer" are kept as well.
    """
    evidence = []
    for line in logs:
        match = AMOUNT_PATTERN.search(line)
        if TRANSFER_MARKER not in line and match is None:
            continue
        amount = int(match.group(1)) if match else None
        evidence.append(TransferEvidence(log=line, amount=amount))
    return evidence


def decode_transaction(payload: dict, slot: int | None = None) -> DecodedTransaction:
    """
    Decode a transaction payload.

    Raises InvalidAddressLength / InvalidSignatureLength when a key or the
    signature has the wrong width; callers scope that to this frame.
    """
    tx = payload.get("transaction") or {}
    message = tx.get("message") or {}
    meta = payload.get("meta") or {}

    raw_signature = payload.get("signature")
    if raw_signature is None:
        signatures = tx.get("signatures") or []
        raw_signature = signatures[0] if signatures else b""
    signature = encode_signature(raw_signature) if raw_signature else ""

    account_keys = resolve_account_keys(message, meta)

    instructions = [
        decode_instruction(ix, account_keys)
        for ix in message.get("instructions", [])
    ]

    inner_groups = [
        InnerInstructionGroup(
            index=group.get("index", 0),
            instructions=[
                decode_instruction(ix, account_keys)
                for ix in group.get("instructions", [])
            ],
        )
        for group in meta.get("innerInstructions", [])
    ]

    return DecodedTransaction(
        signature=signature,
        slot=slot,
        success=not meta.get("err"),
        account_keys=account_keys,
        instructions=instructions,
        inner_instruction_groups=inner_groups,
        transfer_evidence=scan_transfer_logs(meta.get("logMessages", [])),
        fee=int(meta.get("fee", 0)),
    )
