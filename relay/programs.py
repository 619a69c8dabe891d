"""
Program classifier — human-readable names for program IDs.
"""
from relay.constants import (
    KNOWN_PROGRAMS,
    TOKEN_PROGRAM,
    SYSTEM_PROGRAM,
    TOKEN_INSTRUCTIONS,
    SYSTEM_INSTRUCTIONS,
    TRUNCATED_LENGTH,
    TRUNCATED_SUFFIX,
)

OPCODE_TABLES = {
    TOKEN_PROGRAM: TOKEN_INSTRUCTIONS,
    SYSTEM_PROGRAM: SYSTEM_INSTRUCTIONS,
}


def program_name(program_id: str) -> str:
    """Mapped name for a known program, else a truncated address."""
    name = KNOWN_PROGRAMS.get(program_id)
    if name is not None:
        return name
    return program_id[:TRUNCATED_LENGTH] + TRUNCATED_SUFFIX


def instruction_name(program_id: str, opcode: int | None) -> str | None:
    """Opcode name for the token/system programs. None for everything else."""
    table = OPCODE_TABLES.get(program_id)
    if table is None or opcode is None:
        return None
    return table.get(opcode, f"Unknown({opcode})")
