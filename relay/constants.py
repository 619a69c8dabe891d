"""
Solana program IDs and instruction opcode tables known to the relay.

Only the SPL Token program and the System program are decoded in depth.
The remaining entries exist so every program reference has a readable name.
"""

# ═══════════════════════════════════════════════════════════════
#  KNOWN PROGRAMS
# ═══════════════════════════════════════════════════════════════

# DEX / router programs
RAYDIUM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"   # Raydium AMM V4
ORCA = "9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP"      # Orca token swap V2

# Aggregator
JUPITER = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"   # Jupiter V6

# Token launch
PUMP_FUN = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"

# Core programs
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SYSTEM_PROGRAM = "11111111111111111111111111111111"

KNOWN_PROGRAMS = {
    RAYDIUM: "RAYDIUM",
    ORCA: "ORCA",
    JUPITER: "JUPITER",
    PUMP_FUN: "PUMP_FUN",
    TOKEN_PROGRAM: "TOKEN_PROGRAM",
    SYSTEM_PROGRAM: "SYSTEM_PROGRAM",
}

# Unmapped programs render as the first 8 chars of the address + this marker
TRUNCATED_SUFFIX = "..."
TRUNCATED_LENGTH = 8

# ═══════════════════════════════════════════════════════════════
#  SPL TOKEN INSTRUCTIONS
#
#  data[0] = instruction tag (u8)
#  Transfer:        [3]  + amount (u64 LE)
#  TransferChecked: [12] + amount (u64 LE) + decimals (u8)
# ═══════════════════════════════════════════════════════════════

TOKEN_IX_TRANSFER = 3
TOKEN_IX_TRANSFER_CHECKED = 12

TOKEN_INSTRUCTIONS = {
    0: "InitializeMint",
    1: "InitializeAccount",
    2: "InitializeMultisig",
    3: "Transfer",
    4: "Approve",
    5: "Revoke",
    6: "SetAuthority",
    7: "MintTo",
    8: "Burn",
    9: "CloseAccount",
    10: "FreezeAccount",
    11: "ThawAccount",
    12: "TransferChecked",
    13: "ApproveChecked",
    14: "MintToChecked",
    15: "BurnChecked",
    16: "InitializeAccount2",
    17: "SyncNative",
    18: "InitializeAccount3",
    19: "InitializeMultisig2",
    20: "InitializeMint2",
}

# ═══════════════════════════════════════════════════════════════
#  SYSTEM PROGRAM INSTRUCTIONS
#
#  data[0:4] = instruction tag (u32 LE), so data[0] carries it for tags < 256
#  Transfer: [2, 0, 0, 0] + lamports (u64 LE)
# ═══════════════════════════════════════════════════════════════

SYSTEM_IX_TRANSFER = 2

SYSTEM_INSTRUCTIONS = {
    0: "CreateAccount",
    1: "Assign",
    2: "Transfer",
    3: "CreateAccountWithSeed",
    4: "AdvanceNonceAccount",
    5: "WithdrawNonceAccount",
    6: "InitializeNonceAccount",
    7: "AuthorizeNonceAccount",
    8: "Allocate",
    9: "AllocateWithSeed",
    10: "AssignWithSeed",
    11: "TransferWithSeed",
    12: "UpgradeNonceAccount",
}

# Byte offsets of the u64 amount inside transfer instruction data
TOKEN_TRANSFER_AMOUNT_OFFSET = 1
SYSTEM_TRANSFER_AMOUNT_OFFSET = 4

# ═══════════════════════════════════════════════════════════════
#  WIRE WIDTHS
# ═══════════════════════════════════════════════════════════════

PUBKEY_LENGTH = 32
SIGNATURE_LENGTH = 64
