"""
Analysis client — subscribes to the relay and prints decoded transactions.

Usage:
    python analyze_client.py                          # watches USDC
    python analyze_client.py <mint>:<creator> ...     # custom tokens
    RELAY_WS_URL=ws://host:8080 python analyze_client.py
"""
import argparse
import asyncio
import json
import logging
import sys

import aiohttp

import config
from relay.address import address_bytes
from relay.decoder import decode_transaction
from relay.errors import DecodeError

logger = logging.getLogger("analyze")

USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def parse_token_arg(value: str) -> dict:
    """'mint[:creator]' -> token entry. Both must be valid 32-byte addresses."""
    mint, _, creator = value.partition(":")
    creator = creator or mint
    for address in (mint, creator):
        try:
            address_bytes(address)
        except (DecodeError, ValueError) as e:
            raise argparse.ArgumentTypeError(f"invalid address {address!r}: {e}") from e
    return {"mint": mint, "creator": creator}


def format_transaction(decoded) -> str:
    lines = [
        "",
        f"Transaction: {decoded.signature}",
        f"  Slot:     {decoded.slot}",
        f"  Success:  {decoded.success}",
        f"  Accounts: {len(decoded.account_keys)}",
        f"  Signer:   {decoded.signer}",
        f"  Instructions: {len(decoded.instructions)}",
    ]
    for i, ix in enumerate(decoded.instructions, start=1):
        lines.append(f"    {i}. {ix.program_name}")
        if ix.opcode is not None:
            lines.append(f"       {ix.instruction_name} (type {ix.opcode})")
        if ix.is_transfer:
            amount = f" amount={ix.amount}" if ix.amount is not None else ""
            lines.append(f"       {ix.classification.value} detected{amount}")

    if decoded.inner_instruction_groups:
        lines.append(f"  Inner Instructions: {len(decoded.inner_instruction_groups)}")
        for group in decoded.inner_instruction_groups:
            lines.append(f"    Inner IX {group.index}:")
            for ix in group.instructions:
                tag = f" [{ix.classification.value}]" if ix.is_transfer else ""
                lines.append(f"      - {ix.program_name}{tag}")

    for evidence in decoded.transfer_evidence:
        lines.append(f"    log: {evidence.log}")
        if evidence.amount is not None:
            lines.append(f"    amount: {evidence.amount}")

    lines.append("─" * 50)
    return "\n".join(lines)


async def analyze(url: str, tokens: list[dict]):
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(url, max_msg_size=0) as ws:
            logger.info(f"Connected to {url}")
            await ws.send_json({"type": "subscribe", "tokens": tokens})
            logger.info(f"Sent subscription request for {len(tokens)} token(s)")

            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        logger.warning("Connection closed")
                        break
                    continue
                try:
                    message = json.loads(msg.data)
                except json.JSONDecodeError:
                    print(f"Received raw data: {msg.data}")
                    continue

                container = message.get("transaction")
                if not container:
                    continue
                try:
                    decoded = decode_transaction(
                        container.get("transaction", {}), container.get("slot")
                    )
                except DecodeError as e:
                    logger.warning(f"Could not decode transaction: {e}")
                    continue
                print(format_transaction(decoded))


def main():
    parser = argparse.ArgumentParser(description="Print decoded transactions from the relay")
    parser.add_argument("tokens", nargs="*", type=parse_token_arg, help="mint[:creator] pairs to watch")
    parser.add_argument("--url", default=config.RELAY_WS_URL)
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(name)-14s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )
    tokens = args.tokens or [{"mint": USDC, "creator": USDC}]
    try:
        asyncio.run(analyze(args.url, tokens))
    except KeyboardInterrupt:
        print("\nClosing connection...")


if __name__ == "__main__":
    main()
