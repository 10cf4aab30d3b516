from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Optional, Union

from construct import Bytes, ConstructError, Flag, Int64ul, Struct
from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

PUMP_PROGRAM_ID = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
BONDING_CURVE_SEED = b"bonding-curve"
BONDING_CURVE_DISCRIMINATOR = bytes([0x17, 0xB7, 0xF8, 0x37, 0x60, 0xFF, 0x69, 0x4D])

# Bonding curve account (leading fields only; newer accounts carry a trailing creator key)
BONDING_CURVE_LAYOUT = Struct(
    "discriminator" / Bytes(8),
    "virtual_token_reserves" / Int64ul,
    "virtual_sol_reserves" / Int64ul,
    "real_token_reserves" / Int64ul,
    "real_sol_reserves" / Int64ul,
    "token_total_supply" / Int64ul,
    "complete" / Flag,
)
BONDING_CURVE_SIZE = BONDING_CURVE_LAYOUT.sizeof()


@dataclass(frozen=True)
class BondingCurveState:
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool
    address: Optional[str] = None


def derive_curve_address(mint: Union[str, Pubkey]) -> Pubkey:
    mint_key = Pubkey.from_string(mint) if isinstance(mint, str) else mint
    address, _bump = Pubkey.find_program_address([BONDING_CURVE_SEED, bytes(mint_key)], PUMP_PROGRAM_ID)
    return address


def parse_curve_account(data: Union[bytes, str], address: Optional[str] = None) -> Optional[BondingCurveState]:
    """
    Decode raw (or base64) bonding-curve account data. Returns None for short
    buffers or accounts of another type.
    """
    raw = base64.b64decode(data) if isinstance(data, str) else bytes(data)
    if len(raw) < BONDING_CURVE_SIZE:
        return None
    try:
        parsed = BONDING_CURVE_LAYOUT.parse(raw[:BONDING_CURVE_SIZE])
    except ConstructError as e:
        logger.debug(f"[PUMP] Curve account decode failed: {e}")
        return None
    if parsed.discriminator != BONDING_CURVE_DISCRIMINATOR:
        return None
    return BondingCurveState(
        virtual_token_reserves=int(parsed.virtual_token_reserves),
        virtual_sol_reserves=int(parsed.virtual_sol_reserves),
        real_token_reserves=int(parsed.real_token_reserves),
        real_sol_reserves=int(parsed.real_sol_reserves),
        token_total_supply=int(parsed.token_total_supply),
        complete=bool(parsed.complete),
        address=address,
    )


async def fetch_curve_state(rpc: AsyncClient, mint: str) -> Optional[BondingCurveState]:
    """Read the bonding-curve account for a mint; None when it does not exist."""
    address = derive_curve_address(mint)
    resp = await rpc.get_account_info(address)
    account = getattr(resp, "value", None)
    if account is None:
        return None
    return parse_curve_account(bytes(account.data), address=str(address))
