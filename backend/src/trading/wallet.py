"""
Wallet key handling: encrypted keypair storage, balance reads and
sign-and-submit for prebuilt transactions.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from time import time

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from spl.token.instructions import get_associated_token_address

from .errors import SwapError, WalletError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

SCRYPT_KEY_LEN = 32
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SALT_LEN = 32
IV_LEN = 16
AUTH_TAG_LEN = 16


@dataclass(frozen=True)
class WalletRecord:
    public_key: str
    encrypted_keypair: str
    created_at: float


def _derive_key(secret: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=SCRYPT_KEY_LEN, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


def encrypt_keypair(keypair_bytes: bytes, encryption_secret: str) -> str:
    """base64(salt | iv | auth_tag | ciphertext) under scrypt + AES-256-GCM."""
    salt = os.urandom(SALT_LEN)
    iv = os.urandom(IV_LEN)
    sealed = AESGCM(_derive_key(encryption_secret, salt)).encrypt(iv, bytes(keypair_bytes), None)
    ciphertext, auth_tag = sealed[:-AUTH_TAG_LEN], sealed[-AUTH_TAG_LEN:]
    return base64.b64encode(salt + iv + auth_tag + ciphertext).decode()


def decrypt_keypair(encrypted_b64: str, encryption_secret: str) -> bytes:
    try:
        buf = base64.b64decode(encrypted_b64)
    except (binascii.Error, ValueError) as e:
        raise WalletError(f"Encrypted keypair is not valid base64: {e}") from e
    header = SALT_LEN + IV_LEN + AUTH_TAG_LEN
    if len(buf) <= header:
        raise WalletError("Encrypted keypair is truncated")
    salt = buf[:SALT_LEN]
    iv = buf[SALT_LEN : SALT_LEN + IV_LEN]
    auth_tag = buf[SALT_LEN + IV_LEN : header]
    ciphertext = buf[header:]
    try:
        return AESGCM(_derive_key(encryption_secret, salt)).decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag as e:
        raise WalletError("Keypair decryption failed (wrong secret or corrupted data)") from e


def get_encryption_key(base_secret: str, account_id: str) -> str:
    """Per-account encryption secret."""
    return f"{base_secret}:{account_id}"


def generate_wallet(encryption_secret: str) -> WalletRecord:
    keypair = Keypair()
    return WalletRecord(
        public_key=str(keypair.pubkey()),
        encrypted_keypair=encrypt_keypair(bytes(keypair), encryption_secret),
        created_at=time(),
    )


def parse_private_key(private_key: str) -> Keypair:
    """Accepts a JSON byte array, a base58 string or base64 secret key bytes."""
    private_key = private_key.strip()
    try:
        if private_key.startswith("["):
            secret = bytes(json.loads(private_key))
        else:
            try:
                secret = base58.b58decode(private_key)
            except ValueError:
                secret = base64.b64decode(private_key, validate=True)
        return Keypair.from_bytes(secret)
    except (ValueError, TypeError, binascii.Error) as e:
        raise WalletError(f"Unrecognised private key format: {e}") from e


def import_wallet(private_key: str, encryption_secret: str) -> WalletRecord:
    keypair = parse_private_key(private_key)
    return WalletRecord(
        public_key=str(keypair.pubkey()),
        encrypted_keypair=encrypt_keypair(bytes(keypair), encryption_secret),
        created_at=time(),
    )


def load_keypair(encrypted_keypair: str, encryption_secret: str) -> Keypair:
    secret = decrypt_keypair(encrypted_keypair, encryption_secret)
    try:
        return Keypair.from_bytes(secret)
    except ValueError as e:
        raise WalletError(f"Decrypted key material is not a keypair: {e}") from e


async def get_sol_balance(rpc: AsyncClient, public_key: str) -> float:
    resp = await rpc.get_balance(Pubkey.from_string(public_key))
    return resp.value / LAMPORTS_PER_SOL


async def get_token_balance(rpc: AsyncClient, owner: str, mint: str) -> int:
    """Raw token balance of the owner's associated token account (0 when it does not exist)."""
    ata = get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint))
    try:
        resp = await rpc.get_token_account_balance(ata)
    except (RPCException, SolanaRpcException) as e:
        logger.debug(f"[WALLET] No token account {str(ata)[:8]}... for {mint[:8]}...: {e}")
        return 0
    value = getattr(resp, "value", None)
    return int(value.amount) if value is not None else 0


async def sign_and_send(rpc: AsyncClient, keypair: Keypair, tx_bytes: bytes) -> str:
    """
    Sign a prebuilt VersionedTransaction, submit with preflight and wait for
    `confirmed`. Raises SwapError if the transaction landed with an error.
    """
    unsigned = VersionedTransaction.from_bytes(tx_bytes)
    signed = VersionedTransaction(unsigned.message, [keypair])
    resp = await rpc.send_raw_transaction(
        bytes(signed),
        opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3),
    )
    signature = resp.value
    confirmation = await rpc.confirm_transaction(signature, commitment=Confirmed)
    statuses = getattr(confirmation, "value", None) or []
    if statuses and statuses[0] is not None and statuses[0].err is not None:
        raise SwapError(f"Transaction {signature} failed on-chain: {statuses[0].err}")
    logger.info(f"[WALLET] Confirmed {str(signature)[:16]}...")
    return str(signature)
