"""Ledger account identifiers and the subaccounts derived from principals."""
import hashlib
import zlib
from typing import Optional

from icrepl.icrepl_values import ReplError, Principal

GOVERNANCE_CANISTER = Principal.from_text("rrkah-fqaaa-aaaaa-aaaaq-cai")

_ACCOUNT_DOMAIN = b"\x0aaccount-id"
_NEURON_DOMAIN = b"\x0cneuron-stake"


def subaccount_from_principal(principal: Principal) -> bytes:
    raw = principal.raw
    return (bytes([len(raw)]) + raw).ljust(32, b"\x00")


def check_subaccount(subaccount: bytes) -> bytes:
    if len(subaccount) != 32:
        raise ReplError(f"subaccount must be 32 bytes, got {len(subaccount)}")
    return subaccount


def account_identifier(principal: Principal, subaccount: Optional[bytes] = None) -> bytes:
    """The 32-byte account id: a CRC32 checksum followed by the SHA-224 hash."""
    sub = check_subaccount(subaccount) if subaccount is not None else bytes(32)
    digest = hashlib.sha224(_ACCOUNT_DOMAIN + principal.raw + sub).digest()
    return zlib.crc32(digest).to_bytes(4, 'big') + digest


def neuron_subaccount(controller: Principal, nonce: int) -> bytes:
    if not 0 <= nonce < 2 ** 64:
        raise ReplError(f"neuron nonce {nonce} does not fit in 64 bits")
    return hashlib.sha256(_NEURON_DOMAIN + controller.raw + nonce.to_bytes(8, 'big')).digest()


def neuron_account(controller: Principal, nonce: int) -> bytes:
    return account_identifier(GOVERNANCE_CANISTER, neuron_subaccount(controller, nonce))
