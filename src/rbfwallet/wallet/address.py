"""
Script templates and Bitcoin address encoding.
"""

from __future__ import annotations

import hashlib
from enum import Enum

import base58
import bech32

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_16 = 0x60
OP_RETURN = 0x6A
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC

BECH32_HRP = {"mainnet": "bc", "testnet": "tb", "signet": "tb", "regtest": "bcrt"}
P2PKH_VERSION = {"mainnet": 0x00, "testnet": 0x6F, "signet": 0x6F, "regtest": 0x6F}
P2SH_VERSION = {"mainnet": 0x05, "testnet": 0xC4, "signet": 0xC4, "regtest": 0xC4}


class ScriptType(str, Enum):
    P2PKH = "pubkeyhash"
    P2WPKH = "witness_v0_keyhash"
    P2PK = "pubkey"
    P2SH = "scripthash"
    P2WSH = "witness_v0_scripthash"
    P2TR = "witness_v1_taproot"
    NULL_DATA = "nulldata"
    NONSTANDARD = "nonstandard"


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def push_data(data: bytes) -> bytes:
    """Minimal script push of arbitrary data."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def p2pkh_script(key_id: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + key_id + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(key_id: bytes) -> bytes:
    """OP_0 <20-byte-pubkeyhash>"""
    return bytes([OP_0, 0x14]) + key_id


def p2pk_script(pubkey: bytes) -> bytes:
    """<pubkey> OP_CHECKSIG"""
    return push_data(pubkey) + bytes([OP_CHECKSIG])


def is_witness_program(script: bytes) -> bool:
    if len(script) < 4 or len(script) > 42:
        return False
    if script[0] != OP_0 and not (OP_1 <= script[0] <= OP_16):
        return False
    return script[1] + 2 == len(script)


def is_unspendable(script: bytes) -> bool:
    return len(script) > 0 and script[0] == OP_RETURN


def _is_pubkey(data: bytes) -> bool:
    if len(data) == 33:
        return data[0] in (0x02, 0x03)
    if len(data) == 65:
        return data[0] == 0x04
    return False


def classify_script(script: bytes) -> tuple[ScriptType, bytes]:
    """
    Identify a scriptPubKey template.

    Returns:
        (script_type, solution) where solution is the key id for P2PKH/P2WPKH,
        the public key for P2PK, the script hash or witness program otherwise.
    """
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return ScriptType.P2PKH, script[3:23]

    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL:
        return ScriptType.P2SH, script[2:22]

    if script and script[-1] == OP_CHECKSIG and len(script) in (35, 67):
        pubkey = script[1:-1]
        if script[0] == len(pubkey) and _is_pubkey(pubkey):
            return ScriptType.P2PK, pubkey

    if is_witness_program(script):
        program = script[2:]
        if script[0] == OP_0 and len(program) == 20:
            return ScriptType.P2WPKH, program
        if script[0] == OP_0 and len(program) == 32:
            return ScriptType.P2WSH, program
        if script[0] == OP_1 and len(program) == 32:
            return ScriptType.P2TR, program

    if is_unspendable(script):
        return ScriptType.NULL_DATA, b""

    return ScriptType.NONSTANDARD, b""


def pubkey_to_p2wpkh_address(pubkey_hex: str, network: str = "mainnet") -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    pubkey_bytes = bytes.fromhex(pubkey_hex)

    if len(pubkey_bytes) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey_bytes)}")

    return scriptpubkey_to_address(p2wpkh_script(hash160(pubkey_bytes)), network)


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bc1q..., tb1q..., bcrt1q...)
    - P2TR (bc1p...)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    """
    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = "bcrt" if lowered.startswith("bcrt1") else lowered[:2]

        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            return bytes([OP_0, len(program)]) + program
        if witver == 1 and len(program) == 32:
            return bytes([OP_1, 0x20]) + program

        raise ValueError(f"Unsupported witness version: {witver}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):
        return p2pkh_script(payload)
    if version in (0x05, 0xC4):
        return bytes([OP_HASH160, 0x14]) + payload + bytes([OP_EQUAL])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: str = "mainnet") -> str:
    """Convert scriptPubKey to address."""
    script_type, solution = classify_script(scriptpubkey)

    if script_type in (ScriptType.P2WPKH, ScriptType.P2WSH, ScriptType.P2TR):
        witver = 1 if script_type == ScriptType.P2TR else 0
        result = bech32.encode(BECH32_HRP[network], witver, solution)
        if result is None:
            raise ValueError(f"Failed to encode address: {scriptpubkey.hex()}")
        return result

    if script_type == ScriptType.P2PKH:
        return base58.b58encode_check(bytes([P2PKH_VERSION[network]]) + solution).decode()

    if script_type == ScriptType.P2SH:
        return base58.b58encode_check(bytes([P2SH_VERSION[network]]) + solution).decode()

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")
