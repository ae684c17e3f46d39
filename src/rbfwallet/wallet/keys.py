"""
Private key handling and WIF encoding.
"""

from __future__ import annotations

from dataclasses import dataclass

import base58
from coincurve import PrivateKey

from rbfwallet.wallet.address import hash160, p2pk_script, p2pkh_script, p2wpkh_script

WIF_VERSION = {"mainnet": 0x80, "testnet": 0xEF, "signet": 0xEF, "regtest": 0xEF}


@dataclass(frozen=True)
class SigningKey:
    """A secp256k1 private key together with its public key serialization."""

    private_key: PrivateKey
    compressed: bool = True

    @property
    def pubkey(self) -> bytes:
        return self.private_key.public_key.format(compressed=self.compressed)

    @property
    def key_id(self) -> bytes:
        return hash160(self.pubkey)

    def scripts(self) -> list[bytes]:
        """Every single-key script this key can spend."""
        scripts = [p2pkh_script(self.key_id), p2pk_script(self.pubkey)]
        if self.compressed:
            scripts.append(p2wpkh_script(self.key_id))
        return scripts


def decode_wif(wif: str) -> SigningKey:
    """Decode a WIF private key (any network, compressed or not)."""
    try:
        payload = base58.b58decode_check(wif)
    except ValueError as e:
        raise ValueError("Invalid private key encoding") from e

    if payload[0] not in WIF_VERSION.values():
        raise ValueError("Invalid private key encoding")

    if len(payload) == 34 and payload[33] == 0x01:
        compressed = True
    elif len(payload) == 33:
        compressed = False
    else:
        raise ValueError("Invalid private key encoding")

    try:
        private_key = PrivateKey(payload[1:33])
    except ValueError as e:
        raise ValueError("Private key outside allowed range") from e

    return SigningKey(private_key, compressed)


def encode_wif(key: SigningKey, network: str = "mainnet") -> str:
    payload = bytes([WIF_VERSION[network]]) + key.private_key.secret
    if key.compressed:
        payload += b"\x01"
    return base58.b58encode_check(payload).decode()
