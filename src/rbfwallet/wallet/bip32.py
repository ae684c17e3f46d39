"""
BIP32 HD key derivation and the wallet key pool.

The key pool hands out fresh keys for change outputs and swept funds.
Derivation path: m/84'/{coin_type}'/0'/{chain}/{index}
- chain: 0 (external/receive), 1 (internal/change)
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field

from coincurve import PrivateKey
from loguru import logger

from rbfwallet.constants import (
    BIP84_PURPOSE,
    DEFAULT_KEYPOOL_SIZE,
    EXTERNAL_CHAIN,
    INTERNAL_CHAIN,
)
from rbfwallet.wallet.address import p2wpkh_script
from rbfwallet.wallet.keys import SigningKey

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED = 0x80000000


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self.chain_code = chain_code
        self.depth = depth

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue

            hardened = part.endswith("'") or part.endswith("h")
            index = int(part.rstrip("'h"))
            if hardened:
                index += HARDENED

            key = key._derive_child(index)

        return key

    def _derive_child(self, index: int) -> HDKey:
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            pub_bytes = self._private_key.public_key.format(compressed=True)
            data = pub_bytes + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        offset_int = int.from_bytes(hmac_result[:32], "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N

        if child_key_int == 0:
            raise ValueError("Invalid child key")

        return HDKey(
            PrivateKey(child_key_int.to_bytes(32, "big")), hmac_result[32:], depth=self.depth + 1
        )

    def signing_key(self) -> SigningKey:
        return SigningKey(self._private_key, compressed=True)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.
    The mnemonic checksum is not validated.
    """
    mnemonic_bytes = mnemonic.encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)


@dataclass
class _Chain:
    next_index: int = 0
    # Derived but never handed out for good, lowest index first
    available: list[int] = field(default_factory=list)


class ReservedKey:
    """
    A key taken out of the pool for the duration of an operation.

    Call :meth:`keep` once the key is used in an accepted transaction, or
    :meth:`return_key` to put it back so the next caller receives it again.
    """

    def __init__(self, pool: HDKeyPool, chain: int, index: int, key: SigningKey):
        self._pool = pool
        self.chain = chain
        self.index = index
        self.key = key
        self._settled = False

    @property
    def script_pubkey(self) -> bytes:
        return p2wpkh_script(self.key.key_id)

    def keep(self) -> None:
        if not self._settled:
            self._settled = True
            logger.debug(f"Keeping reserved key {self.chain}/{self.index}")

    def return_key(self) -> None:
        if not self._settled:
            self._settled = True
            self._pool._return(self.chain, self.index)
            logger.debug(f"Returned reserved key {self.chain}/{self.index} to pool")


class HDKeyPool:
    """
    Pool of pre-derived wallet keys on the external and internal chains.

    Every key derived here belongs to the wallet, whether or not it was ever
    handed out, so ownership checks look at the full derived set.
    """

    def __init__(
        self,
        master_key: HDKey,
        network: str = "mainnet",
        size: int = DEFAULT_KEYPOOL_SIZE,
        account: int = 0,
    ):
        self.network = network
        self.size = size
        coin_type = 0 if network == "mainnet" else 1
        self.account_path = f"m/{BIP84_PURPOSE}'/{coin_type}'/{account}'"
        self._account_key = master_key.derive(self.account_path)

        self._keys: dict[bytes, SigningKey] = {}
        self._paths: dict[bytes, tuple[int, int]] = {}
        self._chains = {EXTERNAL_CHAIN: _Chain(), INTERNAL_CHAIN: _Chain()}

        self.top_up()
        logger.info(f"Initialized key pool at {self.account_path} with {size} keys per chain")

    @classmethod
    def from_mnemonic(
        cls, mnemonic: str, network: str = "mainnet", size: int = DEFAULT_KEYPOOL_SIZE
    ) -> HDKeyPool:
        return cls(HDKey.from_seed(mnemonic_to_seed(mnemonic)), network=network, size=size)

    def _derive(self, chain: int, index: int) -> SigningKey:
        key = self._account_key.derive(f"m/{chain}/{index}").signing_key()
        self._keys[key.key_id] = key
        self._paths[key.key_id] = (chain, index)
        return key

    def top_up(self) -> None:
        for chain, state in self._chains.items():
            while len(state.available) < self.size:
                self._derive(chain, state.next_index)
                state.available.append(state.next_index)
                state.next_index += 1

    def key_at(self, chain: int, index: int) -> SigningKey:
        """Derive the key at chain/index, adding it to the owned set."""
        return self._derive(chain, index)

    def get_key(self, key_id: bytes) -> SigningKey | None:
        return self._keys.get(key_id)

    def get_path(self, key_id: bytes) -> tuple[int, int] | None:
        return self._paths.get(key_id)

    def keys(self) -> list[SigningKey]:
        return list(self._keys.values())

    def reserve(self, internal: bool = False) -> ReservedKey:
        chain = INTERNAL_CHAIN if internal else EXTERNAL_CHAIN
        state = self._chains[chain]
        if not state.available:
            self.top_up()
        index = state.available.pop(0)
        key = self._derive(chain, index)
        logger.debug(f"Reserved key {chain}/{index}")
        return ReservedKey(self, chain, index, key)

    def _return(self, chain: int, index: int) -> None:
        state = self._chains[chain]
        if index not in state.available:
            state.available.append(index)
            state.available.sort()

    def mark_used(self, key_id: bytes) -> None:
        """Remove a key found on chain from the pool, along with every earlier index."""
        path = self._paths.get(key_id)
        if path is None:
            return
        chain, index = path
        state = self._chains[chain]
        state.available = [i for i in state.available if i > index]
        state.next_index = max(state.next_index, index + 1)
        self.top_up()
