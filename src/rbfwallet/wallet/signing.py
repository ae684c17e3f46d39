"""
Transaction signing for single-key inputs (P2WPKH, P2PKH, P2PK).

A :class:`TransactionSigner` is bound to a :class:`SigningProvider` per call:
the wallet itself for its own coins, or an :class:`EphemeralKeyStore` holding
caller-supplied keys that are never added to the wallet.
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from coincurve import PrivateKey

from rbfwallet.constants import MAX_DER_SIGNATURE_SIZE, SIGHASH_ALL
from rbfwallet.errors import TransactionSigningError
from rbfwallet.wallet.address import ScriptType, classify_script, hash160, p2pkh_script, push_data
from rbfwallet.wallet.keys import SigningKey
from rbfwallet.wallet.transaction import (
    MutableTransaction,
    Transaction,
    TxOut,
    encode_varint,
    hash256,
)

TxLike = MutableTransaction | Transaction


@dataclass(frozen=True)
class SignatureData:
    script_sig: bytes = b""
    witness: tuple[bytes, ...] = ()


class SigningProvider(ABC):
    """Source of private keys, looked up by HASH160 of the public key."""

    @abstractmethod
    def get_key(self, key_id: bytes) -> SigningKey | None:
        """Private key for key_id, or None if not held"""

    def get_pubkey(self, key_id: bytes) -> bytes | None:
        key = self.get_key(key_id)
        return key.pubkey if key is not None else None


class EphemeralKeyStore(SigningProvider):
    """
    In-memory key set for the duration of a single operation.

    Keys added here never reach the wallet's permanent key storage.
    """

    def __init__(self, keys: Iterable[SigningKey] = ()):
        self._keys: dict[bytes, SigningKey] = {}
        for key in keys:
            self.add_key(key)

    def add_key(self, key: SigningKey) -> None:
        self._keys[key.key_id] = key

    def get_key(self, key_id: bytes) -> SigningKey | None:
        return self._keys.get(key_id)

    def clear(self) -> None:
        self._keys.clear()

    def __len__(self) -> int:
        return len(self._keys)


def compute_sighash_legacy(
    tx: TxLike, input_index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL
) -> bytes:
    """Original (pre-segwit) signature hash."""
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    stripped = MutableTransaction(
        version=tx.version,
        inputs=[
            replace(inp, script_sig=script_code if i == input_index else b"", witness=())
            for i, inp in enumerate(tx.inputs)
        ],
        outputs=list(tx.outputs),
        locktime=tx.locktime,
    )
    preimage = stripped.serialize(include_witness=False) + struct.pack("<I", sighash_type)
    return hash256(preimage)


def compute_sighash_segwit(
    tx: TxLike,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for segwit v0 inputs."""
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    hash_prevouts = hash256(b"".join(inp.prevout.serialize() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<i", tx.version)
        + hash_prevouts
        + hash_sequence
        + target_input.prevout.serialize()
        + encode_varint(len(script_code))
        + script_code
        + struct.pack("<q", value)
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


def sign_digest(private_key: PrivateKey, digest: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
    """DER signature (RFC 6979 nonce, low-S) with the sighash type byte appended."""
    return private_key.sign(digest, hasher=None) + bytes([sighash_type])


class TransactionSigner:
    """Produces input signatures using keys from one signing provider."""

    def __init__(self, provider: SigningProvider, sighash_type: int = SIGHASH_ALL):
        self.provider = provider
        self.sighash_type = sighash_type

    def _key_for(self, key_id: bytes) -> SigningKey:
        key = self.provider.get_key(key_id)
        if key is None:
            raise TransactionSigningError(f"Private key not available for {key_id.hex()}")
        return key

    def sign(
        self, tx: TxLike, input_index: int, prev_script: bytes, prev_value: int
    ) -> SignatureData:
        """
        Sign one input against the output it spends.

        Args:
            tx: Transaction with its final outputs
            input_index: Index of the input to sign
            prev_script: scriptPubKey of the output being spent
            prev_value: Value of the output being spent (in satoshis)

        Returns:
            scriptSig and witness stack for the input
        """
        script_type, solution = classify_script(prev_script)

        if script_type == ScriptType.P2WPKH:
            key = self._key_for(solution)
            if not key.compressed:
                raise TransactionSigningError("Segwit inputs require a compressed key")
            digest = compute_sighash_segwit(
                tx, input_index, p2pkh_script(solution), prev_value, self.sighash_type
            )
            signature = sign_digest(key.private_key, digest, self.sighash_type)
            return SignatureData(witness=(signature, key.pubkey))

        if script_type == ScriptType.P2PKH:
            key = self._key_for(solution)
            digest = compute_sighash_legacy(tx, input_index, prev_script, self.sighash_type)
            signature = sign_digest(key.private_key, digest, self.sighash_type)
            return SignatureData(script_sig=push_data(signature) + push_data(key.pubkey))

        if script_type == ScriptType.P2PK:
            key = self._key_for(hash160(solution))
            if key.pubkey != solution:
                raise TransactionSigningError("Public key encoding does not match script")
            digest = compute_sighash_legacy(tx, input_index, prev_script, self.sighash_type)
            signature = sign_digest(key.private_key, digest, self.sighash_type)
            return SignatureData(script_sig=push_data(signature))

        raise TransactionSigningError(f"Unsupported script type: {script_type.value}")

    def sign_transaction(self, tx: MutableTransaction, prevouts: Sequence[TxOut]) -> None:
        """Sign every input in place. ``prevouts[i]`` is the output spent by input i."""
        if len(prevouts) != len(tx.inputs):
            raise TransactionSigningError("Previous output count does not match inputs")

        # All digests commit to the unsigned form, so compute signatures first
        signatures = [
            self.sign(tx, i, prevout.script_pubkey, prevout.value)
            for i, prevout in enumerate(prevouts)
        ]
        for i, sigdata in enumerate(signatures):
            apply_signature(tx, i, sigdata)

    def estimate_signature_data(self, prev_script: bytes) -> SignatureData | None:
        """Maximum-size placeholder signature data, None if the script is not solvable."""
        dummy_sig = b"\x30" + b"\x00" * (MAX_DER_SIGNATURE_SIZE - 1)
        script_type, solution = classify_script(prev_script)

        if script_type == ScriptType.P2PK:
            return SignatureData(script_sig=push_data(dummy_sig))

        if script_type in (ScriptType.P2PKH, ScriptType.P2WPKH):
            pubkey = self.provider.get_pubkey(solution)
            if pubkey is None:
                return None
            if script_type == ScriptType.P2WPKH:
                return SignatureData(witness=(dummy_sig, pubkey))
            return SignatureData(script_sig=push_data(dummy_sig) + push_data(pubkey))

        return None


def apply_signature(tx: MutableTransaction, input_index: int, sigdata: SignatureData) -> None:
    tx.inputs[input_index] = replace(
        tx.inputs[input_index], script_sig=sigdata.script_sig, witness=sigdata.witness
    )
