"""
Bitcoin transaction model and canonical serialization.

A :class:`Transaction` is the finalized, immutable form used by wallet records
and the acceptance service. A :class:`MutableTransaction` is the working form
used while adding inputs, adjusting outputs and signing.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from functools import cached_property

from rbfwallet.constants import MAX_BIP125_RBF_SEQUENCE, SEQUENCE_FINAL, WITNESS_SCALE_FACTOR


class TransactionDecodeError(ValueError):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = _take(data, offset, 1)[0]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(_take(data, offset, 2), "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(_take(data, offset, 4), "little"), offset + 4
    return int.from_bytes(_take(data, offset, 8), "little"), offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _take(data: bytes, offset: int, length: int) -> bytes:
    if offset + length > len(data):
        raise ValueError(f"Unexpected end of data at offset {offset}")
    return data[offset : offset + length]


@dataclass(frozen=True, order=True)
class Outpoint:
    """Reference to a transaction output: (txid, output index)."""

    txid: str
    vout: int

    def serialize(self) -> bytes:
        # txid is in RPC format (big-endian), raw transactions use little-endian
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class TxIn:
    prevout: Outpoint
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: tuple[bytes, ...] = ()

    def signals_rbf(self) -> bool:
        return self.sequence <= MAX_BIP125_RBF_SEQUENCE


@dataclass(frozen=True)
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            struct.pack("<q", self.value)
            + encode_varint(len(self.script_pubkey))
            + self.script_pubkey
        )


class _TransactionEncoding:
    """Serialization and size metrics shared by both transaction forms."""

    version: int
    inputs: tuple[TxIn, ...] | list[TxIn]
    outputs: tuple[TxOut, ...] | list[TxOut]
    locktime: int

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        return serialize_transaction(self, include_witness)

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize(include_witness=True))
        return base_size * (WITNESS_SCALE_FACTOR - 1) + total_size

    @property
    def vsize(self) -> int:
        return (self.weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR

    @property
    def value_out(self) -> int:
        return sum(out.value for out in self.outputs)

    def signals_rbf(self) -> bool:
        """BIP125 opt-in: any input with a low enough sequence number."""
        return any(inp.signals_rbf() for inp in self.inputs)


@dataclass(frozen=True)
class Transaction(_TransactionEncoding):
    version: int
    inputs: tuple[TxIn, ...]
    outputs: tuple[TxOut, ...]
    locktime: int = 0

    @cached_property
    def txid(self) -> str:  # type: ignore[override]
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    def to_mutable(self) -> MutableTransaction:
        return MutableTransaction(
            version=self.version,
            inputs=list(self.inputs),
            outputs=list(self.outputs),
            locktime=self.locktime,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        return deserialize_transaction(data)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        try:
            data = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise TransactionDecodeError(f"TX decode failed: {e}") from e
        return deserialize_transaction(data)


@dataclass
class MutableTransaction(_TransactionEncoding):
    version: int = 2
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    locktime: int = 0

    def finalize(self) -> Transaction:
        return Transaction(
            version=self.version,
            inputs=tuple(self.inputs),
            outputs=tuple(self.outputs),
            locktime=self.locktime,
        )

    def copy(self) -> MutableTransaction:
        # TxIn/TxOut are frozen, a shallow copy of the lists is enough
        return MutableTransaction(
            version=self.version,
            inputs=list(self.inputs),
            outputs=list(self.outputs),
            locktime=self.locktime,
        )


def serialize_transaction(tx: _TransactionEncoding, include_witness: bool = True) -> bytes:
    """Serialize a transaction, using the segwit encoding only when needed."""
    with_witness = include_witness and tx.has_witness

    parts = [struct.pack("<i", tx.version)]
    if with_witness:
        parts.append(b"\x00\x01")

    parts.append(encode_varint(len(tx.inputs)))
    for inp in tx.inputs:
        parts.append(inp.prevout.serialize())
        parts.append(encode_varint(len(inp.script_sig)))
        parts.append(inp.script_sig)
        parts.append(struct.pack("<I", inp.sequence))

    parts.append(encode_varint(len(tx.outputs)))
    for out in tx.outputs:
        parts.append(out.serialize())

    if with_witness:
        for inp in tx.inputs:
            parts.append(encode_varint(len(inp.witness)))
            for item in inp.witness:
                parts.append(encode_varint(len(item)))
                parts.append(item)

    parts.append(struct.pack("<I", tx.locktime))
    return b"".join(parts)


def _parse(data: bytes, extended: bool) -> tuple[Transaction, int]:
    offset = 0
    version = struct.unpack("<i", _take(data, offset, 4))[0]
    offset += 4

    if extended:
        offset += 2

    input_count, offset = read_varint(data, offset)
    if input_count > len(data):
        raise ValueError(f"Implausible input count {input_count}")

    raw_inputs: list[tuple[Outpoint, bytes, int]] = []
    for _ in range(input_count):
        txid = _take(data, offset, 32)[::-1].hex()
        offset += 32
        vout = struct.unpack("<I", _take(data, offset, 4))[0]
        offset += 4
        script_len, offset = read_varint(data, offset)
        script_sig = _take(data, offset, script_len)
        offset += script_len
        sequence = struct.unpack("<I", _take(data, offset, 4))[0]
        offset += 4
        raw_inputs.append((Outpoint(txid, vout), script_sig, sequence))

    output_count, offset = read_varint(data, offset)
    if output_count > len(data):
        raise ValueError(f"Implausible output count {output_count}")

    outputs: list[TxOut] = []
    for _ in range(output_count):
        value = struct.unpack("<q", _take(data, offset, 8))[0]
        offset += 8
        script_len, offset = read_varint(data, offset)
        script = _take(data, offset, script_len)
        offset += script_len
        outputs.append(TxOut(value, script))

    witnesses: list[tuple[bytes, ...]] = [() for _ in raw_inputs]
    if extended:
        for i in range(input_count):
            item_count, offset = read_varint(data, offset)
            items = []
            for _ in range(item_count):
                item_len, offset = read_varint(data, offset)
                items.append(_take(data, offset, item_len))
                offset += item_len
            witnesses[i] = tuple(items)

    locktime = struct.unpack("<I", _take(data, offset, 4))[0]
    offset += 4

    inputs = tuple(
        TxIn(prevout=prevout, script_sig=script_sig, sequence=sequence, witness=witness)
        for (prevout, script_sig, sequence), witness in zip(raw_inputs, witnesses)
    )
    return Transaction(version, inputs, tuple(outputs), locktime), offset


def deserialize_transaction(data: bytes) -> Transaction:
    """Decode a transaction in either legacy or segwit encoding.

    A transaction without inputs followed by a single output starts with the
    same bytes as the segwit marker and flag. The extended form is only taken
    when it consumes every byte and actually carries witness data.
    """
    if len(data) > 6 and data[4] == 0x00 and data[5] == 0x01:
        try:
            tx, offset = _parse(data, extended=True)
            if offset == len(data) and tx.has_witness:
                return tx
        except (ValueError, struct.error):
            pass

    try:
        tx, offset = _parse(data, extended=False)
    except (ValueError, struct.error) as e:
        raise TransactionDecodeError(f"Failed to parse transaction: {e}") from e

    if offset != len(data):
        raise TransactionDecodeError("Failed to parse transaction: trailing data")
    return tx
