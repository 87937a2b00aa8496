"""
Transaction and block primitives with consensus serialization.

Transaction ids and block hashes are hex strings in RPC (display) byte order,
scripts and witness items are hex strings. That keeps every model directly
JSON serializable for the wallet file.
"""

from __future__ import annotations

import struct

from pydantic import BaseModel, Field

from hdledger.crypto import hash256

HEX_32 = r"^[0-9a-f]{64}$"
HEX = r"^([0-9a-f]{2})*$"

SEQUENCE_FINAL = 0xFFFFFFFF
NULL_TXID = "00" * 32


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    if offset >= len(data):
        raise ValueError("Unexpected end of data")
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise ValueError("Unexpected end of data")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def _read(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    if offset + length > len(data):
        raise ValueError("Unexpected end of data")
    return data[offset : offset + length], offset + length


def _read_varbytes(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = read_varint(data, offset)
    return _read(data, offset, length)


class OutPoint(BaseModel):
    """Reference to a transaction output."""

    txid: str = Field(..., pattern=HEX_32)
    vout: int = Field(..., ge=0, le=0xFFFFFFFF)

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, value: str) -> OutPoint:
        """Parse ``txid:vout`` notation."""
        txid, sep, vout = value.rpartition(":")
        if not sep or not vout.isdigit():
            raise ValueError(f"Invalid outpoint: {value!r} (expected txid:vout)")
        return cls(txid=txid.lower(), vout=int(vout))

    def serialize(self) -> bytes:
        # txid is in RPC format (big-endian), need to reverse for raw tx
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def sort_key(self) -> tuple[str, int]:
        return (self.txid, self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


class TxIn(BaseModel):
    previous_output: OutPoint
    script_sig: str = Field(default="", pattern=HEX)
    sequence: int = Field(default=SEQUENCE_FINAL, ge=0, le=0xFFFFFFFF)
    witness: list[str] = Field(default_factory=list)

    def serialize(self) -> bytes:
        script_sig = bytes.fromhex(self.script_sig)
        return (
            self.previous_output.serialize()
            + encode_varint(len(script_sig))
            + script_sig
            + struct.pack("<I", self.sequence)
        )


class TxOut(BaseModel):
    value: int = Field(..., ge=0)
    script_pubkey: str = Field(..., pattern=HEX)

    @classmethod
    def from_script(cls, value: int, script: bytes) -> TxOut:
        return cls(value=value, script_pubkey=script.hex())

    @property
    def script(self) -> bytes:
        return bytes.fromhex(self.script_pubkey)

    def serialize(self) -> bytes:
        script = self.script
        return struct.pack("<Q", self.value) + encode_varint(len(script)) + script

    @classmethod
    def parse(cls, data: bytes, offset: int = 0) -> tuple[TxOut, int]:
        raw_value, offset = _read(data, offset, 8)
        script, offset = _read_varbytes(data, offset)
        return cls(value=int.from_bytes(raw_value, "little"), script_pubkey=script.hex()), offset


class Transaction(BaseModel):
    version: int = 1
    inputs: list[TxIn] = Field(default_factory=list)
    outputs: list[TxOut] = Field(default_factory=list)
    lock_time: int = Field(default=0, ge=0, le=0xFFFFFFFF)

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness

        result = struct.pack("<i", self.version)
        if segwit:
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if segwit:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    item_bytes = bytes.fromhex(item)
                    result += encode_varint(len(item_bytes)) + item_bytes

        result += struct.pack("<I", self.lock_time)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    def spends(self) -> list[OutPoint]:
        return [inp.previous_output for inp in self.inputs]

    @classmethod
    def parse(cls, data: bytes, offset: int = 0) -> tuple[Transaction, int]:
        """Parse one transaction starting at ``offset``. Returns (tx, new_offset)."""
        try:
            raw_version, offset = _read(data, offset, 4)
            version = struct.unpack("<i", raw_version)[0]

            segwit = False
            if data[offset] == 0x00 and data[offset + 1] == 0x01:
                segwit = True
                offset += 2

            input_count, offset = read_varint(data, offset)
            inputs: list[TxIn] = []
            for _ in range(input_count):
                txid_le, offset = _read(data, offset, 32)
                raw_vout, offset = _read(data, offset, 4)
                script_sig, offset = _read_varbytes(data, offset)
                raw_sequence, offset = _read(data, offset, 4)
                inputs.append(
                    TxIn(
                        previous_output=OutPoint(
                            txid=txid_le[::-1].hex(), vout=int.from_bytes(raw_vout, "little")
                        ),
                        script_sig=script_sig.hex(),
                        sequence=int.from_bytes(raw_sequence, "little"),
                    )
                )

            output_count, offset = read_varint(data, offset)
            outputs: list[TxOut] = []
            for _ in range(output_count):
                out, offset = TxOut.parse(data, offset)
                outputs.append(out)

            if segwit:
                for inp in inputs:
                    stack_count, offset = read_varint(data, offset)
                    for _ in range(stack_count):
                        item, offset = _read_varbytes(data, offset)
                        inp.witness.append(item.hex())

            raw_lock_time, offset = _read(data, offset, 4)
        except (IndexError, struct.error) as e:
            raise ValueError(f"Failed to parse transaction: {e}") from e

        tx = cls(
            version=version,
            inputs=inputs,
            outputs=outputs,
            lock_time=int.from_bytes(raw_lock_time, "little"),
        )
        return tx, offset

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        tx, offset = cls.parse(data)
        if offset != len(data):
            raise ValueError(f"Trailing data after transaction ({len(data) - offset} bytes)")
        return tx

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        return cls.from_bytes(bytes.fromhex(tx_hex))


def compute_merkle_root(txids: list[str]) -> str:
    """Merkle root over txids given in display byte order."""
    if not txids:
        return NULL_TXID

    level = [bytes.fromhex(txid)[::-1] for txid in txids]
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [hash256(level[i] + level[i + 1]) for i in range(0, len(level), 2)]

    return level[0][::-1].hex()


class BlockHeader(BaseModel):
    version: int = 1
    prev_hash: str = Field(..., pattern=HEX_32)
    merkle_root: str = Field(default=NULL_TXID, pattern=HEX_32)
    time: int = 0
    bits: int = 0x207FFFFF
    nonce: int = 0

    def serialize(self) -> bytes:
        return (
            struct.pack("<i", self.version)
            + bytes.fromhex(self.prev_hash)[::-1]
            + bytes.fromhex(self.merkle_root)[::-1]
            + struct.pack("<III", self.time, self.bits, self.nonce)
        )

    @property
    def hash(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @classmethod
    def from_bytes(cls, data: bytes) -> BlockHeader:
        if len(data) < 80:
            raise ValueError(f"Block header too short: {len(data)} bytes")
        version = struct.unpack("<i", data[0:4])[0]
        time, bits, nonce = struct.unpack("<III", data[68:80])
        return cls(
            version=version,
            prev_hash=data[4:36][::-1].hex(),
            merkle_root=data[36:68][::-1].hex(),
            time=time,
            bits=bits,
            nonce=nonce,
        )


class Block(BaseModel):
    """
    A block as delivered by a block source. ``height`` is optional metadata
    supplied by the source; it is not part of the consensus encoding.
    """

    header: BlockHeader
    transactions: list[Transaction] = Field(default_factory=list)
    height: int | None = None

    @property
    def hash(self) -> str:
        return self.header.hash

    @property
    def prev_hash(self) -> str:
        return self.header.prev_hash

    def serialize(self) -> bytes:
        result = self.header.serialize() + encode_varint(len(self.transactions))
        for tx in self.transactions:
            result += tx.serialize()
        return result

    @classmethod
    def from_bytes(cls, data: bytes, height: int | None = None) -> Block:
        header = BlockHeader.from_bytes(data)
        tx_count, offset = read_varint(data, 80)

        transactions = []
        for _ in range(tx_count):
            tx, offset = Transaction.parse(data, offset)
            transactions.append(tx)

        if offset != len(data):
            raise ValueError(f"Trailing data after block ({len(data) - offset} bytes)")
        return cls(header=header, transactions=transactions, height=height)

    @classmethod
    def from_hex(cls, block_hex: str, height: int | None = None) -> Block:
        return cls.from_bytes(bytes.fromhex(block_hex), height=height)

    def has_valid_merkle_root(self) -> bool:
        return self.header.merkle_root == compute_merkle_root([tx.txid for tx in self.transactions])
