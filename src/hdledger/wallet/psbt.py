"""
Partially Signed Bitcoin Transaction (BIP174, version 0) bundle.

Only the fields the wallet produces are interpreted: the global unsigned
transaction, per-input witness UTXO and BIP32 derivation, per-output BIP32
derivation. Other fields are kept as-is when parsing.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from hdledger.wallet.bip32 import DerivationPath
from hdledger.wallet.models import KeyPathHint
from hdledger.wallet.transaction import Transaction, TxOut, encode_varint, read_varint

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_OUT_BIP32_DERIVATION = 0x02


def write_psbt_field(key_type: int, key_data: bytes, value_data: bytes) -> bytes:
    """Write a PSBT field in the format: key_len + key_type + key_data + value_len + value_data"""
    key_full = bytes([key_type]) + key_data
    return encode_varint(len(key_full)) + key_full + encode_varint(len(value_data)) + value_data


@dataclass
class PsbtField:
    """Represents a single PSBT key/value pair"""

    key_type: int
    key_data: bytes
    value_data: bytes

    def serialize(self) -> bytes:
        return write_psbt_field(self.key_type, self.key_data, self.value_data)


def _derivation_field(key_type: int, hint: KeyPathHint) -> PsbtField:
    return PsbtField(key_type, hint.public_key, hint.origin_bytes())


def _parse_derivation(item: PsbtField) -> KeyPathHint:
    if len(item.key_data) != 33 or len(item.value_data) < 4:
        raise ValueError("Malformed BIP32 derivation field")
    return KeyPathHint(
        fingerprint=item.value_data[:4],
        path=DerivationPath.from_bytes(item.value_data[4:]),
        public_key=item.key_data,
    )


@dataclass
class PsbtInput:
    witness_utxo: TxOut | None = None
    bip32_derivations: list[KeyPathHint] = field(default_factory=list)
    unknown: list[PsbtField] = field(default_factory=list)

    def fields(self) -> list[PsbtField]:
        result = []
        if self.witness_utxo is not None:
            result.append(PsbtField(PSBT_IN_WITNESS_UTXO, b"", self.witness_utxo.serialize()))
        result.extend(
            _derivation_field(PSBT_IN_BIP32_DERIVATION, hint) for hint in self.bip32_derivations
        )
        result.extend(self.unknown)
        return result

    @classmethod
    def from_fields(cls, fields: list[PsbtField]) -> PsbtInput:
        psbt_input = cls()
        for item in fields:
            if item.key_type == PSBT_IN_WITNESS_UTXO and not item.key_data:
                psbt_input.witness_utxo, _ = TxOut.parse(item.value_data)
            elif item.key_type == PSBT_IN_BIP32_DERIVATION:
                psbt_input.bip32_derivations.append(_parse_derivation(item))
            else:
                psbt_input.unknown.append(item)
        return psbt_input


@dataclass
class PsbtOutput:
    bip32_derivations: list[KeyPathHint] = field(default_factory=list)
    unknown: list[PsbtField] = field(default_factory=list)

    def fields(self) -> list[PsbtField]:
        result = [_derivation_field(PSBT_OUT_BIP32_DERIVATION, h) for h in self.bip32_derivations]
        result.extend(self.unknown)
        return result

    @classmethod
    def from_fields(cls, fields: list[PsbtField]) -> PsbtOutput:
        psbt_output = cls()
        for item in fields:
            if item.key_type == PSBT_OUT_BIP32_DERIVATION:
                psbt_output.bip32_derivations.append(_parse_derivation(item))
            else:
                psbt_output.unknown.append(item)
        return psbt_output


@dataclass
class Psbt:
    unsigned_tx: Transaction
    inputs: list[PsbtInput]
    outputs: list[PsbtOutput]
    unknown: list[PsbtField] = field(default_factory=list)

    @classmethod
    def from_unsigned_tx(cls, tx: Transaction) -> Psbt:
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise ValueError("PSBT unsigned transaction must have empty scriptSigs and witnesses")
        return cls(
            unsigned_tx=tx,
            inputs=[PsbtInput() for _ in tx.inputs],
            outputs=[PsbtOutput() for _ in tx.outputs],
        )

    @staticmethod
    def _serialize_section(fields: list[PsbtField]) -> bytes:
        # End with separator (empty key)
        return b"".join(item.serialize() for item in fields) + b"\x00"

    def serialize(self) -> bytes:
        """Serialize entire PSBT to bytes"""
        global_fields = [
            PsbtField(
                PSBT_GLOBAL_UNSIGNED_TX, b"", self.unsigned_tx.serialize(include_witness=False)
            )
        ]
        global_fields.extend(self.unknown)

        result = PSBT_MAGIC + self._serialize_section(global_fields)
        for psbt_input in self.inputs:
            result += self._serialize_section(psbt_input.fields())
        for psbt_output in self.outputs:
            result += self._serialize_section(psbt_output.fields())
        return result

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> Psbt:
        if not data.startswith(PSBT_MAGIC):
            raise ValueError("Invalid PSBT magic")

        def parse_section(offset: int) -> tuple[list[PsbtField], int]:
            fields = []
            while True:
                if offset >= len(data):
                    raise ValueError("Truncated PSBT section")
                key_len, offset = read_varint(data, offset)
                if key_len == 0:  # End of section
                    return fields, offset

                key = data[offset : offset + key_len]
                offset += key_len
                value_len, offset = read_varint(data, offset)
                value = data[offset : offset + value_len]
                offset += value_len
                if len(key) != key_len or len(value) != value_len:
                    raise ValueError("Truncated PSBT field")
                fields.append(PsbtField(key[0], key[1:], value))

        global_fields, offset = parse_section(len(PSBT_MAGIC))

        unsigned_tx = None
        unknown = []
        for item in global_fields:
            if item.key_type == PSBT_GLOBAL_UNSIGNED_TX and not item.key_data:
                unsigned_tx = Transaction.from_bytes(item.value_data)
            else:
                unknown.append(item)
        if unsigned_tx is None:
            raise ValueError("PSBT is missing the unsigned transaction")

        inputs = []
        for _ in unsigned_tx.inputs:
            fields, offset = parse_section(offset)
            inputs.append(PsbtInput.from_fields(fields))

        outputs = []
        for _ in unsigned_tx.outputs:
            fields, offset = parse_section(offset)
            outputs.append(PsbtOutput.from_fields(fields))

        return cls(unsigned_tx=unsigned_tx, inputs=inputs, outputs=outputs, unknown=unknown)

    @classmethod
    def from_base64(cls, encoded: str) -> Psbt:
        try:
            raw = base64.b64decode(encoded, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 PSBT: {e}") from e
        return cls.from_bytes(raw)

    def change_outputs(self) -> list[int]:
        """Indices of outputs that carry a derivation hint (paying back to the signer)."""
        return [i for i, out in enumerate(self.outputs) if out.bip32_derivations]
