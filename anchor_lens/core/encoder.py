"""
Borsh encoder, the inverse of the decoder

Accepts the same value shapes the decoder produces, so a decoded value can be
encoded back to bytes. None is always written as a bare flag with no padding.
"""

import math
import struct
from typing import Any, Dict, Sequence

import base58
from solders.pubkey import Pubkey

from anchor_lens.core.decoder import FLOAT_FORMATS, INT_FORMATS, PUBKEY_SIZE, WIDE_INTS, EnumStrategy
from anchor_lens.core.discriminator import (
    account_discriminator,
    event_discriminator,
    instruction_discriminator,
)
from anchor_lens.core.errors import EncodeError, UnresolvedTypeError
from anchor_lens.core.schema import (
    AliasDef,
    ArrayType,
    DefinedType,
    EnumDef,
    Field,
    OptionType,
    PrimitiveType,
    Schema,
    StructDef,
    TypeDef,
    TypeRef,
    VecType,
)


_SPECIAL_FLOATS = {"NaN": math.nan, "inf": math.inf, "-inf": -math.inf}


class Encoder:
    """
    Encodes JSON-shaped values into Borsh bytes against a schema

    In FIRST_MATCH mode enum values are written without a variant index,
    matching how the decoder reads them; TAGGED mode writes a u8 index.
    """

    def __init__(
        self,
        schema: Schema,
        enum_strategy: EnumStrategy = EnumStrategy.FIRST_MATCH,
        max_depth: int = 64
    ):
        self.schema = schema
        self.enum_strategy = EnumStrategy(enum_strategy)
        self.max_depth = max_depth

    def encode(self, type_ref: TypeRef, value: Any) -> bytes:
        """
        Encode one value

        Raises:
            EncodeError: If the value does not fit the type
        """
        out = bytearray()
        self._write(type_ref, value, out, 0)
        return bytes(out)

    def encode_type_def(self, type_def: TypeDef, value: Any) -> bytes:
        out = bytearray()
        self._write_type_def(type_def, value, out, 0)
        return bytes(out)

    def encode_account(self, name: str, value: Dict[str, Any]) -> bytes:
        """Encode account storage, discriminator included"""
        if name not in self.schema.accounts:
            raise EncodeError(f"Unknown account type '{name}'")
        disc = self.schema.account_discriminators.get(name) or account_discriminator(name)
        return disc + self.encode(DefinedType(name), value)

    def encode_instruction(self, name: str, args: Dict[str, Any]) -> bytes:
        """Encode an instruction payload, discriminator included"""
        ix = self.schema.instructions.get(name)
        if ix is None:
            raise EncodeError(f"Unknown instruction '{name}'")
        disc = ix.discriminator or instruction_discriminator(name)
        out = bytearray(disc)
        self._write_fields(ix.args, args, out, 0, f"instruction '{name}'")
        return bytes(out)

    def encode_event(self, name: str, value: Dict[str, Any]) -> bytes:
        event = self.schema.events.get(name)
        if event is None:
            raise EncodeError(f"Unknown event '{name}'")
        disc = event.discriminator or event_discriminator(name)
        return disc + self.encode_type_def(event.type_def, value)

    def _write(self, type_ref: TypeRef, value: Any, out: bytearray, depth: int) -> None:
        if isinstance(type_ref, PrimitiveType):
            out += self._encode_primitive(type_ref.name, value)

        elif isinstance(type_ref, VecType):
            if not isinstance(value, (list, tuple)):
                raise EncodeError(f"Expected a list, got {type(value).__name__}")
            out += struct.pack("<I", len(value))
            for item in value:
                self._write(type_ref.inner, item, out, depth)

        elif isinstance(type_ref, ArrayType):
            if not isinstance(value, (list, tuple)):
                raise EncodeError(f"Expected a list, got {type(value).__name__}")
            if len(value) != type_ref.length:
                raise EncodeError(
                    f"Array expects {type_ref.length} elements, got {len(value)}"
                )
            for item in value:
                self._write(type_ref.inner, item, out, depth)

        elif isinstance(type_ref, OptionType):
            flag_fmt = "<I" if type_ref.wide_flag else "<B"
            if value is None:
                out += struct.pack(flag_fmt, 0)
            else:
                out += struct.pack(flag_fmt, 1)
                self._write(type_ref.inner, value, out, depth)

        elif isinstance(type_ref, DefinedType):
            if depth >= self.max_depth:
                raise EncodeError(
                    f"Type nesting exceeds {self.max_depth} levels at '{type_ref.name}'"
                )
            try:
                type_def = self.schema.resolve(type_ref.name)
            except UnresolvedTypeError as e:
                raise EncodeError(str(e))
            self._write_type_def(type_def, value, out, depth + 1)

        else:
            raise EncodeError(f"Unsupported type reference {type_ref!r}")

    def _encode_primitive(self, name: str, value: Any) -> bytes:
        fmt = INT_FORMATS.get(name)
        if fmt is not None:
            try:
                return struct.pack(fmt, _as_int(value, name))
            except struct.error:
                raise EncodeError(f"{value!r} is out of range for {name}")

        if name == "bool":
            if not isinstance(value, bool):
                raise EncodeError(f"Expected a bool, got {type(value).__name__}")
            return b"\x01" if value else b"\x00"

        wide = WIDE_INTS.get(name)
        if wide is not None:
            width, signed = wide
            try:
                return _as_int(value, name).to_bytes(width, "little", signed=signed)
            except OverflowError:
                raise EncodeError(f"{value!r} is out of range for {name}")

        fmt = FLOAT_FORMATS.get(name)
        if fmt is not None:
            try:
                return struct.pack(fmt, _as_float(value, name))
            except OverflowError:
                raise EncodeError(f"{value!r} is out of range for {name}")

        if name == "publicKey":
            return _as_pubkey_bytes(value)

        if name == "bytes":
            if not isinstance(value, (bytes, bytearray, list, tuple)):
                raise EncodeError(f"Expected a list of byte values, got {type(value).__name__}")
            if isinstance(value, (list, tuple)) and not all(
                isinstance(b, int) and not isinstance(b, bool) for b in value
            ):
                raise EncodeError(f"Expected a list of byte values, got {value!r}")
            try:
                raw = bytes(value)
            except ValueError:
                raise EncodeError(f"Byte values must be in 0..255, got {value!r}")
            return struct.pack("<I", len(raw)) + raw

        if name == "string":
            if not isinstance(value, str):
                raise EncodeError(f"Expected a string, got {type(value).__name__}")
            raw = value.encode("utf-8")
            return struct.pack("<I", len(raw)) + raw

        raise EncodeError(f"Unknown primitive type '{name}'")

    def _write_type_def(self, type_def: TypeDef, value: Any, out: bytearray, depth: int) -> None:
        if isinstance(type_def, StructDef):
            if type_def.is_tuple:
                if not isinstance(value, (list, tuple)) or len(value) != len(type_def.fields):
                    raise EncodeError(
                        f"Tuple struct '{type_def.name}' expects {len(type_def.fields)} elements"
                    )
                for f, item in zip(type_def.fields, value):
                    self._write(f.type, item, out, depth)
            else:
                self._write_fields(type_def.fields, value, out, depth, f"struct '{type_def.name}'")
        elif isinstance(type_def, EnumDef):
            self._write_enum(type_def, value, out, depth)
        elif isinstance(type_def, AliasDef):
            self._write(type_def.value, value, out, depth)
        else:
            raise EncodeError(f"Unsupported type definition {type_def!r}")

    def _write_fields(
        self,
        fields: Sequence[Field],
        value: Any,
        out: bytearray,
        depth: int,
        owner: str
    ) -> None:
        if not isinstance(value, dict):
            raise EncodeError(f"Expected an object for {owner}, got {type(value).__name__}")
        for f in fields:
            if f.name not in value:
                raise EncodeError(f"Missing field '{f.name}' for {owner}")
            self._write(f.type, value[f.name], out, depth)

    def _write_enum(self, enum_def: EnumDef, value: Any, out: bytearray, depth: int) -> None:
        if not isinstance(value, dict) or "name" not in value:
            raise EncodeError(f"Enum '{enum_def.name}' values need a 'name' key")

        for index, variant in enumerate(enum_def.variants):
            if variant.name == value["name"]:
                break
        else:
            raise EncodeError(f"Enum '{enum_def.name}' has no variant '{value['name']}'")

        if self.enum_strategy == EnumStrategy.TAGGED:
            out += struct.pack("<B", index)

        fields = value.get("fields")
        if variant.named_fields is not None:
            self._write_fields(
                variant.named_fields, fields, out, depth, f"variant '{variant.name}'"
            )
        elif variant.tuple_fields is not None:
            if not isinstance(fields, (list, tuple)) or len(fields) != len(variant.tuple_fields):
                raise EncodeError(
                    f"Variant '{variant.name}' expects {len(variant.tuple_fields)} fields"
                )
            for t, item in zip(variant.tuple_fields, fields):
                self._write(t, item, out, depth)
        elif fields is not None:
            raise EncodeError(f"Unit variant '{variant.name}' takes no fields")


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise EncodeError(f"Expected an integer for {name}, got a bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 10)
        except ValueError:
            pass
    raise EncodeError(f"Expected an integer for {name}, got {value!r}")


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, str) and value in _SPECIAL_FLOATS:
        return _SPECIAL_FLOATS[value]
    if isinstance(value, bool):
        raise EncodeError(f"Expected a number for {name}, got a bool")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise EncodeError(f"Expected a number for {name}, got {value!r}")


def _as_pubkey_bytes(value: Any) -> bytes:
    if isinstance(value, Pubkey):
        return bytes(value)
    if not isinstance(value, str):
        raise EncodeError(f"Expected a base58 string, got {type(value).__name__}")
    try:
        raw = base58.b58decode(value)
    except ValueError:
        raise EncodeError(f"Invalid base58 public key {value!r}")
    if len(raw) != PUBKEY_SIZE:
        raise EncodeError(f"Public key must be {PUBKEY_SIZE} bytes, got {len(raw)}")
    return raw
