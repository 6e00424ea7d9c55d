"""
Type-directed Borsh decoder

Consumes a byte cursor according to a schema type reference and produces a
JSON-shaped value tree (dict / list / str / int / bool / None).

Numeric policy:
    bool, u8..i64       -> bool / int
    u128..i256          -> decimal string
    f32, f64            -> decimal string
    bytes               -> list of ints
    publicKey           -> base58 string
"""

import math
import struct
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

import base58
import numpy as np

from anchor_lens.core.errors import DecodeError, DecodeInvalid, DecodeTruncated, UnresolvedTypeError
from anchor_lens.core.logger import get_logger
from anchor_lens.core.schema import (
    AliasDef,
    ArrayType,
    DefinedType,
    EnumDef,
    EnumVariant,
    Field,
    OptionType,
    PrimitiveType,
    Schema,
    StructDef,
    TypeDef,
    TypeRef,
    VecType,
)


logger = get_logger(__name__)


class EnumStrategy(str, Enum):
    """How a sum type picks its variant"""
    # Try variants in declaration order, first clean parse wins
    FIRST_MATCH = "first_match"
    # Read a u8 variant index (standard Borsh)
    TAGGED = "tagged"


# Little-endian struct formats for fixed-width scalars up to 64 bits
INT_FORMATS = {
    "u8": "<B", "i8": "<b",
    "u16": "<H", "i16": "<h",
    "u32": "<I", "i32": "<i",
    "u64": "<Q", "i64": "<q",
}

# name -> (width, signed)
WIDE_INTS = {
    "u128": (16, False), "i128": (16, True),
    "u256": (32, False), "i256": (32, True),
}

FLOAT_FORMATS = {"f32": "<f", "f64": "<d"}

PUBKEY_SIZE = 32


def format_float(value: float, single: bool = False) -> str:
    """Render a float as its shortest round-trip decimal, never in exponent form"""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    scalar = np.float32(value) if single else np.float64(value)
    return np.format_float_positional(scalar, trim="-")


class Cursor:
    """Read position over an immutable byte buffer"""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return max(0, len(self._data) - self._offset)

    def read(self, n: int) -> bytes:
        if n > self.remaining:
            raise DecodeTruncated(n, self.remaining, self._offset)
        chunk = self._data[self._offset:self._offset + n]
        self._offset += n
        return chunk

    def unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))[0]

    def fork(self) -> "Cursor":
        """Independent cursor at the same position"""
        return Cursor(self._data, self._offset)

    def advance_to(self, other: "Cursor") -> None:
        """Move to where a fork stopped"""
        self._offset = other.offset


class Decoder:
    """
    Decodes Borsh payloads against a schema

    Args:
        schema: Schema used to resolve named type references
        enum_strategy: Variant selection for sum types
        max_depth: Ceiling on nested named-type resolution
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

    def decode(self, type_ref: TypeRef, cursor: Cursor) -> Any:
        """
        Decode one value, consuming exactly the bytes it occupies

        Raises:
            DecodeTruncated: If the buffer ends early
            DecodeInvalid: If the bytes are incompatible with the type
        """
        return self._decode(type_ref, cursor, 0)

    def decode_type_def(self, type_def: TypeDef, cursor: Cursor) -> Any:
        return self._decode_type_def(type_def, cursor, 0)

    def decode_fields(self, fields: Sequence[Field], cursor: Cursor) -> Dict[str, Any]:
        """Decode fields in declared order into an ordered dict"""
        return self._decode_fields(fields, cursor, 0)

    def decode_bytes(self, type_ref: TypeRef, data: bytes) -> Tuple[Any, int]:
        """Decode from the start of `data`; returns (value, bytes consumed)"""
        cursor = Cursor(data)
        value = self.decode(type_ref, cursor)
        return value, cursor.offset

    def _decode(self, type_ref: TypeRef, cursor: Cursor, depth: int) -> Any:
        if isinstance(type_ref, PrimitiveType):
            return self._decode_primitive(type_ref.name, cursor)

        if isinstance(type_ref, VecType):
            offset = cursor.offset
            count = cursor.unpack("<I")
            items = []
            for _ in range(count):
                start = cursor.offset
                items.append(self._decode(type_ref.inner, cursor, depth))
                # zero-size elements would never hit the end of the buffer
                if cursor.offset == start and count > cursor.remaining:
                    raise DecodeInvalid(
                        f"Vec of {count} zero-size elements at offset {offset} "
                        f"exceeds the {cursor.remaining} bytes left"
                    )
            return items

        if isinstance(type_ref, ArrayType):
            return [self._decode(type_ref.inner, cursor, depth) for _ in range(type_ref.length)]

        if isinstance(type_ref, OptionType):
            offset = cursor.offset
            flag = cursor.unpack("<I" if type_ref.wide_flag else "<B")
            if flag == 0:
                return None
            if flag != 1:
                raise DecodeInvalid(f"Invalid option flag {flag} at offset {offset}")
            return self._decode(type_ref.inner, cursor, depth)

        if isinstance(type_ref, DefinedType):
            if depth >= self.max_depth:
                raise DecodeInvalid(
                    f"Type nesting exceeds {self.max_depth} levels at '{type_ref.name}'"
                )
            type_def = self.schema.resolve(type_ref.name)
            return self._decode_type_def(type_def, cursor, depth + 1)

        raise DecodeInvalid(f"Unsupported type reference {type_ref!r}")

    def _decode_primitive(self, name: str, cursor: Cursor) -> Any:
        fmt = INT_FORMATS.get(name)
        if fmt is not None:
            return cursor.unpack(fmt)

        if name == "bool":
            offset = cursor.offset
            raw = cursor.unpack("<B")
            if raw > 1:
                raise DecodeInvalid(f"Invalid bool byte {raw} at offset {offset}")
            return raw == 1

        wide = WIDE_INTS.get(name)
        if wide is not None:
            width, signed = wide
            return str(int.from_bytes(cursor.read(width), "little", signed=signed))

        fmt = FLOAT_FORMATS.get(name)
        if fmt is not None:
            return format_float(cursor.unpack(fmt), single=(name == "f32"))

        if name == "publicKey":
            return base58.b58encode(cursor.read(PUBKEY_SIZE)).decode("ascii")

        if name == "bytes":
            length = cursor.unpack("<I")
            return list(cursor.read(length))

        if name == "string":
            length = cursor.unpack("<I")
            offset = cursor.offset
            raw = cursor.read(length)
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError:
                raise DecodeInvalid(f"Invalid UTF-8 string at offset {offset}")

        raise DecodeInvalid(f"Unknown primitive type '{name}'")

    def _decode_type_def(self, type_def: TypeDef, cursor: Cursor, depth: int) -> Any:
        if isinstance(type_def, StructDef):
            if type_def.is_tuple:
                return [self._decode(f.type, cursor, depth) for f in type_def.fields]
            return self._decode_fields(type_def.fields, cursor, depth)
        if isinstance(type_def, EnumDef):
            return self._decode_enum(type_def, cursor, depth)
        if isinstance(type_def, AliasDef):
            return self._decode(type_def.value, cursor, depth)
        raise DecodeInvalid(f"Unsupported type definition {type_def!r}")

    def _decode_fields(self, fields: Sequence[Field], cursor: Cursor, depth: int) -> Dict[str, Any]:
        return {f.name: self._decode(f.type, cursor, depth) for f in fields}

    def _decode_variant(self, variant: EnumVariant, cursor: Cursor, depth: int) -> Dict[str, Any]:
        if variant.named_fields is not None:
            fields: Optional[Any] = self._decode_fields(variant.named_fields, cursor, depth)
        elif variant.tuple_fields is not None:
            fields = [self._decode(t, cursor, depth) for t in variant.tuple_fields]
        else:
            fields = None
        return {"name": variant.name, "fields": fields}

    def _decode_enum(self, enum_def: EnumDef, cursor: Cursor, depth: int) -> Dict[str, Any]:
        if self.enum_strategy == EnumStrategy.TAGGED:
            offset = cursor.offset
            index = cursor.unpack("<B")
            if index >= len(enum_def.variants):
                raise DecodeInvalid(
                    f"Variant index {index} out of range for enum '{enum_def.name}' "
                    f"at offset {offset}"
                )
            return self._decode_variant(enum_def.variants[index], cursor, depth)

        for variant in enum_def.variants:
            attempt = cursor.fork()
            try:
                value = self._decode_variant(variant, attempt, depth)
            except UnresolvedTypeError:
                raise
            except DecodeError as e:
                logger.debug(
                    "enum_variant_rejected",
                    enum=enum_def.name,
                    variant=variant.name,
                    error=str(e)
                )
                continue
            cursor.advance_to(attempt)
            return value

        raise DecodeInvalid(
            f"No variant of enum '{enum_def.name}' matches the data at offset {cursor.offset}"
        )
