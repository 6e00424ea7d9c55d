"""
Schema model built from an Anchor-style interface document (IDL)

The schema is a flat, name-indexed table. Named type references are kept as
names and resolved when decoding, so forward references, aliases and
self-referencing types need no extra pass here.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from anchor_lens.core.discriminator import DISCRIMINATOR_SIZE, DiscriminatorIndex
from anchor_lens.core.errors import DiscriminatorMiss, SchemaParseError, UnresolvedTypeError
from anchor_lens.core.logger import get_logger
from anchor_lens.core.metrics import get_metrics


logger = get_logger(__name__)


# Fixed-width primitives and their encoded size in bytes
PRIMITIVE_SIZES = {
    "bool": 1,
    "u8": 1, "i8": 1,
    "u16": 2, "i16": 2,
    "u32": 4, "i32": 4,
    "u64": 8, "i64": 8,
    "u128": 16, "i128": 16,
    "u256": 32, "i256": 32,
    "f32": 4, "f64": 8,
    "publicKey": 32,
}

# Length-prefixed primitives
VARIABLE_PRIMITIVES = {"bytes", "string"}

PRIMITIVE_ALIASES = {"pubkey": "publicKey"}


# =============================================================================
# TYPE REFERENCES
# =============================================================================

@dataclass(frozen=True)
class PrimitiveType:
    name: str


@dataclass(frozen=True)
class VecType:
    """u32 count followed by that many elements"""
    inner: "TypeRef"


@dataclass(frozen=True)
class OptionType:
    """Flag then value; wide_flag is the 4-byte COption flag"""
    inner: "TypeRef"
    wide_flag: bool = False


@dataclass(frozen=True)
class ArrayType:
    """Exactly `length` elements, no count prefix"""
    inner: "TypeRef"
    length: int


@dataclass(frozen=True)
class DefinedType:
    """Reference to a named TypeDef, resolved at decode time"""
    name: str


TypeRef = Union[PrimitiveType, VecType, OptionType, ArrayType, DefinedType]


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

@dataclass(frozen=True)
class Field:
    name: str
    type: TypeRef


@dataclass(frozen=True)
class StructDef:
    name: str
    fields: Tuple[Field, ...]
    # Tuple structs decode to an array instead of an object
    is_tuple: bool = False


@dataclass(frozen=True)
class EnumVariant:
    name: str
    named_fields: Optional[Tuple[Field, ...]] = None
    tuple_fields: Optional[Tuple[TypeRef, ...]] = None

    @property
    def kind(self) -> str:
        if self.named_fields is not None:
            return "named"
        if self.tuple_fields is not None:
            return "tuple"
        return "unit"


@dataclass(frozen=True)
class EnumDef:
    name: str
    variants: Tuple[EnumVariant, ...]


@dataclass(frozen=True)
class AliasDef:
    name: str
    value: TypeRef


TypeDef = Union[StructDef, EnumDef, AliasDef]


# =============================================================================
# INSTRUCTIONS, ACCOUNT ROLES, EVENTS
# =============================================================================

@dataclass(frozen=True)
class AccountRole:
    """Declared requirement for one account passed to an instruction"""
    name: str
    is_signer: bool
    is_writable: bool
    optional: bool = False


@dataclass(frozen=True)
class AccountGroup:
    """Named group of roles; consumes no account of its own"""
    name: str
    accounts: Tuple["AccountItem", ...]


AccountItem = Union[AccountRole, AccountGroup]


@dataclass(frozen=True)
class InstructionDef:
    name: str
    args: Tuple[Field, ...]
    accounts: Tuple[AccountItem, ...]
    discriminator: Optional[bytes] = None


@dataclass(frozen=True)
class EventDef:
    name: str
    type_def: TypeDef
    discriminator: Optional[bytes] = None


# =============================================================================
# SCHEMA
# =============================================================================

@dataclass
class Schema:
    """
    In-memory interface description for one program

    Types, accounts, instructions and events are indexed by name; accounts,
    instructions and events are also indexed by discriminator.
    """
    name: str
    version: Optional[str]
    types: Dict[str, TypeDef]
    accounts: Dict[str, TypeDef]
    instructions: Dict[str, InstructionDef]
    events: Dict[str, EventDef]
    account_discriminators: Dict[str, bytes] = field(default_factory=dict)
    index: DiscriminatorIndex = field(default_factory=DiscriminatorIndex)

    @classmethod
    def build(cls, document: Any) -> "Schema":
        return build(document)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "Schema":
        return build(parse_document(text))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Schema":
        return build(read_document(path))

    def resolve(self, name: str) -> TypeDef:
        """
        Find a named type definition, searching types, then accounts, then events

        Raises:
            UnresolvedTypeError: If no definition carries the name
        """
        type_def = self.types.get(name)
        if type_def is not None:
            return type_def
        type_def = self.accounts.get(name)
        if type_def is not None and not _is_placeholder(type_def):
            return type_def
        event = self.events.get(name)
        if event is not None and not _is_placeholder(event.type_def):
            return event.type_def
        raise UnresolvedTypeError(name)

    def instruction(self, name: str) -> InstructionDef:
        try:
            return self.instructions[name]
        except KeyError:
            raise UnresolvedTypeError(name)

    def event(self, name: str) -> EventDef:
        try:
            return self.events[name]
        except KeyError:
            raise UnresolvedTypeError(name)

    def match_instruction(self, data: bytes) -> InstructionDef:
        """Match an instruction payload by its 8-byte prefix"""
        entry = self.index.instructions.lookup(data[:DISCRIMINATOR_SIZE])
        if entry is None:
            raise DiscriminatorMiss(bytes(data[:DISCRIMINATOR_SIZE]), "instruction")
        return entry

    def match_account(self, data: bytes) -> Tuple[str, TypeDef]:
        """Match account storage by its 8-byte prefix"""
        entry = self.index.accounts.lookup(data[:DISCRIMINATOR_SIZE])
        if entry is None:
            raise DiscriminatorMiss(bytes(data[:DISCRIMINATOR_SIZE]), "account data")
        return entry

    def match_event(self, data: bytes) -> EventDef:
        """Match an emitted event payload by its 8-byte prefix"""
        entry = self.index.events.lookup(data[:DISCRIMINATOR_SIZE])
        if entry is None:
            raise DiscriminatorMiss(bytes(data[:DISCRIMINATOR_SIZE]), "event")
        return entry

    def event_discriminator(self, name: str) -> bytes:
        event = self.event(name)
        for disc, entry in self.index.events.items():
            if entry is event:
                return disc
        raise UnresolvedTypeError(name)


# =============================================================================
# DOCUMENT PARSING
# =============================================================================

def parse_document(text: Union[str, bytes]) -> Any:
    """Parse interface document JSON without building it"""
    try:
        return json.loads(text)
    except ValueError as e:
        raise SchemaParseError(f"Interface document is not valid JSON: {e}")


def read_document(path: Union[str, Path]) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return parse_document(f.read())


def build(document: Any) -> Schema:
    """
    Build a Schema from a parsed interface document

    Accepts the legacy Anchor layout (isMut/isSigner, "publicKey", events with
    inline fields) and the newer one (metadata block, writable/signer,
    "pubkey", explicit discriminators, bodies living under "types").

    Raises:
        SchemaParseError: If the document is malformed
    """
    metrics = get_metrics()
    try:
        schema = _build(document)
    except SchemaParseError as e:
        metrics.increment_counter("schema_build_failures")
        logger.error("schema_build_failed", error=str(e))
        raise

    metrics.increment_counter("schemas_built")
    logger.debug(
        "schema_built",
        program=schema.name,
        types=len(schema.types),
        accounts=len(schema.accounts),
        instructions=len(schema.instructions),
        events=len(schema.events)
    )
    return schema


def _build(document: Any) -> Schema:
    if not isinstance(document, dict):
        raise SchemaParseError("Interface document must be a JSON object")

    metadata = document.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise SchemaParseError("metadata must be an object")
    name = document.get("name") or metadata.get("name")
    if not isinstance(name, str) or not name:
        raise SchemaParseError("Interface document has no program name")
    version = document.get("version") or metadata.get("version")

    types: Dict[str, TypeDef] = {}
    for i, raw in enumerate(_section(document, "types")):
        type_def = parse_type_def(raw, f"types[{i}]")
        types[type_def.name] = type_def

    accounts: Dict[str, TypeDef] = {}
    account_discriminators: Dict[str, bytes] = {}
    for i, raw in enumerate(_section(document, "accounts")):
        context = f"accounts[{i}]"
        if isinstance(raw, dict) and "type" not in raw:
            # Newer layout: the body lives under "types"
            account_name = _require_name(raw, context)
            type_def = AliasDef(account_name, DefinedType(account_name))
        else:
            type_def = parse_type_def(raw, context)
        accounts[type_def.name] = type_def
        explicit = _explicit_discriminator(raw, context)
        if explicit is not None:
            account_discriminators[type_def.name] = explicit

    instructions: Dict[str, InstructionDef] = {}
    for i, raw in enumerate(_section(document, "instructions")):
        ix = parse_instruction(raw, f"instructions[{i}]")
        instructions[ix.name] = ix

    events: Dict[str, EventDef] = {}
    for i, raw in enumerate(_section(document, "events")):
        event = parse_event(raw, f"events[{i}]")
        events[event.name] = event

    schema = Schema(
        name=name,
        version=version if isinstance(version, str) else None,
        types=types,
        accounts=accounts,
        instructions=instructions,
        events=events,
        account_discriminators=account_discriminators,
    )

    for ix in instructions.values():
        schema.index.add_instruction(ix.name, ix, ix.discriminator)
    for account_name, type_def in accounts.items():
        schema.index.add_account(
            account_name,
            (account_name, type_def),
            account_discriminators.get(account_name)
        )
    for event in events.values():
        schema.index.add_event(event.name, event, event.discriminator)

    return schema


def _is_placeholder(type_def: TypeDef) -> bool:
    """Account or event entry whose body is a same-named entry under types"""
    return (
        isinstance(type_def, AliasDef)
        and isinstance(type_def.value, DefinedType)
        and type_def.value.name == type_def.name
    )


def _section(document: Dict[str, Any], key: str) -> List[Any]:
    value = document.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise SchemaParseError(f"'{key}' must be a list")
    return value


def _require_name(raw: Any, context: str) -> str:
    if not isinstance(raw, dict):
        raise SchemaParseError(f"{context}: expected an object, got {type(raw).__name__}")
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise SchemaParseError(f"{context}: missing name")
    return name


def _explicit_discriminator(raw: Any, context: str) -> Optional[bytes]:
    if not isinstance(raw, dict) or "discriminator" not in raw:
        return None
    value = raw["discriminator"]
    if (
        not isinstance(value, list)
        or len(value) != DISCRIMINATOR_SIZE
        or not all(isinstance(b, int) and 0 <= b <= 255 for b in value)
    ):
        raise SchemaParseError(f"{context}: discriminator must be {DISCRIMINATOR_SIZE} bytes")
    return bytes(value)


def parse_type_ref(raw: Any, context: str = "type") -> TypeRef:
    """Parse one type reference from its document form"""
    if isinstance(raw, str):
        name = PRIMITIVE_ALIASES.get(raw, raw)
        if name in PRIMITIVE_SIZES or name in VARIABLE_PRIMITIVES:
            return PrimitiveType(name)
        raise SchemaParseError(f"{context}: unknown type '{raw}'")

    if not isinstance(raw, dict) or len(raw) != 1:
        raise SchemaParseError(f"{context}: malformed type reference {raw!r}")

    (kind, body), = raw.items()
    if kind == "vec":
        return VecType(parse_type_ref(body, f"{context}.vec"))
    if kind == "option":
        return OptionType(parse_type_ref(body, f"{context}.option"))
    if kind == "coption":
        return OptionType(parse_type_ref(body, f"{context}.coption"), wide_flag=True)
    if kind == "array":
        if not isinstance(body, list) or len(body) != 2:
            raise SchemaParseError(f"{context}: array must be [type, length]")
        inner, length = body
        if not isinstance(length, int) or isinstance(length, bool) or length < 0:
            raise SchemaParseError(f"{context}: array length must be a non-negative integer")
        return ArrayType(parse_type_ref(inner, f"{context}.array"), length)
    if kind == "defined":
        if isinstance(body, dict):
            if body.get("generics"):
                raise SchemaParseError(f"{context}: generic defined types are not supported")
            body = body.get("name")
        if not isinstance(body, str) or not body:
            raise SchemaParseError(f"{context}: defined type needs a name")
        return DefinedType(body)

    raise SchemaParseError(f"{context}: unsupported type kind '{kind}'")


def parse_fields(raw: Any, context: str) -> Tuple[Field, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise SchemaParseError(f"{context}: fields must be a list")
    fields = []
    for i, item in enumerate(raw):
        field_context = f"{context}[{i}]"
        field_name = _require_name(item, field_context)
        if "type" not in item:
            raise SchemaParseError(f"{field_context}: field '{field_name}' has no type")
        fields.append(Field(field_name, parse_type_ref(item["type"], f"{field_context}.type")))
    return tuple(fields)


def _is_named_field_list(raw: List[Any]) -> bool:
    return all(isinstance(item, dict) and "name" in item and "type" in item for item in raw)


def parse_type_def(raw: Any, context: str) -> TypeDef:
    """Parse a named struct, enum or alias definition"""
    name = _require_name(raw, context)
    body = raw.get("type")
    if not isinstance(body, dict):
        raise SchemaParseError(f"{context}: '{name}' has no type body")

    kind = body.get("kind")
    if kind == "struct":
        raw_fields = body.get("fields") or []
        if not isinstance(raw_fields, list):
            raise SchemaParseError(f"{context}: fields must be a list")
        if raw_fields and not _is_named_field_list(raw_fields):
            # Tuple struct: fields are bare type references
            fields = tuple(
                Field(str(i), parse_type_ref(t, f"{context}.fields[{i}]"))
                for i, t in enumerate(raw_fields)
            )
            return StructDef(name, fields, is_tuple=True)
        return StructDef(name, parse_fields(raw_fields, f"{context}.fields"))

    if kind == "enum":
        raw_variants = body.get("variants")
        if not isinstance(raw_variants, list):
            raise SchemaParseError(f"{context}: enum '{name}' needs a variants list")
        variants = []
        for i, raw_variant in enumerate(raw_variants):
            variant_context = f"{context}.variants[{i}]"
            variant_name = _require_name(raw_variant, variant_context)
            raw_fields = raw_variant.get("fields")
            if not raw_fields:
                variants.append(EnumVariant(variant_name))
            elif not isinstance(raw_fields, list):
                raise SchemaParseError(f"{variant_context}: fields must be a list")
            elif _is_named_field_list(raw_fields):
                variants.append(EnumVariant(
                    variant_name,
                    named_fields=parse_fields(raw_fields, f"{variant_context}.fields")
                ))
            else:
                variants.append(EnumVariant(
                    variant_name,
                    tuple_fields=tuple(
                        parse_type_ref(t, f"{variant_context}.fields[{j}]")
                        for j, t in enumerate(raw_fields)
                    )
                ))
        return EnumDef(name, tuple(variants))

    if kind == "alias" or kind == "type":
        if "value" not in body:
            raise SchemaParseError(f"{context}: alias '{name}' has no value")
        return AliasDef(name, parse_type_ref(body["value"], f"{context}.value"))

    raise SchemaParseError(f"{context}: unknown type kind '{kind}'")


def parse_account_items(raw: Any, context: str) -> Tuple[AccountItem, ...]:
    """Parse an instruction's (possibly nested) account role list"""
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise SchemaParseError(f"{context}: accounts must be a list")

    items: List[AccountItem] = []
    for i, item in enumerate(raw):
        item_context = f"{context}[{i}]"
        name = _require_name(item, item_context)
        if "accounts" in item:
            items.append(AccountGroup(name, parse_account_items(item["accounts"], f"{item_context}.accounts")))
            continue
        items.append(AccountRole(
            name=name,
            is_signer=bool(item.get("isSigner", item.get("signer", False))),
            is_writable=bool(item.get("isMut", item.get("writable", False))),
            optional=bool(item.get("isOptional", item.get("optional", False))),
        ))
    return tuple(items)


def parse_instruction(raw: Any, context: str) -> InstructionDef:
    name = _require_name(raw, context)
    return InstructionDef(
        name=name,
        args=parse_fields(raw.get("args"), f"{context}.args"),
        accounts=parse_account_items(raw.get("accounts"), f"{context}.accounts"),
        discriminator=_explicit_discriminator(raw, context),
    )


def parse_event(raw: Any, context: str) -> EventDef:
    name = _require_name(raw, context)
    if "fields" in raw:
        type_def: TypeDef = StructDef(name, parse_fields(raw.get("fields"), f"{context}.fields"))
    else:
        # Newer layout: event body is a same-named entry under "types"
        type_def = AliasDef(name, DefinedType(name))
    return EventDef(name, type_def, _explicit_discriminator(raw, context))
