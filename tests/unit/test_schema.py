"""
Unit tests for the schema model (core/schema.py)

Tests:
- Legacy and newer document layouts
- Type reference parsing
- Lazy named-type resolution
- Malformed documents
"""

import json
import pytest

from anchor_lens.core.discriminator import (
    account_discriminator,
    event_discriminator,
    instruction_discriminator,
    state_instruction_discriminator,
)
from anchor_lens.core.errors import DiscriminatorMiss, SchemaParseError, UnresolvedTypeError
from anchor_lens.core.schema import (
    AccountGroup,
    AccountRole,
    AliasDef,
    ArrayType,
    DefinedType,
    EnumDef,
    OptionType,
    PrimitiveType,
    Schema,
    StructDef,
    VecType,
    build,
    parse_type_ref,
)


# =============================================================================
# TYPE REFERENCES
# =============================================================================

@pytest.mark.parametrize("raw,expected", [
    ("u64", PrimitiveType("u64")),
    ("publicKey", PrimitiveType("publicKey")),
    ("pubkey", PrimitiveType("publicKey")),
    ("string", PrimitiveType("string")),
    ({"vec": "u8"}, VecType(PrimitiveType("u8"))),
    ({"option": "bool"}, OptionType(PrimitiveType("bool"))),
    ({"coption": "pubkey"}, OptionType(PrimitiveType("publicKey"), wide_flag=True)),
    ({"array": ["u8", 32]}, ArrayType(PrimitiveType("u8"), 32)),
    ({"defined": "Mode"}, DefinedType("Mode")),
    ({"defined": {"name": "Mode"}}, DefinedType("Mode")),
    ({"vec": {"option": {"defined": "Mode"}}}, VecType(OptionType(DefinedType("Mode")))),
])
def test_parse_type_ref(raw, expected):
    assert parse_type_ref(raw) == expected


@pytest.mark.parametrize("raw", [
    "u512",
    {"array": ["u8"]},
    {"array": ["u8", -1]},
    {"array": ["u8", "N"]},
    {"defined": ""},
    {"vec": "u8", "option": "u8"},
    {"hashMap": ["u8", "u8"]},
    42,
])
def test_parse_type_ref_rejects_malformed(raw):
    with pytest.raises(SchemaParseError):
        parse_type_ref(raw)


def test_generic_defined_types_rejected():
    with pytest.raises(SchemaParseError, match="generic"):
        parse_type_ref({"defined": {"name": "Wrapper", "generics": [{"kind": "type", "type": "u8"}]}})


# =============================================================================
# LEGACY LAYOUT
# =============================================================================

class TestLegacyDocument:
    """Documents with isMut/isSigner roles and inline event fields"""

    def test_builds_all_sections(self, sample_schema):
        assert sample_schema.name == "lens_demo"
        assert sample_schema.version == "0.1.0"
        assert set(sample_schema.instructions) == {"initialize", "setMode"}
        assert set(sample_schema.accounts) == {"Foo", "State"}
        assert set(sample_schema.types) == {"Mode"}
        assert set(sample_schema.events) == {"Deposited"}

    def test_instruction_args_in_order(self, sample_schema):
        ix = sample_schema.instruction("initialize")

        assert [f.name for f in ix.args] == ["amount", "label"]
        assert ix.args[0].type == PrimitiveType("u64")

    def test_account_roles(self, sample_schema):
        roles = sample_schema.instruction("initialize").accounts

        assert roles[0] == AccountRole("state", is_signer=False, is_writable=True)
        assert roles[1] == AccountRole("authority", is_signer=True, is_writable=False)

    def test_nested_account_groups(self, sample_schema):
        roles = sample_schema.instruction("setMode").accounts

        assert isinstance(roles[0], AccountGroup)
        assert roles[0].name == "admin"
        assert [r.name for r in roles[0].accounts] == ["state", "authority"]
        assert isinstance(roles[1], AccountRole)

    def test_enum_variant_kinds(self, sample_schema):
        mode = sample_schema.resolve("Mode")

        assert isinstance(mode, EnumDef)
        assert [v.kind for v in mode.variants] == ["named", "tuple", "unit"]

    def test_instruction_indexed_under_global_and_state(self, sample_schema):
        ix = sample_schema.instruction("setMode")

        assert sample_schema.match_instruction(instruction_discriminator("setMode")) is ix
        assert sample_schema.match_instruction(state_instruction_discriminator("setMode")) is ix

    def test_account_and_event_indexed(self, sample_schema):
        name, type_def = sample_schema.match_account(account_discriminator("State"))
        assert name == "State"
        assert isinstance(type_def, StructDef)

        event = sample_schema.match_event(event_discriminator("Deposited"))
        assert event.name == "Deposited"

    def test_discriminator_miss(self, sample_schema):
        with pytest.raises(DiscriminatorMiss, match="instruction"):
            sample_schema.match_instruction(b"\xff" * 8)


# =============================================================================
# NEWER LAYOUT
# =============================================================================

class TestNewFormatDocument:
    """Documents with a metadata block and explicit discriminators"""

    def test_metadata_name_and_version(self, new_format_schema):
        assert new_format_schema.name == "counter"
        assert new_format_schema.version == "0.2.0"

    def test_writable_signer_flags(self, new_format_schema):
        roles = new_format_schema.instruction("increment").accounts

        assert roles[0] == AccountRole("counter", is_signer=False, is_writable=True)
        assert roles[1] == AccountRole("authority", is_signer=True, is_writable=False)

    def test_explicit_instruction_discriminator(self, new_format_schema):
        ix = new_format_schema.match_instruction(bytes([11, 18, 104, 9, 104, 174, 59, 33]))
        assert ix.name == "increment"

    def test_account_body_lives_under_types(self, new_format_schema):
        name, type_def = new_format_schema.match_account(
            bytes([255, 176, 4, 245, 188, 253, 124, 25])
        )
        assert name == "Counter"
        assert isinstance(type_def, AliasDef)

        resolved = new_format_schema.resolve("Counter")
        assert isinstance(resolved, StructDef)
        assert [f.name for f in resolved.fields] == ["count", "authority"]

    def test_event_body_lives_under_types(self, new_format_schema):
        event = new_format_schema.match_event(bytes([1, 2, 3, 4, 5, 6, 7, 8]))
        assert event.name == "Incremented"


# =============================================================================
# RESOLUTION
# =============================================================================

def test_forward_references_allowed(sample_idl):
    """References to later or missing types do not fail the build"""
    sample_idl["types"].insert(0, {
        "name": "Wrapper",
        "type": {"kind": "struct", "fields": [{"name": "inner", "type": {"defined": "Missing"}}]}
    })
    schema = build(sample_idl)

    assert "Wrapper" in schema.types
    with pytest.raises(UnresolvedTypeError, match="Missing"):
        schema.resolve("Missing")


def test_resolve_falls_back_to_accounts(sample_schema):
    assert isinstance(sample_schema.resolve("Foo"), StructDef)


def test_placeholder_without_type_is_unresolved(new_format_idl):
    del new_format_idl["types"][0]
    schema = build(new_format_idl)

    with pytest.raises(UnresolvedTypeError):
        schema.resolve("Counter")


def test_alias_and_tuple_struct(sample_idl):
    sample_idl["types"].extend([
        {"name": "Amount", "type": {"kind": "alias", "value": "u64"}},
        {"name": "Pair", "type": {"kind": "struct", "fields": ["u8", "u16"]}},
    ])
    schema = build(sample_idl)

    assert schema.resolve("Amount") == AliasDef("Amount", PrimitiveType("u64"))
    pair = schema.resolve("Pair")
    assert pair.is_tuple
    assert [f.type for f in pair.fields] == [PrimitiveType("u8"), PrimitiveType("u16")]


# =============================================================================
# MALFORMED DOCUMENTS
# =============================================================================

@pytest.mark.parametrize("document", [
    [],
    {"instructions": []},
    {"name": "x", "instructions": {}},
    {"name": "x", "instructions": [{"args": []}]},
    {"name": "x", "types": [{"name": "T"}]},
    {"name": "x", "types": [{"name": "T", "type": {"kind": "union"}}]},
    {"name": "x", "types": [{"name": "E", "type": {"kind": "enum"}}]},
    {"name": "x", "instructions": [{"name": "i", "args": [{"name": "a"}]}]},
    {"name": "x", "instructions": [{"name": "i", "discriminator": [1, 2, 3]}]},
])
def test_malformed_documents(document, metrics_collector):
    with pytest.raises(SchemaParseError):
        build(document)

    assert metrics_collector.get_counter("schema_build_failures") == 1


def test_build_counts_schemas(sample_idl, metrics_collector):
    build(sample_idl)
    assert metrics_collector.get_counter("schemas_built") == 1


def test_from_json_and_file(sample_idl, idl_file):
    assert Schema.from_json(json.dumps(sample_idl)).name == "lens_demo"
    assert Schema.from_file(idl_file).name == "lens_demo"


def test_from_json_invalid():
    with pytest.raises(SchemaParseError, match="not valid JSON"):
        Schema.from_json("{not json")
