"""
Unit tests for on-chain interface document accounts (clients/idl_account.py)
"""

import json
import struct
import zlib
import pytest

from solders.pubkey import Pubkey

from anchor_lens.clients.idl_account import (
    DATA_OFFSET,
    IDL_SEED,
    idl_address,
    parse_idl_account,
    schema_from_idl_account,
)
from anchor_lens.core.discriminator import account_discriminator
from anchor_lens.core.errors import SchemaParseError


def idl_account_data(document, authority, padding=16):
    compressed = zlib.compress(json.dumps(document).encode("utf-8"))
    return (
        account_discriminator("IdlAccount")
        + bytes(authority)
        + struct.pack("<I", len(compressed))
        + compressed
        + b"\x00" * padding
    )


def test_schema_from_idl_account(sample_idl):
    authority = Pubkey.new_unique()
    schema = schema_from_idl_account(idl_account_data(sample_idl, authority))

    assert schema.name == "lens_demo"
    assert "initialize" in schema.instructions


def test_parse_idl_account_authority(sample_idl):
    authority = Pubkey.new_unique()
    account = parse_idl_account(idl_account_data(sample_idl, authority))

    assert account.authority == authority
    assert json.loads(account.document) == sample_idl


def test_too_short():
    with pytest.raises(SchemaParseError, match="too short"):
        parse_idl_account(b"\x00" * (DATA_OFFSET - 1))


def test_declared_length_exceeds_data(sample_idl):
    data = idl_account_data(sample_idl, Pubkey.new_unique(), padding=0)[:-5]

    with pytest.raises(SchemaParseError, match="declares"):
        parse_idl_account(data)


def test_not_zlib():
    data = bytes(40) + struct.pack("<I", 4) + b"junk"

    with pytest.raises(SchemaParseError, match="zlib"):
        parse_idl_account(data)


def test_idl_address_derivation(program_id):
    base, _ = Pubkey.find_program_address([], program_id)
    assert idl_address(program_id) == Pubkey.create_with_seed(base, IDL_SEED, program_id)
