"""
Unit tests for discriminator derivation and lookup (core/discriminator.py)
"""

import hashlib
import pytest

from anchor_lens.core.discriminator import (
    DISCRIMINATOR_SIZE,
    DiscriminatorIndex,
    DiscriminatorTable,
    account_discriminator,
    discriminator,
    event_discriminator,
    instruction_discriminator,
    split_discriminator,
    state_instruction_discriminator,
    to_snake_case,
)


# =============================================================================
# DERIVATION
# =============================================================================

def test_known_instruction_discriminators():
    """Well-known Anchor instruction discriminators"""
    assert instruction_discriminator("initialize") == bytes([175, 175, 109, 31, 13, 152, 155, 237])
    assert instruction_discriminator("buy") == bytes.fromhex("66063d1201daebea")
    assert instruction_discriminator("sell") == bytes.fromhex("33e685a4017f83ad")


def test_discriminator_is_deterministic():
    """Identical inputs always give identical 8-byte outputs"""
    first = discriminator("account", "Foo")
    second = discriminator("account", "Foo")

    assert first == second
    assert len(first) == DISCRIMINATOR_SIZE
    assert first == hashlib.sha256(b"account:Foo").digest()[:8]


def test_kinds_produce_distinct_values():
    assert len({
        account_discriminator("Deposit"),
        instruction_discriminator("Deposit"),
        state_instruction_discriminator("Deposit"),
        event_discriminator("Deposit"),
    }) == 4


def test_instruction_names_are_snake_cased():
    """global:<name> hashes the snake_case name"""
    assert instruction_discriminator("initializeMint") == \
        hashlib.sha256(b"global:initialize_mint").digest()[:8]


def test_account_names_are_hashed_verbatim():
    assert account_discriminator("BondingCurve") == \
        hashlib.sha256(b"account:BondingCurve").digest()[:8]


def test_state_instructions_keep_name():
    assert state_instruction_discriminator("setMode") == \
        hashlib.sha256(b"state:setMode").digest()[:8]


@pytest.mark.parametrize("name,expected", [
    ("initialize", "initialize"),
    ("initializeMint", "initialize_mint"),
    ("setMode", "set_mode"),
    ("HTTPServer", "http_server"),
    ("deposit_v2", "deposit_v2"),
    ("getV2Data", "get_v2_data"),
    ("close-account", "close_account"),
])
def test_to_snake_case(name, expected):
    assert to_snake_case(name) == expected


def test_split_discriminator():
    prefix, rest = split_discriminator(b"\x01\x02\x03\x04\x05\x06\x07\x08\x09\x0a")
    assert prefix == bytes(range(1, 9))
    assert rest == b"\x09\x0a"


def test_split_short_payload_pads():
    prefix, rest = split_discriminator(b"\x01\x02")
    assert prefix == b"\x01\x02" + b"\x00" * 6
    assert rest == b""


# =============================================================================
# TABLES
# =============================================================================

class TestDiscriminatorTable:
    """Exact-match lookup with first-wins collisions"""

    def test_register_and_lookup(self):
        table = DiscriminatorTable("test")
        disc = account_discriminator("Foo")

        assert table.register(disc, "foo", "account:Foo") is True
        assert table.lookup(disc) == "foo"
        assert disc in table
        assert len(table) == 1

    def test_lookup_uses_only_prefix(self):
        table = DiscriminatorTable("test")
        disc = account_discriminator("Foo")
        table.register(disc, "foo", "account:Foo")

        assert table.lookup(disc + b"trailing payload") == "foo"

    def test_short_prefix_is_zero_padded(self):
        table = DiscriminatorTable("test")
        table.register(b"\x07" + b"\x00" * 7, "seven", "short")

        assert table.lookup(b"\x07") == "seven"
        assert table.lookup(b"") is None

    def test_no_partial_matching(self):
        table = DiscriminatorTable("test")
        disc = account_discriminator("Foo")
        table.register(disc, "foo", "account:Foo")

        assert table.lookup(disc[:7]) is None

    def test_first_registration_wins(self):
        table = DiscriminatorTable("test")
        disc = account_discriminator("Foo")

        assert table.register(disc, "first", "a") is True
        assert table.register(disc, "second", "b") is False
        assert table.lookup(disc) == "first"

    def test_rejects_wrong_length(self):
        table = DiscriminatorTable("test")
        with pytest.raises(ValueError):
            table.register(b"\x01\x02", "bad", "bad")


class TestDiscriminatorIndex:
    """Per-schema index over instructions, accounts and events"""

    def test_instruction_registered_under_both_keys(self):
        index = DiscriminatorIndex()
        index.add_instruction("setMode", "ix")

        assert index.instructions.lookup(instruction_discriminator("setMode")) == "ix"
        assert index.instructions.lookup(state_instruction_discriminator("setMode")) == "ix"
        assert len(index.instructions) == 2

    def test_explicit_discriminator_replaces_derived(self):
        index = DiscriminatorIndex()
        explicit = bytes(range(8))
        index.add_instruction("increment", "ix", explicit)

        assert index.instructions.lookup(explicit) == "ix"
        assert index.instructions.lookup(instruction_discriminator("increment")) is None

    def test_accounts_and_events(self):
        index = DiscriminatorIndex()
        index.add_account("Foo", "account")
        index.add_event("Deposited", "event")

        assert index.accounts.lookup(account_discriminator("Foo")) == "account"
        assert index.events.lookup(event_discriminator("Deposited")) == "event"
