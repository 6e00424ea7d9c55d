"""
Decoders for well-known native programs

Compute budget, system, SPL token and associated token account instructions
carry no interface document, so their layouts are fixed here. Each decoder
returns None when a payload does not parse, letting the caller fall back to
the schema path.
"""

import struct
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from solders.compute_budget import ID as COMPUTE_BUDGET_PROGRAM_ID
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from anchor_lens.core.decoder import Cursor
from anchor_lens.core.errors import DecodeError, DecodeInvalid
from anchor_lens.core.logger import get_logger


logger = get_logger(__name__)


# Program IDs
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# Canonical names reported for built-in calls
COMPUTE_BUDGET_PROGRAM_NAME = "compute_budget_program"
SYSTEM_PROGRAM_NAME = "system_program"
SPL_TOKEN_PROGRAM_NAME = "spl_token_program"
ASSOCIATED_TOKEN_PROGRAM_NAME = "spl_associated_token_program"

# spl-token AuthorityType by index
AUTHORITY_TYPES = ("MintTokens", "FreezeAccount", "AccountOwner", "CloseAccount")

Reader = Callable[[Cursor], Any]


# =============================================================================
# FIELD READERS
# =============================================================================

def _scalar(fmt: str) -> Reader:
    size = struct.calcsize(fmt)

    def read(cursor: Cursor) -> int:
        return struct.unpack(fmt, cursor.read(size))[0]
    return read


u8 = _scalar("<B")
u32 = _scalar("<I")
u64 = _scalar("<Q")


def pubkey(cursor: Cursor) -> str:
    return str(Pubkey.from_bytes(cursor.read(32)))


def bincode_string(cursor: Cursor) -> str:
    """u64 byte length, then UTF-8"""
    length = u64(cursor)
    try:
        return cursor.read(length).decode("utf-8")
    except UnicodeDecodeError:
        raise DecodeInvalid("Invalid UTF-8 seed")


def coption_pubkey(cursor: Cursor) -> Optional[str]:
    """Single tag byte, then a pubkey when the tag is 1"""
    tag = u8(cursor)
    if tag == 0:
        return None
    if tag != 1:
        raise DecodeInvalid(f"Invalid COption tag {tag}")
    return pubkey(cursor)


def authority_type(cursor: Cursor) -> str:
    index = u8(cursor)
    if index >= len(AUTHORITY_TYPES):
        raise DecodeInvalid(f"Unknown authority type {index}")
    return AUTHORITY_TYPES[index]


def rest_utf8(cursor: Cursor) -> str:
    try:
        return cursor.read(cursor.remaining).decode("utf-8")
    except UnicodeDecodeError:
        raise DecodeInvalid("Invalid UTF-8 amount")


# =============================================================================
# LAYOUTS
# =============================================================================

@dataclass(frozen=True)
class InstructionLayout:
    """Fixed argument layout and account names for one built-in instruction"""
    name: str
    fields: Tuple[Tuple[str, Reader], ...] = ()
    accounts: Tuple[str, ...] = ()
    # Name prefix for accounts past the named ones
    extra_accounts: str = "account"


@dataclass(frozen=True)
class NamedAccount:
    name: str
    pubkey: str
    is_signer: bool
    is_writable: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pubkey": self.pubkey,
            "is_signer": self.is_signer,
            "is_writable": self.is_writable,
        }


@dataclass(frozen=True)
class BuiltinCall:
    program_name: str
    name: str
    data: Dict[str, Any]
    accounts: Tuple[NamedAccount, ...]


COMPUTE_BUDGET_LAYOUTS = {
    0: InstructionLayout("request_units_deprecated", (("units", u32), ("additional_fee", u32))),
    1: InstructionLayout("request_heap_frame", (("bytes", u32),)),
    2: InstructionLayout("set_compute_unit_limit", (("units", u32),)),
    3: InstructionLayout("set_compute_unit_price", (("micro_lamports", u64),)),
    4: InstructionLayout("set_loaded_accounts_data_size_limit", (("bytes", u32),)),
}

SYSTEM_LAYOUTS = {
    0: InstructionLayout(
        "create_account",
        (("lamports", u64), ("space", u64), ("owner", pubkey)),
        ("funding_account", "new_account"),
    ),
    1: InstructionLayout("assign", (("owner", pubkey),), ("account",)),
    2: InstructionLayout("transfer", (("lamports", u64),), ("from", "to")),
    3: InstructionLayout(
        "create_account_with_seed",
        (("base", pubkey), ("seed", bincode_string), ("lamports", u64),
         ("space", u64), ("owner", pubkey)),
        ("funding_account", "new_account", "base_account"),
    ),
    4: InstructionLayout(
        "advance_nonce_account",
        (),
        ("nonce_account", "recent_blockhashes_sysvar", "nonce_authority"),
    ),
    5: InstructionLayout(
        "withdraw_nonce_account",
        (("lamports", u64),),
        ("nonce_account", "recipient", "recent_blockhashes_sysvar", "rent_sysvar",
         "nonce_authority"),
    ),
    6: InstructionLayout(
        "initialize_nonce_account",
        (("authority", pubkey),),
        ("nonce_account", "recent_blockhashes_sysvar", "rent_sysvar"),
    ),
    7: InstructionLayout(
        "authorize_nonce_account",
        (("authority", pubkey),),
        ("nonce_account", "nonce_authority"),
    ),
    8: InstructionLayout("allocate", (("space", u64),), ("account",)),
    9: InstructionLayout(
        "allocate_with_seed",
        (("base", pubkey), ("seed", bincode_string), ("space", u64), ("owner", pubkey)),
        ("account", "base_account"),
    ),
    10: InstructionLayout(
        "assign_with_seed",
        (("base", pubkey), ("seed", bincode_string), ("owner", pubkey)),
        ("account", "base_account"),
    ),
    11: InstructionLayout(
        "transfer_with_seed",
        (("lamports", u64), ("from_seed", bincode_string), ("from_owner", pubkey)),
        ("from", "base_account", "to"),
    ),
    12: InstructionLayout("upgrade_nonce_account", (), ("nonce_account",)),
}

_AMOUNT = (("amount", u64),)
_AMOUNT_DECIMALS = (("amount", u64), ("decimals", u8))
_MINT_INIT = (("decimals", u8), ("mint_authority", pubkey), ("freeze_authority", coption_pubkey))

SPL_TOKEN_LAYOUTS = {
    0: InstructionLayout("initialize_mint", _MINT_INIT, ("mint", "rent_sysvar")),
    1: InstructionLayout("initialize_account", (), ("account", "mint", "owner", "rent_sysvar")),
    2: InstructionLayout("initialize_multisig", (("m", u8),), ("multisig", "rent_sysvar"), "signer"),
    3: InstructionLayout("transfer", _AMOUNT, ("source", "destination", "authority"), "signer"),
    4: InstructionLayout("approve", _AMOUNT, ("source", "delegate", "owner"), "signer"),
    5: InstructionLayout("revoke", (), ("source", "owner"), "signer"),
    6: InstructionLayout(
        "set_authority",
        (("authority_type", authority_type), ("new_authority", coption_pubkey)),
        ("account", "current_authority"),
        "signer",
    ),
    7: InstructionLayout("mint_to", _AMOUNT, ("mint", "account", "mint_authority"), "signer"),
    8: InstructionLayout("burn", _AMOUNT, ("account", "mint", "authority"), "signer"),
    9: InstructionLayout("close_account", (), ("account", "destination", "owner"), "signer"),
    10: InstructionLayout("freeze_account", (), ("account", "mint", "freeze_authority"), "signer"),
    11: InstructionLayout("thaw_account", (), ("account", "mint", "freeze_authority"), "signer"),
    12: InstructionLayout(
        "transfer_checked", _AMOUNT_DECIMALS,
        ("source", "mint", "destination", "authority"), "signer",
    ),
    13: InstructionLayout(
        "approve_checked", _AMOUNT_DECIMALS,
        ("source", "mint", "delegate", "owner"), "signer",
    ),
    14: InstructionLayout(
        "mint_to_checked", _AMOUNT_DECIMALS, ("mint", "account", "mint_authority"), "signer",
    ),
    15: InstructionLayout(
        "burn_checked", _AMOUNT_DECIMALS, ("account", "mint", "authority"), "signer",
    ),
    16: InstructionLayout(
        "initialize_account2", (("owner", pubkey),), ("account", "mint", "rent_sysvar"),
    ),
    17: InstructionLayout("sync_native", (), ("account",)),
    18: InstructionLayout("initialize_account3", (("owner", pubkey),), ("account", "mint")),
    19: InstructionLayout("initialize_multisig2", (("m", u8),), ("multisig",), "signer"),
    20: InstructionLayout("initialize_mint2", _MINT_INIT, ("mint",)),
    21: InstructionLayout("get_account_data_size", (), ("mint",)),
    22: InstructionLayout("initialize_immutable_owner", (), ("account",)),
    23: InstructionLayout("amount_to_ui_amount", _AMOUNT, ("mint",)),
    24: InstructionLayout("ui_amount_to_amount", (("ui_amount", rest_utf8),), ("mint",)),
}

_ATA_CREATE_ACCOUNTS = (
    "funding_account", "associated_account", "wallet", "mint", "system_program",
    "token_program",
)

ASSOCIATED_TOKEN_LAYOUTS = {
    0: InstructionLayout("create", (), _ATA_CREATE_ACCOUNTS),
    1: InstructionLayout("create_idempotent", (), _ATA_CREATE_ACCOUNTS),
    2: InstructionLayout(
        "recover_nested",
        (),
        ("nested_account", "nested_mint", "destination", "owner_associated_account",
         "owner_mint", "wallet", "token_program"),
    ),
}


# =============================================================================
# DECODERS
# =============================================================================

def name_accounts(layout: InstructionLayout, accounts: Sequence[Any]) -> Tuple[NamedAccount, ...]:
    """Pair actual account metas with the layout's account names"""
    named = []
    for i, meta in enumerate(accounts):
        if i < len(layout.accounts):
            name = layout.accounts[i]
        else:
            name = f"{layout.extra_accounts}_{i - len(layout.accounts)}"
        named.append(NamedAccount(name, str(meta.pubkey), bool(meta.is_signer), bool(meta.is_writable)))
    return tuple(named)


class BuiltinDecoder:
    """
    Tag-dispatched decoder for one native program

    Args:
        program_id: Program this decoder handles
        program_name: Canonical name reported on decoded calls
        tag_format: struct format of the leading instruction tag
        layouts: Tag -> layout
        empty_layout: Layout used when the payload is empty, if any
    """

    def __init__(
        self,
        program_id: Pubkey,
        program_name: str,
        tag_format: str,
        layouts: Dict[int, InstructionLayout],
        empty_layout: Optional[InstructionLayout] = None
    ):
        self.program_id = program_id
        self.program_name = program_name
        self.tag_format = tag_format
        self.layouts = layouts
        self.empty_layout = empty_layout

    def decode(self, data: bytes, accounts: Sequence[Any] = ()) -> Optional[BuiltinCall]:
        cursor = Cursor(data)
        try:
            if not data and self.empty_layout is not None:
                layout = self.empty_layout
            else:
                tag = cursor.unpack(self.tag_format)
                layout = self.layouts.get(tag)
                if layout is None:
                    logger.debug("builtin_unknown_tag", program=self.program_name, tag=tag)
                    return None
            values = {name: read(cursor) for name, read in layout.fields}
        except DecodeError as e:
            logger.debug("builtin_payload_unparsed", program=self.program_name, error=str(e))
            return None

        return BuiltinCall(self.program_name, layout.name, values, name_accounts(layout, accounts))


# Fixed priority order
BUILTIN_DECODERS: Tuple[BuiltinDecoder, ...] = (
    BuiltinDecoder(COMPUTE_BUDGET_PROGRAM_ID, COMPUTE_BUDGET_PROGRAM_NAME, "<B", COMPUTE_BUDGET_LAYOUTS),
    BuiltinDecoder(SYSTEM_PROGRAM_ID, SYSTEM_PROGRAM_NAME, "<I", SYSTEM_LAYOUTS),
    BuiltinDecoder(TOKEN_PROGRAM_ID, SPL_TOKEN_PROGRAM_NAME, "<B", SPL_TOKEN_LAYOUTS),
    BuiltinDecoder(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        ASSOCIATED_TOKEN_PROGRAM_NAME,
        "<B",
        ASSOCIATED_TOKEN_LAYOUTS,
        empty_layout=ASSOCIATED_TOKEN_LAYOUTS[0],
    ),
)


def decode_builtin(program_id: Pubkey, data: bytes, accounts: Sequence[Any] = ()) -> Optional[BuiltinCall]:
    """
    Decode a call to a well-known program

    Returns:
        BuiltinCall, or None if the program is not built in or the payload
        does not parse
    """
    for decoder in BUILTIN_DECODERS:
        if decoder.program_id == program_id:
            return decoder.decode(data, accounts)
    return None


def is_builtin(program_id: Pubkey) -> bool:
    return builtin_program_name(program_id) is not None


def builtin_program_name(program_id: Pubkey) -> Optional[str]:
    """Canonical name of a built-in program, None for any other program"""
    for decoder in BUILTIN_DECODERS:
        if decoder.program_id == program_id:
            return decoder.program_name
    return None
