"""
On-chain interface document account

Anchor programs can publish their IDL in an account derived from the program
id. Layout: 8-byte discriminator, 32-byte authority, u32 length, then that
many bytes of zlib-compressed JSON.
"""

import struct
import zlib
from dataclasses import dataclass

from solders.pubkey import Pubkey

from anchor_lens.core.errors import SchemaParseError
from anchor_lens.core.logger import get_logger
from anchor_lens.core.schema import Schema


logger = get_logger(__name__)


IDL_SEED = "anchor:idl"
AUTHORITY_OFFSET = 8
LENGTH_OFFSET = 40
DATA_OFFSET = 44


@dataclass(frozen=True)
class IdlAccount:
    authority: Pubkey
    document: bytes


def idl_address(program_id: Pubkey) -> Pubkey:
    """Address of the account holding a program's published IDL"""
    base, _ = Pubkey.find_program_address([], program_id)
    return Pubkey.create_with_seed(base, IDL_SEED, program_id)


def parse_idl_account(data: bytes) -> IdlAccount:
    """
    Split an IDL account into its authority and decompressed JSON

    Raises:
        SchemaParseError: If the account is truncated or not valid zlib
    """
    if len(data) < DATA_OFFSET:
        raise SchemaParseError(f"IDL account too short: {len(data)} bytes")

    authority = Pubkey.from_bytes(bytes(data[AUTHORITY_OFFSET:LENGTH_OFFSET]))
    (length,) = struct.unpack_from("<I", data, LENGTH_OFFSET)
    compressed = bytes(data[DATA_OFFSET:DATA_OFFSET + length])
    if len(compressed) < length:
        raise SchemaParseError(
            f"IDL account declares {length} bytes of data, {len(compressed)} present"
        )

    try:
        document = zlib.decompress(compressed)
    except zlib.error as e:
        raise SchemaParseError(f"IDL account data is not zlib-compressed: {e}")

    logger.debug("idl_account_parsed", authority=str(authority), size=len(document))
    return IdlAccount(authority, document)


def schema_from_idl_account(data: bytes) -> Schema:
    """Build a Schema straight from raw IDL account data"""
    return Schema.from_json(parse_idl_account(data).document)
