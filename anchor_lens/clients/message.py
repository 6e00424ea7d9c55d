"""
Message decompilation

Turns a compiled legacy or v0 message back into solders Instructions with
full AccountMeta flags, which is what the call decomposer consumes.
"""

from typing import Any, List, Optional, Sequence, Tuple, Union

from solders.instruction import AccountMeta, CompiledInstruction, Instruction
from solders.message import Message, MessageHeader, MessageV0
from solders.pubkey import Pubkey

from anchor_lens.core.errors import IndexOutOfBounds
from anchor_lens.core.logger import get_logger


logger = get_logger(__name__)


def static_account_flags(header: MessageHeader, num_static: int, index: int) -> Tuple[bool, bool]:
    """
    Signer and writable flags of a static account key, from the message header

    Layout of the static keys: writable signers, readonly signers, writable
    non-signers, readonly non-signers.

    Returns:
        (is_signer, is_writable)
    """
    num_signers = header.num_required_signatures
    if index < num_signers:
        return True, index < num_signers - header.num_readonly_signed_accounts
    return False, index < num_static - header.num_readonly_unsigned_accounts


def resolve_account_metas(
    message: Union[Message, MessageV0],
    loaded_addresses: Optional[Any] = None
) -> List[AccountMeta]:
    """
    Every account the message can reference, in index order

    Args:
        message: Legacy or v0 message
        loaded_addresses: For v0 messages, addresses loaded from lookup
            tables; any object with `writable` and `readonly` pubkey lists

    Returns:
        Static keys followed by loaded writable then loaded readonly keys
    """
    keys = list(message.account_keys)
    metas = []
    for index, key in enumerate(keys):
        is_signer, is_writable = static_account_flags(message.header, len(keys), index)
        metas.append(AccountMeta(key, is_signer, is_writable))

    if loaded_addresses is not None:
        metas.extend(AccountMeta(key, False, True) for key in loaded_addresses.writable)
        metas.extend(AccountMeta(key, False, False) for key in loaded_addresses.readonly)
    elif isinstance(message, MessageV0) and message.address_table_lookups:
        logger.warning(
            "lookup_addresses_missing",
            lookups=len(message.address_table_lookups)
        )

    return metas


def _meta_at(metas: Sequence[AccountMeta], index: int) -> AccountMeta:
    if index >= len(metas):
        raise IndexOutOfBounds(
            f"Account index {index} out of range for {len(metas)} message accounts"
        )
    return metas[index]


def decompile_compiled(compiled: CompiledInstruction, account_metas: Sequence[AccountMeta]) -> Instruction:
    """Rebuild one compiled instruction against the resolved account list"""
    program_id: Pubkey = _meta_at(account_metas, compiled.program_id_index).pubkey
    accounts = [_meta_at(account_metas, i) for i in compiled.accounts]
    return Instruction(program_id, bytes(compiled.data), accounts)


def decompile_message(
    message: Union[Message, MessageV0],
    loaded_addresses: Optional[Any] = None
) -> List[Instruction]:
    """
    Decompile every top-level instruction of a message

    Raises:
        IndexOutOfBounds: If an instruction references a missing account
    """
    metas = resolve_account_metas(message, loaded_addresses)
    return [decompile_compiled(ix, metas) for ix in message.instructions]
