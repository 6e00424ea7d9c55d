"""
Account storage decoding

Account data is an 8-byte discriminator followed by the Borsh-encoded body
of the account type it names.
"""

from dataclasses import dataclass
from typing import Any, Dict

from anchor_lens.core.decoder import Cursor, Decoder, EnumStrategy
from anchor_lens.core.discriminator import DISCRIMINATOR_SIZE, split_discriminator
from anchor_lens.core.errors import CallError
from anchor_lens.core.logger import get_logger
from anchor_lens.core.metrics import get_metrics
from anchor_lens.core.schema import Schema


logger = get_logger(__name__)


@dataclass(frozen=True)
class DecodedAccount:
    program_name: str
    account_type: str
    data: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program_name": self.program_name,
            "account_type": self.account_type,
            "data": self.data,
        }


def decode_account(
    schema: Schema,
    data: bytes,
    enum_strategy: EnumStrategy = EnumStrategy.FIRST_MATCH,
    max_depth: int = 64
) -> DecodedAccount:
    """
    Decode account storage against a program schema

    Args:
        schema: Schema of the owning program
        data: Raw account data, discriminator included

    Returns:
        DecodedAccount with the matched type name and decoded body

    Raises:
        DiscriminatorMiss: If the prefix matches no account type
        DecodeError: If the body does not decode against the matched type
    """
    metrics = get_metrics()
    prefix, _ = split_discriminator(data)
    try:
        account_type, type_def = schema.match_account(prefix)
        decoder = Decoder(schema, enum_strategy, max_depth)
        value = decoder.decode_type_def(type_def, Cursor(data, DISCRIMINATOR_SIZE))
    except CallError as e:
        metrics.increment_counter("account_decode_failures")
        logger.debug("account_decode_failed", program=schema.name, error=str(e))
        raise

    metrics.increment_counter("accounts_decoded")
    return DecodedAccount(schema.name, account_type, value)
