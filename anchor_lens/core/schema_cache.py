"""
Per-session cache of program schemas keyed by program id

Entries are insert-only. The lock only keeps two loaders for the same
program from doing the same work twice; readers never take it.
"""

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from solders.pubkey import Pubkey

from anchor_lens.core.accounts import DecodedAccount, decode_account
from anchor_lens.core.config import DecoderConfig, LensConfig
from anchor_lens.core.discriminator import DISCRIMINATOR_SIZE
from anchor_lens.core.errors import CallError, DiscriminatorMiss
from anchor_lens.core.logger import get_logger
from anchor_lens.core.schema import Schema, build, read_document


logger = get_logger(__name__)

ProgramKey = Union[str, Pubkey]


def _key(program_id: ProgramKey) -> str:
    return str(program_id)


class SchemaCache:
    """
    Program id -> Schema

    Args:
        decoder_config: Decoding options used by decode_account
    """

    def __init__(self, decoder_config: Optional[DecoderConfig] = None):
        self.decoder_config = decoder_config or DecoderConfig()
        self._schemas: Dict[str, Schema] = {}
        self._load_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: LensConfig) -> "SchemaCache":
        """Create a cache preloaded with every configured interface document"""
        cache = cls(config.decoder_config)
        for source in config.idl_sources:
            cache.load_file(source.program_id, source.path)
        return cache

    def get(self, program_id: ProgramKey) -> Optional[Schema]:
        return self._schemas.get(_key(program_id))

    def insert(self, program_id: ProgramKey, schema: Schema) -> Schema:
        """
        Cache a schema unless one is already present

        Returns:
            The cached schema, which is the earlier one on a repeat insert
        """
        key = _key(program_id)
        existing = self._schemas.setdefault(key, schema)
        if existing is schema:
            logger.debug("schema_cached", program_id=key, program=schema.name)
        return existing

    def get_or_load(self, program_id: ProgramKey, loader: Callable[[], Any]) -> Schema:
        """
        Return the cached schema, building one from loader() on a miss

        Args:
            program_id: Program the schema belongs to
            loader: Zero-argument callable returning an interface document
                (or an already built Schema)

        Raises:
            SchemaParseError: If the loaded document is malformed; nothing
                is cached in that case
        """
        schema = self.get(program_id)
        if schema is not None:
            return schema

        with self._load_lock:
            schema = self.get(program_id)
            if schema is not None:
                return schema
            loaded = loader()
            if not isinstance(loaded, Schema):
                loaded = build(loaded)
            return self.insert(program_id, loaded)

    def load_file(self, program_id: ProgramKey, path: Union[str, Path]) -> Schema:
        return self.get_or_load(program_id, lambda: read_document(path))

    def decode_account(self, owner: Optional[ProgramKey], data: bytes) -> DecodedAccount:
        """
        Decode account data, trying the owner's schema first, then every other

        Raises:
            DiscriminatorMiss: If no cached schema knows the account type
        """
        candidates: List[Schema] = []
        owner_schema = self.get(owner) if owner is not None else None
        if owner_schema is not None:
            candidates.append(owner_schema)
        candidates.extend(s for s in self._schemas.values() if s is not owner_schema)

        decode_error: Optional[CallError] = None
        for schema in candidates:
            try:
                return decode_account(
                    schema,
                    data,
                    self.decoder_config.enum_strategy,
                    self.decoder_config.max_type_depth
                )
            except DiscriminatorMiss:
                continue
            except CallError as e:
                # Discriminator matched but the body did not decode
                decode_error = decode_error or e

        if decode_error is not None:
            raise decode_error
        raise DiscriminatorMiss(bytes(data[:DISCRIMINATOR_SIZE]), "account data")

    def program_ids(self) -> List[str]:
        return list(self._schemas)

    def __contains__(self, program_id: ProgramKey) -> bool:
        return _key(program_id) in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)
