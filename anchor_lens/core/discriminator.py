"""
Discriminator derivation and lookup

A discriminator is the first 8 bytes of SHA-256("<kind>:<name>"). Anchor
programs prefix account storage, instruction data and emitted events with it,
so an 8-byte prefix is enough to pick the schema entry a payload belongs to.
"""

import hashlib
import re
from typing import Dict, Generic, Iterator, Optional, Tuple, TypeVar

from anchor_lens.core.logger import get_logger


logger = get_logger(__name__)


DISCRIMINATOR_SIZE = 8

ACCOUNT_NAMESPACE = "account"
GLOBAL_NAMESPACE = "global"  # instructions
STATE_NAMESPACE = "state"  # legacy state instructions
EVENT_NAMESPACE = "event"

_SEPARATOR_RE = re.compile(r"[^A-Za-z0-9]+")
_WORD_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

T = TypeVar("T")


def to_snake_case(name: str) -> str:
    """
    Fold an identifier to snake_case the way instruction names are hashed

    Examples:
        initializeMint -> initialize_mint
        HTTPServer -> http_server
        deposit_v2 -> deposit_v2
    """
    words = []
    for chunk in _SEPARATOR_RE.split(name):
        if chunk:
            words.extend(w for w in _WORD_BOUNDARY_RE.split(chunk) if w)
    return "_".join(w.lower() for w in words)


def discriminator(kind: str, name: str) -> bytes:
    """
    Derive the 8-byte discriminator for a namespaced schema entry

    Instruction names ("global" kind) are snake_cased before hashing; every
    other kind hashes the name verbatim.
    """
    if kind == GLOBAL_NAMESPACE:
        name = to_snake_case(name)
    preimage = f"{kind}:{name}".encode("utf-8")
    return hashlib.sha256(preimage).digest()[:DISCRIMINATOR_SIZE]


def account_discriminator(name: str) -> bytes:
    return discriminator(ACCOUNT_NAMESPACE, name)


def instruction_discriminator(name: str) -> bytes:
    return discriminator(GLOBAL_NAMESPACE, name)


def state_instruction_discriminator(name: str) -> bytes:
    return discriminator(STATE_NAMESPACE, name)


def event_discriminator(name: str) -> bytes:
    return discriminator(EVENT_NAMESPACE, name)


def split_discriminator(data: bytes) -> Tuple[bytes, bytes]:
    """
    Split a payload at the discriminator boundary

    Payloads shorter than 8 bytes are zero-padded for lookup and leave an
    empty remainder.
    """
    data = bytes(data)
    prefix = data[:DISCRIMINATOR_SIZE].ljust(DISCRIMINATOR_SIZE, b"\x00")
    return prefix, data[DISCRIMINATOR_SIZE:]


class DiscriminatorTable(Generic[T]):
    """Exact-match map from 8-byte discriminators to schema entries"""

    def __init__(self, label: str):
        self.label = label
        self._entries: Dict[bytes, T] = {}

    def register(self, disc: bytes, entry: T, key: str) -> bool:
        """
        Register an entry; the first registration of a discriminator wins

        Returns:
            True if the entry was stored, False on collision
        """
        if len(disc) != DISCRIMINATOR_SIZE:
            raise ValueError(f"Discriminator must be {DISCRIMINATOR_SIZE} bytes, got {len(disc)}")

        existing = self._entries.get(disc)
        if existing is not None:
            if existing is not entry:
                logger.warning(
                    "discriminator_collision",
                    table=self.label,
                    key=key,
                    discriminator=disc.hex()
                )
            return False

        self._entries[disc] = entry
        return True

    def lookup(self, prefix: bytes) -> Optional[T]:
        """Find the entry for a payload prefix (zero-padded to 8 bytes)"""
        prefix = bytes(prefix[:DISCRIMINATOR_SIZE]).ljust(DISCRIMINATOR_SIZE, b"\x00")
        return self._entries.get(prefix)

    def items(self) -> Iterator[Tuple[bytes, T]]:
        return iter(self._entries.items())

    def __contains__(self, disc: bytes) -> bool:
        return bytes(disc) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class DiscriminatorIndex:
    """
    Discriminator tables for one program's schema

    Every instruction is registered under both its "state" and "global"
    keys, since callers may be compiled against either generation. An
    explicit discriminator from the document replaces the derived ones.
    """

    def __init__(self):
        self.instructions: DiscriminatorTable = DiscriminatorTable("instructions")
        self.accounts: DiscriminatorTable = DiscriminatorTable("accounts")
        self.events: DiscriminatorTable = DiscriminatorTable("events")

    def add_instruction(self, name: str, entry, explicit: Optional[bytes] = None) -> None:
        if explicit is not None:
            self.instructions.register(explicit, entry, name)
            return
        self.instructions.register(state_instruction_discriminator(name), entry, f"state:{name}")
        self.instructions.register(instruction_discriminator(name), entry, f"global:{name}")

    def add_account(self, name: str, entry, explicit: Optional[bytes] = None) -> None:
        disc = explicit if explicit is not None else account_discriminator(name)
        self.accounts.register(disc, entry, f"account:{name}")

    def add_event(self, name: str, entry, explicit: Optional[bytes] = None) -> None:
        disc = explicit if explicit is not None else event_discriminator(name)
        self.events.register(disc, entry, f"event:{name}")
