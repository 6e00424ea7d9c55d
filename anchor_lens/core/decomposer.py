"""
Call decomposer

Resolves every call in a transaction (top-level and nested) to a built-in
decoder or a cached program schema, decodes its arguments, checks account
privileges and assembles the nested CallRecord tree. A failure on one call
is recorded on that call and never stops its siblings or descendants.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from solders.instruction import AccountMeta, CompiledInstruction, Instruction
from solders.message import Message, MessageV0

from anchor_lens.clients.builtins import builtin_program_name, decode_builtin
from anchor_lens.clients.message import decompile_compiled, resolve_account_metas
from anchor_lens.core.config import DecoderConfig
from anchor_lens.core.decoder import Cursor, Decoder
from anchor_lens.core.discriminator import DISCRIMINATOR_SIZE
from anchor_lens.core.errors import CallError
from anchor_lens.core.logger import get_logger
from anchor_lens.core.metrics import LatencyTimer, MetricsCollector, get_metrics
from anchor_lens.core.privileges import PrivilegeChecker
from anchor_lens.core.schema_cache import SchemaCache


logger = get_logger(__name__)

UNKNOWN_PROGRAM = "unknown program"

# Inner calls without a recorded stack height are direct children
DEFAULT_INNER_HEIGHT = 2


@dataclass(frozen=True)
class InnerCall:
    """Nested call with the stack height the runtime recorded for it"""
    instruction: Union[Instruction, CompiledInstruction]
    stack_height: Optional[int] = None


@dataclass(frozen=True)
class CallFailure:
    reason: str
    error_type: str


@dataclass(frozen=True)
class CallRecord:
    """One decoded call and its nested calls"""
    index: int
    program_id: str
    program_name: Optional[str] = None
    name: Optional[str] = None
    data: Any = None
    accounts: Tuple[Any, ...] = ()
    remaining_accounts: Tuple[Any, ...] = ()
    error: Optional[CallFailure] = None
    inner_calls: Tuple["CallRecord", ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "program_id": self.program_id,
            "program_name": self.program_name,
            "index": self.index,
        }
        if self.error is not None:
            out["parsed"] = {
                "deserialize_error": self.error.reason,
                "error_type": self.error.error_type,
            }
        else:
            parsed = {
                "name": self.name,
                "data": self.data,
                "accounts": [a.to_dict() for a in self.accounts],
            }
            if self.remaining_accounts:
                parsed["remaining_accounts"] = [_meta_dict(m) for m in self.remaining_accounts]
            out["parsed"] = parsed
        if self.inner_calls:
            out["inner_instructions"] = [c.to_dict() for c in self.inner_calls]
        return out


def _meta_dict(meta: AccountMeta) -> Dict[str, Any]:
    return {
        "pubkey": str(meta.pubkey),
        "is_signer": meta.is_signer,
        "is_writable": meta.is_writable,
    }


@dataclass
class CallNode:
    instruction: Instruction
    children: List["CallNode"] = field(default_factory=list)


def nest_inner_calls(inner_calls: Sequence[Union[Instruction, InnerCall]]) -> List[CallNode]:
    """
    Rebuild the call tree below one top-level call

    The top-level call runs at stack height 1; an inner call at height h is a
    child of the nearest preceding call at height h - 1. Plain Instructions
    (no height) are direct children.

    Returns:
        Direct children of the top-level call
    """
    roots: List[CallNode] = []
    stack: List[Tuple[int, CallNode]] = []

    for entry in inner_calls:
        if isinstance(entry, InnerCall):
            instruction, height = entry.instruction, entry.stack_height
        else:
            instruction, height = entry, None

        if height is None:
            height = DEFAULT_INNER_HEIGHT
        elif height < DEFAULT_INNER_HEIGHT:
            logger.warning("inner_call_height_invalid", stack_height=height)
            height = DEFAULT_INNER_HEIGHT

        node = CallNode(instruction)
        while stack and stack[-1][0] >= height:
            stack.pop()
        if stack:
            stack[-1][1].children.append(node)
        else:
            roots.append(node)
        stack.append((height, node))

    return roots


class CallDecomposer:
    """
    Decodes transactions call by call

    Args:
        cache: Schema cache consulted for non-built-in programs
        config: Decoding options
        metrics: Metrics collector (defaults to the global one)
    """

    def __init__(
        self,
        cache: SchemaCache,
        config: Optional[DecoderConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.cache = cache
        self.config = config or cache.decoder_config
        self.metrics = metrics or get_metrics()
        self.checker = PrivilegeChecker(self.config.allow_remaining_accounts)

    def decompose(
        self,
        calls: Sequence[Instruction],
        inner_calls_by_index: Optional[Mapping[int, Sequence[Union[Instruction, InnerCall]]]] = None
    ) -> List[CallRecord]:
        """
        Decode top-level calls and their nested calls

        Args:
            calls: Top-level instructions in message order
            inner_calls_by_index: Top-level index -> nested calls, flat list
                or InnerCall entries carrying stack heights

        Returns:
            One CallRecord per top-level call
        """
        inner_calls_by_index = inner_calls_by_index or {}
        with LatencyTimer(self.metrics, "decompose_calls"):
            records = [
                self._decompose_node(
                    CallNode(ix, nest_inner_calls(inner_calls_by_index.get(index, ()))),
                    index,
                    1
                )
                for index, ix in enumerate(calls)
            ]
        logger.debug(
            "calls_decomposed",
            calls=len(records),
            failed=sum(1 for r in records if not r.ok)
        )
        return records

    def decompose_call(
        self,
        instruction: Instruction,
        index: int = 0,
        inner_calls: Sequence[Union[Instruction, InnerCall]] = ()
    ) -> CallRecord:
        return self._decompose_node(CallNode(instruction, nest_inner_calls(inner_calls)), index, 1)

    def decompose_message(
        self,
        message: Union[Message, MessageV0],
        inner_calls_by_index: Optional[Mapping[int, Sequence[Any]]] = None,
        loaded_addresses: Optional[Any] = None
    ) -> List[CallRecord]:
        """
        Decompile a compiled message, then decompose it

        Nested calls may be CompiledInstructions (or InnerCalls wrapping
        them); they are resolved against the same account list.
        """
        metas = resolve_account_metas(message, loaded_addresses)
        calls = [decompile_compiled(ix, metas) for ix in message.instructions]

        def resolve(entry: Any) -> Any:
            if isinstance(entry, InnerCall):
                return InnerCall(resolve(entry.instruction), entry.stack_height)
            if isinstance(entry, CompiledInstruction):
                return decompile_compiled(entry, metas)
            return entry

        inner = {
            index: [resolve(entry) for entry in entries]
            for index, entries in (inner_calls_by_index or {}).items()
        }
        return self.decompose(calls, inner)

    def _decompose_node(self, node: CallNode, index: int, depth: int) -> CallRecord:
        ix = node.instruction
        program_id = str(ix.program_id)

        if depth > self.config.max_call_depth:
            return self._failure(
                index, program_id, None,
                f"Call nesting exceeds {self.config.max_call_depth} levels",
                "CallDepthExceeded"
            )

        inner = tuple(
            self._decompose_node(child, child_index, depth + 1)
            for child_index, child in enumerate(node.children)
        )

        data = bytes(ix.data)
        accounts = list(ix.accounts)

        builtin = decode_builtin(ix.program_id, data, accounts)
        if builtin is not None:
            self.metrics.increment_counter("calls_decoded", labels={"source": "builtin"})
            logger.debug("call_decoded", index=index, program_id=program_id, name=builtin.name)
            return CallRecord(
                index=index,
                program_id=program_id,
                program_name=builtin.program_name,
                name=builtin.name,
                data=builtin.data,
                accounts=builtin.accounts,
                inner_calls=inner,
            )

        schema = self.cache.get(program_id)
        if schema is None:
            return self._failure(
                index, program_id, builtin_program_name(ix.program_id),
                UNKNOWN_PROGRAM, "UnknownProgram", inner
            )

        try:
            ix_def = schema.match_instruction(data)
            decoder = Decoder(schema, self.config.enum_strategy, self.config.max_type_depth)
            args = decoder.decode_fields(ix_def.args, Cursor(data, DISCRIMINATOR_SIZE))
            report = self.checker.check(ix_def.accounts, accounts)
        except CallError as e:
            e.with_context(index, program_id)
            return self._failure(index, program_id, schema.name, str(e), type(e).__name__, inner)

        self.metrics.increment_counter("calls_decoded", labels={"source": "schema"})
        logger.debug("call_decoded", index=index, program_id=program_id, name=ix_def.name)
        return CallRecord(
            index=index,
            program_id=program_id,
            program_name=schema.name,
            name=ix_def.name,
            data=args,
            accounts=report.accounts,
            remaining_accounts=report.remaining_accounts,
            inner_calls=inner,
        )

    def _failure(
        self,
        index: int,
        program_id: str,
        program_name: Optional[str],
        reason: str,
        error_type: str,
        inner: Tuple[CallRecord, ...] = ()
    ) -> CallRecord:
        self.metrics.increment_counter("calls_failed", labels={"reason": error_type})
        logger.warning(
            "call_decode_failed",
            index=index,
            program_id=program_id,
            error_type=error_type,
            reason=reason
        )
        return CallRecord(
            index=index,
            program_id=program_id,
            program_name=program_name,
            error=CallFailure(reason, error_type),
            inner_calls=inner,
        )
