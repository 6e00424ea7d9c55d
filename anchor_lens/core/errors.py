"""
Error taxonomy for Anchor Lens

Per-call errors (CallError and subclasses) are recoverable: the decomposer
attaches them to the failing CallRecord and keeps going. SchemaParseError is
fatal to one program's schema. LogSequenceError means the log capture itself
is malformed.
"""

from typing import Optional


class AnchorLensError(Exception):
    """Base class for every error raised by anchor_lens"""


class SchemaParseError(AnchorLensError):
    """Interface document is malformed"""


class EncodeError(AnchorLensError):
    """Value does not fit the type it is being encoded as"""


class CallError(AnchorLensError):
    """
    Recoverable failure while decoding a single call or payload

    Carries the call index and program identity once the decomposer
    knows them, so partial reports can be rendered.
    """

    def __init__(
        self,
        message: str,
        call_index: Optional[int] = None,
        program_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.call_index = call_index
        self.program_id = program_id

    def with_context(
        self,
        call_index: Optional[int] = None,
        program_id: Optional[str] = None
    ) -> "CallError":
        """Annotate this error with call position and program identity"""
        if call_index is not None:
            self.call_index = call_index
        if program_id is not None:
            self.program_id = str(program_id)
        return self

    def __str__(self) -> str:
        return self.message


class DiscriminatorMiss(CallError):
    """Payload prefix matches no schema entry"""

    def __init__(self, discriminator: bytes, table: str, **kwargs):
        super().__init__(
            f"Could not match {table} against any discriminator "
            f"(prefix {discriminator.hex()})",
            **kwargs
        )
        self.discriminator = discriminator
        self.table = table


class DecodeError(CallError):
    """Payload bytes do not decode against the requested type"""


class DecodeTruncated(DecodeError):
    """Payload ended before the type was fully read"""

    def __init__(self, needed: int, available: int, offset: int, **kwargs):
        super().__init__(
            f"Unexpected end of data at offset {offset}: "
            f"needed {needed} bytes, {available} available",
            **kwargs
        )
        self.needed = needed
        self.available = available
        self.offset = offset


class DecodeInvalid(DecodeError):
    """Payload is structurally incompatible with the requested type"""


class UnresolvedTypeError(DecodeInvalid):
    """A named type reference has no definition in the schema"""

    def __init__(self, type_name: str, **kwargs):
        super().__init__(f"Couldn't find defined type: {type_name}", **kwargs)
        self.type_name = type_name


class IndexOutOfBounds(CallError):
    """Declared account roles and actual accounts disagree in count"""


class LogSequenceError(AnchorLensError):
    """Execution log lines are not a well-nested invocation trace"""


class StackUnderflow(LogSequenceError):
    """A success/failure line arrived with no program on the stack"""
