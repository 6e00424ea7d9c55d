"""
Log-stack event extractor

Replays a transaction's execution log as a stack of executing programs so
every line can be attributed to the program that printed it, then decodes
event payloads emitted by a chosen program.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from anchor_lens.core.decoder import Cursor, Decoder, EnumStrategy
from anchor_lens.core.discriminator import DISCRIMINATOR_SIZE, event_discriminator
from anchor_lens.core.errors import DecodeError, LogSequenceError, StackUnderflow
from anchor_lens.core.logger import get_logger
from anchor_lens.core.metrics import MetricsCollector, get_metrics
from anchor_lens.core.schema import Schema


logger = get_logger(__name__)


PROGRAM_LOG_PREFIX = "Program log: "
PROGRAM_DATA_PREFIX = "Program data: "

_PROGRAM_ID = r"([1-9A-HJ-NP-Za-km-z]{32,44})"
INVOKE_RE = re.compile(rf"^Program {_PROGRAM_ID} invoke \[(\d+)\]$")
SUCCESS_RE = re.compile(rf"^Program {_PROGRAM_ID} success$")
FAILURE_RE = re.compile(rf"^Program {_PROGRAM_ID} failed: (.*)$")


class LineKind(str, Enum):
    INVOKE = "invoke"
    SUCCESS = "success"
    FAILURE = "failure"
    PROGRAM_LOG = "program_log"
    PROGRAM_DATA = "program_data"
    OTHER = "other"


@dataclass(frozen=True)
class AttributedLine:
    program_id: Optional[str]
    depth: int
    line: str
    kind: LineKind


@dataclass(frozen=True)
class ExtractedEvent:
    line: int
    program_id: str
    name: str
    data: Any


@dataclass(frozen=True)
class LoggedFailure:
    program_id: str
    error: str


def classify_line(line: str) -> Tuple[LineKind, Optional[str]]:
    """
    Classify one log line

    Returns:
        (kind, program id) where the program id is set only for invoke,
        success and failure lines
    """
    if line.startswith(PROGRAM_LOG_PREFIX):
        return LineKind.PROGRAM_LOG, None
    if line.startswith(PROGRAM_DATA_PREFIX):
        return LineKind.PROGRAM_DATA, None

    match = INVOKE_RE.match(line)
    if match:
        return LineKind.INVOKE, match.group(1)
    match = SUCCESS_RE.match(line)
    if match:
        return LineKind.SUCCESS, match.group(1)
    match = FAILURE_RE.match(line)
    if match:
        return LineKind.FAILURE, match.group(1)
    return LineKind.OTHER, None


def check_for_program_error(line: str) -> Optional[LoggedFailure]:
    """Parse a 'Program <id> failed: <error>' line"""
    match = FAILURE_RE.match(line)
    if match is None:
        return None
    return LoggedFailure(match.group(1), match.group(2))


def attribute_logs(lines: Sequence[str]) -> List[AttributedLine]:
    """
    Attribute every log line to the program executing when it was printed

    The first line must announce the top-level invocation. Invoke lines push
    a program, success and failure lines pop one, and everything else goes
    to the top of the stack.

    Raises:
        LogSequenceError: If the first line is not an invoke
        StackUnderflow: If a success/failure line arrives on an empty stack
    """
    attributed: List[AttributedLine] = []
    stack: List[str] = []

    for position, line in enumerate(lines):
        kind, program_id = classify_line(line)

        if position == 0 and kind is not LineKind.INVOKE:
            raise LogSequenceError(f"First log line is not a program invocation: {line!r}")

        if kind is LineKind.INVOKE:
            stack.append(program_id)
            attributed.append(AttributedLine(program_id, len(stack), line, kind))

        elif kind in (LineKind.SUCCESS, LineKind.FAILURE):
            if not stack:
                raise StackUnderflow(f"Log line {position} returns from an empty stack: {line!r}")
            depth = len(stack)
            popped = stack.pop()
            if popped != program_id:
                logger.warning(
                    "log_stack_mismatch",
                    line=position,
                    expected=popped,
                    got=program_id
                )
            attributed.append(AttributedLine(popped, depth, line, kind))

        else:
            attributed.append(AttributedLine(stack[-1] if stack else None, len(stack), line, kind))

    return attributed


def _payload(line: AttributedLine) -> Optional[bytes]:
    if line.kind is LineKind.PROGRAM_DATA:
        text = line.line[len(PROGRAM_DATA_PREFIX):]
    elif line.kind is LineKind.PROGRAM_LOG:
        text = line.line[len(PROGRAM_LOG_PREFIX):]
    else:
        return None
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error:
        return None


def extract_events(
    lines: Sequence[str],
    target_program: Any,
    event_name: str,
    schema: Schema,
    enum_strategy: EnumStrategy = EnumStrategy.FIRST_MATCH,
    metrics: Optional[MetricsCollector] = None
) -> List[ExtractedEvent]:
    """
    Decode every `event_name` event emitted by `target_program`

    Only lines attributed to the target program are considered. Lines whose
    payload is not base64 or is shorter than a discriminator are skipped; a
    payload that matches the discriminator but fails to decode is logged
    and skipped.

    Args:
        lines: Execution log lines in order
        target_program: Program id (str or Pubkey) emitting the events
        event_name: Event declared in `schema`
        schema: Schema of the target program

    Returns:
        Decoded events in log order
    """
    metrics = metrics or get_metrics()
    target = str(target_program)
    event = schema.event(event_name)
    disc = event.discriminator or event_discriminator(event.name)
    decoder = Decoder(schema, enum_strategy)

    events = []
    for position, line in enumerate(attribute_logs(lines)):
        if line.program_id != target:
            continue
        payload = _payload(line)
        if payload is None or len(payload) < DISCRIMINATOR_SIZE:
            continue
        if payload[:DISCRIMINATOR_SIZE] != disc:
            continue

        try:
            value = decoder.decode_type_def(event.type_def, Cursor(payload, DISCRIMINATOR_SIZE))
        except DecodeError as e:
            metrics.increment_counter("event_decode_failures")
            logger.warning("event_decode_failed", line=position, event_name=event.name, error=str(e))
            continue

        metrics.increment_counter("events_decoded")
        events.append(ExtractedEvent(position, target, event.name, value))

    logger.debug("events_extracted", program_id=target, event_name=event.name, count=len(events))
    return events
