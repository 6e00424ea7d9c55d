"""
Account privilege checker

Compares the signer/writable requirements an instruction declares for each of
its accounts with the flags actually attached in the calling message.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from anchor_lens.core.errors import IndexOutOfBounds
from anchor_lens.core.logger import get_logger
from anchor_lens.core.metrics import get_metrics
from anchor_lens.core.schema import AccountGroup, AccountItem, AccountRole


logger = get_logger(__name__)


class AccountMetaStatus(str, Enum):
    """Outcome of comparing one required flag with the actual flag"""
    SATISFIED = "satisfied"                        # required and present
    NOT_REQUIRED = "not_required"                  # neither required nor present
    MISSING_ESCALATION = "missing_escalation"      # required, not present
    UNNECESSARY_ESCALATION = "unnecessary_escalation"  # present, not required

    @classmethod
    def evaluate(cls, required: bool, present: bool) -> "AccountMetaStatus":
        if required:
            return cls.SATISFIED if present else cls.MISSING_ESCALATION
        return cls.UNNECESSARY_ESCALATION if present else cls.NOT_REQUIRED

    @property
    def granted(self) -> bool:
        """Whether the actual account carried the flag"""
        return self in (AccountMetaStatus.SATISFIED, AccountMetaStatus.UNNECESSARY_ESCALATION)

    @property
    def is_missing(self) -> bool:
        return self is AccountMetaStatus.MISSING_ESCALATION


@dataclass(frozen=True)
class CheckedAccount:
    name: str
    pubkey: str
    is_signer: AccountMetaStatus
    is_writable: AccountMetaStatus
    optional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pubkey": self.pubkey,
            "is_signer": self.is_signer.value,
            "is_writable": self.is_writable.value,
            "optional": self.optional,
        }


@dataclass(frozen=True)
class CheckedAccountGroup:
    name: str
    accounts: Tuple["CheckedItem", ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "accounts": [a.to_dict() for a in self.accounts],
        }


CheckedItem = Union[CheckedAccount, CheckedAccountGroup]


@dataclass(frozen=True)
class PrivilegeReport:
    """Checked role tree plus any accounts beyond the declared roles"""
    accounts: Tuple[CheckedItem, ...]
    remaining_accounts: Tuple[Any, ...] = ()

    @property
    def missing(self) -> List[Tuple[str, str]]:
        return missing_escalations(self.accounts)


class AccountCursor:
    """Position in the actual account list; each leaf role takes the next one"""

    def __init__(self, actuals: Sequence[Any]):
        self._actuals = list(actuals)
        self._position = 0
        self._needed = 0

    @property
    def position(self) -> int:
        return self._position

    def next(self) -> Any:
        self._needed += 1
        if self._position >= len(self._actuals):
            raise IndexOutOfBounds(
                f"Instruction expects at least {self._needed} accounts, "
                f"got {len(self._actuals)}"
            )
        actual = self._actuals[self._position]
        self._position += 1
        return actual

    def rest(self) -> Tuple[Any, ...]:
        return tuple(self._actuals[self._position:])


@dataclass
class _Frame:
    name: Optional[str]
    items: Tuple[AccountItem, ...]
    position: int = 0
    checked: List[CheckedItem] = field(default_factory=list)


def check_account(role: AccountRole, actual: Any) -> CheckedAccount:
    """
    Check one declared role against one actual account meta

    Args:
        role: Declared requirement
        actual: Anything with pubkey, is_signer and is_writable
            (solders AccountMeta)
    """
    return CheckedAccount(
        name=role.name,
        pubkey=str(actual.pubkey),
        is_signer=AccountMetaStatus.evaluate(role.is_signer, bool(actual.is_signer)),
        is_writable=AccountMetaStatus.evaluate(role.is_writable, bool(actual.is_writable)),
        optional=role.optional,
    )


class PrivilegeChecker:
    """
    Walks a role tree depth-first with an explicit worklist

    Groups consume no account; each leaf consumes the next actual account in
    order. Running out of actuals raises IndexOutOfBounds. Leftover actuals
    are reported as remaining accounts, or rejected when allow_remaining is
    False.
    """

    def __init__(self, allow_remaining: bool = True):
        self.allow_remaining = allow_remaining

    def check(self, roles: Sequence[AccountItem], actuals: Sequence[Any]) -> PrivilegeReport:
        cursor = AccountCursor(actuals)
        stack = [_Frame(None, tuple(roles))]
        result: Tuple[CheckedItem, ...] = ()

        while stack:
            frame = stack[-1]
            if frame.position == len(frame.items):
                stack.pop()
                if stack:
                    stack[-1].checked.append(CheckedAccountGroup(frame.name, tuple(frame.checked)))
                else:
                    result = tuple(frame.checked)
                continue

            item = frame.items[frame.position]
            frame.position += 1
            if isinstance(item, AccountGroup):
                stack.append(_Frame(item.name, item.accounts))
                continue
            frame.checked.append(check_account(item, cursor.next()))

        remaining = cursor.rest()
        if remaining and not self.allow_remaining:
            raise IndexOutOfBounds(
                f"Instruction declares {cursor.position} accounts, "
                f"got {cursor.position + len(remaining)}"
            )

        report = PrivilegeReport(result, remaining)
        missing = report.missing
        if missing:
            get_metrics().increment_counter("privilege_escalations_missing", len(missing))
            logger.debug("privilege_escalations_missing", missing=missing)
        return report


def check_privileges(roles: Sequence[AccountItem], actuals: Sequence[Any]) -> Tuple[CheckedItem, ...]:
    """
    Check roles against actuals, returning only the checked tree

    Both a shortfall and a surplus of actual accounts raise IndexOutOfBounds.
    """
    return PrivilegeChecker(allow_remaining=False).check(roles, actuals).accounts


def missing_escalations(checked: Sequence[CheckedItem], prefix: str = "") -> List[Tuple[str, str]]:
    """
    List every missing escalation in a checked tree

    Returns:
        (path, flag) pairs, path dotted through groups, flag "signer" or "writable"
    """
    missing = []
    for item in checked:
        path = f"{prefix}{item.name}"
        if isinstance(item, CheckedAccountGroup):
            missing.extend(missing_escalations(item.accounts, f"{path}."))
            continue
        if item.is_signer.is_missing:
            missing.append((path, "signer"))
        if item.is_writable.is_missing:
            missing.append((path, "writable"))
    return missing
