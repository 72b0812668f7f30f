from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Union

from web3.exceptions import ContractLogicError


class ErrorKind(str, Enum):
    LOGIC = "logic"
    RATE_LIMIT = "rate_limit"
    NONCE = "nonce"
    UNDERPRICED = "underpriced"
    TRANSIENT = "transient"


RETRYABLE_KINDS = (ErrorKind.RATE_LIMIT, ErrorKind.NONCE, ErrorKind.UNDERPRICED, ErrorKind.TRANSIENT)

# Same markers the RPC managers treat as "back off and try again".
RATE_LIMIT_MARKERS = ("rate limit", "429", "403", "too many", "forbidden", "quota", "-32005")


class SkipReason(str, Enum):
    GAS_CAP = "GAS_CAP"
    SPEND_CAP = "SPEND_CAP"
    FEE_UNAVAILABLE = "FEE_UNAVAILABLE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ESTIMATE_REVERT = "ESTIMATE_REVERT"
    DRY_RUN = "DRY_RUN"
    ALLOWANCE_REQUIRED = "ALLOWANCE_REQUIRED"


class ConfigError(Exception):
    """Missing or invalid configuration. Fatal, never retried."""


class StateError(Exception):
    """Malformed persisted state document. Fatal, never retried."""


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str

    @property
    def retryable(self):
        return self.kind in RETRYABLE_KINDS


def classify_error(err) -> ClassifiedError:
    """
    Maps a raw RPC / contract failure onto the keeper taxonomy.

    Matching is heuristic. Anything unrecognized is `transient` so candidates
    are retried rather than silently abandoned.
    """
    msg = str(err or "")
    if isinstance(err, ContractLogicError):
        return ClassifiedError(ErrorKind.LOGIC, msg or "execution reverted")

    lower = msg.lower()
    if "revert" in lower:
        return ClassifiedError(ErrorKind.LOGIC, msg)
    if any(marker in lower for marker in RATE_LIMIT_MARKERS):
        return ClassifiedError(ErrorKind.RATE_LIMIT, msg)
    if "nonce" in lower:
        return ClassifiedError(ErrorKind.NONCE, msg)
    if "underpriced" in lower or "replacement" in lower:
        return ClassifiedError(ErrorKind.UNDERPRICED, msg)
    return ClassifiedError(ErrorKind.TRANSIENT, msg)


@dataclass(frozen=True)
class Ok:
    value: Any

    ok = True


@dataclass(frozen=True)
class Err:
    error: ClassifiedError

    ok = False


Result = Union[Ok, Err]


async def safe_call(awaitable: Awaitable) -> Result:
    """Awaits a network call and returns Ok(value) or Err(classified) instead of raising."""
    try:
        return Ok(await awaitable)
    except Exception as e:
        return Err(classify_error(e))
