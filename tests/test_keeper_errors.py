"""Tests for error classification and the Ok/Err wrapper."""

import asyncio

from web3.exceptions import ContractLogicError

from keeper_errors import ErrorKind, Err, Ok, classify_error, safe_call


def test_contract_logic_error_is_logic() -> None:
    err = classify_error(ContractLogicError("execution reverted: TroveManager: nothing to liquidate"))
    assert err.kind == ErrorKind.LOGIC
    assert err.retryable is False


def test_message_heuristics() -> None:
    assert classify_error(Exception("429 Too Many Requests")).kind == ErrorKind.RATE_LIMIT
    assert classify_error(Exception("nonce too low")).kind == ErrorKind.NONCE
    assert classify_error(Exception("transaction underpriced")).kind == ErrorKind.UNDERPRICED
    assert classify_error(Exception("replacement fee too low")).kind == ErrorKind.UNDERPRICED
    assert classify_error(Exception("execution reverted")).kind == ErrorKind.LOGIC


def test_unknown_errors_default_to_transient() -> None:
    err = classify_error(TimeoutError("read timed out"))
    assert err.kind == ErrorKind.TRANSIENT
    assert err.retryable is True


def test_safe_call_wraps_value_and_exception() -> None:
    async def good():
        return 42

    async def bad():
        raise ConnectionError("connection reset")

    ok = asyncio.run(safe_call(good()))
    err = asyncio.run(safe_call(bad()))
    assert isinstance(ok, Ok) and ok.ok and ok.value == 42
    assert isinstance(err, Err) and not err.ok
    assert err.error.kind == ErrorKind.TRANSIENT
    assert "connection reset" in err.error.message
