"""End-to-end redemption cycles against the in-memory protocol."""

import asyncio
import logging

from keeper_config import REDEMPTION
from redemption_keeper import RedemptionKeeper
from tests.fakes import (
    E18,
    ENGINE,
    KEEPER,
    FakeAlerter,
    FakeProtocol,
    RecordingSleep,
    addr,
    events,
    icr,
    make_config,
    make_log,
)

AMOUNT = 100 * E18


def _protocol(truncated=AMOUNT, partial_nicr=5 * E18, allowance=AMOUNT):
    protocol = FakeProtocol([(addr(10), icr(1.2)), (addr(11), icr(1.3)), (addr(12), icr(1.4))])
    protocol.hints = (addr(10), partial_nicr, truncated)
    protocol.allowances[(KEEPER, ENGINE)] = allowance
    protocol.musd[KEEPER] = 500 * E18
    return protocol


def _keeper(protocol, tmp_path, **overrides):
    overrides.setdefault("redeem_musd_amount", AMOUNT)
    config = make_config(REDEMPTION, tmp_path=tmp_path, **overrides)
    return RedemptionKeeper(config, protocol, make_log(REDEMPTION), alerter=FakeAlerter(), sleep=RecordingSleep())


def test_truncated_to_zero_stops_before_insert_hints(tmp_path) -> None:
    protocol = _protocol(truncated=0)
    run = asyncio.run(_keeper(protocol, tmp_path).run_once())

    assert run["status"] == "TRUNCATED_TO_ZERO"
    assert protocol.calls["redemption_hints"] == 1
    assert protocol.calls["insertion_position"] == 0
    assert protocol.calls["tail_id"] == 0
    assert protocol.calls["send"] == 0


def test_happy_path_redeems_truncated_amount(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO)
    protocol = _protocol(truncated=80 * E18)
    protocol.redemption_event = {"jobId": 1, "musdRequested": 80 * E18, "musdRedeemed": 80 * E18}
    keeper = _keeper(protocol, tmp_path)
    run = asyncio.run(keeper.run_once())

    call = protocol.sent[0]["call"]
    assert call[0] == "redeemHintedTo"
    assert call[1] == 80 * E18
    assert call[2] == KEEPER
    assert (call[4], call[5]) == (addr(100), addr(101))
    assert run["status"] == "OK"
    assert run["result"]["state"] == "DONE"
    assert run["engineEvent"]["musdRedeemed"] == str(80 * E18)
    assert "caller" in run["balances"]
    assert events(caplog, "redeem_result")[0]["effectiveMusd"] == str(80 * E18)
    assert keeper.alerter.messages[0][0] == "success"


def test_missing_allowance_without_auto_approve_skips(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO)
    protocol = _protocol(allowance=0)
    run = asyncio.run(_keeper(protocol, tmp_path).run_once())

    assert protocol.calls["send"] == 0
    assert run["result"]["skipReason"] == "ALLOWANCE_REQUIRED"
    assert events(caplog, "approve_needed")[0]["spender"] == ENGINE


def test_auto_approve_then_redeem(tmp_path) -> None:
    protocol = _protocol(allowance=0)
    keeper = _keeper(protocol, tmp_path, auto_approve=True, approve_exact=True)
    run = asyncio.run(keeper.run_once())

    assert [s["call"][0] for s in protocol.sent] == ["approve", "redeemHintedTo"]
    assert protocol.approvals[0] == ("approve", ENGINE, AMOUNT)
    assert run["result"]["state"] == "DONE"
    assert keeper.ledger.spent == 2 * 80_000 * 1_000_000_000


def test_auto_approve_respects_spend_cap_with_unknown_fee(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO)
    protocol = _protocol(allowance=0)
    protocol.fees = {}
    protocol.legacy_gas_price = None
    keeper = _keeper(protocol, tmp_path, auto_approve=True, max_native_spent_per_run=1)
    run = asyncio.run(keeper.run_once())

    assert protocol.approvals == []
    assert protocol.calls["send"] == 0
    assert protocol.calls["estimate"] == 0
    assert run["result"]["skipReason"] == "ALLOWANCE_REQUIRED"
    assert events(caplog, "approve_skipped")[0]["reason"] == "FEE_UNAVAILABLE"
    assert keeper.ledger.spent == 0


def test_auto_approve_respects_spend_cap(tmp_path) -> None:
    protocol = _protocol(allowance=0)
    keeper = _keeper(protocol, tmp_path, auto_approve=True, max_native_spent_per_run=1)
    run = asyncio.run(keeper.run_once())

    assert protocol.approvals == []
    assert protocol.calls["send"] == 0
    assert run["result"]["skipReason"] == "ALLOWANCE_REQUIRED"


def test_dry_run_never_approves_or_sends(tmp_path) -> None:
    protocol = _protocol(allowance=0)
    run = asyncio.run(_keeper(protocol, tmp_path, auto_approve=True, dry_run=True).run_once())
    assert protocol.calls["send"] == 0
    assert run["result"]["skipReason"] == "ALLOWANCE_REQUIRED"


def test_chunk_cap_limits_amount(tmp_path) -> None:
    protocol = _protocol()
    asyncio.run(_keeper(protocol, tmp_path, redeem_max_chunk_musd=10 * E18).run_once())
    assert protocol.sent[0]["call"][1] == 10 * E18


def test_chunk_cap_rereads_hints_for_the_clamped_amount(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO)
    protocol = _protocol()
    protocol.hints_fn = lambda amount: (addr(10), 5 * E18, AMOUNT) if amount == AMOUNT else (addr(11), 7 * E18, amount)
    run = asyncio.run(_keeper(protocol, tmp_path, redeem_max_chunk_musd=10 * E18).run_once())

    assert protocol.hint_amounts == [AMOUNT, 10 * E18]
    call = protocol.sent[0]["call"]
    assert call[1] == 10 * E18
    assert call[3] == addr(11)
    assert call[6] == 7 * E18
    assert run["hints"]["partial_nicr"] == str(7 * E18)
    assert events(caplog, "redeem_hints_reread")[0]["truncatedMusd"] == str(10 * E18)


def test_chunk_reread_lowers_amount_to_new_truncation(tmp_path) -> None:
    protocol = _protocol()
    protocol.hints_fn = lambda amount: (addr(10), 0, AMOUNT if amount == AMOUNT else 6 * E18)
    run = asyncio.run(_keeper(protocol, tmp_path, redeem_max_chunk_musd=10 * E18).run_once())

    assert protocol.sent[0]["call"][1] == 6 * E18
    assert run["plan"]["effective_musd"] == str(6 * E18)


def test_chunk_reread_truncated_to_zero_stops(tmp_path) -> None:
    protocol = _protocol()
    protocol.hints_fn = lambda amount: (addr(10), 0, AMOUNT if amount == AMOUNT else 0)
    run = asyncio.run(_keeper(protocol, tmp_path, redeem_max_chunk_musd=10 * E18).run_once())

    assert run["status"] == "TRUNCATED_TO_ZERO"
    assert protocol.calls["send"] == 0
    assert protocol.calls["insertion_position"] == 0


def test_reverted_redemption_is_tx_failed(tmp_path) -> None:
    protocol = _protocol()
    protocol.receipt = {"status": 0, "gasUsed": 40_000, "effectiveGasPrice": 1, "blockNumber": 3}
    keeper = _keeper(protocol, tmp_path)
    run = asyncio.run(keeper.run_once())

    assert run["status"] == "TX_FAILED"
    assert run["result"]["txHash"] is not None
    assert keeper.ledger.spent == 40_000
    assert keeper.alerter.messages[0][0] == "error"


def test_hint_read_failure(tmp_path) -> None:
    protocol = _protocol()
    protocol.failures["redemption_hints"] = ConnectionError("reset")
    run = asyncio.run(_keeper(protocol, tmp_path).run_once())
    assert run["status"] == "HINTS_UNAVAILABLE"
    assert protocol.calls["send"] == 0
