"""End-to-end liquidation cycles against the in-memory protocol."""

import asyncio
import json
import logging
import os

import pytest

from keeper_errors import StateError
from liquidation_keeper import LiquidationKeeper
from tests.fakes import FakeAlerter, FakeProtocol, RecordingSleep, addr, events, icr, make_config, make_log


def _keeper(protocol, tmp_path, **overrides):
    config = make_config(tmp_path=tmp_path, **overrides)
    return LiquidationKeeper(config, protocol, make_log(), alerter=FakeAlerter(), sleep=RecordingSleep())


def _risky(n_risky, n_safe=2):
    troves = [(addr(0x100 + i), icr(0.9 + i / 100)) for i in range(n_risky)]
    troves += [(addr(0x200 + i), icr(1.5 + i / 10)) for i in range(n_safe)]
    return troves


def _latest(keeper):
    with open(keeper.store.latest_path) as f:
        return json.load(f)


def test_cycle_liquidates_every_job(tmp_path) -> None:
    protocol = FakeProtocol(_risky(3))
    keeper = _keeper(protocol, tmp_path, max_troves_per_job=2)
    run = asyncio.run(keeper.run_once())

    assert [s["call"][0] for s in protocol.sent] == ["liquidateBatch", "liquidateSingle"]
    assert run["processed"] == [addr(0x100), addr(0x101), addr(0x102)]
    assert run["status"] == "OK"
    assert keeper.ledger.spent == 2 * 80_000 * 1_000_000_000
    assert _latest(keeper)["liquidationRun"]["runId"] == keeper.run_id
    assert [level for level, _ in keeper.alerter.messages] == ["success", "success"]
    assert "remainingWei" not in run


def test_run_document_reports_remaining_budget(tmp_path) -> None:
    protocol = FakeProtocol(_risky(3))
    keeper = _keeper(protocol, tmp_path, max_troves_per_job=2, max_native_spent_per_run=10**15)
    run = asyncio.run(keeper.run_once())

    assert run["spentWei"] == str(2 * 80_000 * 1_000_000_000)
    assert run["capWei"] == str(10**15)
    assert run["remainingWei"] == str(10**15 - 2 * 80_000 * 1_000_000_000)
    assert _latest(keeper)["liquidationRun"]["remainingWei"] == run["remainingWei"]


def test_partial_job_leftover_is_requeued(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO)
    protocol = FakeProtocol(_risky(3))
    protocol.estimate_fn = lambda call: {3: 100, 2: 60, 1: 30}[len(call[1])]
    keeper = _keeper(protocol, tmp_path, max_gas_per_tx=90, gas_buffer_pct=20)
    run = asyncio.run(keeper.run_once())

    assert [list(s["call"][1]) for s in protocol.sent] == [[addr(0x100), addr(0x101)], [addr(0x102)]]
    assert len(run["jobs"]) == 2
    assert run["processed"] == [addr(0x100), addr(0x101), addr(0x102)]


def test_skipped_job_is_not_requeued(tmp_path) -> None:
    protocol = FakeProtocol(_risky(2))
    protocol.failures["estimate"] = RuntimeError("execution reverted")
    keeper = _keeper(protocol, tmp_path, liquidation_fallback=False)
    run = asyncio.run(keeper.run_once())

    assert protocol.calls["send"] == 0
    assert len(run["jobs"]) == 1
    assert run["jobs"][0]["result"]["skipReason"] == "ESTIMATE_REVERT"
    assert run["jobs"][0]["result"]["leftover"] == [addr(0x100), addr(0x101)]
    assert run["status"] == "OK"


def test_failed_job_marks_partial_failure(tmp_path) -> None:
    protocol = FakeProtocol(_risky(1))
    protocol.send_outcomes = [RuntimeError("execution reverted: TroveManager: nothing to liquidate")]
    keeper = _keeper(protocol, tmp_path)
    run = asyncio.run(keeper.run_once())

    assert run["status"] == "PARTIAL_FAILURE"
    assert run["processed"] == []
    assert keeper.alerter.messages[0][0] == "error"


def test_unusable_price_skips_discovery(tmp_path) -> None:
    protocol = FakeProtocol(_risky(2))
    protocol.round = (1, 0, 1_700_000_000)
    keeper = _keeper(protocol, tmp_path)
    run = asyncio.run(keeper.run_once())

    assert run["status"] == "PRICE_UNUSABLE"
    assert run["priceReason"] == "NON_POSITIVE"
    assert protocol.calls["collection_size"] == 0
    assert os.path.exists(keeper.store.latest_path)


def test_nothing_liquidatable(tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO)
    protocol = FakeProtocol(_risky(0, n_safe=3))
    run = asyncio.run(_keeper(protocol, tmp_path).run_once())
    assert run["jobs"] == []
    assert events(caplog, "jobs_built")[0]["total"] == "0"


def test_malformed_state_fails_before_any_read(tmp_path) -> None:
    protocol = FakeProtocol(_risky(2))
    keeper = _keeper(protocol, tmp_path)
    os.makedirs(keeper.store.state_dir)
    with open(keeper.store.latest_path, "w") as f:
        f.write("[]")
    with pytest.raises(StateError):
        asyncio.run(keeper.run_forever())
    assert sum(protocol.calls.values()) == 0


def test_loop_survives_cycle_errors(tmp_path) -> None:
    keeper = _keeper(FakeProtocol(), tmp_path, loop_interval_sec=5)
    outcomes = [RuntimeError("429 Too Many Requests"), None]

    async def run_once():
        outcome = outcomes.pop(0)
        if outcome:
            raise outcome

    class StopLoop(Exception):
        pass

    class StopAfterTwo(RecordingSleep):
        async def __call__(self, seconds):
            await super().__call__(seconds)
            if len(self.calls) == 2:
                raise StopLoop()

    keeper.run_once = run_once
    keeper.sleep = StopAfterTwo()
    with pytest.raises(StopLoop):
        asyncio.run(keeper.run_forever())
    assert keeper.sleep.calls == [5, 5]
    assert keeper.alerter.messages[0][0] == "error"
    assert "rate_limit" in keeper.alerter.messages[0][1]
