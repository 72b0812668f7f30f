"""Tests for the versioned state document and its atomic writes."""

import asyncio
import json
import os

import pytest

from keeper_errors import StateError
from state_store import STATE_VERSION, StateStore, validate_state, wei_strings, write_json_atomic
from tests.fakes import KEEPER, make_log


def _store(tmp_path, agent="liquidation"):
    return StateStore(str(tmp_path / "state"), agent, "mezo-testnet", chain_id=31611, log=make_log(agent))


def test_load_latest_missing_is_none(tmp_path) -> None:
    assert asyncio.run(_store(tmp_path).load_latest()) is None


def test_record_run_writes_latest_and_snapshot(tmp_path) -> None:
    store = _store(tmp_path)
    doc = asyncio.run(store.record_run({"trove_manager": "0x1"}, KEEPER, {"runId": "r1", "status": "OK"}))

    assert doc["version"] == STATE_VERSION
    assert doc["liquidationRun"]["runId"] == "r1"
    with open(store.latest_path) as f:
        assert json.load(f) == doc
    snapshots = os.listdir(os.path.join(store.state_dir, "runs"))
    assert snapshots == [f"liquidation_{doc['updatedAtMs']}.json"]
    assert not os.path.exists(store.latest_path + ".tmp")


def test_snapshots_accumulate_and_created_at_is_kept(tmp_path) -> None:
    store = _store(tmp_path)
    first = asyncio.run(store.record_run({}, KEEPER, {"runId": "r1"}))
    # distinct snapshot names even within the same millisecond
    store.snapshot_path = lambda ts: os.path.join(store.state_dir, "runs", "second.json")
    second = asyncio.run(store.record_run({}, KEEPER, {"runId": "r2"}))
    assert second["createdAtMs"] == first["createdAtMs"]
    assert len(os.listdir(os.path.join(store.state_dir, "runs"))) == 2


def test_other_agent_run_is_preserved(tmp_path) -> None:
    store = _store(tmp_path)
    asyncio.run(store.record_run({}, KEEPER, {"runId": "liq"}))
    redemption = StateStore(store.state_dir, "redemption", "mezo-testnet")
    doc = asyncio.run(redemption.record_run({}, KEEPER, {"runId": "red"}))
    assert doc["liquidationRun"]["runId"] == "liq"
    assert doc["redemptionRun"]["runId"] == "red"


def test_malformed_state_is_fatal(tmp_path) -> None:
    store = _store(tmp_path)
    os.makedirs(store.state_dir)
    with open(store.latest_path, "w") as f:
        f.write("{not json")
    with pytest.raises(StateError):
        asyncio.run(store.load_latest())


def test_validate_state() -> None:
    with pytest.raises(StateError):
        validate_state([])
    with pytest.raises(StateError):
        validate_state({"version": 99, "network": "x", "addresses": {}})
    with pytest.raises(StateError):
        validate_state({"version": STATE_VERSION, "network": "x"})
    with pytest.raises(StateError):
        validate_state({"version": STATE_VERSION, "network": "x", "addresses": []})
    validate_state({"version": STATE_VERSION, "network": "x", "addresses": {}})


def test_unknown_agent_rejected(tmp_path) -> None:
    with pytest.raises(ValueError):
        StateStore(str(tmp_path), "poller", "mezo-testnet")


def test_write_json_atomic_creates_parents(tmp_path) -> None:
    path = str(tmp_path / "a" / "b" / "doc.json")
    asyncio.run(write_json_atomic(path, {"big": 2**200}))
    with open(path) as f:
        assert json.load(f) == {"big": 2**200}


def test_wei_strings() -> None:
    assert wei_strings({"a": 10**30, "b": True, "c": None, "d": "x"}) == {
        "a": str(10**30), "b": True, "c": None, "d": "x"
    }
