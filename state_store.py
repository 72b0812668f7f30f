import os
import json
import time

import aiofiles

from keeper_errors import StateError

STATE_VERSION = 1
RUN_KEYS = {"liquidation": "liquidationRun", "redemption": "redemptionRun"}


def now_ms():
    return int(time.time() * 1000)


async def write_json_atomic(path, data):
    """Temp file then os.replace, so readers never see a half-written document."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    temp_path = path + ".tmp"
    async with aiofiles.open(temp_path, mode="w") as f:
        await f.write(json.dumps(data, indent=2, default=str))
    os.replace(temp_path, path)


class StateStore:
    """
    Per-process run record: `<state_dir>/latest.json` (overwritten each cycle)
    plus `<state_dir>/runs/<agent>_<ms>.json` (never overwritten).

    Each agent gets its own state_dir; two processes sharing one directory
    are not synchronized.
    """

    def __init__(self, state_dir, agent, network, chain_id=None, log=None):
        if agent not in RUN_KEYS:
            raise ValueError(f"Unknown agent: {agent}")
        self.state_dir = state_dir
        self.agent = agent
        self.network = network
        self.chain_id = chain_id
        self.log = log.bind("state") if log else None

    @property
    def latest_path(self):
        return os.path.join(self.state_dir, "latest.json")

    def snapshot_path(self, ts_ms):
        return os.path.join(self.state_dir, "runs", f"{self.agent}_{ts_ms}.json")

    async def load_latest(self):
        """Returns the latest document, None if there is none yet. Raises StateError when malformed."""
        try:
            async with aiofiles.open(self.latest_path, mode="r") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        try:
            doc = json.loads(content)
        except ValueError as e:
            raise StateError(f"Malformed state file {self.latest_path}: {e}")
        validate_state(doc, self.latest_path)
        return doc

    def build_document(self, addresses, keeper, run, previous=None):
        ts = now_ms()
        doc = {
            "version": STATE_VERSION,
            "network": self.network,
            "chainId": self.chain_id,
            "createdAtMs": (previous or {}).get("createdAtMs", ts),
            "updatedAtMs": ts,
            "addresses": dict(addresses),
            "keeper": keeper,
        }
        for key in RUN_KEYS.values():
            if previous and key in previous:
                doc[key] = previous[key]
        doc[RUN_KEYS[self.agent]] = run
        return doc

    async def record_run(self, addresses, keeper, run):
        previous = await self.load_latest()
        doc = self.build_document(addresses, keeper, run, previous)
        snapshot = self.snapshot_path(doc["updatedAtMs"])
        await write_json_atomic(snapshot, doc)
        await write_json_atomic(self.latest_path, doc)
        if self.log:
            self.log.event("state_written", latest=self.latest_path, snapshot=snapshot)
        return doc


def validate_state(doc, path="<state>"):
    if not isinstance(doc, dict):
        raise StateError(f"State file {path} is not a JSON object")
    if doc.get("version") != STATE_VERSION:
        raise StateError(f"State file {path} has unsupported version {doc.get('version')!r}")
    for key in ("network", "addresses"):
        if key not in doc:
            raise StateError(f"State file {path} missing '{key}'")
    if not isinstance(doc["addresses"], dict):
        raise StateError(f"State file {path}: 'addresses' must be an object")
    return doc


def wei_strings(fields):
    """Ints (wei, ICR, NICR) as decimal strings so JSON readers keep full precision."""
    return {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v for k, v in fields.items()}
