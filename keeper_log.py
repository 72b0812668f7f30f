import json
import logging
import os
import time
import random
from dataclasses import dataclass, asdict, field
from enum import Enum

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'


def setup_logging(level=None):
    """Same console format the bots have always used; level from LOG_LEVEL."""
    level = level or os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


def new_run_id():
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"


@dataclass
class RunContext:
    """Fields stamped onto every event of one agent run."""
    agent: str
    network: str = "mezo-testnet"
    keeper: str = None
    run_id: str = field(default_factory=new_run_id)

    def as_fields(self):
        return {k: v for k, v in asdict(self).items() if v is not None}


def _jsonable(value):
    if isinstance(value, bytes):
        return "0x" + bytes(value).hex()
    if isinstance(value, Enum):
        return value.value
    # Wei amounts overflow float precision downstream, keep them as strings.
    return str(value)


def _normalize(fields):
    out = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, dict):
            out[key] = _normalize(value)
        elif isinstance(value, (list, tuple)):
            out[key] = [_normalize(v) if isinstance(v, dict) else _jsonable(v) for v in value]
        elif isinstance(value, (bool, float, str)):
            out[key] = value
        else:
            out[key] = _jsonable(value)
    return out


class KeeperLog(logging.LoggerAdapter):
    """
    Logger bound to one RunContext plus an optional component name.

    Built once per run and handed to each component, so nothing depends on
    process-wide logging state.
    """

    def __init__(self, logger, context: RunContext, component=None):
        extra = context.as_fields()
        if component:
            extra["component"] = component
        super().__init__(logger, extra)
        self.context = context
        self.component = component

    def bind(self, component):
        return KeeperLog(self.logger, self.context, component)

    def process(self, msg, kwargs):
        return msg, kwargs

    def event(self, name, level=logging.INFO, **fields):
        payload = {"ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), "event": name}
        payload.update(self.extra)
        payload.update(_normalize(fields))
        self.log(level, json.dumps(payload, sort_keys=False))
        return payload

    def warn_event(self, name, **fields):
        return self.event(name, logging.WARNING, **fields)

    def error_event(self, name, **fields):
        return self.event(name, logging.ERROR, **fields)


def get_keeper_log(name, context: RunContext, component=None):
    return KeeperLog(logging.getLogger(name), context, component)
