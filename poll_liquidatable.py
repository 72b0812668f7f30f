import asyncio
import logging
import sys
import time
from decimal import Decimal, InvalidOperation

from keeper_config import MCR_ICR, POLLER, env_bool, env_float, env_int, env_str, load_config
from keeper_errors import ConfigError
from keeper_log import RunContext, get_keeper_log, setup_logging
from price_gate import PriceGate
from protocol_client import TroveProtocol
from trove_scanner import scan_below_threshold

logger = logging.getLogger("PollLiquidatable")

DEFAULT_POLL_INTERVAL_SEC = 15
DEFAULT_TIMEOUT_SEC = 7200
DEFAULT_MAX_TO_SCAN = 200
DEFAULT_TOP = 20


def parse_ratio(raw, scale=1):
    """'1.1' -> 1.1e18 ICR. `scale=100` reads a percentage ('110' -> 1.1e18)."""
    try:
        return int(Decimal(raw) * 10**18) // scale
    except (InvalidOperation, ValueError):
        raise ConfigError(f"Invalid ratio: {raw!r}")


def threshold_from_env():
    if env_str("THRESHOLD_ICR"):
        return parse_ratio(env_str("THRESHOLD_ICR"))
    if env_str("THRESHOLD_PCT"):
        return parse_ratio(env_str("THRESHOLD_PCT"), scale=100)
    return MCR_ICR


async def poll_liquidatable(protocol, log, threshold=MCR_ICR, max_to_scan=DEFAULT_MAX_TO_SCAN,
                            poll_interval_sec=DEFAULT_POLL_INTERVAL_SEC, timeout_sec=DEFAULT_TIMEOUT_SEC,
                            stop_after_first_above=True, top=DEFAULT_TOP,
                            clock=time.monotonic, sleep=asyncio.sleep):
    """
    Price read + threshold scan every `poll_interval_sec` until something is
    below `threshold`. Returns the ScanResult, or None once `timeout_sec`
    has elapsed. Read-only: never submits a transaction.
    """
    log = log.bind("poll")
    gate = PriceGate(protocol, log)
    start = clock()
    log.event("poll_start", thresholdIcrE18=threshold, maxToScan=max_to_scan,
              pollIntervalSec=poll_interval_sec, timeoutSec=timeout_sec, stopAfterFirstAbove=stop_after_first_above)

    while True:
        elapsed = int(clock() - start)
        if elapsed > timeout_sec:
            log.error_event("poll_timeout", elapsedSec=elapsed, timeoutSec=timeout_sec)
            return None

        check = await gate.read()
        if not check.ok:
            log.warn_event("poll_price_unavailable", elapsedSec=elapsed, reason=check.reason)
            await sleep(poll_interval_sec)
            continue

        scan = await scan_below_threshold(protocol, check.price, threshold, max_to_scan, stop_after_first_above)
        log.event("scan_summary", elapsedSec=elapsed, priceE18=check.price, thresholdIcrE18=threshold,
                  error=scan.error, **scan.stats())

        if scan.below:
            for trove_id, icr in scan.below[:max(0, top)]:
                log.event("scan_candidate", borrower=trove_id, icrE18=icr, thresholdIcrE18=threshold)
            logger.info(f"🎯 elapsed={elapsed}s price={check.price} belowThreshold={scan.below_count}")
            return scan

        logger.info(f"⏳ elapsed={elapsed}s price={check.price} none below threshold={threshold} scanned={scan.scanned}")
        await sleep(poll_interval_sec)


def main():
    setup_logging()
    try:
        config = load_config(POLLER)
        threshold = threshold_from_env()
    except ConfigError as e:
        logger.error(f"❌ Critical Error: {e}")
        sys.exit(1)

    protocol = TroveProtocol.from_config(config)
    log = get_keeper_log("PollLiquidatable", RunContext(agent=POLLER, network=config.network))
    found = asyncio.run(poll_liquidatable(
        protocol,
        log,
        threshold=threshold,
        max_to_scan=env_int("MAX_TO_SCAN", DEFAULT_MAX_TO_SCAN),
        poll_interval_sec=env_float("POLL_INTERVAL_SEC", DEFAULT_POLL_INTERVAL_SEC),
        timeout_sec=env_float("TIMEOUT_SEC", DEFAULT_TIMEOUT_SEC),
        stop_after_first_above=env_bool("STOP_AFTER_FIRST_ABOVE", True),
        top=env_int("TOP", DEFAULT_TOP),
    ))
    if found is None:
        sys.exit(1)


if __name__ == "__main__":
    main()
