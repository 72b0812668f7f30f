from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from abis import ZERO_ADDRESS
from keeper_config import MCR_ICR
from keeper_errors import safe_call


@dataclass
class ScanResult:
    """(trove id, ICR) pairs in tail-to-head order plus traversal stats."""
    below: List[Tuple[str, int]] = field(default_factory=list)
    scanned: int = 0
    early_exit: bool = False
    error: Optional[str] = None

    @property
    def ids(self):
        return [trove_id for trove_id, _ in self.below]

    @property
    def ratios(self):
        return dict(self.below)

    @property
    def below_count(self):
        return len(self.below)

    def stats(self):
        return {"scanned": self.scanned, "belowThreshold": self.below_count, "earlyExit": self.early_exit}


def _is_end(trove_id):
    return not trove_id or str(trove_id).lower() == ZERO_ADDRESS


async def _start(protocol, result):
    """Returns (size, tail) or None when there is nothing to walk."""
    size = await safe_call(protocol.collection_size())
    if not size.ok:
        result.error = size.error.message
        return None
    if size.value == 0:
        return None
    tail = await safe_call(protocol.tail_id())
    if not tail.ok:
        result.error = tail.error.message
        return None
    return size.value, tail.value


async def scan_below_threshold(protocol, price, threshold, max_to_scan, stop_after_first_above=True):
    """
    Walks SortedTroves from the tail (lowest ICR) toward the head collecting
    every trove below `threshold`.

    With `stop_after_first_above` the walk ends at the first safe trove seen
    after at least one risky one: the list is sorted by ICR, so nothing nearer
    the head can be below threshold. That safe trove counts as scanned.
    `early_exit` is set when the whole budget was used without a hit.
    Read failures end the walk and are reported in `error`, never raised.
    """
    result = ScanResult()
    start = await _start(protocol, result)
    if start is None:
        return result
    size, current = start

    while not _is_end(current) and result.scanned < size and result.scanned < max_to_scan:
        icr = await safe_call(protocol.ratio_of(current, price))
        if not icr.ok:
            result.error = icr.error.message
            break

        if icr.value < threshold:
            result.below.append((current, icr.value))
        elif stop_after_first_above and result.below:
            result.scanned += 1
            break

        prev = await safe_call(protocol.prev_of(current))
        result.scanned += 1
        if not prev.ok:
            result.error = prev.error.message
            break
        current = prev.value

    if result.scanned >= max_to_scan and not result.below:
        result.early_exit = True
    return result


async def discover_liquidatable(protocol, price, log, max_to_scan, early_exit_threshold=0, mcr=MCR_ICR,
                                stop_after_safe=False):
    """
    Liquidation discovery: threshold scan at MCR that gives up after
    `early_exit_threshold` troves with no hit (0 disables the heuristic).
    With `stop_after_safe` it also ends at the first safe trove after a hit.
    """
    log = log.bind("discovery")
    result = ScanResult()
    start = await _start(protocol, result)
    if start is None:
        if result.error:
            log.warn_event("discovery_read_failed", error=result.error)
        log.event("discovery_summary", checked=0, liquidatable=0, belowMcr=0, earlyExit=False, maxScan=max_to_scan)
        return result
    size, current = start

    while not _is_end(current) and result.scanned < size and result.scanned < max_to_scan:
        icr = await safe_call(protocol.ratio_of(current, price))
        if not icr.ok:
            result.error = icr.error.message
            break

        if icr.value < mcr:
            result.below.append((current, icr.value))
        elif stop_after_safe and result.below:
            log.event("discovery_stop_after_safe", current=current)
            result.scanned += 1
            break

        prev = await safe_call(protocol.prev_of(current))
        result.scanned += 1
        if not prev.ok:
            result.error = prev.error.message
            break
        current = prev.value

        if early_exit_threshold > 0 and result.scanned >= early_exit_threshold and not result.below:
            result.early_exit = True
            log.event(
                "discovery_early_exit",
                scanned=result.scanned,
                liquidatable=0,
                maxScan=max_to_scan,
                threshold=early_exit_threshold,
            )
            break

    if result.error:
        log.warn_event("discovery_read_failed", error=result.error, scanned=result.scanned)
    log.event(
        "discovery_summary",
        checked=result.scanned,
        liquidatable=result.below_count,
        belowMcr=result.below_count,
        earlyExit=result.early_exit,
        maxScan=max_to_scan,
    )
    return result
