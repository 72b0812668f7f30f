from dataclasses import dataclass, field, asdict
from typing import List

from abis import ZERO_ADDRESS
from keeper_errors import Ok, safe_call


@dataclass
class HintBundle:
    requested_musd: int
    price: int
    max_iterations: int
    first_hint: str
    partial_nicr: int
    truncated_musd: int
    upper_seed: str = ZERO_ADDRESS
    lower_seed: str = ZERO_ADDRESS
    seeds_derived: bool = True
    scanned_tail: List[str] = field(default_factory=list)
    upper_hint: str = ZERO_ADDRESS
    lower_hint: str = ZERO_ADDRESS
    # False when partialNICR == 0: the insert hints stay ZERO and are never used.
    insert_hints_computed: bool = False

    def as_fields(self):
        return asdict(self)


async def derive_seeds_from_tail(protocol, scan_window, log):
    """
    Best-effort seeds for findInsertPosition: the last two troves of the list.
    Any read failure degrades to ZERO seeds instead of failing the cycle.
    """
    if scan_window <= 0:
        return ZERO_ADDRESS, ZERO_ADDRESS, []

    tail = await safe_call(protocol.tail_id())
    if not tail.ok:
        log.warn_event("redeem_seeds_tail_scan_failed", stage="getLast", error=tail.error.message)
        return ZERO_ADDRESS, ZERO_ADDRESS, []

    scanned = []
    current = tail.value
    for _ in range(scan_window):
        if not current or current.lower() == ZERO_ADDRESS:
            break
        scanned.append(current)
        prev = await safe_call(protocol.prev_of(current))
        if not prev.ok:
            log.warn_event("redeem_seeds_tail_scan_failed", stage="getPrev", at=current, error=prev.error.message)
            break
        current = prev.value

    upper = scanned[0] if scanned else ZERO_ADDRESS
    lower = scanned[1] if len(scanned) > 1 else ZERO_ADDRESS
    return upper, lower, scanned


async def read_redemption_hints(protocol, requested_musd, price, max_iterations):
    """Single getRedemptionHints read. Returns Ok(HintBundle) without insert hints, or Err."""
    hints = await safe_call(protocol.redemption_hints(requested_musd, price, max_iterations))
    if not hints.ok:
        return hints
    first_hint, partial_nicr, truncated = hints.value
    return Ok(HintBundle(
        requested_musd=requested_musd,
        price=price,
        max_iterations=max_iterations,
        first_hint=first_hint,
        partial_nicr=partial_nicr,
        truncated_musd=truncated,
    ))


async def complete_insert_hints(protocol, bundle, log, upper_seed=None, lower_seed=None, seed_scan_window=10):
    """
    Picks the seeds (explicit pair, else the list tail) and, only when
    partialNICR != 0, asks findInsertPosition for upper/lower hints.
    """
    log = log.bind("hinting")
    if upper_seed and lower_seed:
        bundle.upper_seed, bundle.lower_seed = upper_seed, lower_seed
        bundle.seeds_derived = False
    else:
        bundle.upper_seed, bundle.lower_seed, bundle.scanned_tail = await derive_seeds_from_tail(
            protocol, seed_scan_window, log
        )
    log.event(
        "redeem_seeds",
        upperSeed=bundle.upper_seed,
        lowerSeed=bundle.lower_seed,
        derived=bundle.seeds_derived,
        scannedTail=len(bundle.scanned_tail),
    )

    if bundle.partial_nicr != 0:
        insert = await safe_call(protocol.insertion_position(bundle.partial_nicr, bundle.upper_seed, bundle.lower_seed))
        if not insert.ok:
            return insert
        bundle.upper_hint, bundle.lower_hint = insert.value
        bundle.insert_hints_computed = True

    log.event(
        "redeem_hints",
        requestedMusd=bundle.requested_musd,
        truncatedMusd=bundle.truncated_musd,
        firstHint=bundle.first_hint,
        partialNICR=bundle.partial_nicr,
        upperHint=bundle.upper_hint,
        lowerHint=bundle.lower_hint,
        insertHintsComputed=bundle.insert_hints_computed,
        maxIterations=bundle.max_iterations,
    )
    return Ok(bundle)


async def compute_hint_bundle(protocol, log, requested_musd, price, max_iterations,
                              upper_seed=None, lower_seed=None, seed_scan_window=10):
    """Both phases back to back. Returns Ok(HintBundle) or the Err of the failed read."""
    read = await read_redemption_hints(protocol, requested_musd, price, max_iterations)
    if not read.ok:
        return read
    return await complete_insert_hints(
        protocol, read.value, log,
        upper_seed=upper_seed, lower_seed=lower_seed, seed_scan_window=seed_scan_window,
    )
