from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Union

from abis import ZERO_ADDRESS


@dataclass
class LiquidationJob:
    """
    One unit of liquidation work: at most `max_troves_per_job` trove ids in
    discovery (tail-to-head) order.

    `single_batch` asks the executor to send all ids in one liquidateBatch and
    never shrink the job to fit caps.
    """
    troves: List[str]
    fallback_on_fail: bool = True
    single_batch: bool = False
    # ICR per trove id as read during discovery, used for alternate orderings.
    ratios: Optional[Dict[str, int]] = None

    def __len__(self):
        return len(self.troves)


def build_liquidation_jobs(candidates, max_per_job, fallback=True, single_batch=False, ratios=None):
    if max_per_job <= 0:
        raise ValueError(f"max_per_job must be > 0, got {max_per_job}")
    jobs = []
    for i in range(0, len(candidates), max_per_job):
        chunk = list(candidates[i:i + max_per_job])
        chunk_ratios = {t: ratios[t] for t in chunk if t in ratios} if ratios else None
        jobs.append(LiquidationJob(chunk, fallback_on_fail=fallback, single_batch=single_batch, ratios=chunk_ratios))
    return jobs


# --- REDEMPTION ---

NOOP_AMOUNT = "NOOP_AMOUNT"
TRUNCATED_TO_ZERO = "TRUNCATED_TO_ZERO"
STRICT_TRUNCATION_MISMATCH = "STRICT_TRUNCATION_MISMATCH"
INVALID_RECIPIENT = "INVALID_RECIPIENT"


@dataclass
class RedeemPlan:
    requested_musd: int
    truncated_musd: int
    effective_musd: int
    max_iterations: int
    recipient: str
    strict_truncation: bool = False
    max_chunk: Optional[int] = None

    ok = True

    def as_fields(self):
        return asdict(self)


@dataclass
class RedeemRejection:
    reason: str
    requested_musd: int
    truncated_musd: Optional[int]
    max_iterations: int
    recipient: Optional[str] = None
    strict_truncation: bool = False
    max_chunk: Optional[int] = None

    ok = False

    def as_fields(self):
        return asdict(self)


def build_redeem_plan(requested_musd, truncated_musd, max_iterations, recipient,
                      strict_truncation=False, max_chunk=None) -> Union[RedeemPlan, RedeemRejection]:
    common = dict(
        requested_musd=requested_musd,
        truncated_musd=truncated_musd,
        max_iterations=max_iterations,
        strict_truncation=strict_truncation,
        max_chunk=max_chunk,
    )

    if not recipient or recipient.lower() == ZERO_ADDRESS:
        return RedeemRejection(INVALID_RECIPIENT, **common)
    if requested_musd == 0:
        return RedeemRejection(NOOP_AMOUNT, recipient=recipient, **common)
    if truncated_musd == 0:
        return RedeemRejection(TRUNCATED_TO_ZERO, recipient=recipient, **common)
    if strict_truncation and truncated_musd != requested_musd:
        return RedeemRejection(STRICT_TRUNCATION_MISMATCH, recipient=recipient, **common)

    effective = truncated_musd
    if max_chunk and max_chunk > 0 and effective > max_chunk:
        effective = max_chunk
    return RedeemPlan(effective_musd=effective, recipient=recipient, **common)
