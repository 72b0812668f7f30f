import asyncio
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from fee_resolver import FeePlan
from keeper_errors import ClassifiedError, ErrorKind, SkipReason, safe_call


class JobState(str, Enum):
    PLANNING = "PLANNING"
    SUBMITTING = "SUBMITTING"
    WAITING_RECEIPT = "WAITING_RECEIPT"
    DONE = "DONE"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class PlannedTx:
    """An accepted plan: the first `count` entries of `order`, sized and priced."""
    order: List[Any]
    count: int
    gas_raw: int
    gas_limit: int
    fee: FeePlan
    projected_cost: Optional[int] = None

    @property
    def candidates(self):
        return self.order[:self.count]


@dataclass
class JobResult:
    state: JobState
    processed: List[Any] = field(default_factory=list)
    leftover: List[Any] = field(default_factory=list)
    skip_reason: Optional[SkipReason] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 0
    working_count: Optional[int] = None
    gas_estimate_raw: Optional[int] = None
    gas_limit: Optional[int] = None
    fee: Optional[FeePlan] = None
    projected_cost: Optional[int] = None
    tx_hash: Optional[str] = None
    receipt_status: Optional[int] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    actual_cost: Optional[int] = None
    order_changed: bool = False
    receipt: Optional[dict] = field(default=None, repr=False)

    @property
    def ok(self):
        return self.state == JobState.DONE

    def as_record(self):
        """JSON-ready summary for the state file and the journal. Wei values as strings."""
        def s(v):
            return str(v) if v is not None else None

        return {
            "state": self.state.value,
            "processed": [str(p) for p in self.processed],
            "leftover": [str(p) for p in self.leftover],
            "skipReason": self.skip_reason.value if self.skip_reason else None,
            "errorType": self.error.kind.value if self.error else None,
            "errorMessage": self.error.message if self.error else None,
            "attempts": self.attempts,
            "workingCount": self.working_count,
            "gasEstimateRaw": s(self.gas_estimate_raw),
            "gasLimit": s(self.gas_limit),
            "fee": {k: (s(v) if isinstance(v, int) and not isinstance(v, bool) else v)
                    for k, v in self.fee.log_fields().items()} if self.fee else None,
            "projectedCost": s(self.projected_cost),
            "txHash": self.tx_hash,
            "receiptStatus": self.receipt_status,
            "blockNumber": s(self.block_number),
            "gasUsed": s(self.gas_used),
            "effectiveGasPrice": s(self.effective_gas_price),
            "actualCost": s(self.actual_cost),
            "orderChanged": self.order_changed,
        }


class Executor:
    """
    PLANNING -> SUBMITTING -> WAITING_RECEIPT -> DONE, with SKIPPED(reason)
    out of PLANNING and FAILED out of SUBMITTING / WAITING_RECEIPT.

    `action` is a LiquidationAction / RedemptionAction style object:
        candidates        ordered work items
        fallback_on_fail  halve the count when gas estimation reverts
        single_batch      never shrink the count
        estimate(items)   -> gas (coroutine)
        send(items, gas, fee_fields) -> tx hash (coroutine)
        alternate_orders(items) -> [(name, items)], optional
    """

    def __init__(self, protocol, fees, ledger, log, max_retries=2, gas_buffer_pct=20,
                 max_gas_per_tx=None, min_balance_wei=None, retry_backoff_ms=500,
                 receipt_timeout_sec=120, dry_run=False, adopt_alternate_order=False,
                 sleep=asyncio.sleep):
        self.protocol = protocol
        self.fees = fees
        self.ledger = ledger
        self.log = log.bind("executor")
        self.max_retries = max_retries
        self.gas_buffer_pct = gas_buffer_pct
        self.max_gas_per_tx = max_gas_per_tx or None
        self.min_balance_wei = min_balance_wei
        self.retry_backoff_ms = retry_backoff_ms
        self.receipt_timeout_sec = receipt_timeout_sec
        self.dry_run = dry_run
        self.adopt_alternate_order = adopt_alternate_order
        self.sleep = sleep

    @classmethod
    def from_config(cls, protocol, fees, ledger, log, config, sleep=asyncio.sleep):
        return cls(
            protocol, fees, ledger, log,
            max_retries=config.max_tx_retries,
            gas_buffer_pct=config.gas_buffer_pct,
            max_gas_per_tx=config.max_gas_per_tx,
            min_balance_wei=config.min_keeper_balance_wei,
            retry_backoff_ms=config.retry_backoff_ms,
            receipt_timeout_sec=config.receipt_timeout_sec,
            dry_run=config.dry_run,
            adopt_alternate_order=config.adopt_alternate_order,
            sleep=sleep,
        )

    def buffered(self, gas):
        return gas * (100 + self.gas_buffer_pct) // 100

    def backoff_ms(self, attempt):
        return self.retry_backoff_ms * 2 ** (attempt - 1) if attempt > 0 else 0

    # ================================================================
    # PLANNING
    # ================================================================

    async def _estimate(self, action, items):
        """
        One gas estimate. Retryable failures (rate limits, timeouts) are
        retried in place with backoff and never change the item count.
        """
        est = await safe_call(action.estimate(items))
        attempt = 0
        while not est.ok and est.error.retryable and attempt < self.max_retries:
            attempt += 1
            backoff = self.backoff_ms(attempt)
            self.log.event("estimate_retry", attempt=attempt, backoffMs=backoff, workingCount=len(items),
                           errorType=est.error.kind, message=est.error.message)
            await self.sleep(backoff / 1000)
            est = await safe_call(action.estimate(items))
        return est

    async def _estimate_at(self, action, order, count):
        """
        Estimates the first `count` items. On revert, halves (rounding up) while
        the action allows it. Returns (count, raw_gas) or (count, ClassifiedError).
        """
        est = await self._estimate(action, order[:count])
        while (not est.ok and est.error.kind == ErrorKind.LOGIC
               and action.fallback_on_fail and not action.single_batch and count > 1):
            before, count = count, math.ceil(count / 2)
            self.log.event("job_shrink", beforeCount=before, afterCount=count, reason=SkipReason.ESTIMATE_REVERT,
                           errorType=est.error.kind, message=est.error.message)
            est = await self._estimate(action, order[:count])
        return count, est.value if est.ok else est.error

    async def _try_alternate_orders(self, action, order):
        """Single-batch jobs only: does the same set estimate in another order?"""
        alternates = getattr(action, "alternate_orders", None)
        if alternates is None:
            return None
        for name, alt in alternates(order):
            if list(alt) == list(order):
                continue
            est = await safe_call(action.estimate(alt))
            if est.ok:
                self.log.event("alternate_order_hint", order=name, candidates=list(alt),
                               gasEstimateRaw=est.value, adopted=self.adopt_alternate_order)
                if self.adopt_alternate_order:
                    return list(alt), est.value
                return None
        return None

    def _skip(self, reason, total, **fields):
        self.log.event("job_skip", reason=reason, candidatesTotal=total, **fields)
        return reason

    async def plan(self, action, order, count):
        """Returns a PlannedTx or the SkipReason that stopped planning."""
        total = len(order)
        fee = await self.fees.resolve()
        if self.ledger.cap is not None and not fee.known:
            return self._skip(SkipReason.FEE_UNAVAILABLE, total, fee=fee.log_fields())

        count, raw = await self._estimate_at(action, order, count)
        if isinstance(raw, ClassifiedError):
            adopted = None
            if action.single_batch and raw.kind == ErrorKind.LOGIC:
                adopted = await self._try_alternate_orders(action, order)
            if adopted is None:
                self.log.event("job_plan_error", reason=SkipReason.ESTIMATE_REVERT, errorType=raw.kind,
                               message=raw.message, workingCount=count, candidatesTotal=total)
                return SkipReason.ESTIMATE_REVERT
            order, raw = adopted
        gas = self.buffered(raw)

        if self.max_gas_per_tx is not None and gas > self.max_gas_per_tx:
            if action.single_batch:
                return self._skip(SkipReason.GAS_CAP, total, gasEstimate=gas, maxGasPerTx=self.max_gas_per_tx)
            while count > 1 and gas > self.max_gas_per_tx:
                before, count = count, math.ceil(count / 2)
                self.log.event("job_shrink", beforeCount=before, afterCount=count, reason=SkipReason.GAS_CAP,
                               maxGasPerTx=self.max_gas_per_tx)
                count, raw = await self._estimate_at(action, order, count)
                if isinstance(raw, ClassifiedError):
                    self.log.event("job_plan_error", reason=SkipReason.ESTIMATE_REVERT, errorType=raw.kind,
                                   message=raw.message, workingCount=count, candidatesTotal=total)
                    return SkipReason.ESTIMATE_REVERT
                gas = self.buffered(raw)
            if gas > self.max_gas_per_tx:
                return self._skip(SkipReason.GAS_CAP, total, gasEstimate=gas, maxGasPerTx=self.max_gas_per_tx)

        fee_per_gas = fee.fee_per_gas
        projected = gas * fee_per_gas if fee_per_gas is not None else None
        if projected is not None and self.ledger.would_exceed(projected):
            return self._skip(SkipReason.SPEND_CAP, total, projectedSpend=self.ledger.projected(projected),
                              cap=self.ledger.cap, fee=fee.log_fields())

        if projected is not None or self.min_balance_wei is not None:
            required = max(projected or 0, self.min_balance_wei or 0)
            if self.protocol.keeper is None and self.dry_run:
                self.log.event("balance_check_skipped", reason="no_signer", requiredWei=required)
            else:
                balance = await safe_call(self.protocol.balance_of())
                if not balance.ok or balance.value < required:
                    return self._skip(
                        SkipReason.INSUFFICIENT_BALANCE, total,
                        balanceWei=balance.value if balance.ok else None,
                        error=None if balance.ok else balance.error.message,
                        requiredWei=required, requiredForTxWei=projected,
                        minKeeperBalanceWei=self.min_balance_wei, fee=fee.log_fields(),
                    )

        planned = PlannedTx(order=list(order), count=count, gas_raw=raw, gas_limit=gas, fee=fee, projected_cost=projected)
        self.log.event(
            "job_plan",
            candidatesTotal=total,
            workingCount=count,
            gasEstimateRaw=raw,
            gasBuffered=gas,
            estimatedCost=projected,
            estimatedCostKnown=projected is not None,
            maxGasPerTx=self.max_gas_per_tx,
            maxNativeSpentPerRun=self.ledger.cap,
            fee=fee.log_fields(),
        )
        return planned

    # ================================================================
    # SUBMITTING / WAITING_RECEIPT
    # ================================================================

    async def execute(self, action) -> JobResult:
        original = list(action.candidates)
        result = JobResult(JobState.PLANNING, leftover=list(original))

        planned = await self.plan(action, original, len(original))
        if isinstance(planned, SkipReason):
            return self._skipped(result, planned)
        self._record_plan(result, planned, original)

        if self.dry_run:
            self.log.event("job_skip", reason=SkipReason.DRY_RUN, candidatesTotal=len(original),
                           workingCount=planned.count, gasLimit=planned.gas_limit, estimatedCost=planned.projected_cost)
            return self._skipped(result, SkipReason.DRY_RUN)

        result.state = JobState.SUBMITTING
        tx_hash = None
        for attempt in range(self.max_retries + 1):
            result.attempts = attempt + 1
            if attempt > 0:
                backoff = self.backoff_ms(attempt)
                self.log.event("retry_scheduled", attempt=attempt, backoffMs=backoff,
                               reason=result.error.kind, replanPerformed=attempt == 1)
                await self.sleep(backoff / 1000)
                if attempt == 1:
                    planned = await self.plan(action, planned.order, planned.count)
                    if isinstance(planned, SkipReason):
                        return self._skipped(result, planned)
                    self._record_plan(result, planned, original)

            sent = await safe_call(action.send(planned.candidates, planned.gas_limit, planned.fee.tx_fields()))
            if sent.ok:
                tx_hash = sent.value
                break

            result.error = sent.error
            self.log.warn_event("tx_error", attempt=attempt, errorType=sent.error.kind, message=sent.error.message,
                                workingCount=planned.count, fee=planned.fee.log_fields())
            if sent.error.kind == ErrorKind.LOGIC:
                break

        if tx_hash is None:
            return self._failed(result, original)

        result.error = None
        result.tx_hash = tx_hash
        result.state = JobState.WAITING_RECEIPT
        self.log.event("tx_sent", hash=tx_hash, attempt=result.attempts - 1, workingCount=planned.count,
                       gasLimit=planned.gas_limit, fee=planned.fee.log_fields())

        # The tx is out: from here on nothing is resubmitted.
        receipt = await safe_call(self.protocol.wait_for_receipt(tx_hash, self.receipt_timeout_sec))
        if not receipt.ok:
            result.error = receipt.error
            self.log.error_event("tx_error", stage="receipt", hash=tx_hash, errorType=receipt.error.kind,
                                 message=receipt.error.message)
            return self._failed(result, original)

        return self._confirmed(result, planned, receipt.value, original)

    def _record_plan(self, result, planned, original):
        result.working_count = planned.count
        result.gas_estimate_raw = planned.gas_raw
        result.gas_limit = planned.gas_limit
        result.fee = planned.fee
        result.projected_cost = planned.projected_cost
        result.order_changed = planned.order != original

    def _confirmed(self, result, planned, receipt, original):
        gas_used = receipt.get("gasUsed") or planned.gas_limit
        price = receipt.get("effectiveGasPrice") or planned.fee.fee_per_gas or 0
        cost = gas_used * price
        self.ledger.add(cost)

        result.receipt = receipt
        result.receipt_status = receipt.get("status")
        result.block_number = receipt.get("blockNumber")
        result.gas_used = gas_used
        result.effective_gas_price = price
        result.actual_cost = cost
        self.log.event(
            "tx_confirmed",
            hash=result.tx_hash,
            status=result.receipt_status,
            blockNumber=result.block_number,
            gasUsed=gas_used,
            effectiveGasPrice=price,
            projectedCost=planned.projected_cost,
            actualCost=cost,
            spentTotal=self.ledger.spent,
        )

        if result.receipt_status == 0:
            result.error = ClassifiedError(ErrorKind.LOGIC, "receipt_status_failed")
            return self._failed(result, original)

        submitted = planned.candidates
        result.state = JobState.DONE
        result.processed = list(submitted)
        result.leftover = [c for c in original if c not in submitted]
        return result

    def _skipped(self, result, reason):
        result.state = JobState.SKIPPED
        result.skip_reason = reason
        result.processed = []
        return result

    def _failed(self, result, original):
        result.state = JobState.FAILED
        result.processed = []
        result.leftover = list(original)
        if result.error is not None:
            self.log.error(f"❌ Job failed after {result.attempts} attempt(s): {result.error.message}")
        return result
