import logging

from abis import MAX_UINT256
from hint_computer import complete_insert_hints, read_redemption_hints
from job_planner import TRUNCATED_TO_ZERO, build_redeem_plan
from keeper_base import BaseKeeper, run_main
from keeper_config import REDEMPTION
from keeper_errors import SkipReason, safe_call
from state_store import wei_strings
from tx_executor import JobResult, JobState

logger = logging.getLogger("RedemptionKeeper")


class RedemptionAction:
    """Executor action for one redeemHintedTo call. The single candidate is the MUSD amount."""

    fallback_on_fail = False
    single_batch = True

    def __init__(self, protocol, plan, hints):
        self.protocol = protocol
        self.plan = plan
        self.hints = hints
        self.candidates = [plan.effective_musd]

    def _call(self):
        return self.protocol.redemption_call(
            self.plan.effective_musd,
            self.plan.recipient,
            self.hints.first_hint,
            self.hints.upper_hint,
            self.hints.lower_hint,
            self.hints.partial_nicr,
            self.plan.max_iterations,
        )

    async def estimate(self, _amounts):
        return await self.protocol.estimate(self._call())

    async def send(self, _amounts, gas, fee_fields):
        return await self.protocol.send(self._call(), gas, fee_fields)


class ApproveAction:
    """Executor action for approve(engine, amount) on MUSD. The single candidate is the amount."""

    fallback_on_fail = False
    single_batch = True

    def __init__(self, protocol, spender, amount):
        self.protocol = protocol
        self.spender = spender
        self.candidates = [amount]

    async def estimate(self, amounts):
        return await self.protocol.estimate(self.protocol.approve_call(self.spender, amounts[0]))

    async def send(self, amounts, gas, fee_fields):
        return await self.protocol.send(self.protocol.approve_call(self.spender, amounts[0]), gas, fee_fields)


def _deltas(before, after):
    return {
        "musdBefore": str(before[0]), "musdAfter": str(after[0]), "musdDelta": str(after[0] - before[0]),
        "nativeBefore": str(before[1]), "nativeAfter": str(after[1]), "nativeDelta": str(after[1] - before[1]),
    }


class RedemptionKeeper(BaseKeeper):
    agent = REDEMPTION
    title = "💱 Redemption Keeper"

    async def read_balances(self, address):
        """(MUSD, native) for `address`; None if either read fails."""
        musd = await safe_call(self.protocol.musd_balance(address))
        native = await safe_call(self.protocol.balance_of(address))
        if not (musd.ok and native.ok):
            return None
        return musd.value, native.value

    async def ensure_allowance(self, plan):
        """
        True when the engine may pull `plan.effective_musd` from the caller.
        Allowance is the caller's (msg.sender), not the recipient's.
        """
        caller = self.protocol.keeper
        spender = self.config.address("trove_pilot_engine")
        if caller is None:
            self.log.event("allowance_check_skipped", reason="no_signer")
            return True
        allowance = await safe_call(self.protocol.musd_allowance(caller, spender))
        if allowance.ok and allowance.value >= plan.effective_musd:
            return True

        self.log.event(
            "approve_needed",
            caller=caller,
            spender=spender,
            allowance=allowance.value if allowance.ok else None,
            error=None if allowance.ok else allowance.error.message,
            required=plan.effective_musd,
            autoApprove=self.config.auto_approve,
            approveExact=self.config.approve_exact,
        )
        if not self.config.auto_approve or self.config.dry_run:
            return False

        amount = plan.effective_musd if self.config.approve_exact else MAX_UINT256
        result = await self.executor.execute(ApproveAction(self.protocol, spender, amount))
        if result.state == JobState.SKIPPED:
            self.log.event("approve_skipped", reason=result.skip_reason, caller=caller, amount=amount)
            return False
        if result.tx_hash:
            self.log.event("approve_sent", caller=caller, amount=amount, gas=result.gas_limit, hash=result.tx_hash)
        if result.state != JobState.DONE:
            self.log.error_event("approve_failed", hash=result.tx_hash,
                                 errorType=result.error.kind if result.error else None,
                                 message=result.error.message if result.error else None)
            return False
        self.log.event("approve_confirmed", hash=result.tx_hash, gasUsed=result.gas_used,
                       effectiveGasPrice=result.effective_gas_price)
        return True

    async def run_once(self):
        run = self.new_run()
        cfg = self.config
        self.log.info(f"Keeper address {self.protocol.keeper}")

        price = await self.check_price(run)
        if price is None:
            return await self.finish_run(run)
        self.log.event("redeem_price", priceE18=price)

        read = await read_redemption_hints(self.protocol, cfg.redeem_musd_amount, price, cfg.max_iterations)
        if not read.ok:
            self.log.error_event("redeem_hints_failed", errorType=read.error.kind, message=read.error.message)
            run["status"] = "HINTS_UNAVAILABLE"
            return await self.finish_run(run)
        hints = read.value

        plan = build_redeem_plan(
            cfg.redeem_musd_amount,
            hints.truncated_musd,
            cfg.max_iterations,
            self.recipient,
            strict_truncation=cfg.strict_truncation,
            max_chunk=cfg.redeem_max_chunk_musd,
        )
        run["plan"] = wei_strings(plan.as_fields())
        if not plan.ok:
            self.log.event("job_skip", component="strategy", reason=plan.reason,
                           requestedMusd=plan.requested_musd, truncatedMusd=plan.truncated_musd)
            run["status"] = plan.reason
            return await self.finish_run(run)
        self.log.event("redeem_plan", component="strategy", **plan.as_fields())

        if plan.effective_musd < hints.truncated_musd:
            # Chunk cap clamped the amount: first hint and partial NICR must match what is sent.
            read = await read_redemption_hints(self.protocol, plan.effective_musd, price, cfg.max_iterations)
            if not read.ok:
                self.log.error_event("redeem_hints_failed", errorType=read.error.kind, message=read.error.message)
                run["status"] = "HINTS_UNAVAILABLE"
                return await self.finish_run(run)
            hints = read.value
            self.log.event("redeem_hints_reread", chunkMusd=plan.effective_musd, truncatedMusd=hints.truncated_musd,
                           firstHint=hints.first_hint, partialNICR=hints.partial_nicr)
            if hints.truncated_musd < plan.effective_musd:
                plan.effective_musd = hints.truncated_musd
                run["plan"] = wei_strings(plan.as_fields())
            if plan.effective_musd == 0:
                self.log.event("job_skip", component="strategy", reason=TRUNCATED_TO_ZERO,
                               requestedMusd=plan.requested_musd, chunkMusd=plan.max_chunk)
                run["status"] = TRUNCATED_TO_ZERO
                return await self.finish_run(run)

        completed = await complete_insert_hints(
            self.protocol, hints, self.log,
            upper_seed=cfg.upper_seed, lower_seed=cfg.lower_seed, seed_scan_window=cfg.seed_scan_window,
        )
        if not completed.ok:
            self.log.error_event("redeem_hints_failed", errorType=completed.error.kind, message=completed.error.message)
            run["status"] = "HINTS_UNAVAILABLE"
            return await self.finish_run(run)
        run["hints"] = wei_strings(hints.as_fields())

        if not await self.ensure_allowance(plan):
            result = JobResult(JobState.SKIPPED, leftover=[plan.effective_musd], skip_reason=SkipReason.ALLOWANCE_REQUIRED)
            self.log.event("job_skip", reason=SkipReason.ALLOWANCE_REQUIRED, effectiveMusd=plan.effective_musd)
            run["result"] = result.as_record()
            await self.record_job(result, "Redemption")
            return await self.finish_run(run)

        caller = self.protocol.keeper
        same = (caller or "").lower() == plan.recipient.lower()
        caller_before = await self.read_balances(caller) if caller else None
        recipient_before = caller_before if same else await self.read_balances(plan.recipient)

        result = await self.executor.execute(RedemptionAction(self.protocol, plan, hints))
        run["result"] = result.as_record()

        if result.state == JobState.DONE:
            caller_after = await self.read_balances(caller) if caller else None
            recipient_after = caller_after if same else await self.read_balances(plan.recipient)
            balances = {}
            if caller_before and caller_after:
                balances["caller"] = _deltas(caller_before, caller_after)
            if recipient_before and recipient_after:
                balances["recipient"] = _deltas(recipient_before, recipient_after)
            run["balances"] = balances

            event = self.protocol.decode_redemption_event(result.receipt or {})
            run["engineEvent"] = {k: str(v) for k, v in event.items()} if event else None
            self.log.event(
                "redeem_result",
                txHash=result.tx_hash,
                recipient=plan.recipient,
                requestedMusd=plan.requested_musd,
                truncatedMusd=plan.truncated_musd,
                effectiveMusd=plan.effective_musd,
                balances=balances,
                engineEvent=event,
            )
        elif result.state == JobState.FAILED:
            run["status"] = "TX_FAILED"

        await self.record_job(result, f"Redemption of {plan.effective_musd} MUSD")
        logger.info(f"🏁 Done. state={result.state.value} spent={self.ledger.spent} wei")
        return await self.finish_run(run)


def main():
    run_main(RedemptionKeeper)


if __name__ == "__main__":
    main()
