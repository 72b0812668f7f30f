import logging

from job_planner import LiquidationJob, build_liquidation_jobs
from keeper_base import BaseKeeper, run_main
from keeper_config import LIQUIDATION
from trove_scanner import discover_liquidatable
from tx_executor import JobState

logger = logging.getLogger("LiquidationKeeper")


class LiquidationAction:
    """Executor action for one LiquidationJob: liquidateSingle for one trove, liquidateBatch otherwise."""

    def __init__(self, protocol, job: LiquidationJob, recipient):
        self.protocol = protocol
        self.job = job
        self.recipient = recipient
        self.candidates = list(job.troves)
        self.fallback_on_fail = job.fallback_on_fail
        self.single_batch = job.single_batch

    async def estimate(self, troves):
        return await self.protocol.estimate(self.protocol.liquidation_call(troves, self.recipient))

    async def send(self, troves, gas, fee_fields):
        return await self.protocol.send(self.protocol.liquidation_call(troves, self.recipient), gas, fee_fields)

    def alternate_orders(self, troves):
        orders = [("reversed", list(reversed(troves)))]
        ratios = self.job.ratios or {}
        if troves and all(t in ratios for t in troves):
            orders.append(("ascending_icr", sorted(troves, key=lambda t: ratios[t])))
        return orders


class LiquidationKeeper(BaseKeeper):
    agent = LIQUIDATION
    title = "🦅 Liquidation Keeper"

    async def run_once(self):
        run = self.new_run()
        self.log.info(f"Keeper address {self.protocol.keeper}")

        price = await self.check_price(run)
        if price is None:
            return await self.finish_run(run)

        scan = await discover_liquidatable(
            self.protocol,
            price,
            self.log,
            max_to_scan=self.config.max_troves_to_scan,
            early_exit_threshold=self.config.early_exit_scan_threshold,
            mcr=self.config.mcr_icr,
            stop_after_safe=self.config.discovery_stop_after_safe,
        )
        run["discovery"] = {**scan.stats(), "error": scan.error}

        queue = build_liquidation_jobs(
            scan.ids,
            self.config.max_troves_per_job,
            fallback=self.config.liquidation_fallback,
            single_batch=self.config.strict_batch,
            ratios=scan.ratios,
        )
        self.log.event("jobs_built", total=len(queue), liquidatable=scan.below_count,
                       maxPerJob=self.config.max_troves_per_job)

        run["jobs"] = []
        processed = []
        while queue:
            job = queue.pop(0)
            result = await self.executor.execute(LiquidationAction(self.protocol, job, self.recipient))
            run["jobs"].append({"troves": list(job.troves), "result": result.as_record()})
            await self.record_job(result, f"Liquidation of {len(job)} trove(s)")
            processed.extend(result.processed)

            if not result.leftover:
                continue
            if not result.processed:
                # Skipped or failed: caps or reverts would only repeat this run.
                logger.warning(f"⚠️ Not re-queuing {len(result.leftover)} trove(s): job {result.state.value}"
                               + (f" ({result.skip_reason.value})" if result.skip_reason else ""))
                continue
            queue.insert(0, LiquidationJob(
                result.leftover,
                fallback_on_fail=job.fallback_on_fail,
                single_batch=job.single_batch,
                ratios=job.ratios,
            ))
            logger.warning(f"⚠️ Re-queued leftover troves={len(result.leftover)} processed={len(result.processed)}")

        run["processed"] = processed
        if any(j["result"]["state"] == JobState.FAILED.value for j in run["jobs"]):
            run["status"] = "PARTIAL_FAILURE"
        logger.info(f"🏁 Done. liquidated={len(processed)} spent={self.ledger.spent} wei")
        return await self.finish_run(run)


def main():
    run_main(LiquidationKeeper)


if __name__ == "__main__":
    main()
