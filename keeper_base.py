import asyncio
import logging
import sys

import keeper_db
from abis import ZERO_ADDRESS
from alerts import Alerter
from fee_resolver import FeeResolver
from keeper_config import load_config
from keeper_errors import ConfigError, ErrorKind, StateError, classify_error
from keeper_log import RunContext, get_keeper_log, setup_logging
from price_gate import PriceGate
from protocol_client import AsyncRPCManager, TroveProtocol
from spend_ledger import SpendLedger
from state_store import StateStore, now_ms
from tx_executor import Executor, JobState

logger = logging.getLogger("Keeper")


class BaseKeeper:
    """
    Wiring shared by both agents: price gate, fee resolver, executor, one
    SpendLedger for the life of the process, state file, journal and alerts.
    Subclasses implement run_once().
    """

    agent = None
    title = "🛡️ Keeper"

    def __init__(self, config, protocol, log, rpc=None, store=None, alerter=None, ledger=None, sleep=asyncio.sleep):
        self.config = config
        self.protocol = protocol
        self.rpc = rpc
        self.log = log
        self.sleep = sleep
        self.ledger = ledger or SpendLedger(config.max_native_spent_per_run)
        self.price_gate = PriceGate.from_config(protocol, log, config)
        self.fees = FeeResolver(protocol, log, config.max_fee_per_gas, config.max_priority_fee_per_gas)
        self.executor = Executor.from_config(protocol, self.fees, self.ledger, log, config, sleep=sleep)
        self.store = store or StateStore(config.state_dir, self.agent, config.network, config.chain_id, log)
        self.alerter = alerter or Alerter.from_config(self.title, config)

    @classmethod
    def create(cls, config):
        if config.db_path:
            keeper_db.init_db(config.db_path)
        rpc = AsyncRPCManager(config.rpc_url, config.fallback_rpcs)
        protocol = TroveProtocol.from_config(config, rpc)
        context = RunContext(agent=cls.agent, network=config.network, keeper=protocol.keeper)
        log = get_keeper_log(cls.__name__, context, component="keeper")
        return cls(config, protocol, log, rpc=rpc)

    @property
    def run_id(self):
        return self.log.context.run_id

    @property
    def recipient(self):
        return self.protocol.keeper or ZERO_ADDRESS

    def new_run(self):
        return {
            "runId": self.run_id,
            "startedAtMs": now_ms(),
            "dryRun": self.config.dry_run,
        }

    async def check_price(self, run):
        check = await self.price_gate.read()
        if not check.ok:
            self.log.warning(f"⚠️ Price sanity/staleness failed ({check.reason}); skipping run")
            run["status"] = "PRICE_UNUSABLE"
            run["priceReason"] = check.reason
            return None
        run["price"] = str(check.price)
        return check.price

    async def record_job(self, result, label):
        """Journal row plus operator alert for one executor result."""
        if keeper_db.is_enabled():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, keeper_db.record_job_result, self.run_id, self.agent, result)

        if result.state == JobState.DONE:
            await self.alerter.log_system(
                f"✅ {label} confirmed: {result.tx_hash} (gas {result.gas_used}, cost {result.actual_cost} wei)",
                level="success",
            )
        elif result.state == JobState.FAILED:
            reason = result.error.message if result.error else "unknown"
            sent = f" tx {result.tx_hash}" if result.tx_hash else ""
            await self.alerter.log_system(f"❌ {label} failed{sent}: {reason}", level="error")
        else:
            await self.alerter.log_system(f"⏭️ {label} skipped: {result.skip_reason.value}")

    async def finish_run(self, run):
        run["finishedAtMs"] = now_ms()
        run["spentWei"] = str(self.ledger.spent)
        if self.ledger.cap is not None:
            run["capWei"] = str(self.ledger.cap)
            run["remainingWei"] = str(self.ledger.remaining)
        run.setdefault("status", "OK")
        await self.store.record_run(self.config.addresses, self.protocol.keeper, run)
        return run

    async def run_once(self):
        raise NotImplementedError

    async def run_forever(self):
        """Single cycle when LOOP_INTERVAL_SEC is 0, otherwise loops until cancelled."""
        # Fails fast on a malformed state file before any transaction goes out.
        await self.store.load_latest()
        if not self.config.loop_interval_sec or self.config.loop_interval_sec <= 0:
            return await self.run_once()

        logger.info(f"🚀 {self.title} loop every {self.config.loop_interval_sec}s")
        while True:
            try:
                await self.run_once()
            except (StateError, ConfigError) as e:
                await self.alerter.log_system(f"❌ Fatal: {e}", level="error")
                raise
            except Exception as e:
                classified = classify_error(e)
                await self.alerter.log_system(f"❌ Cycle error ({classified.kind.value}): {e}", level="error")
                if classified.kind == ErrorKind.RATE_LIMIT and self.rpc and self.rpc.handle_rate_limit():
                    self.protocol.rebind(self.rpc.w3)
            await self.sleep(self.config.loop_interval_sec)


def run_main(keeper_cls):
    """Console entry point: fatal config/state problems exit 1."""
    setup_logging()
    try:
        config = load_config(keeper_cls.agent)
    except ConfigError as e:
        logger.error(f"❌ Critical Error: {e}")
        sys.exit(1)

    try:
        keeper = keeper_cls.create(config)
        asyncio.run(keeper.run_forever())
    except (ConfigError, StateError) as e:
        logger.error(f"❌ Critical Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("🛑 Stopped by user.")
    except Exception as e:
        logger.exception(f"❌ Fatal error: {e}")
        sys.exit(1)
