import asyncio
import logging

from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.logs import DISCARD

from abis import (
    ERC20_ABI,
    HINT_HELPERS_ABI,
    PRICE_FEED_ABI,
    SORTED_TROVES_ABI,
    TROVE_MANAGER_ABI,
    TROVE_PILOT_ENGINE_ABI,
)

logger = logging.getLogger("TroveProtocol")

RPC_TIMEOUT_SEC = 60


# --- 1. ASYNC RPC MANAGER ---

class AsyncRPCManager:
    """Primary RPC plus fallbacks. Rotates to the next endpoint after repeated rate limits."""

    def __init__(self, primary, fallbacks=(), timeout=RPC_TIMEOUT_SEC, strikes_before_switch=3):
        self.endpoints = [primary] + [u for u in fallbacks if u and u != primary]
        self.timeout = timeout
        self.strikes_before_switch = strikes_before_switch
        self.current_index = 0
        self.strike_count = 0
        self.w3 = None

    @property
    def url(self):
        return self.endpoints[self.current_index]

    def connect(self):
        url = self.url
        logger.info(f"🔌 Connecting to RPC [{self.current_index + 1}/{len(self.endpoints)}]: {url[:40]}...")
        self.w3 = AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": self.timeout}))
        return self.w3

    def handle_rate_limit(self):
        """Counts a strike; on the last strike switches endpoint. Returns True if it switched."""
        self.strike_count += 1
        if self.strike_count < self.strikes_before_switch or len(self.endpoints) < 2:
            logger.warning(f"⏳ Rate limited (Strike {self.strike_count}/{self.strikes_before_switch})")
            return False
        self.strike_count = 0
        self.current_index = (self.current_index + 1) % len(self.endpoints)
        logger.warning(f"🔄 {self.strikes_before_switch} strikes! Switching to RPC [{self.current_index + 1}/{len(self.endpoints)}]")
        self.connect()
        return True


# --- 2. PROTOCOL CLIENT ---

def _hex(tx_hash):
    if isinstance(tx_hash, str):
        return tx_hash if tx_hash.startswith("0x") else "0x" + tx_hash
    return "0x" + bytes(tx_hash).hex()


class TroveProtocol:
    """
    Thin async boundary over the CDP contracts (TroveManager, SortedTroves,
    HintHelpers, PriceFeed), the TrovePilot engine and the MUSD token.

    Methods raise on RPC/contract failure; callers that need to branch on
    failures wrap them with keeper_errors.safe_call.
    """

    def __init__(self, w3, addresses, account=None, keeper_address=None, chain_id=None, send_w3=None):
        self.w3 = w3
        self.addresses = addresses
        self.account = account
        self.keeper = account.address if account is not None else keeper_address
        self.chain_id = chain_id
        # Unlocked node used for eth_sendTransaction when there is no local key.
        self.send_w3 = send_w3
        self.nonce_lock = asyncio.Lock()
        self.init_contracts()

    @classmethod
    def from_config(cls, config, rpc=None):
        rpc = rpc or AsyncRPCManager(config.rpc_url, getattr(config, "fallback_rpcs", ()))
        w3 = rpc.w3 or rpc.connect()
        account = None
        send_w3 = None
        if config.private_key and len(config.private_key) > 2:
            account = w3.eth.account.from_key(config.private_key)
            logger.info(f"🔑 Loaded Wallet: {account.address}")
        elif config.unlocked_rpc_url:
            send_w3 = AsyncWeb3(AsyncHTTPProvider(config.unlocked_rpc_url, request_kwargs={"timeout": RPC_TIMEOUT_SEC}))
            logger.info(f"🔓 Using unlocked RPC signer for {config.keeper_address}")
        return cls(
            w3,
            config.addresses,
            account=account,
            keeper_address=config.keeper_address,
            chain_id=config.chain_id,
            send_w3=send_w3,
        )

    def rebind(self, w3):
        """Switches to a new read connection (after an RPC rotation)."""
        self.w3 = w3
        self.init_contracts()

    def init_contracts(self):
        def contract(name, abi):
            addr = self.addresses.get(name)
            if not addr:
                return None
            return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(addr), abi=abi)

        self.trove_manager = contract("trove_manager", TROVE_MANAGER_ABI)
        self.sorted_troves = contract("sorted_troves", SORTED_TROVES_ABI)
        self.hint_helpers = contract("hint_helpers", HINT_HELPERS_ABI)
        self.price_feed = contract("price_feed", PRICE_FEED_ABI)
        self.engine = contract("trove_pilot_engine", TROVE_PILOT_ENGINE_ABI)
        self.musd = contract("musd", ERC20_ABI)

    # ================================================================
    # READS: sorted collection & ratios
    # ================================================================

    async def ratio_of(self, trove_id, price):
        return await self.trove_manager.functions.getCurrentICR(trove_id, price).call()

    async def collection_size(self):
        return await self.sorted_troves.functions.getSize().call()

    async def tail_id(self):
        return await self.sorted_troves.functions.getLast().call()

    async def prev_of(self, trove_id):
        return await self.sorted_troves.functions.getPrev(trove_id).call()

    async def next_of(self, trove_id):
        return await self.sorted_troves.functions.getNext(trove_id).call()

    # ================================================================
    # READS: hints & price
    # ================================================================

    async def redemption_hints(self, amount, price, max_iterations):
        first_hint, partial_nicr, truncated = await self.hint_helpers.functions.getRedemptionHints(
            amount, price, max_iterations
        ).call()
        return first_hint, partial_nicr, truncated

    async def insertion_position(self, nicr, seed_a, seed_b):
        upper, lower = await self.sorted_troves.functions.findInsertPosition(nicr, seed_a, seed_b).call()
        return upper, lower

    async def latest_round_data(self):
        round_id, answer, _started_at, updated_at, _answered_in = await self.price_feed.functions.latestRoundData().call()
        return round_id, answer, updated_at

    async def fetch_price(self):
        return await self.price_feed.functions.fetchPrice().call()

    # ================================================================
    # READS: fees & balances
    # ================================================================

    async def market_fees(self):
        """
        EIP-1559 estimate: maxFee = baseFee * 1.2 + priority.

        Returns None for a field the node did not supply; maxFeePerGas is None
        whenever the latest block carries no baseFeePerGas.
        """
        block = await self.w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        try:
            priority = await self.w3.eth.max_priority_fee
        except Exception as e:
            logger.debug(f"eth_maxPriorityFeePerGas unavailable: {e}")
            priority = None
        max_fee = None
        if base_fee is not None:
            max_fee = base_fee * 12 // 10 + (priority or 0)
        return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": priority}

    async def gas_price(self):
        return await self.w3.eth.gas_price

    async def balance_of(self, address=None):
        return await self.w3.eth.get_balance(address or self.keeper)

    async def musd_balance(self, address):
        return await self.musd.functions.balanceOf(address).call()

    async def musd_allowance(self, owner, spender):
        return await self.musd.functions.allowance(owner, spender).call()

    # ================================================================
    # WRITES
    # ================================================================

    def liquidation_call(self, trove_ids, recipient):
        if len(trove_ids) == 1:
            return self.engine.functions.liquidateSingle(trove_ids[0], recipient)
        return self.engine.functions.liquidateBatch(list(trove_ids), recipient)

    def redemption_call(self, amount, recipient, first_hint, upper_hint, lower_hint, partial_nicr, max_iterations):
        return self.engine.functions.redeemHintedTo(
            amount, recipient, first_hint, upper_hint, lower_hint, partial_nicr, max_iterations
        )

    def approve_call(self, spender, amount):
        return self.musd.functions.approve(spender, amount)

    async def estimate(self, fn):
        return await fn.estimate_gas({"from": self.keeper} if self.keeper else None)

    async def send(self, fn, gas=None, fee_fields=None):
        """Builds, signs and broadcasts one transaction. Returns the 0x tx hash."""
        if not self.keeper:
            raise RuntimeError("No signer configured; cannot send transactions")
        params = {"from": self.keeper}
        if gas:
            params["gas"] = gas
        if self.chain_id:
            params["chainId"] = self.chain_id
        params.update(fee_fields or {})

        async with self.nonce_lock:
            if self.account is not None:
                params["nonce"] = await self.w3.eth.get_transaction_count(self.keeper, "pending")
                tx = await fn.build_transaction(params)
                signed = self.account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx = await fn.build_transaction(params)
                tx_hash = await self.send_w3.eth.send_transaction(tx)
        return _hex(tx_hash)

    async def wait_for_receipt(self, tx_hash, timeout=120):
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        return dict(receipt)

    def decode_redemption_event(self, receipt):
        """Best-effort RedemptionExecuted decode from the engine's logs."""
        if self.engine is None:
            return None
        engine_addr = self.engine.address.lower()
        logs = [l for l in receipt.get("logs") or [] if str(l.get("address", "")).lower() == engine_addr]
        if not logs:
            return None
        try:
            events = self.engine.events.RedemptionExecuted().process_receipt({**receipt, "logs": logs}, errors=DISCARD)
        except Exception as e:
            logger.debug(f"RedemptionExecuted decode failed: {e}")
            return None
        if not events:
            return None
        args = events[0]["args"]
        return {k: args[k] for k in ("jobId", "musdRequested", "musdRedeemed", "musdRefunded", "collateralOut", "maxIter") if k in args}
