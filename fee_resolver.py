from dataclasses import dataclass
from typing import Optional

from keeper_errors import safe_call

EIP1559 = "eip1559"
LEGACY = "legacy"
UNKNOWN = "unknown"


@dataclass
class FeePlan:
    mode: str
    source: str
    known: bool
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None
    priority_source: Optional[str] = None
    # Distinct from the value: a config max fee with no market priority is
    # sent with priority 0 and priority_known=False.
    priority_known: Optional[bool] = None

    @property
    def fee_per_gas(self):
        if self.mode == EIP1559:
            return self.max_fee_per_gas
        if self.mode == LEGACY:
            return self.gas_price
        return None

    def tx_fields(self):
        """Fee overrides for build_transaction. Never includes a None field."""
        if self.mode == EIP1559:
            fields = {"maxPriorityFeePerGas": self.max_priority_fee_per_gas or 0}
            if self.max_fee_per_gas is not None:
                fields["maxFeePerGas"] = self.max_fee_per_gas
            return fields
        if self.mode == LEGACY and self.gas_price is not None:
            return {"gasPrice": self.gas_price}
        return {}

    def log_fields(self):
        return {
            "mode": self.mode,
            "source": self.source,
            "known": self.known,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "gasPrice": self.gas_price,
            "prioritySource": self.priority_source,
            "priorityKnown": self.priority_known,
        }


UNKNOWN_FEE = FeePlan(UNKNOWN, "unknown", known=False)


class FeeResolver:
    """
    Fee fallback chain, each step tried only if the previous is unavailable:
    configured max fee -> market EIP-1559 estimate -> legacy gas price -> unknown.
    """

    def __init__(self, protocol, log, max_fee_per_gas=None, max_priority_fee_per_gas=None):
        self.protocol = protocol
        self.log = log.bind("executor")
        self.max_fee_per_gas = max_fee_per_gas
        self.max_priority_fee_per_gas = max_priority_fee_per_gas

    async def resolve(self) -> FeePlan:
        if self.max_fee_per_gas is not None:
            return await self._from_config()

        market = await safe_call(self.protocol.market_fees())
        if market.ok:
            max_fee = market.value.get("maxFeePerGas")
            priority = market.value.get("maxPriorityFeePerGas")
            if max_fee is not None:
                return FeePlan(
                    EIP1559,
                    "estimateFeesPerGas",
                    known=True,
                    max_fee_per_gas=max_fee,
                    max_priority_fee_per_gas=priority if priority is not None else 0,
                    priority_source="estimateFeesPerGas",
                    priority_known=priority is not None,
                )
            self.log.event(
                "fee_estimate_missing_maxFeePerGas",
                priorityKnown=priority is not None,
                action="fallback_legacy",
            )

        gas_price = await safe_call(self.protocol.gas_price())
        if gas_price.ok and gas_price.value is not None:
            return FeePlan(LEGACY, "getGasPrice", known=True, gas_price=gas_price.value)
        return UNKNOWN_FEE

    async def _from_config(self):
        if self.max_priority_fee_per_gas is not None:
            priority, known, source = self.max_priority_fee_per_gas, True, "config"
        else:
            source = "estimateFeesPerGas"
            market = await safe_call(self.protocol.market_fees())
            market_priority = market.value.get("maxPriorityFeePerGas") if market.ok else None
            if market_priority is None:
                priority, known = 0, False
            else:
                priority, known = market_priority, True
        return FeePlan(
            EIP1559,
            "config",
            known=True,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=priority,
            priority_source=source,
            priority_known=known,
        )
