import time
from dataclasses import dataclass
from typing import Optional

from keeper_errors import safe_call

# Prices are 1e18 fixed point (60,000 USD => 60000e18); MIN/MAX bounds use the same scale.


@dataclass
class PriceQuote:
    value: int
    updated_at: Optional[int] = None
    round_id: Optional[int] = None
    source: str = "latestRoundData"


@dataclass
class PriceCheck:
    """Outcome of a price read. `ok=False` means skip the cycle, never crash."""
    ok: bool
    quote: Optional[PriceQuote] = None
    reason: Optional[str] = None

    @property
    def price(self):
        return self.quote.value if self.ok and self.quote else None


class PriceGate:
    def __init__(self, protocol, log, max_age_seconds=0, min_price=0, max_price=0, clock=time.time):
        self.protocol = protocol
        self.log = log.bind("price")
        self.max_age_seconds = max_age_seconds or 0
        self.min_price = min_price or 0
        self.max_price = max_price or 0
        self.clock = clock

    @classmethod
    def from_config(cls, protocol, log, config, clock=time.time):
        return cls(
            protocol,
            log,
            max_age_seconds=config.max_price_age_seconds,
            min_price=config.min_btc_price,
            max_price=config.max_btc_price,
            clock=clock,
        )

    async def read(self) -> PriceCheck:
        quote = await self._read_quote()
        if quote is None:
            return PriceCheck(False, reason="UNAVAILABLE")
        return self.validate(quote)

    async def _read_quote(self):
        latest = await safe_call(self.protocol.latest_round_data())
        if latest.ok:
            round_id, answer, updated_at = latest.value
            return PriceQuote(answer, updated_at=updated_at, round_id=round_id)

        if self.max_age_seconds > 0:
            # A point read carries no timestamp, so staleness could not be checked.
            self.log.warn_event(
                "price_unverifiable_staleness",
                reason="latestRoundData_unavailable",
                error=latest.error.message,
            )
            return None

        self.log.event(
            "price_latestRoundData_unavailable_fallback_fetchPrice",
            reason="latestRoundData_unavailable",
            error=latest.error.message,
        )
        point = await safe_call(self.protocol.fetch_price())
        if not point.ok:
            self.log.error(f"❌ Failed to fetch price: {point.error.message}")
            return None
        return PriceQuote(point.value, source="fetchPrice")

    def _age(self, updated_at):
        if not updated_at:
            return None
        return int(self.clock()) - int(updated_at)

    def validate(self, quote: PriceQuote) -> PriceCheck:
        price = quote.value
        bounds = {
            "min": self.min_price or None,
            "max": self.max_price or None,
            "maxAgeSeconds": self.max_age_seconds or None,
            "ageSeconds": self._age(quote.updated_at),
        }

        if price is None or price <= 0:
            self.log.warn_event("price_out_of_bounds", reason="NON_POSITIVE", price=price)
            return PriceCheck(False, quote, "NON_POSITIVE")
        if self.min_price > 0 and price < self.min_price:
            self.log.warn_event("price_out_of_bounds", reason="OUT_OF_BOUNDS_LOW", price=price, **bounds)
            return PriceCheck(False, quote, "OUT_OF_BOUNDS_LOW")
        if self.max_price > 0 and price > self.max_price:
            self.log.warn_event("price_out_of_bounds", reason="OUT_OF_BOUNDS_HIGH", price=price, **bounds)
            return PriceCheck(False, quote, "OUT_OF_BOUNDS_HIGH")

        if self.max_age_seconds > 0:
            # updatedAt == 0 is how feeds report "never updated".
            if not quote.updated_at:
                self.log.warn_event("price_unverifiable_staleness", reason="missing_updatedAt")
                return PriceCheck(False, quote, "UNVERIFIABLE_STALENESS")
            age = self._age(quote.updated_at)
            if age > self.max_age_seconds:
                self.log.warn_event(
                    "price_stale",
                    price=price,
                    ageSeconds=age,
                    maxAgeSeconds=self.max_age_seconds,
                    min=self.min_price or None,
                    max=self.max_price or None,
                )
                return PriceCheck(False, quote, "STALE")

        return PriceCheck(True, quote)
