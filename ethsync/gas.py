"""Cached gas price suggestions."""

from typing import Protocol

from ethsync.cache import PollingCache
from ethsync.chain.backend import Web3Backend
from ethsync.config import settings


class GasPricer(Protocol):
    async def suggest_gas_price(self) -> int: ...


class GasPriceEstimator(PollingCache[int]):
    """Gas price that refreshes in the background and reads without I/O."""

    @classmethod
    async def create(  # type: ignore[override]
        cls,
        gas_pricer: GasPricer,
        interval: float | None = None,
        name: str = "gas-price-estimator",
    ) -> "GasPriceEstimator":
        """Fetch the current gas price from ``gas_pricer`` and keep it fresh."""
        return await super().create(
            gas_pricer.suggest_gas_price,
            interval or settings.gas_price_interval,
            name=name,
        )

    @classmethod
    async def connect(
        cls,
        rpc_url: str | None = None,
        interval: float | None = None,
    ) -> "GasPriceEstimator":
        """Create an estimator polling the node at ``rpc_url``."""
        return await cls.create(Web3Backend(rpc_url), interval)

    def suggest_gas_price(self) -> int:
        """Return the cached gas price in wei."""
        return self.read()
