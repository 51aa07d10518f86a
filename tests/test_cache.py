"""Tests for ethsync.cache and ethsync.gas."""

import asyncio
import logging
from unittest.mock import patch

import pytest

from conftest import wait_until
from ethsync.cache import PollingCache
from ethsync.gas import GasPriceEstimator


class Source:
    """Fetch function whose value and failures are set by the test."""

    def __init__(self, value):
        self.value = value
        self.fail = False
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("fetch failed")
        return self.value


class FakePricer:
    def __init__(self, price):
        self.price = price

    async def suggest_gas_price(self):
        return self.price


class TestPollingCache:
    async def test_create_fetches_initial_value(self):
        source = Source(7)
        cache = await PollingCache.create(source, 60)
        try:
            assert cache.read() == 7
            assert source.calls == 1
        finally:
            await cache.close()

    async def test_create_propagates_first_fetch_error(self):
        source = Source(7)
        source.fail = True
        with pytest.raises(RuntimeError, match="fetch failed"):
            await PollingCache.create(source, 60)

    async def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            PollingCache(1, Source(1), 0)

    async def test_refresh_picks_up_new_value(self):
        source = Source(1)
        async with await PollingCache.create(source, 0.01) as cache:
            source.value = 2
            await wait_until(lambda: cache.read() == 2)

    async def test_refresh_failure_keeps_last_value(self, caplog):
        source = Source(1)
        with caplog.at_level(logging.WARNING, logger="ethsync.cache"):
            async with await PollingCache.create(source, 0.01, name="flaky") as cache:
                source.fail = True
                calls = source.calls
                await wait_until(lambda: source.calls >= calls + 2)
                assert cache.read() == 1

                source.fail = False
                source.value = 3
                await wait_until(lambda: cache.read() == 3)

        assert "flaky: refresh failed" in caplog.text

    async def test_read_after_close(self):
        source = Source(5)
        cache = await PollingCache.create(source, 0.01)
        await cache.close()
        await cache.close()

        source.value = 6
        await asyncio.sleep(0.03)
        assert cache.closed
        assert cache.read() == 5

    async def test_close_aborts_in_flight_fetch(self):
        started = asyncio.Event()

        async def slow_fetch():
            started.set()
            await asyncio.sleep(60)
            return 2

        cache = PollingCache(1, slow_fetch, 0.01)
        await started.wait()
        await asyncio.wait_for(cache.close(), 1)
        assert cache.read() == 1

    async def test_read_from_other_thread(self):
        async with await PollingCache.create(Source("x"), 60) as cache:
            assert await asyncio.to_thread(cache.read) == "x"


class TestGasPriceEstimator:
    async def test_suggest_gas_price(self):
        pricer = FakePricer(30_000_000_000)
        async with await GasPriceEstimator.create(pricer, 0.01) as estimator:
            assert estimator.suggest_gas_price() == 30_000_000_000

            pricer.price = 31_000_000_000
            await wait_until(lambda: estimator.suggest_gas_price() == 31_000_000_000)

    async def test_default_interval_from_settings(self):
        estimator = await GasPriceEstimator.create(FakePricer(1))
        try:
            assert estimator.interval == 4.0
        finally:
            await estimator.close()

    async def test_connect_uses_web3_backend(self):
        with patch("ethsync.gas.Web3Backend", return_value=FakePricer(9)) as backend:
            estimator = await GasPriceEstimator.connect("http://node.test", interval=60)
        try:
            backend.assert_called_once_with("http://node.test")
            assert estimator.suggest_gas_price() == 9
        finally:
            await estimator.close()
