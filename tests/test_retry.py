"""
Tests del retry con backoff.

Ejecutar: pytest tests/test_retry.py -v
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from device_gateway.core.resilience import RetryConfig, RetryExecutor


def _operational():
    return OperationalError("UPDATE devices", {}, Exception("connection reset"))


class TestRetryExecutor:

    def test_transient_error_retried(self):
        sleep = MagicMock()
        func = MagicMock(side_effect=[_operational(), "ok"])
        executor = RetryExecutor(RetryConfig(max_attempts=3, jitter=False), sleep=sleep)

        assert executor.execute(func) == "ok"
        assert func.call_count == 2
        sleep.assert_called_once_with(0.2)
        assert executor.stats["total_retries"] == 1

    def test_exhausted_reraises(self):
        func = MagicMock(side_effect=_operational())
        executor = RetryExecutor(RetryConfig(max_attempts=2, base_delay=0), sleep=MagicMock())

        with pytest.raises(OperationalError):
            executor.execute(func)
        assert func.call_count == 2
        assert executor.stats["total_failures"] == 1

    def test_non_transient_not_retried(self):
        func = MagicMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))
        executor = RetryExecutor(RetryConfig(max_attempts=3), sleep=MagicMock())

        with pytest.raises(IntegrityError):
            executor.execute(func)
        assert func.call_count == 1

    def test_domain_errors_pass_through(self):
        func = MagicMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            RetryExecutor(sleep=MagicMock()).execute(func)
        assert func.call_count == 1


class TestRetryConfig:

    def test_delay_exponential_and_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)
        assert config.calculate_delay(1) == 1.0
        assert config.calculate_delay(2) == 2.0
        assert config.calculate_delay(5) == 3.0

    def test_jitter_within_range(self):
        config = RetryConfig(base_delay=1.0, jitter=True)
        for _ in range(20):
            assert 0.75 <= config.calculate_delay(1) <= 1.25
