import asyncio

import pytest

from k8s_scaler.errors import ConfigurationError, TerminalStepFailure, TransientInfraError
from k8s_scaler.retry import BackoffPolicy


class Flaky:
    def __init__(self, failures, error=TransientInfraError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"attempt {self.calls}")
        return "done"


def test_delays_double_up_to_the_cap():
    policy = BackoffPolicy(base_delay=2, multiplier=2, max_delay=10, max_attempts=6)
    assert [policy.delay_for(n) for n in range(1, 6)] == [2, 4, 8, 10, 10]


def test_succeeds_after_transient_failures(sleep):
    operation = Flaky(3)
    policy = BackoffPolicy(base_delay=1, max_attempts=5)
    assert asyncio.run(policy.run(operation, "join", sleep)) == "done"
    assert operation.calls == 4
    assert sleep.delays == [1, 2, 4]


def test_exhaustion_raises_terminal_failure(sleep):
    operation = Flaky(10)
    policy = BackoffPolicy(base_delay=1, max_attempts=3)
    with pytest.raises(TerminalStepFailure) as exc:
        asyncio.run(policy.run(operation, "k8s-qa: join k8s-qa-worker", sleep, cluster="k8s-qa"))
    assert operation.calls == 3
    assert exc.value.attempts == 3
    assert exc.value.cluster == "k8s-qa"
    assert "attempt 3" in str(exc.value)
    # no sleep after the final attempt
    assert sleep.delays == [1, 2]


def test_other_errors_are_not_retried(sleep):
    operation = Flaky(1, error=ConfigurationError)
    with pytest.raises(ConfigurationError):
        asyncio.run(BackoffPolicy().run(operation, "init", sleep))
    assert operation.calls == 1
    assert sleep.delays == []
