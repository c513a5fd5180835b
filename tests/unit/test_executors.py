"""Tests for the step runtime retry/backoff state machine."""

import asyncio

import pytest

from conductor.exceptions import ProviderError
from conductor.orchestration.workflow_engine.executors import StepRuntime
from conductor.orchestration.workflow_engine.steps import RetryPolicy, StepDefinition, StepStatus
from conductor.providers import BaseProvider, EchoProvider, FunctionProvider, ProviderRegistry
from tests.conftest import FlakyProvider, RecordingSleep


class NonRetryableProvider(BaseProvider):
    name = "config-broken"

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def execute(self, config, inputs):
        self.calls += 1
        raise ProviderError("bad credentials", provider=self.name)


class TestStepRuntimeSuccess:
    """Tests for successful executions."""

    @pytest.mark.asyncio
    async def test_completes_on_first_attempt(self):
        definition = StepDefinition(id="a", provider="echo", inputs={"x": 1})
        runtime = StepRuntime(definition, EchoProvider())

        result = await runtime.execute({"y": 2}, {"outputs": {"z": 3}})

        assert result.status == StepStatus.COMPLETED
        assert result.outputs == {"x": 1, "y": 2, "z": 3}
        assert result.inputs == {"x": 1, "y": 2}
        assert result.retry_count == 0
        assert result.metadata["attempts"] == 1
        assert result.duration is not None

    @pytest.mark.asyncio
    async def test_call_time_inputs_win(self):
        definition = StepDefinition(id="a", provider="echo", inputs={"x": 1})
        result = await StepRuntime(definition, EchoProvider()).execute({"x": 9})
        assert result.outputs == {"x": 9}

    def test_condition_evaluation(self):
        definition = StepDefinition(id="a", provider="echo", condition="mode === 'full'")
        runtime = StepRuntime(definition, EchoProvider())
        assert runtime.can_execute({"mode": "full"}) is True
        assert runtime.can_execute({"mode": "lite"}) is False


class TestStepRuntimeRetries:
    """Tests for retry counting and backoff delays."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts", [1, 2, 3, 5])
    async def test_n_attempts_give_n_minus_one_retries(self, attempts):
        provider = FlakyProvider(failures=100)
        definition = StepDefinition(
            id="a", provider="flaky", retry=RetryPolicy(max_attempts=attempts, delay=1, backoff="linear")
        )
        sleep = RecordingSleep()
        runtime = StepRuntime(definition, provider, sleep=sleep)

        result = await runtime.execute()

        assert result.status == StepStatus.FAILED
        assert result.retry_count == attempts - 1
        assert provider.calls == attempts
        assert result.metadata["attempts"] == attempts
        assert result.error == f"transient failure {attempts}"
        assert result.error_code == "PROVIDER_ERROR"

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        provider = FlakyProvider(failures=2)
        definition = StepDefinition(id="a", provider="flaky", retry=RetryPolicy(max_attempts=3, delay=0.5))
        sleep = RecordingSleep()

        result = await StepRuntime(definition, provider, sleep=sleep).execute({"v": 1})

        assert result.status == StepStatus.COMPLETED
        assert result.retry_count == 2
        assert result.error is None
        assert result.outputs == {"v": 1, "calls": 3}
        assert sleep.calls == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exponential_delays_strictly_increase(self):
        provider = FlakyProvider(failures=100)
        definition = StepDefinition(
            id="a", provider="flaky", retry=RetryPolicy(max_attempts=5, delay=1, backoff="exponential")
        )
        sleep = RecordingSleep()
        runtime = StepRuntime(definition, provider, sleep=sleep)

        await runtime.execute()

        assert runtime.retry_delays == [1, 2, 4, 8]
        assert sleep.calls == runtime.retry_delays
        assert all(b > a for a, b in zip(sleep.calls, sleep.calls[1:]))

    @pytest.mark.asyncio
    async def test_zero_delay_does_not_sleep(self):
        definition = StepDefinition(id="a", provider="flaky", retry=RetryPolicy(max_attempts=3))
        sleep = RecordingSleep()
        result = await StepRuntime(definition, FlakyProvider(failures=1), sleep=sleep).execute()
        assert result.status == StepStatus.COMPLETED
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self):
        provider = NonRetryableProvider()
        definition = StepDefinition(id="a", provider=provider.name, retry=RetryPolicy(max_attempts=4))

        result = await StepRuntime(definition, provider).execute()

        assert result.status == StepStatus.FAILED
        assert provider.calls == 1
        assert result.retry_count == 0
        assert result.metadata["retryable"] is False

    @pytest.mark.asyncio
    async def test_retry_callback_sees_each_retry(self):
        seen = []

        async def on_retry(result, error, delay):
            seen.append((result.status, result.retry_count, error.code, delay))

        definition = StepDefinition(id="a", provider="flaky", retry=RetryPolicy(max_attempts=3, delay=2))
        await StepRuntime(
            definition, FlakyProvider(failures=5), sleep=RecordingSleep(), on_retry=on_retry
        ).execute()

        assert seen == [
            (StepStatus.RETRYING, 1, "PROVIDER_ERROR", 2),
            (StepStatus.RETRYING, 2, "PROVIDER_ERROR", 4),
        ]


class TestStepRuntimeGuards:
    """Tests for input checks and timeouts."""

    @pytest.mark.asyncio
    async def test_missing_required_input_never_calls_provider(self):
        calls = []
        provider = FunctionProvider("upper", lambda cfg, inp: calls.append(inp) or {}, required_inputs=["text"])
        definition = StepDefinition(id="a", provider="upper")

        result = await StepRuntime(definition, provider).execute()

        assert result.status == StepStatus.FAILED
        assert result.error_code == "MISSING_INPUT"
        assert "text" in result.error
        assert calls == []

    @pytest.mark.asyncio
    async def test_step_timeout(self):
        async def slow(config, inputs):
            await asyncio.sleep(5)
            return {}

        provider = FunctionProvider("slow", slow)
        definition = StepDefinition(id="a", provider="slow", timeout=0.01)

        result = await StepRuntime(definition, provider).execute()

        assert result.status == StepStatus.FAILED
        assert result.error_code == "TIMEOUT"
        assert "timed out after 0.01s" in result.error

    @pytest.mark.asyncio
    async def test_registry_policy_applies(self):
        registry = ProviderRegistry()
        provider = FlakyProvider()
        registry.register(provider)
        registry.disable("flaky")
        definition = StepDefinition(id="a", provider="flaky", retry=RetryPolicy(max_attempts=3))

        result = await StepRuntime(definition, provider, registry=registry).execute()

        assert result.status == StepStatus.FAILED
        assert result.error_code == "PROVIDER_DISABLED"
        assert provider.calls == 0
