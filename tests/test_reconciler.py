"""Tests for the per-object reconciler."""

import pytest
from conftest import FakeN8nClient, credential, make_profile, tag, workflow

from n8n_backup.core.async_utils import CancelToken
from n8n_backup.engine.models import (
    MergeStrategy,
    ObjectSnapshot,
    ObjectStatus,
    PushOutcome,
    ResourceType,
    RunOptions,
    SkipReason,
)
from n8n_backup.engine.reconciler import MetricsRecorder, Reconciler, RetryPolicy
from n8n_backup.errors import (
    PermissionDenied,
    TransientTransportError,
    TransportError,
    UnsupportedOperation,
    ValidationError,
)

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def target():
    return make_profile("staging", is_default=False)


@pytest.fixture
def client():
    return FakeN8nClient()


@pytest.fixture
def reconciler(client, target):
    return Reconciler(client, target, retry_policy=NO_WAIT, metrics=MetricsRecorder())


def _state(*objects):
    return {obj.key: obj for obj in objects}


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestApply:
    async def test_creates_when_absent(self, reconciler, client, target):
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.SUCCESS
        assert report.action == PushOutcome.CREATED
        assert report.attempts == 1
        assert client.push_calls == [(target.id, "w1", False)]

    async def test_updates_when_present(self, reconciler, client, target):
        obj = workflow("w1")
        report = await reconciler.reconcile(obj, _state(obj))

        assert report.action == PushOutcome.UPDATED
        assert client.push_calls == [(target.id, "w1", True)]

    async def test_identical_content_still_updates(self, reconciler, client, target):
        obj = workflow("w1")
        client.instances[target.id] = _state(obj)

        first = await reconciler.reconcile(obj, _state(obj))
        after_first = dict(client.instances[target.id])
        second = await reconciler.reconcile(obj, _state(obj))

        assert first.action == second.action == PushOutcome.UPDATED
        assert client.instances[target.id] == after_first == _state(obj)
        assert len(client.push_calls) == 2
        assert client.push_calls == [(target.id, "w1", True)] * 2

    @pytest.mark.parametrize(
        "resource_type", [ResourceType.WORKFLOW, ResourceType.CREDENTIAL, ResourceType.TAG]
    )
    async def test_bare_object_is_pushed(self, reconciler, client, target, resource_type):
        obj = ObjectSnapshot(resource_type=resource_type, resource_id="a", data={"x": 1})
        report = await reconciler.reconcile(obj, {}, MergeStrategy.SOURCE_WINS)

        assert report.status == ObjectStatus.SUCCESS
        assert report.action == PushOutcome.CREATED
        assert client.push_calls == [(target.id, "a", False)]

    async def test_metrics_recorded(self, client, target):
        metrics = MetricsRecorder()
        reconciler = Reconciler(client, target, retry_policy=NO_WAIT, metrics=metrics)
        await reconciler.reconcile(tag("t1"), {})
        snapshot = metrics.snapshot()
        assert snapshot.api_calls == 1
        assert snapshot.retries == 0


# ---------------------------------------------------------------------------
# Pre-flight skips
# ---------------------------------------------------------------------------


class TestPreflight:
    async def test_missing_dependency_is_skipped_without_calls(self, reconciler, client):
        obj = workflow("w1", credentials=["cred-1"])
        report = await reconciler.reconcile(obj, {})

        assert report.status == ObjectStatus.SKIPPED
        assert report.skip_reason == SkipReason.DEPENDENCY_MISSING
        assert "cred-1" in report.message
        assert client.push_calls == []

    async def test_dependency_resolved_from_target(self, reconciler):
        cred = credential("cred-1")
        report = await reconciler.reconcile(
            workflow("w1", credentials=["cred-1"]), _state(cred)
        )
        assert report.status == ObjectStatus.SUCCESS

    async def test_dependency_resolved_from_working_ids(self, reconciler):
        report = await reconciler.reconcile(
            workflow("w1", credentials=["cred-1"]),
            {},
            working_ids={"cred-1", "w1"},
        )
        assert report.status == ObjectStatus.SUCCESS

    async def test_blank_id_is_skipped(self, reconciler, client):
        obj = ObjectSnapshot(resource_type=ResourceType.WORKFLOW, resource_id=" ", data={})
        report = await reconciler.reconcile(obj, {})

        assert report.status == ObjectStatus.SKIPPED
        assert report.skip_reason == SkipReason.VALIDATION_FAILED
        assert client.push_calls == []

    @pytest.mark.parametrize(
        "strategy,present",
        [
            (MergeStrategy.TARGET_WINS, True),
            (MergeStrategy.ADD_MISSING, True),
            (MergeStrategy.UPDATE_EXISTING, False),
        ],
    )
    async def test_strategy_declines(self, reconciler, client, strategy, present):
        obj = workflow("w1")
        state = _state(obj) if present else {}
        report = await reconciler.reconcile(obj, state, strategy)

        assert report.status == ObjectStatus.SKIPPED
        assert strategy.value in report.message
        assert client.push_calls == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_transient_then_success(self, reconciler, client):
        client.fail_with["w1"] = [TransientTransportError("HTTP 503", status_code=503)]
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.SUCCESS
        assert report.attempts == 2
        assert reconciler.metrics.retries == 1

    async def test_transient_exhausts_attempts(self, reconciler, client):
        client.fail_with["w1"] = [TransientTransportError("timeout") for _ in range(5)]
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.ERROR
        assert report.attempts == 3
        assert len(client.push_calls) == 3
        assert "timeout" in report.error_detail

    @pytest.mark.parametrize("error_cls", [ValidationError, PermissionDenied])
    async def test_non_retryable_is_error_after_one_call(
        self, reconciler, client, error_cls
    ):
        client.fail_with["w1"] = [error_cls("rejected", status_code=400)]
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.ERROR
        assert error_cls.__name__ in report.message
        assert len(client.push_calls) == 1

    async def test_unsupported_is_skipped(self, reconciler, client):
        client.fail_with["t1"] = [UnsupportedOperation("not supported", status_code=405)]
        report = await reconciler.reconcile(tag("t1"), {})

        assert report.status == ObjectStatus.SKIPPED
        assert report.skip_reason == SkipReason.UNSUPPORTED

    async def test_credential_update_is_unsupported(self, reconciler):
        cred = credential("c1")
        report = await reconciler.reconcile(cred, _state(cred))
        assert report.skip_reason == SkipReason.UNSUPPORTED

    async def test_unexpected_exception_becomes_error(self, reconciler, client):
        client.fail_with["w1"] = [RuntimeError("boom")]
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.ERROR
        assert report.error_detail == "boom"

    async def test_plain_transport_error_is_rejected(self, reconciler, client):
        client.fail_with["w1"] = [TransportError("HTTP 418", status_code=418)]
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.ERROR
        assert report.message == "rejected by target: TransportError"
        assert report.error_detail == "HTTP 418"
        assert reconciler.metrics.snapshot().api_calls == 1
        assert len(client.push_calls) == 1


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancelled_token_issues_no_call(self, client, target):
        token = CancelToken()
        token.cancel("deadline exceeded")
        reconciler = Reconciler(client, target, retry_policy=NO_WAIT, cancel_token=token)

        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.status == ObjectStatus.ERROR
        assert report.message == "cancelled"
        assert report.error_detail == "deadline exceeded"
        assert client.push_calls == []

    async def test_cancel_interrupts_backoff(self, client, target):
        token = CancelToken()
        slow = RetryPolicy(max_attempts=3, initial_delay=60.0, max_delay=60.0, jitter=0.0)
        reconciler = Reconciler(client, target, retry_policy=slow, cancel_token=token)
        client.fail_with["w1"] = [TransientTransportError("HTTP 429", status_code=429)]

        original_push = client.push_object

        def push_and_cancel(*args):
            token.cancel("interrupted")
            return original_push(*args)

        client.push_object = push_and_cancel
        report = await reconciler.reconcile(workflow("w1"), {})

        assert report.message == "cancelled"
        assert len(client.push_calls) == 1


class TestRetryPolicy:
    def test_exponential_capped(self):
        policy = RetryPolicy(initial_delay=1.0, factor=2.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_retry_after_honoured_and_capped(self):
        policy = RetryPolicy(max_delay=10.0, jitter=0.0)
        assert policy.delay_for(1, retry_after=3.0) == 3.0
        assert policy.delay_for(1, retry_after=120.0) == 10.0

    def test_jitter_stays_in_bounds(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.5)
        for _ in range(50):
            assert 0.5 <= policy.delay_for(1) <= 1.5

    def test_from_options(self):
        policy = RetryPolicy.from_options(RunOptions(max_attempts=5, backoff_initial=0.1))
        assert policy.max_attempts == 5
        assert policy.initial_delay == 0.1
