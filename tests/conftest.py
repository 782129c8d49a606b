import pytest

from fakes import FakeApiHandler, FakeClock, FakeSleep, make_registry, make_settings
from taskloop.domain.approval.rate_limit import RequestRateLimiter
from taskloop.domain.orchestration.core.task_orchestrator import TaskOrchestrator
from taskloop.infrastructure.persistence.task_storage import InMemoryTaskStorage


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def storage():
    return InMemoryTaskStorage()


@pytest.fixture
def make_orchestrator(storage, clock, fake_sleep):
    def factory(handler=None, settings=None, registry=None, **kwargs):
        kwargs.setdefault("rate_limiter", RequestRateLimiter(clock=clock))
        return TaskOrchestrator(
            handler or FakeApiHandler(clock=clock),
            settings=settings or make_settings(),
            storage=storage,
            tool_registry=registry or make_registry(),
            sleep=fake_sleep,
            **kwargs,
        )

    return factory
