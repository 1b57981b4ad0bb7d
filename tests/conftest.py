from datetime import datetime, timedelta

import pytest
import structlog

from imagebatch.models import GenerationConfig, QueueConfig
from imagebatch.queue import (
    GeneratedImage,
    GenerationBackend,
    HistoryRecorder,
    InMemoryKeyValueStore,
    OutputStorage,
    QueueManager,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0)

    def now(self):
        return self.current

    def advance(self, ms):
        self.current += timedelta(milliseconds=ms)


class RecordingSleeper:
    """Records requested sleeps instead of waiting."""

    def __init__(self):
        self.calls = []

    def __call__(self, delay_ms, token):
        self.calls.append(delay_ms)


class FakeBackend(GenerationBackend):
    """Scripted backend.

    Each call pops the next step from ``script``: an exception instance is
    raised, a callable is invoked (and may raise), anything else succeeds.
    Every call advances the clock by ``duration_ms``.
    """

    def __init__(self, clock, duration_ms=5000):
        self.clock = clock
        self.duration_ms = duration_ms
        self.script = []
        self.calls = []

    def generate(self, prompt, config, ref_images, token):
        self.calls.append({"prompt": prompt, "config": config, "ref_images": ref_images})
        self.clock.advance(self.duration_ms)
        step = self.script.pop(0) if self.script else None
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step()
        return GeneratedImage(mime_type="image/png", data=b"\x89PNG fake " + prompt.encode())


class FakeOutputStorage(OutputStorage):
    def __init__(self):
        self.saved = []

    def save(self, image, prompt, variation_index, batch_name=None):
        ref = f"{batch_name + '_' if batch_name else ''}{prompt}_{variation_index}.png"
        self.saved.append(ref)
        return ref


class FakeHistory(HistoryRecorder):
    def __init__(self, fail=False):
        self.fail = fail
        self.entries = []

    def record(self, image, prompt, model, output_ref, ref_images_used):
        if self.fail:
            raise RuntimeError("history unavailable")
        self.entries.append((prompt, model, output_ref, len(ref_images_used)))


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo CLI logging configuration bound to captured streams."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture
def output_storage():
    return FakeOutputStorage()


@pytest.fixture
def history():
    return FakeHistory()


@pytest.fixture
def failing_history():
    return FakeHistory(fail=True)


@pytest.fixture
def queue_config():
    return QueueConfig()


@pytest.fixture
def gen_config():
    return GenerationConfig(model="test-model", resolution="1K")


@pytest.fixture
def make_manager(store, backend, output_storage, history, clock, sleeper, queue_config):
    """Factory for inline (non-threaded) managers sharing the same store."""

    def _make(**overrides):
        kwargs = dict(
            store=store,
            backend=backend,
            queue_config=queue_config,
            output_storage=output_storage,
            history=history,
            background=False,
            clock=clock.now,
            sleep=sleeper,
        )
        kwargs.update(overrides)
        return QueueManager(**kwargs)

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()
