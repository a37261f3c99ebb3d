from types import SimpleNamespace

import pytest

from billing_consumer import rabbit
from billing_consumer.config import ConfigurationError, Settings
from billing_consumer.service import BillingConsumerService


class DummyQueue(SimpleNamespace):
    def __init__(self, name):
        super().__init__(name=name, declaration_result=SimpleNamespace(message_count=0), callback=None)

    async def consume(self, callback, no_ack=False):
        self.callback = callback
        return "ctag"

    async def cancel(self, tag):
        return None


class DummyChannel:
    def __init__(self, missing_queue=False):
        self.is_closed = False
        self.missing_queue = missing_queue

    async def set_qos(self, prefetch_count=0, **_kw):
        self.prefetch_count = prefetch_count

    async def declare_queue(self, name, passive=False, **_kw):
        if self.missing_queue:
            raise RuntimeError("NOT_FOUND")
        return DummyQueue(name)

    async def close(self):
        self.is_closed = True


class DummyConnection:
    def __init__(self, channel):
        self._channel = channel
        self.is_closed = False

    async def channel(self):
        return self._channel

    async def close(self):
        self.is_closed = True


@pytest.fixture
def dummy_broker(monkeypatch):
    state = SimpleNamespace(channel=DummyChannel(), connection=None)

    async def connect_robust(**_kwargs):
        state.connection = DummyConnection(state.channel)
        return state.connection

    monkeypatch.setattr(rabbit.aio_pika, "connect_robust", connect_robust)
    return state


@pytest.fixture
def settings(tmp_path):
    return Settings(base_dir=str(tmp_path), output_dir="input_messages", metrics_port=0, shutdown_grace_seconds=1)


@pytest.mark.asyncio
async def test_start_and_stop(settings, settings_file, dummy_broker, tmp_path, log_sink):
    service = BillingConsumerService(settings, log=log_sink)
    assert await service.start(["--config", str(settings_file)]) is True

    assert (tmp_path / "input_messages").is_dir()
    assert service.session is not None and service.session.is_open
    assert service.loop is not None and service.loop.is_running
    assert log_sink.contains("Service started")

    await service.stop()
    assert service.session.is_closed
    assert dummy_broker.connection.is_closed


@pytest.mark.asyncio
async def test_output_dir_override(settings, settings_file, dummy_broker, tmp_path):
    service = BillingConsumerService(settings)
    await service.start(["--config", str(settings_file), "--output-dir", "custom"])
    assert service.sink is not None
    assert service.sink.output_directory == tmp_path / "custom"
    await service.stop()


@pytest.mark.asyncio
async def test_console_mode_reports_startup_failure(settings, tmp_path, log_sink):
    service = BillingConsumerService(settings, log=log_sink, interactive=True)
    assert await service.start(["--config", str(tmp_path / "missing.json")]) is False
    assert log_sink.contains("Fatal error while starting the service")
    await service.stop()


@pytest.mark.asyncio
async def test_service_mode_propagates_startup_failure(settings, tmp_path):
    service = BillingConsumerService(settings, interactive=False)
    with pytest.raises(ConfigurationError):
        await service.start(["--config", str(tmp_path / "missing.json")])


@pytest.mark.asyncio
async def test_failure_after_connect_closes_the_session(settings, settings_file, dummy_broker):
    dummy_broker.channel.missing_queue = True
    service = BillingConsumerService(settings, interactive=False)
    with pytest.raises(RuntimeError, match="NOT_FOUND"):
        await service.start(["--config", str(settings_file)])
    assert service.session is not None and service.session.is_closed
    assert dummy_broker.connection.is_closed
