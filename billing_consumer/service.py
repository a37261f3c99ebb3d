"""
Billing consumer host.

- Loads broker configuration and prepares the output directory
- Opens the broker session and starts the consumption loop
- Every delivered event is written to disk by the persistence sink and
  acknowledged only once it is there
"""

import argparse
from typing import Optional, Sequence

from billing_consumer.config import Settings, get_settings, load_broker_config
from billing_consumer.log import LogSink, best_effort
from billing_consumer.metrics import start_metrics_server
from billing_consumer.persistence import PersistenceSink
from billing_consumer.rabbit import BrokerSession
from billing_consumer.consumer import ConsumptionLoop


SERVICE_NAME = "BillingConsumerService"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="billing-consumer", description="Persist billing version events from RabbitMQ")
    parser.add_argument("--config", help="Path to the JSON settings file (RabbitMQ section)")
    parser.add_argument("--section", help="Settings section holding broker configuration")
    parser.add_argument("--output-dir", help="Directory receiving one file per message")
    parser.add_argument("--queue", help="Queue to consume (defaults to QueueName from configuration)")
    return parser


class BillingConsumerService:
    """Start/stop surface used by both console and service modes.

    Startup failures are fatal in service mode (``interactive=False``): they
    are logged and re-raised so the process exits and the supervisor notices.
    In console mode they are logged and ``start`` returns ``False``.

    Example:
    ```python
    service = BillingConsumerService(interactive=True)
    if await service.start(["--output-dir", "/tmp/bills"]):
        await stop_event.wait()
    await service.stop()
    ```
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        log: Optional[LogSink] = None,
        interactive: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.interactive = interactive
        self._log = best_effort(log)
        self.sink: Optional[PersistenceSink] = None
        self.session: Optional[BrokerSession] = None
        self.loop: Optional[ConsumptionLoop] = None

    async def start(self, args: Optional[Sequence[str]] = None) -> bool:
        """Initialize the sink and session and begin consuming."""
        opts = build_parser().parse_args(list(args or []))
        try:
            config = load_broker_config(opts.config, opts.section or self.settings.config_section, self.settings)
            output_dir = self.settings.resolve(opts.output_dir or self.settings.output_dir)
            self.sink = PersistenceSink(output_dir, log=self._log)

            if self.settings.metrics_port:
                try:
                    start_metrics_server(self.settings.metrics_port)
                    self._log.record(f"Metrics server listening on :{self.settings.metrics_port} /metrics")
                except OSError:
                    # Already started in this process; ignore
                    pass

            self.session = BrokerSession(
                config, log=self._log, shutdown_grace_seconds=self.settings.shutdown_grace_seconds
            )
            await self.session.open()
            self.loop = await self.session.start_consuming(opts.queue or config.queue_name, self.sink.save_message)
            self._log.record(f"Service started; writing messages to {output_dir}.")
            return True
        except Exception as exc:  # noqa: BLE001
            self._log.record(f"Fatal error while starting the service: {exc}")
            await self._release()
            if not self.interactive:
                raise
            return False

    async def stop(self) -> None:
        self._log.record("Stopping service...")
        await self._release()

    async def _release(self) -> None:
        if self.session is not None:
            await self.session.close()
        self.loop = None
