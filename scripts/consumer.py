"""
Billing consumer entrypoint.

- Console mode (default when stdin is a terminal): logs to stdout, stops on
  [Enter] or Ctrl+C, reports startup errors and keeps waiting for the operator
- Service mode: logs to ``service_log.txt``, runs until SIGTERM/SIGINT and
  exits non-zero if startup fails so the supervisor can restart it

Examples:
    uv run python -m scripts.consumer --console --config appsettings.json
    uv run python -m scripts.consumer --service --output-dir /var/lib/billing/input_messages
"""

import asyncio
import signal
import sys
import threading
from typing import Optional, Sequence

from billing_consumer.config import get_settings
from billing_consumer.log import LoggerSink, setup_logging
from billing_consumer.service import BillingConsumerService


def _install_stop_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead
            pass


def _watch_enter(stop: asyncio.Event) -> None:
    """Set ``stop`` when the operator presses Enter (daemon thread, never joined)."""
    loop = asyncio.get_running_loop()

    def _wait() -> None:
        sys.stdin.readline()
        loop.call_soon_threadsafe(stop.set)

    threading.Thread(target=_wait, name="console-enter", daemon=True).start()


async def run_console(args: Sequence[str]) -> int:
    settings = get_settings()
    setup_logging(settings.log_level, console=True)
    service = BillingConsumerService(settings, log=LoggerSink(), interactive=True)

    print("=== Running in CONSOLE mode ===")
    stop = asyncio.Event()
    _install_stop_signals(stop)
    await service.start(args)

    print("\nPress [Enter] to stop the consumer...")
    _watch_enter(stop)
    await stop.wait()

    await service.stop()
    print("Stopped. Goodbye!")
    return 0


async def run_service(args: Sequence[str]) -> int:
    settings = get_settings()
    setup_logging(settings.log_level, log_file=str(settings.resolve(settings.log_file)), console=False)
    service = BillingConsumerService(settings, log=LoggerSink(), interactive=False)

    stop = asyncio.Event()
    _install_stop_signals(stop)
    # Startup errors propagate: the process must not run half-initialized
    await service.start(args)
    try:
        await stop.wait()
    finally:
        await service.stop()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    console = sys.stdin is not None and sys.stdin.isatty()
    if "--console" in argv:
        console = True
        argv.remove("--console")
    if "--service" in argv:
        console = False
        argv.remove("--service")

    runner = run_console if console else run_service
    try:
        return asyncio.run(runner(argv))
    except KeyboardInterrupt:
        print("\nCtrl+C detected. Exiting...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
