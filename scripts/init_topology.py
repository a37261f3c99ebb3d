"""
Topology initializer.

- Declares the consumer queue (durable, with configured queue arguments)
- Declares the direct exchange and binds the queue with the routing key
- Declares the dead-letter exchange/queue and points the queue at the DLX

The consumer itself only checks the queue passively, so run this once per
environment (or let the publisher own the topology).

Supports a best-effort mode via ``--best-effort`` or ``INIT_TOPOLOGY_BEST_EFFORT=1``
which skips errors if RabbitMQ is not reachable (useful in CI).

Examples:
    uv run python -m scripts.init_topology --config appsettings.json
    uv run python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import os
from typing import Optional

from billing_consumer.config import CONFIG_SECTION, BrokerConfig, load_broker_config
from billing_consumer.rabbit import connect, declare_topology


async def main(config: BrokerConfig, best_effort: bool) -> None:
    """Declare the topology described by ``config``.

    When ``best_effort`` is True, any connection or declaration error will
    be logged to stdout and the function will return successfully.
    """
    try:
        connection = await connect(config)
    except Exception as exc:  # noqa: BLE001
        if best_effort:
            print(f"[init_topology] Skipping: RabbitMQ not reachable ({exc})")
            return
        raise

    async with connection:
        try:
            channel = await connection.channel()
            queue = await declare_topology(channel, config)
            print(f"[init_topology] Queue '{queue.name}' ready")
        except Exception as exc:  # noqa: BLE001
            if best_effort:
                print(f"[init_topology] Skipping declarations due to error: {exc}")
                return
            raise


def cli(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Declare RabbitMQ topology for the billing consumer")
    parser.add_argument("--config", help="Path to the JSON settings file")
    parser.add_argument("--section", default=CONFIG_SECTION, help="Settings section name")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args(argv)

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    config = load_broker_config(args.config, args.section)
    asyncio.run(main(config, bool(args.best_effort or best_effort_env)))


if __name__ == "__main__":
    cli()
