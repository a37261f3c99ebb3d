"""Consumption loop: turn each delivery into exactly one broker disposition.

The broker callback does no work of its own. It wraps the incoming message in
a ``Delivery`` and puts it on a bounded inbox (capacity 1, matching the
channel prefetch). A single processing task pulls from the inbox, awaits the
handler and sends ``ack`` or ``nack+requeue`` back through the session.

Decision table:
- handler returned ``True``  -> ack
- handler returned ``False`` -> nack, requeue
- handler (or decoding) raised -> log, nack, requeue
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from billing_consumer.log import LogSink, best_effort
from billing_consumer.metrics import (
    CONSUMER_MESSAGE_TOTAL,
    CONSUMER_PROCESS_LATENCY_SECONDS,
    CONSUMER_REDELIVERED_TOTAL,
)


Handler = Callable[[str], Awaitable[bool]]


class Disposition(str, Enum):
    ACK = "ack"
    NACK_REQUEUE = "nack_requeue"


class DeliveryAlreadySettled(RuntimeError):
    """A second disposition was attempted for the same delivery."""


@dataclass
class Delivery:
    """One broker delivery: raw body plus the handle used to settle it.

    ``handle`` is the ``aio_pika`` incoming message in production and any
    object in tests. ``settle`` records the terminal disposition and refuses
    a second one.
    """
    body: bytes
    handle: Any = None
    delivery_tag: Optional[int] = None
    redelivered: bool = False
    disposition: Optional[Disposition] = field(default=None, init=False)

    @classmethod
    def from_message(cls, message: Any) -> "Delivery":
        return cls(
            body=bytes(message.body),
            handle=message,
            delivery_tag=getattr(message, "delivery_tag", None),
            redelivered=bool(getattr(message, "redelivered", False)),
        )

    @property
    def settled(self) -> bool:
        return self.disposition is not None

    def settle(self, disposition: Disposition) -> None:
        if self.disposition is not None:
            raise DeliveryAlreadySettled(
                f"delivery {self.delivery_tag} already settled as {self.disposition.value}"
            )
        self.disposition = disposition


class DispositionTarget(Protocol):
    async def acknowledge(self, delivery: Delivery) -> None: ...

    async def negative_acknowledge_requeue(self, delivery: Delivery) -> None: ...


class ConsumptionLoop:
    """Pull loop bridging deliveries to a handler and back to the broker.

    Properties:
    - `capacity`: inbox size; keep it equal to the channel prefetch (1)

    Example:
    ```python
    loop = ConsumptionLoop(session, sink.save_message)
    loop.start()
    await queue.consume(loop.on_message, no_ack=False)
    ...
    await loop.stop(grace=30)
    ```
    """

    def __init__(
        self,
        session: DispositionTarget,
        handler: Handler,
        log: Optional[LogSink] = None,
        capacity: int = 1,
    ) -> None:
        self._session = session
        self._handler = handler
        self._log = best_effort(log)
        self.capacity = max(1, int(capacity))
        self._inbox: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=self.capacity)
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._current: Optional[Delivery] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> Optional[Delivery]:
        """The delivery currently being processed, if any."""
        return self._current

    def start(self) -> None:
        """Start the processing task (idempotent)."""
        if not self.is_running:
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(), name="billing-consumption-loop")

    async def submit(self, delivery: Delivery) -> None:
        """Hand a delivery to the loop, waiting while the inbox is full."""
        await self._inbox.put(delivery)

    async def on_message(self, message: Any) -> None:
        """``aio_pika`` consumer callback."""
        await self.submit(Delivery.from_message(message))

    async def join(self) -> None:
        """Wait until every submitted delivery has been processed."""
        await self._inbox.join()

    async def run(self) -> None:
        while not self._stopping.is_set():
            delivery = await self._inbox.get()
            self._current = delivery
            try:
                await self.process(delivery)
            finally:
                self._current = None
                self._inbox.task_done()

    async def process(self, delivery: Delivery) -> Disposition:
        """Run the handler for one delivery and send its disposition."""
        start = time.perf_counter()
        if delivery.redelivered:
            CONSUMER_REDELIVERED_TOTAL.inc()
            self._log.record(f"[*] Redelivered message (tag={delivery.delivery_tag}), processing again.")

        try:
            text = delivery.body.decode("utf-8")
            ok = await self._handler(text)
        except Exception as exc:  # noqa: BLE001
            self._log.record(f"[!] Critical error while processing message: {exc!r}")
            ok = False

        disposition = Disposition.ACK if ok is True else Disposition.NACK_REQUEUE
        try:
            if disposition is Disposition.ACK:
                await self._session.acknowledge(delivery)
            else:
                await self._session.negative_acknowledge_requeue(delivery)
        except Exception as exc:  # noqa: BLE001
            # Never flip to the opposite disposition; an unsettled message is redelivered
            self._log.record(
                f"[!] Could not send {disposition.value} for tag={delivery.delivery_tag}: {exc!r}"
            )
        else:
            CONSUMER_MESSAGE_TOTAL.labels(disposition=disposition.value).inc()
        finally:
            CONSUMER_PROCESS_LATENCY_SECONDS.observe(time.perf_counter() - start)
        return disposition

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop pulling new deliveries.

        An idle loop is cancelled right away. A handler already in flight is
        given ``grace`` seconds (forever when ``None``) to finish on its own;
        it is never cancelled. Deliveries left in the inbox stay unsettled
        and the broker redelivers them once the channel closes.
        """
        self._stopping.set()
        task = self._task
        if task is None or task.done():
            return
        if self._current is None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return
        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            self._log.record(f"[!] Handler still running after {grace}s; closing without waiting.")
            task.add_done_callback(self._report_late_finish)

    def _report_late_finish(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            self._log.record("[!] Late handler was cancelled before finishing.")
            return
        exc = task.exception()
        if exc is not None:
            self._log.record(f"[!] Late handler finished with error: {exc!r}")
        else:
            self._log.record("[*] Late handler finished after shutdown.")
