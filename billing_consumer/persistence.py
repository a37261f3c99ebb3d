"""On-disk persistence of billing version events.

Each accepted message is written verbatim to its own file under the output
directory. The file name carries the bill identity plus a millisecond
timestamp so repeated deliveries of the same bill never overwrite each other:

    Bill_{billId}_Per_{period}_V{currentVersion}_{yyyyMMdd_HHmm_ssfff}.json

Example:
    >>> sink = PersistenceSink("/var/lib/billing/input_messages")
    >>> await sink.save_message('{"billId": "B1", "period": "2024-01", "currentVersion": "3"}')
    True
"""
from __future__ import annotations

import asyncio
import os
import re
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from billing_consumer.log import LogSink, best_effort
from billing_consumer.metrics import PERSIST_WRITE_TOTAL
from billing_consumer.models import VersionDifferenceEvent, parse_event


_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def format_stamp(moment: datetime) -> str:
    """Render ``moment`` as ``yyyyMMdd_HHmm_ssfff`` (milliseconds)."""
    return f"{moment:%Y%m%d_%H%M_%S}{moment.microsecond // 1000:03d}"


def safe_component(value: str) -> str:
    """Replace characters that cannot appear in a file name with ``_``."""
    return _UNSAFE_CHARS.sub("_", value)


def build_file_name(event: VersionDifferenceEvent, moment: datetime) -> str:
    return (
        f"Bill_{safe_component(event.bill_id)}"
        f"_Per_{safe_component(event.period)}"
        f"_V{safe_component(event.current_version)}"
        f"_{format_stamp(moment)}.json"
    )


def _write_new_file(path: Path, data: bytes) -> None:
    # "x" fails if the file exists; nobody else may hold it while we write
    with open(path, "xb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())


class PersistenceSink:
    """Durably store raw message payloads, one new file per message.

    ``save_message`` is total: every failure (unparseable payload, missing
    naming field, permission denied, disk full, name collision) is logged and
    reported as ``False``. Only construction may raise, when the output
    directory cannot be created.
    """

    def __init__(self, output_directory: str | Path, log: Optional[LogSink] = None) -> None:
        self.output_directory = Path(output_directory)
        self._log = best_effort(log)
        self._last_stamp: Optional[datetime] = None
        self.output_directory.mkdir(parents=True, exist_ok=True)

    def _next_stamp(self) -> datetime:
        """Return a millisecond timestamp strictly later than the previous one."""
        now = datetime.now()
        now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(milliseconds=1)
        self._last_stamp = now
        return now

    async def save_message(self, raw: str | bytes) -> bool:
        """Persist ``raw`` and return whether it is safely on disk."""
        start = time.perf_counter()
        try:
            event = parse_event(raw)
        except ValidationError as exc:
            PERSIST_WRITE_TOTAL.labels(result="parse_error").inc()
            self._log.record(f"[storage] Rejected payload ({exc.error_count()} error(s)): {_first_error(exc)}")
            return False

        file_name = build_file_name(event, self._next_stamp())
        path = self.output_directory / file_name
        try:
            data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
            await asyncio.to_thread(_write_new_file, path, data)
        except (OSError, UnicodeError) as exc:
            PERSIST_WRITE_TOTAL.labels(result="io_error").inc()
            self._log.record(f"[storage] Failed to save {file_name}: {exc}")
            return False
        except Exception as exc:  # noqa: BLE001
            PERSIST_WRITE_TOTAL.labels(result="io_error").inc()
            self._log.record(f"[storage] Unexpected error saving {file_name}: {exc!r}")
            return False

        PERSIST_WRITE_TOTAL.labels(result="saved").inc()
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        self._log.record(f"[storage] Saved: {file_name} ({len(data)} bytes, {elapsed_ms:.1f} ms)")
        return True


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    return f"{loc}: {first.get('msg', '')}"
