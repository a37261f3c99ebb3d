import json
import sys
from pathlib import Path

import pytest

# Ensure tests can import the 'billing_consumer' package and 'scripts' modules
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


class ListSink:
    """Log sink that keeps every recorded line."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def record(self, text: str) -> None:
        self.lines.append(text)

    def contains(self, fragment: str) -> bool:
        return any(fragment in line for line in self.lines)


@pytest.fixture
def log_sink() -> ListSink:
    return ListSink()


@pytest.fixture
def raw_event() -> str:
    return json.dumps(
        {
            "billId": "B1",
            "period": "2024-01",
            "moId": "MO-77",
            "previousVersion": "17246553",
            "currentVersion": "3",
            "differenceDetectedAt": "2024-02-01T10:15:00",
            "changeType": "VersionUpdated",
            "metadata": {"source": "soap"},
        }
    )


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "appsettings.json"
    path.write_text(
        json.dumps(
            {
                "RabbitMQ": {
                    "HostName": "mq.internal",
                    "Port": 5671,
                    "UserName": "billing",
                    "Password": "secret",
                    "VirtualHost": "/billing",
                    "UseTls": False,
                    "ExchangeName": "billing.events",
                    "QueueName": "bills",
                    "RoutingKey": "billing.version.difference",
                    "DeadLetterExchange": "billing.dlx",
                    "DeadLetterQueue": "bills.dlq",
                    "ConnectionSettings": {
                        "AutomaticRecoveryEnabled": True,
                        "NetworkRecoveryIntervalSeconds": 10,
                        "RequestedConnectionTimeoutSeconds": 15,
                        "RequestedHeartbeatSeconds": 30,
                        "ClientProvidedNamePrefix": "Ops",
                    },
                    "QueueArguments": {"x-queue-type": "classic"},
                }
            }
        ),
        encoding="utf-8",
    )
    return path
