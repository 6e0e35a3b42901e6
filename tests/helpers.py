"""Record and operation builders shared by the test modules."""

import uuid
from typing import Any

from classcomm_sync.protocol import OperationType, PendingOperation
from classcomm_sync.sync import version


class FakeClock:
    """Deterministic replacement for version.now_ms."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


def student(user_id: str, record_id: str | None = None, **fields: Any) -> dict[str, Any]:
    """Student record with sensible defaults."""
    record = {
        "id": record_id or str(uuid.uuid4()),
        "userId": user_id,
        "firstName": "Ada",
        "lastName": "Lovelace",
        "grade": "5",
        "createdAt": 1_700_000_000_000,
    }
    record.update(fields)
    return record


def make_operation(
    record: dict[str, Any],
    version_number: int = 1,
    timestamp: int = 1_700_000_000_000,
    client_id: str = "client-a",
    table: str = "students",
    operation: OperationType = OperationType.INSERT,
) -> PendingOperation:
    """Build a pending operation as a client would have enqueued it."""
    data = version.stamp(
        record,
        version_number,
        client_id,
        updated_at=timestamp,
        deleted=operation is OperationType.DELETE,
    )
    return PendingOperation(
        id=str(uuid.uuid4()),
        table=table,
        operation=operation,
        data=data,
        timestamp=timestamp,
        client_id=client_id,
        version=version_number,
    )
