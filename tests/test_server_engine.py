"""Tests for the server sync engine: push validation, CAS, change log and pull."""

import asyncio

import pytest
from helpers import make_operation, student

from classcomm_sync.config import ServerSyncConfig
from classcomm_sync.exceptions import UnauthorizedError, ValidationError
from classcomm_sync.protocol import OperationType, PushOutcomeType
from classcomm_sync.server.engine import ServerSyncEngine


async def push_one(server, op, tenant="t1"):
    (outcome,) = await server.push([op.to_dict()], tenant)
    return outcome


class TestPush:
    """Tests for accepting operations."""

    async def test_first_insert_is_sequence_one(self, server):
        op = make_operation(student("t1", "r1"))
        outcome = await push_one(server, op)

        assert outcome.outcome is PushOutcomeType.APPLIED
        assert outcome.version == 1
        assert outcome.sequence == 1

        page = await server.pull(0, "other-client", "t1")
        assert [(c.record_id, c.sequence, c.version) for c in page.changes] == [("r1", 1, 1)]
        assert page.changes[0].origin_client_id == "client-a"
        assert page.cursor == 1

    async def test_requires_tenant(self, server):
        with pytest.raises(UnauthorizedError):
            await server.push([make_operation(student("t1")).to_dict()], None)
        with pytest.raises(UnauthorizedError):
            await server.pull(0, "c1", "")

    async def test_outcomes_aligned_with_input(self, server):
        ops = [make_operation(student("t1", f"r{i}")) for i in range(3)]
        outcomes = await server.push([op.to_dict() for op in ops], "t1")
        assert [o.id for o in outcomes] == [op.id for op in ops]
        assert [o.sequence for o in outcomes] == [1, 2, 3]

    async def test_accepts_parsed_operations(self, server):
        op = make_operation(student("t1", "r1"))
        (outcome,) = await server.push([op], "t1")
        assert outcome.outcome is PushOutcomeType.APPLIED

    async def test_stale_version_superseded(self, server):
        await push_one(server, make_operation(student("t1", "r1"), 1, timestamp=100))
        await push_one(server, make_operation(student("t1", "r1"), 2, timestamp=200))

        stale = make_operation(student("t1", "r1", firstName="Old"), 1, timestamp=300, client_id="client-b")
        outcome = await push_one(server, stale)

        assert outcome.outcome is PushOutcomeType.SUPERSEDED
        assert outcome.version == 2
        assert outcome.sequence is None
        assert (await server.get_record("students", "r1", "t1"))["firstName"] == "Ada"

    async def test_version_tie_broken_by_timestamp(self, server):
        await push_one(server, make_operation(student("t1", "r1"), 1, timestamp=50))
        await push_one(server, make_operation(student("t1", "r1"), 2, timestamp=100))

        later = make_operation(student("t1", "r1", firstName="B"), 3, timestamp=300, client_id="client-b")
        earlier = make_operation(student("t1", "r1", firstName="A"), 3, timestamp=200, client_id="client-a")

        first = await push_one(server, earlier)
        second = await push_one(server, later)

        assert first.outcome is PushOutcomeType.APPLIED
        assert first.version == 3
        assert second.outcome is PushOutcomeType.APPLIED
        assert second.version == 3

        record = await server.get_record("students", "r1", "t1")
        assert record["firstName"] == "B"
        assert record["_version"] == 3
        assert record["_updatedAt"] == 300
        assert record["_clientId"] == "client-b"

    async def test_delete_produces_tombstone(self, server):
        await push_one(server, make_operation(student("t1", "r1"), 1))
        delete = make_operation(student("t1", "r1"), 2, timestamp=1_700_000_000_500,
                                operation=OperationType.DELETE)
        outcome = await push_one(server, delete)

        assert outcome.outcome is PushOutcomeType.APPLIED
        record = await server.get_record("students", "r1", "t1")
        assert record["_isDeleted"] is True
        assert record["_version"] == 2

        history = await server.changelog.history("students", "r1")
        assert [entry.is_deleted for entry in history] == [False, True]

    async def test_replayed_operation_returns_recorded_outcome(self, server):
        op = make_operation(student("t1", "r1"))
        first = await push_one(server, op)
        again = await push_one(server, op)

        assert again == first
        assert await server.changelog.latest_sequence() == 1

    async def test_client_state_recorded_on_push(self, server):
        await server.push([make_operation(student("t1")).to_dict() for _ in range(2)], "t1")
        state = await server.store.get_client_state("t1", "client-a")
        assert state["operations_pushed"] == 2

        await server.pull(0, "client-a", "t1")
        assert (await server.store.get_client_state("t1", "client-a"))["operations_pushed"] == 2


class TestPushRejections:
    """Tests for operations the server refuses."""

    async def test_foreign_tenant_forbidden(self, server):
        outcome = await push_one(server, make_operation(student("t2", "r1")), tenant="t1")
        assert outcome.outcome is PushOutcomeType.REJECTED
        assert outcome.reason == "forbidden"
        assert await server.changelog.latest_sequence() == 0

    async def test_takeover_forbidden(self, server):
        await push_one(server, make_operation(student("t2", "r1")), tenant="t2")

        takeover = make_operation(student("t1", "r1"), 5, client_id="client-x")
        outcome = await push_one(server, takeover, tenant="t1")

        assert outcome.reason == "forbidden"
        assert (await server.get_record("students", "r1", "t2"))["userId"] == "t2"

    async def test_malformed_operation(self, server):
        (outcome,) = await server.push([{"id": "op-1", "table": "students"}], "t1")
        assert outcome.outcome is PushOutcomeType.REJECTED
        assert outcome.reason == "validation_failure"
        assert outcome.id == "op-1"

    async def test_unknown_table(self, server):
        op = make_operation({"id": "g1", "userId": "t1"}, table="grades")
        outcome = await push_one(server, op)
        assert outcome.reason == "validation_failure"

    async def test_unknown_column(self, server):
        outcome = await push_one(server, make_operation(student("t1", "r1", ssn="123")))
        assert outcome.reason == "validation_failure"

    async def test_version_mismatch(self, server):
        op = make_operation(student("t1", "r1"), 2)
        op.version = 3
        outcome = await push_one(server, op)
        assert outcome.reason == "validation_failure"

    async def test_insert_must_start_at_version_one(self, server):
        outcome = await push_one(server, make_operation(student("t1", "r1"), 50))
        assert outcome.reason == "validation_failure"
        assert await server.get_record("students", "r1", "t1") is None
        assert await server.changelog.latest_sequence() == 0

    async def test_update_cannot_skip_versions(self, server):
        await push_one(server, make_operation(student("t1", "r1"), 1, timestamp=100))

        jump = make_operation(student("t1", "r1", firstName="Eve"), 10000, timestamp=200)
        outcome = await push_one(server, jump)

        assert outcome.outcome is PushOutcomeType.REJECTED
        assert outcome.reason == "validation_failure"
        history = await server.changelog.history("students", "r1")
        assert [e.version for e in history] == [1]

        # The next version in line is still accepted
        step = make_operation(student("t1", "r1", firstName="Bea"), 2, timestamp=300)
        assert (await push_one(server, step)).outcome is PushOutcomeType.APPLIED

    async def test_lower_version_still_superseded(self, server):
        await push_one(server, make_operation(student("t1", "r1"), 1, timestamp=100))
        await push_one(server, make_operation(student("t1", "r1"), 2, timestamp=200))
        await push_one(server, make_operation(student("t1", "r1"), 3, timestamp=300))

        stale = make_operation(student("t1", "r1"), 2, timestamp=400, client_id="client-b")
        assert (await push_one(server, stale)).outcome is PushOutcomeType.SUPERSEDED

    async def test_shared_template_cannot_be_claimed(self, server):
        template = {"id": "tpl-1", "userId": "system", "name": "Welcome", "isDefault": True}
        await push_one(server, make_operation(template, table="templates"), tenant="system")

        claimed = dict(template, userId="tx", isDefault=False)
        outcome = await push_one(
            server, make_operation(claimed, 2, client_id="client-x", table="templates"), tenant="tx"
        )

        assert outcome.reason == "forbidden"
        page = await server.pull(0, "client-y", "ty")
        assert [c.record_id for c in page.changes] == ["tpl-1"]
        assert (await server.get_record("templates", "tpl-1", "ty"))["userId"] == "system"

    async def test_shared_template_edit_keeps_it_shared(self, server):
        template = {"id": "tpl-1", "userId": "system", "name": "Welcome", "isDefault": True}
        await push_one(server, make_operation(template, table="templates"), tenant="system")

        edited = dict(template, name="Hello")
        outcome = await push_one(
            server, make_operation(edited, 2, client_id="client-x", table="templates"), tenant="tx"
        )

        assert outcome.outcome is PushOutcomeType.APPLIED
        assert (await server.get_record("templates", "tpl-1", "ty"))["name"] == "Hello"

    async def test_rejection_does_not_stop_batch(self, server):
        bad = make_operation(student("t2", "r1"))
        good = make_operation(student("t1", "r2"))
        outcomes = await server.push([bad.to_dict(), good.to_dict()], "t1")
        assert [o.outcome for o in outcomes] == [PushOutcomeType.REJECTED, PushOutcomeType.APPLIED]


class TestConcurrency:
    """Tests for compare-and-swap under concurrent pushes."""

    async def test_concurrent_pushes_serialize_per_record(self, server):
        await push_one(server, make_operation(student("t1", "r1"), 1, timestamp=100))

        ops = [
            make_operation(student("t1", "r1", firstName=f"N{i}"), 2, timestamp=200 + i, client_id=f"c{i}")
            for i in range(5)
        ]
        outcomes = await asyncio.gather(*(push_one(server, op) for op in ops))

        applied = [o for o in outcomes if o.outcome is PushOutcomeType.APPLIED]
        assert applied
        assert all(o.version == 2 for o in applied)

        history = await server.changelog.history("students", "r1")
        assert len(history) == 1 + len(applied)
        assert [e.sequence for e in history] == sorted(e.sequence for e in history)

        # Whatever the interleaving, the latest timestamp ends up stored
        record = await server.get_record("students", "r1", "t1")
        assert record["firstName"] == "N4"

    async def test_lost_cas_race_is_retried(self, server, monkeypatch):
        await push_one(server, make_operation(student("t1", "r1"), 1, timestamp=100))

        original = server.store.compare_and_swap
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                return False
            return await original(*args, **kwargs)

        monkeypatch.setattr(server.store, "compare_and_swap", flaky)
        outcome = await push_one(server, make_operation(student("t1", "r1"), 2, timestamp=200))

        assert outcome.outcome is PushOutcomeType.APPLIED
        assert len(calls) == 2

    async def test_persistent_contention_is_server_error(self, server, monkeypatch):
        async def always_lose(*args, **kwargs):
            return False

        monkeypatch.setattr(server.store, "compare_and_swap", always_lose)
        outcome = await push_one(server, make_operation(student("t1", "r1")))

        assert outcome.outcome is PushOutcomeType.REJECTED
        assert outcome.reason == "server_error"
        # Transient failures are not recorded, so a retry is evaluated again
        assert await server.store.get_recorded_outcome("t1", outcome.id) is None


class TestPull:
    """Tests for serving the change log."""

    async def test_pull_filters_by_tenant(self, server):
        await push_one(server, make_operation(student("t1", "mine")), tenant="t1")
        await push_one(server, make_operation(student("t2", "theirs")), tenant="t2")

        page = await server.pull(0, "c1", "t1")
        assert [c.record_id for c in page.changes] == ["mine"]
        assert page.cursor == 1

        page = await server.pull(0, "c2", "t2")
        assert [c.record_id for c in page.changes] == ["theirs"]
        assert page.cursor == 2

    async def test_shared_templates_visible_to_all(self, server):
        template = {"id": "tpl-1", "userId": "admin", "name": "Welcome", "isDefault": True}
        await push_one(server, make_operation(template, table="templates"), tenant="admin")

        page = await server.pull(0, "c1", "t1")
        assert [c.record_id for c in page.changes] == ["tpl-1"]

    async def test_shared_template_not_writable_by_others_unless_shared(self, server):
        private = {"id": "tpl-2", "userId": "t2", "name": "Mine", "isDefault": False}
        outcome = await push_one(server, make_operation(private, table="templates"), tenant="t1")
        assert outcome.reason == "forbidden"

    async def test_pull_is_idempotent(self, server):
        await push_one(server, make_operation(student("t1", "r1")))
        first = await server.pull(0, "c1", "t1")
        second = await server.pull(0, "c1", "t1")
        assert first == second

    async def test_pull_nothing_new_keeps_cursor(self, server):
        await push_one(server, make_operation(student("t1", "r1")))
        page = await server.pull(1, "c1", "t1")
        assert page.changes == []
        assert page.cursor == 1
        assert not page.has_more

    async def test_pull_pages(self):
        server = await ServerSyncEngine.create(ServerSyncConfig(pull_batch_size=2))
        try:
            ops = [make_operation(student("t1", f"r{i}")) for i in range(5)]
            await server.push([op.to_dict() for op in ops], "t1")

            page = await server.pull(0, "c1", "t1")
            assert [c.sequence for c in page.changes] == [1, 2]
            assert page.has_more

            page = await server.pull(page.cursor, "c1", "t1")
            assert [c.sequence for c in page.changes] == [3, 4]

            page = await server.pull(page.cursor, "c1", "t1", limit=10)
            assert [c.sequence for c in page.changes] == [5]
            assert not page.has_more
        finally:
            await server.close()

    async def test_invalid_cursor(self, server):
        with pytest.raises(ValidationError):
            await server.pull(-1, "c1", "t1")
        with pytest.raises(ValidationError):
            await server.pull("0", "c1", "t1")
