"""Tests for the audit trail."""

import tempfile

import aiosqlite
import pytest
import pytest_asyncio

from evoledger.policy.audit import AuditEntry, AuditTrail


@pytest_asyncio.fixture
async def audit():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    trail = AuditTrail(db_path)
    await trail.initialize()
    yield trail
    await trail.close()


@pytest.mark.asyncio
async def test_record_and_query(audit):
    await audit.record(AuditEntry(actor="admin", action="mint", asset_id=1, detail="owner=alice"))

    results = await audit.query()
    assert len(results) == 1
    assert results[0].action == "mint"
    assert results[0].asset_id == 1


@pytest.mark.asyncio
async def test_log_action(audit):
    entry = await audit.log_action("admin", "set_utility_score", detail="40", asset_id=3)

    assert entry.success is True
    assert entry.violation == ""
    assert len(await audit.query(actor="admin")) == 1
    assert await audit.query(actor="bob") == []


@pytest.mark.asyncio
async def test_log_violation(audit):
    entry = await audit.log_violation("mallory", "mint", "'mallory' lacks minter for mint")

    assert entry.success is False
    assert "mallory" in entry.violation
    violations = await audit.violations()
    assert len(violations) == 1
    assert violations[0].actor == "mallory"


@pytest.mark.asyncio
async def test_query_by_action(audit):
    await audit.log_action("admin", "mint")
    await audit.log_action("admin", "create_pool")
    await audit.log_action("admin", "mint")

    assert len(await audit.query(action="mint")) == 2
    assert len(await audit.query(action="create_pool")) == 1
    assert len(await audit.query(limit=2)) == 2


@pytest.mark.asyncio
async def test_count(audit):
    assert await audit.count() == 0
    await audit.log_action("admin", "mint")
    await audit.log_violation("bob", "stake", "not owner")
    assert await audit.count() == 2


@pytest.mark.asyncio
async def test_entries_are_persisted(audit):
    await audit.log_action("admin", "mint", asset_id=1)
    await audit.log_violation("bob", "stake", "not owner")

    async with aiosqlite.connect(audit._db_path) as db:
        async with db.execute("SELECT actor, action, allowed FROM engine_audit ORDER BY actor") as cursor:
            rows = await cursor.fetchall()

    assert rows == [("admin", "mint", 1), ("bob", "stake", 0)]


@pytest.mark.asyncio
async def test_memory_only_trail():
    trail = AuditTrail()
    await trail.initialize()
    await trail.log_action("admin", "mint")
    assert await trail.count() == 1
    await trail.close()


@pytest.mark.asyncio
async def test_reload_from_disk(audit):
    await audit.log_action("admin", "create_pool", detail="pool=1")
    await audit.log_violation("bob", "unstake", "did not stake asset 4")
    await audit.close()

    reopened = AuditTrail(audit._db_path)
    await reopened.initialize()

    assert await reopened.count() == 2
    violations = await reopened.violations()
    assert violations[0].violation == "did not stake asset 4"
    assert (await reopened.query(action="create_pool"))[0].detail == "pool=1"
    await reopened.close()


@pytest.mark.asyncio
async def test_query_by_asset(audit):
    await audit.log_action("admin", "set_utility_score", asset_id=1)
    await audit.log_action("admin", "set_utility_score", asset_id=2)
    assert [e.asset_id for e in await audit.query(asset_id=2)] == [2]
