import uuid

import pytest
from sqlalchemy import select

from gateway.conversations import ProcessedMessageLog, ProcessedMessageStore
from gateway.errors import DuplicateMessage
from gateway.models import ProcessedMessageLogRecord
from gateway.models.session import init_db


@pytest.fixture
def store(session_factory) -> ProcessedMessageStore:
    init_db(session_factory.kw["bind"])
    return ProcessedMessageStore(session_factory, capacity=3)


def test_log_is_bounded_and_evicts_oldest():
    log = ProcessedMessageLog(capacity=3)
    for message_id in ("a", "b", "c", "d"):
        assert log.add(message_id)

    assert len(log) == 3
    assert "a" not in log
    assert log.snapshot() == ["b", "c", "d"]
    assert not log.add("d")


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ProcessedMessageLog(capacity=0)


def test_save_and_reload(store):
    tenant = uuid.uuid4()
    log = store.load(tenant, "email")
    log.add("<1@x>")
    log.add("<2@x>")

    store.save(tenant, "email", log)
    reloaded = store.load(tenant, "email")

    assert "<1@x>" in reloaded and "<2@x>" in reloaded
    assert reloaded.version == 1
    assert log.pending == []


def test_concurrent_writers_merge_instead_of_overwriting(store, session_factory):
    tenant = uuid.uuid4()
    first = store.load(tenant, "email")
    second = store.load(tenant, "email")
    first.add("<a@x>")
    second.add("<b@x>")

    store.save(tenant, "email", first)
    store.save(tenant, "email", second)

    with session_factory() as session:
        record = session.scalars(select(ProcessedMessageLogRecord)).one()
    assert set(record.message_ids) == {"<a@x>", "<b@x>"}
    assert record.version == 2


def test_logs_are_scoped_per_tenant_and_channel(store):
    tenant, other = uuid.uuid4(), uuid.uuid4()
    store.claim(tenant, "bot", "update-1")

    store.claim(other, "bot", "update-1")
    store.claim(tenant, "business_messaging", "update-1")

    with pytest.raises(DuplicateMessage):
        store.claim(tenant, "bot", "update-1")


def test_claim_keeps_window_bounded(store):
    tenant = uuid.uuid4()
    for index in range(5):
        store.claim(tenant, "bot", f"update-{index}")

    log = store.load(tenant, "bot")

    assert log.snapshot() == ["update-2", "update-3", "update-4"]
    # Evicted ids are accepted again.
    store.claim(tenant, "bot", "update-0")
