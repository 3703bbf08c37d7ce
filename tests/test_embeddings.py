import asyncio
import uuid
from types import SimpleNamespace

from practice_migration.models.record import TargetRecord
from practice_migration.services.embeddings import (
    EMBEDDINGS_TABLE,
    EmbeddingGenerator,
    EmbeddingItem,
    collect_items,
)

from conftest import FakeTargetStore, rejected


class FakeEmbeddingsAPI:
    def __init__(self, client, fail_on=()):
        self.client = client
        self.fail_on = set(fail_on)
        self.inputs = []

    async def create(self, model, input):
        if asyncio.get_running_loop() is not self.client.loop:
            raise RuntimeError("Event loop is closed")
        self.inputs.append(input)
        if input in self.fail_on:
            raise RuntimeError("rate limited")
        return SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2, 0.3])])


class FakeAsyncClient:
    """Bound to the event loop it was opened on, like an httpx connection pool."""

    def __init__(self, **kwargs):
        self.embeddings = FakeEmbeddingsAPI(self, **kwargs)
        self.loop = None
        self.closed = False

    async def __aenter__(self):
        self.loop = asyncio.get_running_loop()
        return self

    async def __aexit__(self, *exc):
        self.closed = True


def fake_client(**kwargs):
    clients = []

    def factory():
        client = FakeAsyncClient(**kwargs)
        clients.append(client)
        return client

    factory.clients = clients
    return factory


def message(body, subject=None):
    record_id = str(uuid.uuid4())
    return TargetRecord(
        id=record_id,
        table="case_messages",
        data={"id": record_id, "subject": subject, "body": body},
    )


def generator(store, client, **kwargs):
    options = {"batch_size": 2, "inter_batch_delay": 0}
    options.update(kwargs)
    return EmbeddingGenerator(store, client_factory=client, **options)


def test_collect_items_joins_text_and_skips_empty():
    case_id = str(uuid.uuid4())
    case = TargetRecord(id=case_id, table="cases", data={"title": "Crown", "description": "Upper left"})
    practice = TargetRecord(id=str(uuid.uuid4()), table="practices", data={"name": "x"})

    items = collect_items([case, message(""), practice])

    assert len(items) == 1
    assert items[0].entity_id == case_id
    assert items[0].content == "Crown\n\nUpper left"


def test_embedding_id_is_stable():
    first = EmbeddingItem("cases", "abc", "text")
    second = EmbeddingItem("cases", "abc", "other text")

    assert first.embedding_id == second.embedding_id
    assert first.embedding_id != EmbeddingItem("case_messages", "abc", "text").embedding_id


def test_one_failed_item_does_not_fail_the_batch():
    store = FakeTargetStore()
    client = fake_client(fail_on={"second"})
    records = [message("first"), message("second"), message("third")]

    result = generator(store, client).generate(records)

    assert result.attempted == 3
    assert result.succeeded == 2
    assert result.failed == 1
    assert result.batches == 2
    rows = store.rows(EMBEDDINGS_TABLE)
    assert {r["content"] for r in rows} == {"first", "third"}
    assert all(r["entity_type"] == "case_messages" for r in rows)


def test_rerun_overwrites_existing_embeddings():
    store = FakeTargetStore()
    records = [message("hello")]

    generator(store, fake_client()).generate(records)
    generator(store, fake_client()).generate(records)

    assert len(store.rows(EMBEDDINGS_TABLE)) == 1
    assert store.upserts(EMBEDDINGS_TABLE)[0][3] == "overwrite"


def test_store_failure_counts_batch_as_failed():
    store = FakeTargetStore()
    store.table_failures[EMBEDDINGS_TABLE] = [rejected(500)]

    result = generator(store, fake_client()).generate([message("a"), message("b")])

    assert result.failed == 2
    assert result.succeeded == 0


def test_dry_run_does_not_store():
    store = FakeTargetStore()

    result = generator(store, fake_client(), dry_run=True).generate([message("a")])

    assert result.succeeded == 1
    assert store.calls == []


def test_records_without_text_are_skipped():
    result = generator(FakeTargetStore(), fake_client()).generate([message(None)])

    assert result.skipped == 1
    assert result.attempted == 0


def test_each_pass_opens_and_closes_its_own_client():
    store = FakeTargetStore()
    factory = fake_client()
    embeddings = generator(store, factory)

    first = embeddings.generate([message("case text"), message("more case text")])
    second = embeddings.generate([message("message one"), message("message two")])

    assert first.succeeded == 2
    assert second.succeeded == 2
    assert second.failed == 0
    assert len(factory.clients) == 2
    assert all(c.closed for c in factory.clients)
    assert len(store.rows(EMBEDDINGS_TABLE)) == 4


def test_default_client_is_async_openai():
    from openai import AsyncOpenAI

    embeddings = EmbeddingGenerator(None, api_key="sk-test", max_retries=1)

    client = embeddings._make_client()

    assert isinstance(client, AsyncOpenAI)
    assert client.max_retries == 1
