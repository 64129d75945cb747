"""End-to-end tests for the replication pipelines against two SQLite stores."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import insert, update

from syncbridge.core.config import settings
from syncbridge.core.exceptions import ConfigurationError
from syncbridge.db.session import SESSION_FACTORIES
from syncbridge.schemas.sync_event import Provenance
from syncbridge.services.ledger import IdempotencyLedger
from syncbridge.workers.sync_pipeline import SyncOutcome, build_pipelines_from_env, channel_for_queue

ALICE_A = {
    "id": 1,
    "username": "alice",
    "email": "alice@example.com",
    "full_name": "Alice Liddell",
    "phone_number": None,
    "status": "active",
    "source": "A",
}
POST_A = {"id": 1, "user_id": 1, "post_title": "Hello", "post_content": "First post", "post_status": "published", "view_count": 0, "source": "A"}
LIKE_A = {"id": 1, "user_id": 1, "post_id": 1, "like_type": "love", "source": "A"}


@pytest.fixture
def a_to_b(make_pipeline):
    return make_pipeline(Provenance.A, Provenance.B)


@pytest.fixture
def b_to_a(make_pipeline):
    return make_pipeline(Provenance.B, Provenance.A)


def test_channel_is_queue_name():
    assert channel_for_queue("https://sqs.us-east-1.amazonaws.com/123456789012/a_users") == "a_users"
    assert channel_for_queue("http://localhost:4566/000000000000/b_posts.fifo") == "b_posts.fifo"
    assert channel_for_queue("a_likes") == "a_likes"


async def test_create_chain_converges_in_system_b(a_to_b, capture_message, fetch_rows):
    assert await a_to_b.handle_message(capture_message(after=ALICE_A), channel="a_users") is SyncOutcome.DONE
    assert await a_to_b.handle_message(capture_message(after=POST_A), channel="a_posts") is SyncOutcome.DONE
    assert await a_to_b.handle_message(capture_message(after=LIKE_A), channel="a_likes") is SyncOutcome.DONE

    [user] = await fetch_rows(Provenance.B, "users")
    assert user["user_name"] == "alice"
    assert user["account_status"] == "Active"
    assert user["source"] == "sync_engine"

    [post] = await fetch_rows(Provenance.B, "posts")
    assert post["author_id"] == user["id"]
    assert post["status"] == "Published"

    [like] = await fetch_rows(Provenance.B, "likes")
    assert (like["user_id"], like["post_id"], like["reaction_type"]) == (user["id"], post["id"], "Love")


async def test_echo_of_engine_write_is_skipped(a_to_b, b_to_a, capture_message, fetch_rows):
    await a_to_b.handle_message(capture_message(after=ALICE_A), channel="a_users")
    [user_b] = await fetch_rows(Provenance.B, "users")

    # The capture agent on System B sees the engine's own write.
    echo = {
        "id": user_b["id"],
        "user_name": "alice",
        "email_address": "alice@example.com",
        "account_status": "Active",
        "source": "sync_engine",
    }
    outcome = await b_to_a.handle_message(capture_message(after=echo), channel="b_users")

    assert outcome is SyncOutcome.SKIPPED_LOOP
    assert await fetch_rows(Provenance.A, "users") == []


async def test_redelivered_message_is_applied_once(a_to_b, capture_message, fetch_rows):
    body = capture_message(after=ALICE_A)

    assert await a_to_b.handle_message(body, channel="a_users") is SyncOutcome.DONE
    assert await a_to_b.handle_message(body, channel="a_users") is SyncOutcome.SKIPPED_DUPLICATE
    assert len(await fetch_rows(Provenance.B, "users")) == 1


async def test_change_made_in_b_flows_back_to_a(a_to_b, b_to_a, capture_message, fetch_rows):
    await a_to_b.handle_message(capture_message(after=ALICE_A), channel="a_users")
    [user_b] = await fetch_rows(Provenance.B, "users")

    edited = {
        "id": user_b["id"],
        "user_name": "alice",
        "email_address": "alice@example.com",
        "display_name": "Alice L.",
        "account_status": "Suspended",
        "source": "B",
    }
    outcome = await b_to_a.handle_message(
        capture_message(after=edited, op="u", ts_ms=1_700_000_100_000), channel="b_users"
    )

    assert outcome is SyncOutcome.DONE
    [user_a] = await fetch_rows(Provenance.A, "users")
    assert user_a["id"] == ALICE_A["id"]
    assert user_a["status"] == "suspended"
    assert user_a["full_name"] == "Alice L."


async def test_b_side_rekey_keeps_flowing_back_to_a(a_to_b, b_to_a, stores, capture_message, fetch_rows):
    await a_to_b.handle_message(capture_message(after=ALICE_A), channel="a_users")
    edited = {
        "id": 1,
        "user_name": "alice",
        "email_address": "alice@example.com",
        "account_status": "Active",
        "source": "B",
    }
    await b_to_a.handle_message(capture_message(after=edited, op="u", ts_ms=1_700_000_100_000), channel="b_users")

    # An operator moves alice to id 9 in System B and fixes the mapping there.
    b_users = stores[Provenance.B].table("users")
    async with SESSION_FACTORIES[Provenance.B]() as session:
        await session.execute(update(b_users).where(b_users.c.id == 1).values(id=9))
        await IdempotencyLedger(session).upsert_mapping("users", 1, 9, origin=Provenance.A)
        await session.commit()

    outcome = await b_to_a.handle_message(
        capture_message(after={**edited, "id": 9, "account_status": "Suspended"}, op="u", ts_ms=1_700_000_200_000),
        channel="b_users",
    )

    assert outcome is SyncOutcome.DONE
    [user_a] = await fetch_rows(Provenance.A, "users")
    assert (user_a["id"], user_a["status"]) == (1, "suspended")
    async with SESSION_FACTORIES[Provenance.A]() as session:
        ledger = IdempotencyLedger(session)
        assert await ledger.lookup_mapped_id("users", Provenance.B, 9) == 1
        assert await ledger.lookup_mapped_id("users", Provenance.B, 1) is None


async def test_conflicting_unique_value_is_dead_lettered_without_retry(
    a_to_b, stores, capture_message, publisher, fetch_rows
):
    async with SESSION_FACTORIES[Provenance.B]() as session:
        await session.execute(
            insert(stores[Provenance.B].table("users")).values(
                id=7,
                user_name="alice",
                email_address="alice@b.example.com",
                account_status="Active",
                source="B",
            )
        )
        await session.commit()

    outcome = await a_to_b.handle_message(capture_message(after=ALICE_A), channel="a_users")

    assert outcome is SyncOutcome.DEAD_LETTERED
    [message] = publisher.messages
    assert message["error_kind"] == "SchemaValidationError"
    assert message["retry_count"] == 1
    assert [row["id"] for row in await fetch_rows(Provenance.B, "users")] == [7]


async def test_delete_propagates(a_to_b, capture_message, fetch_rows):
    await a_to_b.handle_message(capture_message(after=ALICE_A), channel="a_users")
    outcome = await a_to_b.handle_message(capture_message(before=ALICE_A, op="d", ts_ms=1_700_000_200_000), channel="a_users")

    assert outcome is SyncOutcome.DONE
    assert await fetch_rows(Provenance.B, "users") == []


async def test_child_before_parent_is_dead_lettered(a_to_b, capture_message, publisher, fetch_rows):
    outcome = await a_to_b.handle_message(capture_message(after=POST_A), channel="a_posts")

    assert outcome is SyncOutcome.DEAD_LETTERED
    [message] = publisher.messages
    assert message["error_kind"] == "UnresolvedReferenceError"
    assert message["retry_count"] == settings.retry_max_attempts
    assert message["original_event"]["entity_type"] == "posts"
    assert await fetch_rows(Provenance.B, "posts") == []


async def test_malformed_message_is_dead_lettered(a_to_b, publisher):
    outcome = await a_to_b.handle_message("{not json", channel="a_users", message_id="m-1")

    assert outcome is SyncOutcome.DEAD_LETTERED
    [message] = publisher.messages
    assert message["original_event"] is None
    assert message["error_kind"] == "MalformedEventError"
    assert message["context"]["raw_message"] == "{not json"
    assert message["context"]["message_id"] == "m-1"


async def test_invalid_enum_is_dead_lettered_without_retry(a_to_b, capture_message, publisher):
    outcome = await a_to_b.handle_message(capture_message(after={**ALICE_A, "status": "banned"}), channel="a_users")

    assert outcome is SyncOutcome.DEAD_LETTERED
    assert publisher.messages[0]["error_kind"] == "SchemaValidationError"
    assert publisher.messages[0]["retry_count"] == 1


async def test_unsupported_entity_is_dead_lettered(a_to_b, capture_message, publisher):
    outcome = await a_to_b.handle_message(capture_message(after={"id": 1, "body": "hi", "source": "A"}), channel="a_comments")

    assert outcome is SyncOutcome.DEAD_LETTERED
    assert publisher.messages[0]["error_kind"] == "UnsupportedEntityError"


async def test_newer_schema_major_is_rejected(a_to_b, capture_message, publisher):
    outcome = await a_to_b.handle_message(capture_message(after=ALICE_A, schema_version="2.0.0"), channel="a_users")

    assert outcome is SyncOutcome.DEAD_LETTERED
    assert publisher.messages[0]["error_kind"] == "SchemaValidationError"


async def test_batch_deletes_each_message_after_handling(a_to_b, capture_message, fetch_rows):
    sqs_client = AsyncMock()
    sqs_client.receive_message.return_value = {
        "Messages": [
            {"MessageId": "m-1", "ReceiptHandle": "r-1", "Body": capture_message(after=ALICE_A)},
            {"MessageId": "m-2", "ReceiptHandle": "r-2", "Body": "{not json"},
        ]
    }
    a_to_b._running = True

    await a_to_b._process_queue(sqs_client, "http://localhost:4566/000000000000/a_users")

    handles = [call.kwargs["ReceiptHandle"] for call in sqs_client.delete_message.await_args_list]
    assert handles == ["r-1", "r-2"]
    assert sqs_client.receive_message.await_args.kwargs["WaitTimeSeconds"] == settings.poll_wait_seconds
    assert len(await fetch_rows(Provenance.B, "users")) == 1


async def test_shutdown_stops_the_loop(a_to_b):
    async def idle_batch() -> None:
        await asyncio.sleep(0)

    a_to_b._process_batch = idle_batch
    task = asyncio.create_task(a_to_b.run_forever())
    await asyncio.sleep(0.01)

    await asyncio.wait_for(a_to_b.shutdown(), timeout=1)
    await asyncio.wait_for(task, timeout=1)
    assert task.done()


async def test_pipelines_disabled_builds_nothing(publisher):
    assert await build_pipelines_from_env(publisher, settings) == []


async def test_missing_queue_configuration_is_fatal(publisher):
    config = settings.model_copy(update={"enable_sync_pipelines": True, "a_to_b_queue_urls": "", "b_to_a_queue_urls": ""})
    with pytest.raises(ConfigurationError):
        await build_pipelines_from_env(publisher, config)


async def test_missing_dead_letter_queue_is_fatal(publisher):
    config = settings.model_copy(
        update={
            "enable_sync_pipelines": True,
            "a_to_b_queue_urls": "http://localhost:4566/000000000000/a_users",
            "b_to_a_queue_urls": "http://localhost:4566/000000000000/b_users",
            "dead_letter_queue_url": None,
        }
    )
    with pytest.raises(ConfigurationError):
        await build_pipelines_from_env(publisher, config)


async def test_both_directions_are_built_from_configuration(publisher):
    config = settings.model_copy(
        update={
            "enable_sync_pipelines": True,
            "a_to_b_queue_urls": "http://localhost:4566/000000000000/a_users, http://localhost:4566/000000000000/a_posts",
            "b_to_a_queue_urls": "http://localhost:4566/000000000000/b_users",
            "dead_letter_queue_url": "http://localhost:4566/000000000000/sync-dlq",
        }
    )

    pipelines = await build_pipelines_from_env(publisher, config)

    assert [pipeline.name for pipeline in pipelines] == ["a_to_b", "b_to_a"]
    assert pipelines[0]._queue_urls == [
        "http://localhost:4566/000000000000/a_users",
        "http://localhost:4566/000000000000/a_posts",
    ]
