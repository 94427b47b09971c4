from datetime import datetime, timezone

import pytest

from castvault.config import PipelineConfig
from castvault.models import ReplyRef
from castvault.sources import RawContext, normalize_timestamp
from castvault.thread import ThreadResolver, aggregate_participants, format_thread

from conftest import FakeSocialGraph, sample_context, sample_profiles, sample_thread

POST_ID = "0xabc12345"


def test_aggregate_participants_counts_in_first_appearance_order() -> None:
    replies = [
        ReplyRef(id="1", author_id="2", handle="bob"),
        ReplyRef(id="2", author_id="3", handle="carol"),
        ReplyRef(id="3", author_id="2", handle="bob"),
    ]

    participants = aggregate_participants(replies)

    assert [(p.author_id, p.reply_count) for p in participants] == [("2", 2), ("3", 1)]


def test_format_thread_defaults_depth_to_position() -> None:
    thread = format_thread(sample_thread(POST_ID))

    assert thread.thread_id == POST_ID
    assert thread.root_post is not None
    assert thread.root_post.author_id == "1"
    assert [reply.depth for reply in thread.reply_chain] == [0, 1, 2]
    assert thread.total_replies == 3
    assert sum(p.reply_count for p in thread.participants) == len(thread.reply_chain)


@pytest.mark.asyncio
async def test_resolve_thread_fails_soft(config: PipelineConfig) -> None:
    resolver = ThreadResolver(FakeSocialGraph(fail_thread=True), config=config)
    assert await resolver.resolve_thread(POST_ID) is None


@pytest.mark.asyncio
async def test_resolve_profiles_with_no_ids_makes_no_call(config: PipelineConfig) -> None:
    graph = FakeSocialGraph(profiles=sample_profiles())
    resolver = ThreadResolver(graph, config=config)

    assert await resolver.resolve_profiles([]) == []
    assert graph.profile_calls == []


@pytest.mark.asyncio
async def test_resolve_parent_prefers_parent_context(config: PipelineConfig) -> None:
    parent_context = RawContext.model_validate(
        {"hash": "0xparent01", "author": {"fid": 9, "username": "dan"}, "text": "full parent text"}
    )
    graph = FakeSocialGraph(contexts={POST_ID: sample_context(POST_ID), "0xparent01": parent_context})
    resolver = ThreadResolver(graph, config=config)

    parent = await resolver.resolve_parent(POST_ID)

    assert parent is not None
    assert parent.id == "0xparent01"
    assert parent.text == "full parent text"
    assert parent.preserved is False
    assert graph.context_calls == [POST_ID, "0xparent01"]


@pytest.mark.asyncio
async def test_resolve_parent_falls_back_to_embedded_fields(config: PipelineConfig) -> None:
    graph = FakeSocialGraph(contexts={POST_ID: sample_context(POST_ID)})
    resolver = ThreadResolver(graph, config=config)

    parent = await resolver.resolve_parent(POST_ID)

    assert parent is not None
    assert parent.handle == "dan"
    assert parent.text == "what's up"


@pytest.mark.asyncio
async def test_build_context_gathers_thread_parent_and_profiles(config: PipelineConfig) -> None:
    graph = FakeSocialGraph(
        threads={POST_ID: sample_thread(POST_ID)},
        contexts={POST_ID: sample_context(POST_ID)},
        profiles=sample_profiles(),
    )
    resolver = ThreadResolver(graph, config=config)

    context = await resolver.build_context(POST_ID)

    assert context.thread is not None
    assert len(context.thread.participants) == 2
    assert context.parent is not None
    assert [profile.handle for profile in context.mentioned_profiles] == ["bob", "carol"]
    assert graph.profile_calls == [["2", "3"]]


@pytest.mark.asyncio
async def test_build_context_skips_profiles_when_disabled(config: PipelineConfig) -> None:
    graph = FakeSocialGraph(contexts={POST_ID: sample_context(POST_ID)}, profiles=sample_profiles())
    resolver = ThreadResolver(graph, config=config)

    context = await resolver.build_context(POST_ID, include_profiles=False)

    assert context.mentioned_profiles == []
    assert graph.profile_calls == []


@pytest.mark.asyncio
async def test_build_context_degrades_when_context_unavailable(config: PipelineConfig) -> None:
    graph = FakeSocialGraph(threads={POST_ID: sample_thread(POST_ID)}, fail_context=True)
    resolver = ThreadResolver(graph, config=config)

    context = await resolver.build_context(POST_ID)

    assert context.thread is not None
    assert context.parent is None
    assert context.mentioned_profiles == []


@pytest.mark.asyncio
async def test_check_updates_counts_newer_replies(config: PipelineConfig) -> None:
    resolver = ThreadResolver(FakeSocialGraph(threads={POST_ID: sample_thread(POST_ID)}), config=config)

    check = await resolver.check_updates(POST_ID, datetime(2024, 3, 1, 12, 5, 30, tzinfo=timezone.utc))

    assert check.has_updates is True
    assert check.new_reply_count == 2


@pytest.mark.asyncio
async def test_check_updates_without_thread_reports_none(config: PipelineConfig) -> None:
    resolver = ThreadResolver(FakeSocialGraph(fail_thread=True), config=config)

    check = await resolver.check_updates(POST_ID, datetime(2024, 1, 1))

    assert check.has_updates is False
    assert check.new_reply_count == 0


def test_normalize_timestamp_keeps_out_of_range_values() -> None:
    assert normalize_timestamp(1709294400) == "2024-03-01T12:00:00+00:00"
    assert normalize_timestamp(10**20) == str(10**20)
    assert normalize_timestamp(float("nan")) == "nan"
    assert normalize_timestamp("not a date") == "not a date"


@pytest.mark.asyncio
async def test_out_of_range_parent_timestamp_keeps_thread_and_profiles(config: PipelineConfig) -> None:
    context = sample_context(POST_ID).model_copy(update={"parent_timestamp": 10**20})
    graph = FakeSocialGraph(
        threads={POST_ID: sample_thread(POST_ID)},
        contexts={POST_ID: context},
        profiles=sample_profiles(),
    )
    resolver = ThreadResolver(graph, config=config)

    result = await resolver.build_context(POST_ID)

    assert result.thread is not None
    assert result.parent is not None
    assert result.parent.id == "0xparent01"
    assert len(result.mentioned_profiles) == 2
