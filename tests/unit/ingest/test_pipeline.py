"""Tests for IngestPipeline: file versions, streams, binaries, concurrency."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from contextkit.errors import ChunkTooLargeError


@pytest.fixture
def pipeline(engine):
    return engine.pipeline


def _code(n: int, tag: str = "line") -> str:
    return "\n".join(f"{tag} {i} login token" for i in range(n))


def test_ingest_small_file(pipeline, repo):
    result = pipeline.ingest("p1", "src/auth.py", "def login():\n    return token\n")
    assert result.changed
    assert len(result.chunk_ids) == 1
    assert result.added == result.chunk_ids
    chunk = repo.get_chunk(result.chunk_ids[0])
    assert chunk.language == "python"
    assert chunk.text == "def login():\n    return token"
    artifact = repo.get_artifact("p1", "src/auth.py")
    assert not artifact.is_binary
    assert artifact.language == "python"


def test_chunks_are_embedded_and_summarised(engine, pipeline):
    result = pipeline.ingest("p1", "src/auth.py", _code(120))
    assert engine.repo.embedded_ids(result.chunk_ids, "fake/embed") == set(result.chunk_ids)
    assert engine.repo.current_summary("p1", "file", "src/auth.py") is not None
    assert engine.repo.current_summary("p1", "directory", "src") is not None
    assert engine.summarizer.pending() == ["p1"]


def test_large_file_produces_overlapping_chunks(pipeline, repo):
    result = pipeline.ingest("p1", "src/big.py", _code(150))
    # 4 words per line: 50-line windows stepping by 18 lines
    assert len(result.chunk_ids) > 1
    for cid in result.chunk_ids:
        assert repo.get_chunk(cid).token_count <= 200


def test_reingest_identical_content_is_unchanged(pipeline, embedder):
    first = pipeline.ingest("p1", "a.py", _code(40))
    calls = len(embedder.calls)
    again = pipeline.ingest("p1", "a.py", _code(40) + "\n\n")
    assert not again.changed
    assert again.chunk_ids == first.chunk_ids
    assert len(embedder.calls) == calls


def test_unchanged_reingest_rebuilds_summaries_after_failed_cascade(pipeline, repo):
    original = pipeline.writer.write_summary
    failures = [RuntimeError("embedding timed out")]

    def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return original(*args, **kwargs)

    with patch.object(pipeline.writer, "write_summary", side_effect=flaky):
        with pytest.raises(RuntimeError, match="timed out"):
            pipeline.ingest("p1", "src/auth.py", "def login():\n    return token\n")
        assert repo.current_summary("p1", "directory", "src") is None

        retry = pipeline.ingest("p1", "src/auth.py", "def login():\n    return token\n")

    assert retry.changed
    assert retry.added == ()
    file_summary = repo.current_summary("p1", "file", "src/auth.py")
    assert file_summary.source_ids == retry.chunk_ids
    directory = repo.current_summary("p1", "directory", "src")
    assert file_summary.summary_id in directory.source_ids
    assert not pipeline.ingest("p1", "src/auth.py", "def login():\n    return token\n").changed


def test_modified_file_supersedes_old_chunks(pipeline, repo):
    first = pipeline.ingest("p1", "a.py", "alpha login")
    second = pipeline.ingest("p1", "a.py", "beta token")
    assert second.removed == first.chunk_ids
    assert second.added == second.chunk_ids
    assert repo.live_chunk_ids(first.chunk_ids) == set()
    assert repo.get_chunk(first.chunk_ids[0]) is not None


def test_same_content_in_two_paths_shares_chunk(pipeline, repo):
    a = pipeline.ingest("p1", "a.py", "shared helper code")
    b = pipeline.ingest("p1", "b.py", "shared helper code")
    assert a.chunk_ids == b.chunk_ids
    assert [c.chunk_id for c in repo.list_chunks_for_path("p1", "b.py")] == list(b.chunk_ids)


def test_binary_file_stored_as_metadata(pipeline, repo):
    result = pipeline.ingest("p1", "logo.png", b"\x89PNG\r\n\x1a\n\x00\x00")
    assert result.is_binary
    assert result.chunk_ids == ()
    artifact = repo.get_artifact("p1", "logo.png")
    assert artifact.is_binary
    assert artifact.mime_type == "image/png"
    assert artifact.size_bytes == 10


def test_file_turning_binary_retires_chunks(pipeline, repo):
    first = pipeline.ingest("p1", "data.bin", "readable text")
    result = pipeline.ingest("p1", "data.bin", b"\x00\x01\x02")
    assert result.is_binary
    assert result.removed == first.chunk_ids
    assert repo.list_chunks_for_path("p1", "data.bin") == []


def test_conversation_appends(pipeline, repo):
    one = pipeline.ingest("p1", "chat", "user: why does login fail", type="conversation")
    two = pipeline.ingest("p1", "chat", "assistant: the token expired", type="conversation")
    live = [c.chunk_id for c in repo.list_chunks_for_path("p1", "chat")]
    assert live == [*one.chunk_ids, *two.chunk_ids]
    assert repo.get_chunk(live[0]).type == "conversation"
    assert repo.current_summary("p1", "file", "chat") is None


def test_stream_offsets_continue_across_appends(pipeline, repo):
    one = pipeline.ingest("p1", "chat", "user: why does login fail", type="conversation")
    two = pipeline.ingest("p1", "chat", "assistant: the token expired", type="conversation")
    first = repo.get_chunk(one.chunk_ids[0])
    second = repo.get_chunk(two.chunk_ids[0])
    assert first.byte_offset == 0
    assert second.byte_offset == len(first.text.encode("utf-8")) + 1
    assert pipeline.store.repo.path_end_offset("p1", "chat") == (
        second.byte_offset + len(second.text.encode("utf-8"))
    )


def test_log_records_become_chunks(pipeline, repo):
    result = pipeline.ingest("p1", "app.log", "ERROR auth\n\nWARN retry", type="log")
    assert len(result.chunk_ids) == 2
    assert {repo.get_chunk(c).type for c in result.chunk_ids} == {"log"}


def test_empty_stream_block_is_unchanged(pipeline):
    assert not pipeline.ingest("p1", "chat", "   ", type="conversation").changed


def test_unknown_type_rejected(pipeline):
    with pytest.raises(ValueError, match="Unknown ingest type"):
        pipeline.ingest("p1", "a.py", "x", type="video")


def test_missing_identifiers_rejected(pipeline):
    with pytest.raises(ValueError):
        pipeline.ingest("", "a.py", "x")


def test_oversized_chunk_propagates(pipeline, engine):
    engine.store.max_chunk_tokens = 10
    with pytest.raises(ChunkTooLargeError):
        pipeline.ingest("p1", "a.py", " ".join(["word"] * 50))


def test_ingest_many_preserves_order_and_flushes(engine, pipeline, repo):
    items = [(f"src/m{i}.py", f"module {i} parser render", "code") for i in range(6)]
    results = pipeline.ingest_many("p1", items)
    assert [r.path for r in results] == [p for p, _, _ in items]
    assert repo.current_summary("p1", "project", "/") is not None
    assert engine.summarizer.pending() == []


def test_concurrent_versions_of_one_path_leave_one_live_list(pipeline, repo):
    items = [("a.py", f"version {i} of the cache module", "code") for i in range(8)]
    pipeline.ingest_many("p1", items)
    live = repo.list_chunks_for_path("p1", "a.py")
    assert len(live) == 1
    assert live[0].text in {raw for _, raw, _ in items}


def test_delete_project(pipeline, repo):
    pipeline.ingest("p1", "a.py", "login token")
    pipeline.delete_project("p1")
    assert repo.list_artifacts("p1") == []
    assert repo.list_live_paths("p1") == []
