"""Tests for the chunk scheduler: concurrency, failures, supersession."""

import asyncio

import pytest

from proofline.chunker import TextChunker
from proofline.scheduler import ChunkScheduler
from proofline.schemas import RawFinding
from tests.fakes import GatedAnalyzer, ScriptedAnalyzer, typo_reply


def chunks_of(text, chunk_size=100, overlap=20):
    return TextChunker(chunk_size, overlap, respect_sentences=False).split(text)


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit():
    analyzer = ScriptedAnalyzer(delay=0.01)
    scheduler = ChunkScheduler(analyzer, max_concurrency=2)
    chunks = chunks_of("x" * 500)

    handle = scheduler.start_session(chunks)
    await handle.wait()

    assert len(chunks) == 6
    assert len(analyzer.calls) == 6
    assert analyzer.max_in_flight == 2
    assert handle.progress.completed_chunks == 6
    assert handle.progress.in_flight_chunks == 0
    assert not handle.progress.is_active


@pytest.mark.asyncio
async def test_snapshots_refine_until_done():
    snapshots = []
    text = ("x" * 30 + "teh ") * 15
    scheduler = ChunkScheduler(
        ScriptedAnalyzer(reply=typo_reply, delay=0.001),
        max_concurrency=3,
        on_update=snapshots.append,
    )
    chunks = chunks_of(text)

    handle = scheduler.start_session(chunks)
    await handle.wait()

    completed = [s.progress.completed_chunks for s in snapshots]
    assert completed == sorted(completed)
    assert snapshots[-1].done
    assert snapshots[-1].progress.completed_chunks == len(chunks)
    assert not any(s.done for s in snapshots[:-1])
    expected = [i for i in range(len(text)) if text.startswith("teh", i)]
    assert [f.start for f in snapshots[-1].findings] == expected
    assert all(text[f.start : f.end] == "teh" for f in handle.findings)


@pytest.mark.asyncio
async def test_failed_chunk_counts_as_no_findings():
    def reply(text):
        if text.startswith("boom"):
            raise RuntimeError("backend unavailable")
        return typo_reply(text)

    text = "boom" + "x" * 96 + "teh" + "x" * 60
    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=reply), max_concurrency=1)

    handle = scheduler.start_session(chunks_of(text))
    await handle.wait()

    assert handle.progress.completed_chunks == 2
    assert [(f.start, f.end) for f in handle.findings] == [(100, 103)]


@pytest.mark.asyncio
async def test_overlap_duplicate_is_attributed_to_first_chunk():
    text = "x" * 85 + "teh" + "x" * 92
    chunks = chunks_of(text)
    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=typo_reply), max_concurrency=2)

    handle = scheduler.start_session(chunks)
    await handle.wait()

    assert len(chunks) == 2
    assert len(handle.findings) == 1
    assert handle.findings[0].chunk_index == 0
    assert (handle.findings[0].start, handle.findings[0].end) == (85, 88)


@pytest.mark.asyncio
async def test_offset_makes_positions_document_absolute():
    text = "x" * 150 + "teh" + "x" * 20
    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=typo_reply))

    handle = scheduler.start_session(chunks_of(text), offset=1000)
    await handle.wait()

    assert [(f.start, f.end) for f in handle.findings] == [(1150, 1153)]


@pytest.mark.asyncio
async def test_new_session_supersedes_previous():
    snapshots = []
    analyzer = GatedAnalyzer()
    scheduler = ChunkScheduler(analyzer, max_concurrency=2, on_update=snapshots.append)

    first = scheduler.start_session(chunks_of("teh " * 60))
    await asyncio.sleep(0.01)
    second = scheduler.start_session(chunks_of("x" * 40 + "teh"))

    assert not first.is_current()
    assert second.is_current()
    assert first.done

    analyzer.gate.set()
    await second.wait()
    await asyncio.sleep(0.01)

    assert snapshots
    assert {s.session_id for s in snapshots} == {second.session_id}
    assert first.findings == []
    assert len(analyzer.calls) == 3
    assert [(f.start, f.end) for f in second.findings] == [(40, 43)]


@pytest.mark.asyncio
async def test_cancel_discards_late_results():
    snapshots = []
    analyzer = GatedAnalyzer()
    scheduler = ChunkScheduler(analyzer, on_update=snapshots.append)

    handle = scheduler.start_session(chunks_of("teh " * 10))
    await asyncio.sleep(0.01)
    handle.cancel()
    handle.cancel()

    analyzer.gate.set()
    await asyncio.sleep(0.01)

    assert not handle.is_current()
    assert scheduler.current is None
    assert snapshots == []
    assert handle.findings == []


@pytest.mark.asyncio
async def test_cancel_after_completion_is_safe():
    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=typo_reply))
    handle = scheduler.start_session(chunks_of("teh and more text"))
    await handle.wait()
    findings = list(handle.findings)

    handle.cancel()
    scheduler.cancel()

    assert handle.done
    assert handle.findings == findings


@pytest.mark.asyncio
async def test_malformed_findings_are_dropped_individually():
    def reply(text):
        return [
            RawFinding(start=5, end=500, matched_text=None),
            RawFinding(start=0, end=3, matched_text="abc"),
            RawFinding(start=2, end=6, matched_text="nowhere"),
        ]

    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=reply))
    handle = scheduler.start_session(chunks_of("abcdefghij"))
    await handle.wait()

    assert [(f.start, f.end, f.matched_text) for f in handle.findings] == [
        (0, 3, "abc"),
        (2, 6, "cdef"),
    ]


@pytest.mark.asyncio
async def test_misplaced_offsets_are_relocated_by_text():
    def reply(text):
        return [RawFinding(start=0, end=3, matched_text="teh")]

    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=reply))
    handle = scheduler.start_session(chunks_of("one teh two"))
    await handle.wait()

    assert [(f.start, f.end) for f in handle.findings] == [(4, 7)]


@pytest.mark.asyncio
async def test_empty_session_completes():
    snapshots = []
    scheduler = ChunkScheduler(ScriptedAnalyzer(), on_update=snapshots.append)

    handle = scheduler.start_session([])
    await handle.wait()

    assert handle.done
    assert snapshots[-1].done
    assert snapshots[-1].findings == []


def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        ChunkScheduler(ScriptedAnalyzer(), max_concurrency=0)


@pytest.mark.asyncio
async def test_unusable_reply_does_not_stop_sibling_chunks():
    def reply(text):
        if text.startswith("bad"):
            return None
        return typo_reply(text)

    snapshots = []
    text = "bad" + "x" * 297 + "teh" + "x" * 17
    analyzer = ScriptedAnalyzer(reply=reply)
    scheduler = ChunkScheduler(analyzer, max_concurrency=1, on_update=snapshots.append)
    chunks = chunks_of(text)

    handle = scheduler.start_session(chunks)
    await handle.wait()

    assert len(chunks) == 4
    assert len(analyzer.calls) == 4
    assert handle.progress.completed_chunks == 4
    assert [(f.start, f.end) for f in handle.findings] == [(300, 303)]
    assert snapshots[-1].done
    assert snapshots[-1].progress.completed_chunks == 4


@pytest.mark.asyncio
async def test_out_of_bounds_span_is_dropped_even_when_text_matches():
    def reply(text):
        return [
            RawFinding(start=500, end=503, matched_text="teh"),
            RawFinding(start=4, end=20, matched_text="teh"),
        ]

    scheduler = ChunkScheduler(ScriptedAnalyzer(reply=reply))
    handle = scheduler.start_session(chunks_of("one teh two"))
    await handle.wait()

    assert handle.findings == []
