import pytest

from fakes import BlockingProvider, StaticProvider
from lorastudio.captioning.batch import BatchHandle, ItemStatus, select_batch_entries, start_batch
from lorastudio.captioning.providers import CaptionResult
from lorastudio.data.captions import read_tags
from lorastudio.data.scanner import scan_project
from lorastudio.data.schema import Rating
from lorastudio.errors import AlreadyInProgress, InvalidArgument


@pytest.fixture
def five_images(tmp_path, make_image):
    for i in range(5):
        make_image(tmp_path / f"img{i}.png", color=(i * 40, 0, 0))
    return tmp_path


def test_batch_writes_captions(five_images) -> None:
    entries = scan_project(five_images)
    provider = StaticProvider(default="Elf , smiling,, forest")
    handle = start_batch(entries, provider, "http://x", "m", "describe   it")
    summary = handle.result(timeout=10)

    assert summary.outcome == "completed"
    assert len(summary.done_ids) == 5
    assert provider.prompts[0] == "describe it"
    for entry in entries:
        assert read_tags(entry.path) == ["Elf", "smiling", "forest"]
        assert entry.tags == ["Elf", "smiling", "forest"]


def test_failed_items_are_listed_and_not_written(five_images) -> None:
    entries = scan_project(five_images)
    provider = StaticProvider(
        captions={
            "img1.png": CaptionResult.fail("connection refused"),
            "img2.png": " , ",
            "img3.png": RuntimeError("boom"),
        }
    )
    summary = start_batch(entries, provider, "", "m", "p", concurrency=3).result(timeout=10)

    by_name = {summary.items[i].entry.filename: summary.items[i] for i in summary.items}
    assert by_name["img1.png"].status is ItemStatus.FAILED
    assert by_name["img1.png"].error == "connection refused"
    assert by_name["img1.png"].error_kind == "provider_failure"
    assert by_name["img2.png"].error == "empty caption"
    assert "boom" in by_name["img3.png"].error
    assert len(summary.failed_ids) == 3
    assert len(summary.done_ids) == 2
    assert not (five_images / "img1.txt").exists()
    assert not (five_images / "img2.txt").exists()
    assert read_tags(five_images / "img0.png") == ["elf", "smiling"]


def test_concurrency_is_bounded(five_images) -> None:
    entries = scan_project(five_images)
    provider = BlockingProvider()
    handle = start_batch(entries, provider, "", "m", "p", concurrency=2)
    assert provider.started.acquire(timeout=5)
    assert provider.started.acquire(timeout=5)
    assert not provider.started.acquire(timeout=0.2)
    provider.release.set()
    summary = handle.result(timeout=10)
    assert provider.max_active == 2
    assert len(summary.done_ids) == 5


def test_cancel_skips_pending_and_keeps_in_flight(five_images) -> None:
    entries = scan_project(five_images)
    provider = BlockingProvider()
    handle = start_batch(entries, provider, "", "m", "p", concurrency=2)
    assert provider.started.acquire(timeout=5)
    assert provider.started.acquire(timeout=5)

    assert handle.cancel() == 3
    provider.release.set()
    summary = handle.result(timeout=10)

    assert summary.cancelled
    assert summary.outcome == "cancelled"
    assert len(summary.done_ids) == 2
    assert len(summary.skipped_ids) == 3
    written = sorted(p.name for p in five_images.glob("*.txt"))
    assert len(written) == 2


def test_progress_stream_ends_with_finished_snapshot(five_images) -> None:
    entries = scan_project(five_images)
    seen = []
    handle = BatchHandle(entries, StaticProvider(), "", "m", "p", on_progress=seen.append)
    handle.start()
    snapshots = list(handle.events(timeout=10))

    assert snapshots[-1].finished
    assert snapshots[-1].done == 5
    assert handle.wait(10)
    assert any(s.finished and s.done == 5 for s in seen)


def test_invalid_batches_rejected(five_images) -> None:
    entries = scan_project(five_images)
    with pytest.raises(InvalidArgument):
        BatchHandle(entries, StaticProvider(), "", "m", "p", concurrency=0)
    with pytest.raises(InvalidArgument):
        BatchHandle([], StaticProvider(), "", "m", "p")
    with pytest.raises(InvalidArgument):
        BatchHandle(entries, StaticProvider(), "", "m", "   ")


def test_duplicate_entries_are_captioned_once(five_images) -> None:
    entries = scan_project(five_images)
    provider = StaticProvider()
    handle = start_batch(entries + entries[:2], provider, "", "m", "p")
    handle.result(timeout=10)
    assert handle.total == 5
    assert len(provider.prompts) == 5


def test_select_batch_entries(dataset) -> None:
    entries = scan_project(dataset)
    entries[1].rating = Rating.GOOD
    entries[2].rating = Rating.BAD

    assert [e.filename for e in select_batch_entries(entries, only_uncaptioned=True)] == ["b.png"]
    assert [e.filename for e in select_batch_entries(entries, ratings=["good", "bad"])] == ["b.png", "c.jpg"]
    assert select_batch_entries(entries, ids=[entries[0].id]) == [entries[0]]


def test_cancel_after_finish_is_a_noop(five_images) -> None:
    handle = start_batch(scan_project(five_images), StaticProvider(), "", "m", "p")
    handle.result(timeout=10)

    assert handle.cancel() == 0
    summary = handle.result(timeout=10)
    assert not summary.cancelled
    assert summary.outcome == "completed"
    assert len(summary.done_ids) == 5


def test_holding_keeps_an_item_from_starting(five_images) -> None:
    entries = scan_project(five_images)
    provider = BlockingProvider()
    handle = start_batch(entries, provider, "", "m", "p", concurrency=1)
    assert provider.started.acquire(timeout=5)
    held = next(i for i, item in handle.items.items() if item.status is ItemStatus.PENDING)

    with handle.holding(held):
        provider.release.set()
        assert not provider.started.acquire(timeout=0.3)
        assert handle.items[held].status is ItemStatus.PENDING

    summary = handle.result(timeout=10)
    assert len(summary.done_ids) == 5


def test_holding_rejects_an_in_flight_item(five_images) -> None:
    entries = scan_project(five_images)
    provider = BlockingProvider()
    handle = start_batch(entries, provider, "", "m", "p", concurrency=1)
    assert provider.started.acquire(timeout=5)

    in_flight = next(i for i, item in handle.items.items() if item.status is ItemStatus.IN_FLIGHT)
    with pytest.raises(AlreadyInProgress):
        with handle.holding(in_flight):
            pass

    provider.release.set()
    assert len(handle.result(timeout=10).done_ids) == 5
