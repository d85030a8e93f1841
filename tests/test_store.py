import pytest

from cliprr.models import SegmentMatch
from cliprr.store import SQLiteSegmentStore


def match(episode_id, start, end, label="intro", season=1):
    return SegmentMatch(
        show_id=7,
        episode_id=episode_id,
        season_number=season,
        start_offset=start,
        end_offset=end,
        confidence=0.9,
        label=label,
    )


@pytest.fixture
def store(tmp_path):
    s = SQLiteSegmentStore(str(tmp_path / "segments.db"))
    yield s
    s.close()


def test_replace_and_read(store):
    store.replace_for_episode(101, [match(101, 1800.0, 1860.0, "credits"), match(101, 12.0, 42.0)])

    stored = store.get_for_episode(101)
    assert [(m.label, m.start_offset) for m in stored] == [("intro", 12.0), ("credits", 1800.0)]


def test_replace_overwrites_previous_result(store):
    store.replace_for_episode(101, [match(101, 12.0, 42.0)])
    store.replace_for_episode(101, [match(101, 14.0, 44.0)])

    assert [m.start_offset for m in store.get_for_episode(101)] == [14.0]


def test_replace_with_nothing_clears(store):
    store.replace_for_episode(101, [match(101, 12.0, 42.0)])
    store.replace_for_episode(101, [])
    assert store.get_for_episode(101) == []


def test_segments_by_show_and_season(store):
    store.replace_for_episode(101, [match(101, 12.0, 42.0)])
    store.replace_for_episode(102, [match(102, 10.0, 40.0)])
    store.replace_for_episode(201, [match(201, 5.0, 35.0, season=2)])

    assert [m.episode_id for m in store.get_segments(7)] == [101, 102, 201]
    assert [m.episode_id for m in store.get_segments(7, season=2)] == [201]
    assert store.get_segments(8) == []


def test_shares_queue_database(tmp_path):
    from cliprr.queue import SQLiteJobQueue

    path = str(tmp_path / "cliprr.db")
    queue = SQLiteJobQueue(path)
    store = SQLiteSegmentStore(path)
    try:
        queue.enqueue(101, 7, "show-processing")
        store.replace_for_episode(101, [match(101, 12.0, 42.0)])
        assert len(store.get_for_episode(101)) == 1
        assert queue.snapshot("show-processing").queued == 1
    finally:
        store.close()
        queue.close()
