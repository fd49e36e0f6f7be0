import numpy as np
import pytest

from fisheye_calibration.detection import PatternDetection
from fisheye_calibration.observations import ObservationSet, ObservationStore


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


def hit(n=20, size=(640, 480), value=1.0):
    return PatternDetection(found=True, points=np.full((n, 2), value), image_size=size)


MISS = PatternDetection(found=False, points=None, image_size=(640, 480))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(geometry, clock):
    return ObservationStore(geometry, clock=clock)


def test_debounce(store, clock):
    # first view is always accepted
    assert store.try_add(hit(), min_interval=1.0)
    clock.t = 0.5
    assert not store.try_add(hit(), min_interval=1.0)
    clock.t = 1.0
    assert store.try_add(hit(), min_interval=1.0)
    assert store.count() == 2
    assert [obs.timestamp for obs in store.snapshot()] == [0.0, 1.0]


def test_rejected_views_do_not_reset_debounce(store, clock):
    store.try_add(hit(), min_interval=1.0)
    clock.t = 0.9
    store.try_add(hit(), min_interval=1.0)
    clock.t = 1.1
    assert store.try_add(hit(), min_interval=1.0)


def test_misses_and_partial_views_are_rejected(store):
    assert not store.try_add(MISS)
    assert not store.try_add(hit(n=19))
    assert len(store) == 0
    assert store.image_size is None


def test_size_change_is_rejected(store, clock):
    assert store.try_add(hit())
    clock.t = 5.0
    assert not store.try_add(hit(size=(1280, 720)))
    assert store.count() == 1
    assert store.image_size == (640, 480)


def test_ready_for_solve(store):
    for _ in range(4):
        store.try_add(hit())
    assert store.is_ready_for_solve(4)
    assert not store.is_ready_for_solve(5)


def test_reset_clears_everything(store, clock):
    store.try_add(hit())
    store.reset()
    assert store.count() == 0
    assert store.image_size is None
    # debounce restarts too
    assert store.try_add(hit(size=(1280, 720)), min_interval=10.0)


def test_snapshot_is_independent_and_read_only(store):
    store.try_add(hit(value=1.0))
    snap = store.snapshot()
    store.try_add(hit(value=2.0))

    assert len(snap) == 1
    assert snap.image_size == (640, 480)
    assert snap.total_points == 20
    with pytest.raises(ValueError):
        snap[0].image_points[0, 0] = 5.0

    store.reset()
    assert len(snap) == 1


def test_observation_copies_detection_points(store):
    detection = hit()
    store.try_add(detection)
    detection.points[0, 0] = -1.0
    assert store.snapshot()[0].image_points[0, 0] == 1.0


def test_from_points():
    obs = ObservationSet.from_points([np.zeros((20, 2)), np.ones((20, 2))], (640, 480))
    assert len(obs) == 2
    assert obs.image_size == (640, 480)
    assert [o.timestamp for o in obs] == [0.0, 1.0]
    assert obs.image_points[1].shape == (20, 2)
