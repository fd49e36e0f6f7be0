"""
Accumulation of accepted views.

The store only grows or is cleared wholesale. The solver never sees the
store itself: snapshot() hands it a frozen ObservationSet.
"""
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .config import PatternGeometry
from .detection import PatternDetection
from .logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, eq=False)
class Observation:
    image_points: np.ndarray    # (N, 2), same order as PatternGeometry.object_points()
    timestamp: float

    def __post_init__(self):
        points = np.array(self.image_points, np.float64).reshape(-1, 2)
        points.setflags(write=False)
        object.__setattr__(self, "image_points", points)

    def __len__(self):
        return len(self.image_points)


@dataclass(frozen=True, eq=False)
class ObservationSet:
    observations: Tuple[Observation, ...]
    image_size: Optional[Tuple[int, int]]   # (w, h)

    def __post_init__(self):
        object.__setattr__(self, "observations", tuple(self.observations))

    def __len__(self):
        return len(self.observations)

    def __iter__(self):
        return iter(self.observations)

    def __getitem__(self, index):
        return self.observations[index]

    @property
    def image_points(self) -> List[np.ndarray]:
        return [obs.image_points for obs in self.observations]

    @property
    def total_points(self) -> int:
        return sum(len(obs) for obs in self.observations)

    @classmethod
    def from_points(cls, points: Sequence[np.ndarray], image_size) -> "ObservationSet":
        """Build a set directly from per-view pixel arrays (synthetic data, file replay)."""
        return cls(
            observations=tuple(Observation(p, timestamp=float(i)) for i, p in enumerate(points)),
            image_size=(int(image_size[0]), int(image_size[1])),
        )


class ObservationStore:
    """Debounced accumulation of full pattern detections."""

    def __init__(self, geometry: PatternGeometry, clock: Callable[[], float] = time.monotonic):
        self.geometry = geometry
        self._clock = clock
        self._observations: List[Observation] = []
        self._image_size: Optional[Tuple[int, int]] = None
        self._last_accept: Optional[float] = None

    def __len__(self):
        return len(self._observations)

    def count(self) -> int:
        return len(self._observations)

    @property
    def image_size(self):
        return self._image_size

    def try_add(self, detection: PatternDetection, min_interval: float = 0.0) -> bool:
        """
        Accept a detection as a new view.

        Rejected when the pattern was not fully found, when less than
        `min_interval` seconds passed since the last accepted view, or when
        the frame size differs from the views already stored.
        """
        if not detection.found or detection.points is None:
            return False
        if len(detection.points) != self.geometry.point_count:
            return False

        now = self._clock()
        if self._last_accept is not None and now - self._last_accept < min_interval:
            return False

        if self._image_size is not None and tuple(detection.image_size) != self._image_size:
            logger.warning("Ignoring %dx%d view, capture pass runs at %dx%d",
                           detection.image_size[0], detection.image_size[1], *self._image_size)
            return False

        self._observations.append(Observation(detection.points, timestamp=now))
        self._image_size = tuple(detection.image_size)
        self._last_accept = now
        logger.debug("Accepted view %d", len(self._observations))
        return True

    def reset(self):
        self._observations = []
        self._image_size = None
        self._last_accept = None

    def is_ready_for_solve(self, target_count: int) -> bool:
        return len(self._observations) >= target_count

    def snapshot(self) -> ObservationSet:
        # Observations are immutable, copying the list is enough
        return ObservationSet(observations=tuple(self._observations), image_size=self._image_size)
