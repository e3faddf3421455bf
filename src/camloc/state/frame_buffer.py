from collections import deque
from dataclasses import dataclass
from typing import Iterator

import numpy as np

from camloc.datatypes import Features


@dataclass(frozen=True, eq=False)
class BufferedFrame:
    """
    Descriptors of a localized frame that observed known landmarks.

    Attributes:
        frame_id: Frame the data comes from.
        features: Inlier keypoints and descriptors of that frame.
        landmark_ids: (N,) landmark associated with each inlier feature.

    """

    frame_id: int
    features: Features
    landmark_ids: np.ndarray

    def __len__(self) -> int:
        return len(self.landmark_ids)


class FrameBuffer:
    """
    Bounded FIFO of the most recent successfully localized frames.

    Only the localizer driving the stream pushes into it.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            msg = f"capacity cannot be negative, got {capacity}"
            raise ValueError(msg)
        self.capacity = capacity
        self._frames: deque[BufferedFrame] = deque(maxlen=capacity or None)

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def push(self, frame: BufferedFrame) -> None:
        """Append a frame, evicting the oldest one at capacity."""
        if not self.enabled:
            return
        self._frames.append(frame)

    def clear(self) -> None:
        self._frames.clear()

    def total_correspondences(self) -> int:
        return sum(len(f) for f in self._frames)

    def frame_ids(self) -> list[int]:
        return [f.frame_id for f in self._frames]

    def __iter__(self) -> Iterator[BufferedFrame]:
        # most recent first
        return iter(reversed(self._frames))

    def __len__(self) -> int:
        return len(self._frames)
