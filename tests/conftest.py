import numpy as np
import pytest

from camloc.config.config import LocalizerConfig
from camloc.datatypes import Features, FrameData
from camloc.utils.synthetic import random_descriptors, ring_map, ring_of_cameras

# =============================================================================
# Synthetic scene
# =============================================================================
# Eight cameras on a ring around a point cloud. Even cameras form the map,
# odd cameras are used as queries.

N_VIEWS = 8
N_POINTS = 120
MAP_VIEWS = [0, 2, 4, 6]


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def ring():
    return ring_of_cameras(N_VIEWS, N_POINTS)


@pytest.fixture
def descriptors() -> np.ndarray:
    return random_descriptors(N_POINTS, seed=7)


@pytest.fixture
def ring_map_model(ring, descriptors):
    return ring_map(ring, descriptors, MAP_VIEWS)


@pytest.fixture
def cfg() -> LocalizerConfig:
    """Deterministic configuration for the synthetic scene."""
    return LocalizerConfig(seed=0, max_iterations=256).validated()


def make_query(ring, descriptors, camera: int, known_intrinsic: bool = True):
    """Frame and features of a ring camera observing every scene point."""
    intrinsic = ring.intrinsic if known_intrinsic else None
    image = np.zeros((ring.intrinsic.height, ring.intrinsic.width), dtype=np.uint8)
    frame = FrameData(camera, f"query_{camera:03d}.png", image, intrinsic)
    return frame, Features(ring.projections[camera], descriptors)


@pytest.fixture
def query_factory(ring, descriptors):
    def factory(camera: int, known_intrinsic: bool = True):
        return make_query(ring, descriptors, camera, known_intrinsic)

    return factory
