# conftest.py
import numpy as np
import pytest

from synthetic_cascades import make_cascade, make_edge_cascade, make_tree_cascade


@pytest.fixture
def build_cascade():
    return make_cascade


@pytest.fixture
def always_pass_cascade():
    """Single stage with threshold -inf: every window is accepted"""
    return make_cascade([float('-inf')], base=20)


@pytest.fixture
def edge_cascade():
    return make_edge_cascade()


@pytest.fixture
def tree_cascade():
    return make_tree_cascade()


@pytest.fixture
def random_image():
    """Noise with two bright blocks, so edge features fire somewhere"""
    rng = np.random.default_rng(1234)
    img = rng.integers(0, 60, size=(64, 72)).astype(np.int64)
    img[10:40, 30:60] += 150
    img[30:60, 5:25] += 120
    return np.clip(img, 0, 255).astype(np.uint8)
