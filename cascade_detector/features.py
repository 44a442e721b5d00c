# cascade_detector/features.py
"""
Haar Feature Evaluation
Computes variance-normalized Haar-like feature responses for a window
using the integral and squared integral images.

response = sum(weight * rect sum) / (A * std), where A and std are the pixel
count and standard deviation of the window inset by one (scaled) pixel, the
normalization OpenCV cascade thresholds are trained against.
"""
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import NamedTuple, Tuple

import numpy as np

from .cascade_model import FeatureKind

# Floor on the window variance; flat regions (sky, walls) would otherwise
# divide by ~0.
MIN_VARIANCE = 1.0


@dataclass(frozen=True)
class Window:
    """Square search window in image coordinates; size is the window width"""
    x: int
    y: int
    size: int


class ScaledFeature(NamedTuple):
    kind: FeatureKind
    rects: Tuple[Tuple[int, int, int, int], ...]
    weights: Tuple[float, ...]


class WindowContext(NamedTuple):
    x: int
    y: int
    width: int
    height: int
    norm: float     # 1 / (pixel count * std) over the normalization rect


def _round(v):
    return int(v + 0.5)


def window_height(size, base_width, base_height):
    """Height of a window of the given width for a base window's aspect ratio"""
    if base_width == base_height:
        return size
    return max(1, _round(size * base_height / base_width))


def _scale_rect(x, y, w, h, scale, side_w, side_h):
    sx, sy = _round(x * scale), _round(y * scale)
    # rounding must never push a rectangle past the window edge
    sw = max(1, min(_round(w * scale), side_w - sx))
    sh = max(1, min(_round(h * scale), side_h - sy))
    return sx, sy, sw, sh


@lru_cache(maxsize=65536)
def scale_feature(feature, side_w, side_h, base_w):
    """
    Map a base-window feature onto a window of side_w x side_h pixels

    Rectangle geometry is rounded to whole pixels. When the feature is
    balanced in the base window (area-weighted weights summing to zero) the
    first weight is corrected so it stays balanced after rounding.
    """
    scale = side_w / base_w
    rects = tuple(_scale_rect(r.x, r.y, r.w, r.h, scale, side_w, side_h) for r in feature.rects)
    weights = [r.weight for r in feature.rects]

    base_balance = sum(r.weight * r.area for r in feature.rects)
    if abs(base_balance) < 1e-9:
        rest = sum(w * rw * rh for w, (_, _, rw, rh) in zip(weights[1:], rects[1:]))
        weights[0] = -rest / (rects[0][2] * rects[0][3])

    return ScaledFeature(feature.kind, rects, tuple(weights))


def normalization_rect(width, height, base_width, base_height):
    """
    Part of a window the variance is measured on, as (dx, dy, w, h)

    OpenCV trains its cascades against the base window shrunk by one pixel
    on every side; the inset scales with the window. Base windows too small
    to shrink use the whole window.
    """
    if base_width <= 2 or base_height <= 2:
        return 0, 0, width, height
    scale = width / base_width
    inset = _round(scale)
    w = max(1, min(_round((base_width - 2) * scale), width - 2 * inset))
    h = max(1, min(_round((base_height - 2) * scale), height - 2 * inset))
    return inset, inset, w, h


def window_std(integral, squared, x, y, w, h):
    """Standard deviation of the pixels in a window, floored by MIN_VARIANCE"""
    n = w * h
    total = float(integral.rectangle_sum(x, y, w, h))
    total_sq = float(squared.rectangle_sum(x, y, w, h))
    mean = total / n
    variance = total_sq / n - mean * mean
    return math.sqrt(max(variance, MIN_VARIANCE))


class FeatureEvaluator:
    """
    Evaluates features of a cascade against windows of one image

    Args:
        integral: IntegralImage of the pixels
        squared: IntegralImage of the squared pixels
        base_width, base_height: cascade base window
    """

    def __init__(self, integral, squared, base_width, base_height=None):
        self.integral = integral
        self.squared = squared
        self.base_width = base_width
        self.base_height = base_width if base_height is None else base_height

    def window_context(self, window):
        """Geometry and normalization factor shared by every feature of a window"""
        width = window.size
        height = window_height(width, self.base_width, self.base_height)
        dx, dy, nw, nh = normalization_rect(width, height, self.base_width, self.base_height)
        std = window_std(self.integral, self.squared, window.x + dx, window.y + dy, nw, nh)
        return WindowContext(window.x, window.y, width, height, 1.0 / (nw * nh * std))

    def evaluate(self, feature, ctx):
        """
        Normalized response of one feature

        Args:
            feature: RectFeature in base-window coordinates
            ctx: WindowContext from window_context() (a Window is also accepted)
        """
        if isinstance(ctx, Window):
            ctx = self.window_context(ctx)

        scaled = scale_feature(feature, ctx.width, ctx.height, self.base_width)
        rects, weights = scaled.rects, scaled.weights
        rect_sum = self.integral.rectangle_sum
        x, y = ctx.x, ctx.y

        r0, r1 = rects[0], rects[1]
        total = (weights[0] * rect_sum(x + r0[0], y + r0[1], r0[2], r0[3])
                 + weights[1] * rect_sum(x + r1[0], y + r1[1], r1[2], r1[3]))
        if scaled.kind is FeatureKind.THREE_RECT:
            r2 = rects[2]
            total += weights[2] * rect_sum(x + r2[0], y + r2[1], r2[2], r2[3])

        return float(total) * ctx.norm


def evaluate_feature(feature, integral, squared, window, base_width, base_height=None):
    """One-off normalized response of a feature at a window"""
    return FeatureEvaluator(integral, squared, base_width, base_height).evaluate(feature, window)


# ---------------------------------------------------------------- batched

@dataclass(frozen=True)
class ScaledStage:
    """A stage's packed node rectangles mapped onto one window size"""
    rects: np.ndarray      # (M, 3, 4)
    weights: np.ndarray    # (M, 3)
    n_rects: np.ndarray    # (M,)


def scale_stage(pack, side_w, side_h, base_w):
    """Vectorized scale_feature over every node of a StagePack"""
    scale = side_w / base_w
    rects = pack.rects
    sx = np.floor(rects[:, :, 0] * scale + 0.5).astype(np.int64)
    sy = np.floor(rects[:, :, 1] * scale + 0.5).astype(np.int64)
    sw = np.floor(rects[:, :, 2] * scale + 0.5).astype(np.int64)
    sh = np.floor(rects[:, :, 3] * scale + 0.5).astype(np.int64)
    sw = np.maximum(1, np.minimum(sw, side_w - sx))
    sh = np.maximum(1, np.minimum(sh, side_h - sy))

    used = np.arange(3)[None, :] < pack.n_rects[:, None]
    sw = np.where(used, sw, 0)
    sh = np.where(used, sh, 0)
    sx = np.where(used, sx, 0)
    sy = np.where(used, sy, 0)

    weights = np.where(used, pack.weights, 0.0)
    base_area = rects[:, :, 2] * rects[:, :, 3]
    balanced = np.abs((weights * base_area).sum(axis=1)) < 1e-9
    area = sw * sh
    rest = (weights[:, 1:] * area[:, 1:]).sum(axis=1)
    corrected = -rest / area[:, 0]
    weights = weights.copy()
    weights[:, 0] = np.where(balanced, corrected, weights[:, 0])

    return ScaledStage(np.stack([sx, sy, sw, sh], axis=-1), weights, pack.n_rects)


def batch_window_norm(integral, squared, xs, ys, width, height, base_width, base_height):
    """1 / (pixel count * std) for many windows of one size"""
    dx, dy, nw, nh = normalization_rect(width, height, base_width, base_height)
    n = nw * nh
    total = integral.rectangle_sums(xs + dx, ys + dy, nw, nh).astype(np.float64)
    total_sq = squared.rectangle_sums(xs + dx, ys + dy, nw, nh).astype(np.float64)
    mean = total / n
    variance = np.maximum(total_sq / n - mean * mean, MIN_VARIANCE)
    return 1.0 / (n * np.sqrt(variance))


def batch_feature_response(integral, scaled, k, xs, ys, norm):
    """Normalized response of node k of a ScaledStage at many positions"""
    rects = scaled.rects[k]
    weights = scaled.weights[k]
    total = np.zeros(xs.shape, dtype=np.float64)
    for j in range(int(scaled.n_rects[k])):
        rx, ry, rw, rh = (int(v) for v in rects[j])
        total += weights[j] * integral.rectangle_sums(xs + rx, ys + ry, rw, rh)
    return total * norm
