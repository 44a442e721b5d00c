# cascade_detector/search.py
"""
Multi-scale sliding-window search
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import NamedTuple, Optional

import numpy as np

from .cascade import CascadeEvaluator, evaluate_stage
from .errors import InvalidInput
from .features import FeatureEvaluator, Window, window_height
from .integral_image import IntegralImage, build_integral_images


@dataclass
class SearchConfig:
    # window width bounds in pixels; None derives them from cascade / image
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    scale_factor: float = 1.1
    step_ratio: float = 0.1
    workers: int = 1
    # numpy batch per scale level; False walks windows one by one, as does an
    # evaluator with an injected stage_classifier
    vectorized: bool = True


class RawHit(NamedTuple):
    x: int
    y: int
    size: int
    height: int


class ScaleLevel(NamedTuple):
    width: int
    height: int
    stride: int


def validate_config(config):
    if config.scale_factor is None or not config.scale_factor > 1.0:
        raise InvalidInput(f"scale_factor must be > 1.0, got {config.scale_factor}")
    if config.step_ratio is None or not config.step_ratio > 0.0:
        raise InvalidInput(f"step_ratio must be > 0, got {config.step_ratio}")
    if config.min_size is not None and config.min_size < 1:
        raise InvalidInput(f"min_size must be >= 1, got {config.min_size}")
    if config.max_size is not None and config.max_size < 1:
        raise InvalidInput(f"max_size must be >= 1, got {config.max_size}")
    if (config.min_size is not None and config.max_size is not None
            and config.max_size < config.min_size):
        raise InvalidInput(f"max_size ({config.max_size}) < min_size ({config.min_size})")
    if config.workers < 1:
        raise InvalidInput(f"workers must be >= 1, got {config.workers}")


def scale_levels(image_width, image_height, config, base_width=1, base_height=None):
    """
    Window sizes visited by a search, smallest first

    Follows size = min_size, min_size * f, min_size * f^2, ... <= max_size.
    Each size is rounded to whole pixels; sizes smaller than the base window
    or not fitting the image are skipped, repeated roundings visited once.

    Returns:
        List of ScaleLevel(width, height, stride)
    """
    validate_config(config)
    base_height = base_width if base_height is None else base_height

    min_size = config.min_size if config.min_size is not None else base_width
    if config.max_size is not None:
        max_size = config.max_size
    else:
        max_size = min(image_width, image_height * base_width // base_height)

    levels = []
    size = float(min_size)
    # tolerate float drift on the final in-range size
    limit = max_size * (1 + 1e-9)
    while size <= limit:
        side = int(size + 0.5)
        side_h = window_height(side, base_width, base_height)
        if (side >= base_width and side <= image_width and side_h <= image_height
                and (not levels or levels[-1].width != side)):
            stride = max(1, int(side * config.step_ratio + 0.5))
            levels.append(ScaleLevel(side, side_h, stride))
        if side > image_width:
            break
        size *= config.scale_factor
    return levels


def window_sizes(image_width, image_height, config, base_width=1, base_height=None):
    """Window widths visited by a search"""
    return [level.width for level in scale_levels(image_width, image_height, config,
                                                  base_width, base_height)]


def count_windows(image_width, image_height, level):
    """Number of window positions of one scale level"""
    nx = len(range(0, image_width - level.width + 1, level.stride))
    ny = len(range(0, image_height - level.height + 1, level.stride))
    return nx * ny


class MultiScaleSearch:
    """
    Slides the cascade over every position and scale of an image

    Args:
        model: CascadeModel shared across searches
        evaluator: optional CascadeEvaluator (e.g. an instrumented one)
    """

    def __init__(self, model, evaluator=None):
        self.model = model
        self.evaluator = evaluator or CascadeEvaluator(model)

    def levels(self, image_width, image_height, config=None):
        config = config or SearchConfig()
        return scale_levels(image_width, image_height, config,
                            self.model.width, self.model.height)

    def search(self, image, config=None, cancel_event=None):
        """
        Raw hits of the cascade over an image

        Args:
            image: 2D grayscale array, or an (IntegralImage, IntegralImage) pair
            config: SearchConfig
            cancel_event: optional threading.Event, checked between scale levels

        Returns:
            Generator of RawHit; a fresh call re-scans
        """
        config = config or SearchConfig()
        validate_config(config)

        if isinstance(image, tuple) and len(image) == 2 and isinstance(image[0], IntegralImage):
            integral, squared = image
        else:
            integral, squared = build_integral_images(image)

        levels = self.levels(integral.width, integral.height, config)
        if config.workers > 1 and len(levels) > 1:
            return self._search_parallel(integral, squared, levels, config, cancel_event)
        return self._search_sequential(integral, squared, levels, config, cancel_event)

    def _search_sequential(self, integral, squared, levels, config, cancel_event):
        for level in levels:
            if cancel_event is not None and cancel_event.is_set():
                return
            yield from self.scan_level(integral, squared, level, config.vectorized)

    def _search_parallel(self, integral, squared, levels, config, cancel_event):
        executor = ThreadPoolExecutor(max_workers=config.workers)
        try:
            futures = [
                executor.submit(self._scan_level_unless_cancelled,
                                integral, squared, level, config.vectorized, cancel_event)
                for level in levels
            ]
            for future in futures:
                if cancel_event is not None and cancel_event.is_set():
                    return
                # each worker fills its own list; lists are yielded in scale order
                yield from future.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _scan_level_unless_cancelled(self, integral, squared, level, vectorized, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            return []
        return self.scan_level(integral, squared, level, vectorized)

    def scan_level(self, integral, squared, level, vectorized=True):
        """All accepted windows of one scale level"""
        xs = np.arange(0, integral.width - level.width + 1, level.stride, dtype=np.int64)
        ys = np.arange(0, integral.height - level.height + 1, level.stride, dtype=np.int64)
        if xs.size == 0 or ys.size == 0:
            return []

        if vectorized and self.evaluator.stage_classifier is evaluate_stage:
            grid_y, grid_x = np.meshgrid(ys, xs, indexing='ij')
            grid_x, grid_y = grid_x.ravel(), grid_y.ravel()
            reached = self.evaluator.evaluate_batch(integral, squared, grid_x, grid_y,
                                                     level.width, level.height)
            accepted = np.flatnonzero(reached == self.evaluator.n_stages)
            return [RawHit(int(grid_x[i]), int(grid_y[i]), level.width, level.height)
                    for i in accepted]

        features = FeatureEvaluator(integral, squared, self.model.width, self.model.height)
        hits = []
        for y in ys:
            for x in xs:
                result = self.evaluator.evaluate(features, Window(int(x), int(y), level.width))
                if result.accepted:
                    hits.append(RawHit(int(x), int(y), level.width, level.height))
        return hits
