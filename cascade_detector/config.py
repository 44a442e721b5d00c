# cascade_detector/config.py
import json
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

from .errors import InvalidInput
from .merge import DEFAULT_CENTER_TOLERANCE, DEFAULT_IOU_THRESHOLD, DEFAULT_SIZE_RATIO
from .search import SearchConfig


@dataclass
class DetectorConfig:
    # --- search ---
    scale_factor: float = 1.1
    min_size: Optional[int] = None      # None -> cascade base window
    max_size: Optional[int] = None      # None -> largest window fitting the image
    step_ratio: float = 0.1
    workers: int = 1
    vectorized: bool = True

    # --- merging ---
    min_neighbors: int = 3
    center_tolerance: float = DEFAULT_CENTER_TOLERANCE
    size_ratio: float = DEFAULT_SIZE_RATIO
    iou_threshold: float = DEFAULT_IOU_THRESHOLD

    # --- preprocessing ---
    equalize_hist: bool = False

    def search_config(self) -> SearchConfig:
        return SearchConfig(
            min_size=self.min_size,
            max_size=self.max_size,
            scale_factor=self.scale_factor,
            step_ratio=self.step_ratio,
            workers=self.workers,
            vectorized=self.vectorized,
        )


def default_config() -> DetectorConfig:
    return DetectorConfig()


def with_overrides(base: Optional[DetectorConfig] = None, **over: Any) -> DetectorConfig:
    cfg = base or default_config()
    known = {f.name for f in fields(DetectorConfig)}
    unknown = sorted(set(over) - known)
    if unknown:
        raise InvalidInput(f"Unknown config keys: {', '.join(unknown)}")
    # None means "not given" for overrides coming from the command line
    return replace(cfg, **{k: v for k, v in over.items() if v is not None})


def load_config(config_path=None, base: Optional[DetectorConfig] = None) -> DetectorConfig:
    """
    Merge a JSON config file over the defaults

    A missing path returns the defaults unchanged.
    """
    cfg = base or default_config()
    if not config_path or not os.path.exists(config_path):
        return cfg

    with open(config_path, 'r') as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise InvalidInput(f"Invalid config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidInput(f"Config file {config_path} must hold a JSON object")
    return with_overrides(cfg, **data)
