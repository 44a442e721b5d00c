# cascade_detector/detector.py
"""
Cascade Detector
Facade tying integral images, the multi-scale search and detection merging
together: detect(image) -> detections.
"""
import time
from pathlib import Path

import cv2
import numpy as np

from .cascade_model import load_cascade
from .config import default_config, with_overrides
from .errors import InvalidInput
from .integral_image import build_integral_images
from .merge import merge_detections
from .search import MultiScaleSearch

DEFAULT_CASCADE = 'haarcascade_frontalface_default.xml'
DATA_DIR = Path(__file__).resolve().parent / 'data'


def default_cascade_path(name=DEFAULT_CASCADE):
    """
    Path of a stock OpenCV cascade

    The frontal face cascades ship with this package; other names are looked
    up in the haarcascades folder of opencv-python, when it has one.
    """
    path = DATA_DIR / name
    opencv_data = getattr(cv2, 'data', None)
    if path.exists() or opencv_data is None:
        return path
    return Path(opencv_data.haarcascades) / name


def to_gray(image, equalize=False):
    """
    Convert an image to a 2D uint8-compatible grayscale buffer

    Args:
        image: (H, W) gray, (H, W, 1), (H, W, 3) BGR or (H, W, 4) BGRA array
        equalize: apply histogram equalization
    """
    if image is None:
        raise InvalidInput("Image is missing")

    image = np.asarray(image)
    if image.size == 0 or image.ndim < 2 or 0 in image.shape[:2]:
        raise InvalidInput(f"Image is empty (shape {image.shape})")

    if image.ndim == 3:
        channels = image.shape[2]
        if channels == 1:
            image = image[:, :, 0]
        elif channels == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        elif channels == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        else:
            raise InvalidInput(f"Unsupported channel count: {channels}")
    elif image.ndim != 2:
        raise InvalidInput(f"Expected a 2D or 3D image, got shape {image.shape}")

    if equalize:
        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)
        image = cv2.equalizeHist(image)
    return image


class CascadeDetector:
    """
    Haar cascade object detector

    Args:
        model: CascadeModel, shared and never modified
        config: DetectorConfig (defaults when None)
        verbose: print progress lines
    """

    def __init__(self, model, config=None, verbose=False):
        self.model = model
        self.config = config or default_config()
        self.search = MultiScaleSearch(model)
        self.verbose = verbose

        if self.verbose:
            print(f"✓ Cascade ready: {len(model.stages)} stages, "
                  f"{model.n_classifiers} weak classifiers, "
                  f"{model.width}x{model.height} base window")

    @classmethod
    def from_file(cls, cascade_path=None, config=None, verbose=False):
        """Load a cascade file (OpenCV frontal face when None) and build a detector"""
        path = cascade_path or default_cascade_path()
        if verbose:
            print(f"Loading cascade from: {path}")
        return cls(load_cascade(path), config=config, verbose=verbose)

    def raw_hits(self, image, config=None, cancel_event=None):
        """Accepted windows before merging"""
        config = config or self.config
        gray = to_gray(image, equalize=config.equalize_hist)
        integrals = build_integral_images(gray)
        return list(self.search.search(integrals, config.search_config(), cancel_event))

    def detect(self, image, cancel_event=None, **overrides):
        """
        Detect objects in an image

        Args:
            image: grayscale or BGR array
            cancel_event: optional threading.Event stopping the scan between scales
            **overrides: DetectorConfig fields for this call only

        Returns:
            List of Detection in image coordinates
        """
        config = with_overrides(self.config, **overrides) if overrides else self.config

        t0 = time.perf_counter()
        hits = self.raw_hits(image, config, cancel_event)
        detections = merge_detections(
            hits,
            min_neighbors=config.min_neighbors,
            center_tolerance=config.center_tolerance,
            size_ratio=config.size_ratio,
            iou_threshold=config.iou_threshold,
        )

        if self.verbose:
            dt = (time.perf_counter() - t0) * 1000
            print(f"✓ {len(detections)} detections from {len(hits)} raw hits in {dt:.1f} ms")
        return detections


def face_tiles(detections, image_width, image_height, grid=8):
    """
    Grid cell of each detection's top-left corner

    The image is split into grid x grid tiles of (width // grid) x
    (height // grid) pixels.

    Returns:
        List of [row, col]
    """
    if grid < 1:
        raise InvalidInput(f"grid must be >= 1, got {grid}")
    tile_w = image_width // grid
    tile_h = image_height // grid
    if tile_w == 0 or tile_h == 0:
        raise InvalidInput(f"Cannot split {image_width}x{image_height} image into {grid}x{grid} tiles")

    tiles = []
    for det in detections:
        row = min(det.y // tile_h, grid - 1)
        col = min(det.x // tile_w, grid - 1)
        tiles.append([int(row), int(col)])
    return tiles


def draw_detections(image, detections, color=(0, 255, 0), thickness=2):
    """Copy of the image (as BGR) with detection boxes and hit counts drawn"""
    vis = np.asarray(image)
    if vis.ndim == 2:
        vis = cv2.cvtColor(vis.astype(np.uint8), cv2.COLOR_GRAY2BGR)
    else:
        vis = vis.copy()

    for det in detections:
        cv2.rectangle(vis, (det.x, det.y), (det.x + det.w, det.y + det.h), color, thickness)
        cv2.putText(vis, str(det.hit_count), (det.x, max(det.y - 5, 10)),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1)
    return vis
