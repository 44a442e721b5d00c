# cascade_detector/__init__.py
from .cascade import CascadeEvaluator, CascadeResult, CascadeState, evaluate_stage
from .cascade_model import (CascadeModel, FeatureKind, Rect, RectFeature, Stage, TreeClassifier,
                            TreeNode, WeakClassifier, dumps_cascade, load_cascade, loads_cascade)
from .config import DetectorConfig, default_config, load_config, with_overrides
from .detector import (CascadeDetector, default_cascade_path, draw_detections,
                       face_tiles, to_gray)
from .errors import CascadeDetectorError, InvalidInput, MalformedCascade
from .features import FeatureEvaluator, Window, evaluate_feature
from .integral_image import IntegralImage, build_integral_images
from .merge import Detection, calculate_iou, merge_detections, non_max_suppression
from .search import MultiScaleSearch, RawHit, SearchConfig, window_sizes

__all__ = [
    'CascadeDetector', 'CascadeDetectorError', 'CascadeEvaluator', 'CascadeModel',
    'CascadeResult', 'CascadeState', 'Detection', 'DetectorConfig', 'FeatureEvaluator',
    'FeatureKind', 'IntegralImage', 'InvalidInput', 'MalformedCascade', 'MultiScaleSearch',
    'RawHit', 'Rect', 'RectFeature', 'SearchConfig', 'Stage', 'TreeClassifier', 'TreeNode',
    'WeakClassifier', 'Window',
    'build_integral_images', 'calculate_iou', 'default_cascade_path', 'default_config',
    'draw_detections', 'dumps_cascade', 'evaluate_feature', 'evaluate_stage', 'face_tiles',
    'load_cascade', 'load_config', 'loads_cascade', 'merge_detections', 'non_max_suppression',
    'to_gray', 'window_sizes', 'with_overrides',
]
