# cascade_detector/cascade_model.py
"""
Cascade Model
Immutable stage/feature tree of a pretrained Haar cascade and its loaders.
Weak classifiers are decision stumps or small node trees (the
frontalface_alt2 family).

Supported definitions:
    - OpenCV XML, current layout (<cascade> with <stages> and <features>)
    - OpenCV XML, legacy layout (type_id="opencv-haar-classifier")
    - JSON, versioned ({"version": 1, "width", "height", "stages"})
"""
import json
import math
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Tuple, Union

import numpy as np

from .errors import MalformedCascade

JSON_FORMAT_VERSION = 1


class FeatureKind(Enum):
    """Closed set of supported Haar-like features, tagged by rectangle count"""
    TWO_RECT = 2
    THREE_RECT = 3


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    w: int
    h: int
    weight: float

    @property
    def area(self):
        return self.w * self.h


@dataclass(frozen=True)
class RectFeature:
    rects: Tuple[Rect, ...]

    @property
    def kind(self):
        return FeatureKind(len(self.rects))


@dataclass(frozen=True)
class TreeNode:
    """
    Split node of a weak classifier tree

    left / right > 0 index another node of the same tree, values <= 0 point
    at leaf -value.
    """
    feature: RectFeature
    threshold: float
    left: int
    right: int


def walk_tree(nodes, leaves, response):
    """Leaf value reached from the root; response(feature) -> float"""
    idx = 0
    while True:
        node = nodes[idx]
        nxt = node.left if response(node.feature) < node.threshold else node.right
        if nxt <= 0:
            return leaves[-nxt]
        idx = nxt


@dataclass(frozen=True)
class WeakClassifier:
    """Decision stump: one feature, one threshold, two leaves"""
    feature: RectFeature
    threshold: float
    leaf_left: float
    leaf_right: float

    def output(self, response):
        """leaf_left below the threshold, leaf_right otherwise"""
        return self.leaf_left if response < self.threshold else self.leaf_right

    def predict(self, response):
        return self.output(response(self.feature))

    @property
    def nodes(self):
        return (TreeNode(self.feature, self.threshold, 0, -1),)

    @property
    def leaves(self):
        return (self.leaf_left, self.leaf_right)


@dataclass(frozen=True)
class TreeClassifier:
    """Weak classifier made of several split nodes (e.g. frontalface_alt2)"""
    nodes: Tuple[TreeNode, ...]
    leaves: Tuple[float, ...]

    def __post_init__(self):
        object.__setattr__(self, 'nodes', tuple(self.nodes))
        object.__setattr__(self, 'leaves', tuple(self.leaves))
        if not self.nodes:
            raise MalformedCascade("Tree classifier has no nodes")

        # children always follow their parent, so every walk terminates
        for i, node in enumerate(self.nodes):
            for child in (node.left, node.right):
                if child > 0 and not i < child < len(self.nodes):
                    raise MalformedCascade(f"Tree node {i}: invalid child node {child}")
                if child <= 0 and -child >= len(self.leaves):
                    raise MalformedCascade(f"Tree node {i}: leaf {-child} does not exist")

    def predict(self, response):
        return walk_tree(self.nodes, self.leaves, response)


@dataclass(frozen=True)
class StagePack:
    """
    Array form of a stage, used by the batched evaluator

    Nodes of every classifier are stored one after the other; classifier i
    owns nodes node_start[i]:node_start[i + 1] and leaves
    leaf_start[i]:leaf_start[i + 1]. Child codes are local to the classifier.
    """
    rects: np.ndarray       # (M, 3, 4) int64: x, y, w, h (unused third slot is all zero)
    weights: np.ndarray     # (M, 3) float64
    n_rects: np.ndarray     # (M,) 2 or 3
    thresholds: np.ndarray  # (M,)
    left: np.ndarray        # (M,) child codes
    right: np.ndarray       # (M,)
    node_start: np.ndarray  # (K + 1,)
    leaves: np.ndarray      # (L,)
    leaf_start: np.ndarray  # (K + 1,)

    def is_stump(self, i):
        return self.node_start[i + 1] - self.node_start[i] == 1


@dataclass(frozen=True)
class Stage:
    classifiers: Tuple[Union[WeakClassifier, TreeClassifier], ...]
    threshold: float
    pack: StagePack = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'classifiers', tuple(self.classifiers))
        if not self.classifiers:
            raise MalformedCascade("Stage has no weak classifiers")
        for c, clf in enumerate(self.classifiers):
            for node in clf.nodes:
                if len(node.feature.rects) not in (2, 3):
                    raise MalformedCascade(
                        f"Classifier {c}: expected 2 or 3 rectangles, got {len(node.feature.rects)}")
        object.__setattr__(self, 'pack', _pack_stage(self.classifiers))


def _pack_stage(classifiers):
    nodes = [node for clf in classifiers for node in clf.nodes]
    m = len(nodes)
    rects = np.zeros((m, 3, 4), dtype=np.int64)
    weights = np.zeros((m, 3), dtype=np.float64)
    n_rects = np.zeros(m, dtype=np.int64)
    for i, node in enumerate(nodes):
        for j, r in enumerate(node.feature.rects):
            rects[i, j] = (r.x, r.y, r.w, r.h)
            weights[i, j] = r.weight
        n_rects[i] = len(node.feature.rects)

    pack = StagePack(
        rects=rects,
        weights=weights,
        n_rects=n_rects,
        thresholds=np.array([n.threshold for n in nodes], dtype=np.float64),
        left=np.array([n.left for n in nodes], dtype=np.int64),
        right=np.array([n.right for n in nodes], dtype=np.int64),
        node_start=np.cumsum([0] + [len(c.nodes) for c in classifiers]).astype(np.int64),
        leaves=np.array([v for c in classifiers for v in c.leaves], dtype=np.float64),
        leaf_start=np.cumsum([0] + [len(c.leaves) for c in classifiers]).astype(np.int64),
    )
    for arr in (pack.rects, pack.weights, pack.n_rects, pack.thresholds, pack.left,
                pack.right, pack.node_start, pack.leaves, pack.leaf_start):
        arr.flags.writeable = False
    return pack


@dataclass(frozen=True)
class CascadeModel:
    """
    Ordered stages plus the base window the features are defined in.

    Stage order is the evaluation order and is never changed.
    """
    stages: Tuple[Stage, ...]
    width: int
    height: int

    def __post_init__(self):
        object.__setattr__(self, 'stages', tuple(self.stages))
        if not self.stages:
            raise MalformedCascade("Cascade has no stages")
        if self.width <= 0 or self.height <= 0:
            raise MalformedCascade(f"Invalid base window size {self.width}x{self.height}")

        for s, stage in enumerate(self.stages):
            for c, clf in enumerate(stage.classifiers):
                for node in clf.nodes:
                    for r in node.feature.rects:
                        if r.w <= 0 or r.h <= 0:
                            raise MalformedCascade(
                                f"Stage {s} classifier {c}: empty rectangle {r}")
                        if (r.x < 0 or r.y < 0 or r.x + r.w > self.width
                                or r.y + r.h > self.height):
                            raise MalformedCascade(
                                f"Stage {s} classifier {c}: rectangle {r} outside "
                                f"{self.width}x{self.height} window")

    @property
    def n_classifiers(self):
        return sum(len(stage.classifiers) for stage in self.stages)


# ---------------------------------------------------------------- loading

def load_cascade(source):
    """
    Load a cascade definition file

    Args:
        source: path to an OpenCV XML or JSON cascade

    Returns:
        CascadeModel

    Raises:
        MalformedCascade: on any unreadable or invalid entry
    """
    path = Path(os.fspath(source))
    if not path.is_file():
        raise MalformedCascade(f"Cascade file not found: {path}")

    try:
        text = path.read_text(encoding='utf-8-sig')
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedCascade(f"Could not read cascade {path}: {e}") from e

    fmt = 'json' if path.suffix.lower() == '.json' else None
    return loads_cascade(text, fmt=fmt)


def loads_cascade(text, fmt=None):
    """Parse a cascade definition from a string ('xml', 'json' or sniffed)"""
    if fmt is None:
        head = text.lstrip()[:1]
        if head == '{':
            fmt = 'json'
        elif head == '<':
            fmt = 'xml'
        else:
            raise MalformedCascade("Unrecognized cascade definition format")

    if fmt == 'json':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise MalformedCascade(f"Invalid JSON cascade: {e}") from e
        return _parse_json(data)

    if fmt == 'xml':
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise MalformedCascade(f"Invalid XML cascade: {e}") from e
        return _parse_xml(root)

    raise MalformedCascade(f"Unknown cascade format: {fmt}")


def _rects_json(feature):
    return [[r.x, r.y, r.w, r.h, r.weight] for r in feature.rects]


def _classifier_json(clf):
    if isinstance(clf, TreeClassifier):
        return {
            'nodes': [
                {
                    'rects': _rects_json(node.feature),
                    'threshold': node.threshold,
                    'left': node.left,
                    'right': node.right,
                }
                for node in clf.nodes
            ],
            'leaves': list(clf.leaves),
        }
    return {
        'rects': _rects_json(clf.feature),
        'threshold': clf.threshold,
        'left': clf.leaf_left,
        'right': clf.leaf_right,
    }


def dumps_cascade(model):
    """Serialize a model to the versioned JSON layout"""
    data = {
        'version': JSON_FORMAT_VERSION,
        'width': model.width,
        'height': model.height,
        'stages': [
            {
                'threshold': stage.threshold,
                'classifiers': [_classifier_json(clf) for clf in stage.classifiers],
            }
            for stage in model.stages
        ],
    }
    return json.dumps(data, indent=2)


# ---------------------------------------------------------------- helpers

def _finite(value, what):
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise MalformedCascade(f"{what}: not a number ({value!r})") from e
    if not math.isfinite(value):
        raise MalformedCascade(f"{what}: non-finite value {value}")
    return value


def _integer(value, what):
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedCascade(f"{what}: not an integer ({value!r})") from e


def _make_rect(values, what):
    if len(values) != 5:
        raise MalformedCascade(f"{what}: expected 'x y w h weight', got {values!r}")
    x, y, w, h = (_integer(v, what) for v in values[:4])
    return Rect(x, y, w, h, _finite(values[4], f"{what} weight"))


def _build_model(stages, width, height):
    # Stage / CascadeModel constructors raise MalformedCascade themselves
    return CascadeModel(stages=tuple(stages), width=width, height=height)


# ---------------------------------------------------------------- JSON

def _parse_json(data):
    if not isinstance(data, dict):
        raise MalformedCascade("JSON cascade must be an object")

    version = data.get('version')
    if version != JSON_FORMAT_VERSION:
        raise MalformedCascade(f"Unsupported JSON cascade version: {version!r}")

    width = _integer(data.get('width'), 'width')
    height = _integer(data.get('height'), 'height')

    stage_list = data.get('stages')
    if not isinstance(stage_list, list) or not stage_list:
        raise MalformedCascade("Cascade has no stages")

    stages = []
    for s, stage_data in enumerate(stage_list):
        try:
            threshold = _finite(stage_data['threshold'], f"stage {s} threshold")
            classifiers = []
            for c, clf in enumerate(stage_data['classifiers']):
                classifiers.append(_classifier_from_json(clf, f"stage {s} classifier {c}"))
        except (KeyError, TypeError) as e:
            raise MalformedCascade(f"Stage {s}: missing or invalid entry ({e})") from e
        stages.append(Stage(tuple(classifiers), threshold))

    return _build_model(stages, width, height)


def _classifier_from_json(clf, what):
    if 'nodes' in clf:
        nodes = []
        for n, node in enumerate(clf['nodes']):
            rects = tuple(_make_rect(r, f"{what} node {n} rect") for r in node['rects'])
            nodes.append(TreeNode(
                feature=RectFeature(rects),
                threshold=_finite(node['threshold'], f"{what} node {n} threshold"),
                left=_integer(node['left'], f"{what} node {n} left"),
                right=_integer(node['right'], f"{what} node {n} right"),
            ))
        leaves = tuple(_finite(v, f"{what} leaf") for v in clf['leaves'])
        return TreeClassifier(tuple(nodes), leaves)

    rects = tuple(_make_rect(r, f"{what} rect") for r in clf['rects'])
    return WeakClassifier(
        feature=RectFeature(rects),
        threshold=_finite(clf['threshold'], f"{what} threshold"),
        leaf_left=_finite(clf['left'], f"{what} left leaf"),
        leaf_right=_finite(clf['right'], f"{what} right leaf"),
    )


# ---------------------------------------------------------------- XML

def _child(node, tag, what):
    child = node.find(tag)
    if child is None:
        raise MalformedCascade(f"{what}: missing <{tag}>")
    return child


def _child_text(node, tag, what):
    text = _child(node, tag, what).text
    if text is None or not text.strip():
        raise MalformedCascade(f"{what}: empty <{tag}>")
    return text.strip()


def _parse_xml(root):
    # Current layout: <opencv_storage><cascade>...
    cascade = root if root.tag == 'cascade' else root.find('cascade')
    if cascade is not None:
        return _parse_opencv_cascade(cascade)

    # Legacy layout: <opencv_storage><name type_id="opencv-haar-classifier">...
    candidates = [root] + list(root)
    for node in candidates:
        if node.get('type_id') == 'opencv-haar-classifier' or node.find('size') is not None:
            return _parse_legacy_cascade(node)

    raise MalformedCascade("XML does not contain a Haar cascade")


def _parse_opencv_cascade(node):
    stage_type = node.findtext('stageType', default='BOOST').strip()
    if stage_type != 'BOOST':
        raise MalformedCascade(f"Unsupported stage type: {stage_type}")

    feature_type = node.findtext('featureType', default='HAAR').strip()
    if feature_type.upper() != 'HAAR':
        raise MalformedCascade(f"Unsupported feature type: {feature_type}")

    width = _integer(_child_text(node, 'width', 'cascade'), 'width')
    height = _integer(_child_text(node, 'height', 'cascade'), 'height')

    features = []
    for f, feature_node in enumerate(_child(node, 'features', 'cascade').findall('_')):
        features.append(_parse_feature_node(feature_node, f"feature {f}"))

    stage_nodes = _child(node, 'stages', 'cascade').findall('_')
    declared = node.findtext('stageNum')
    if declared is not None and _integer(declared.strip(), 'stageNum') != len(stage_nodes):
        raise MalformedCascade(
            f"stageNum says {declared.strip()} stages, found {len(stage_nodes)}")

    stages = []
    for s, stage_node in enumerate(stage_nodes):
        threshold = _finite(_child_text(stage_node, 'stageThreshold', f"stage {s}"),
                            f"stage {s} threshold")
        classifiers = []
        weak_nodes = _child(stage_node, 'weakClassifiers', f"stage {s}").findall('_')
        for c, weak in enumerate(weak_nodes):
            what = f"stage {s} classifier {c}"
            values = _child_text(weak, 'internalNodes', what).split()
            if len(values) % 4:
                raise MalformedCascade(
                    f"{what}: <internalNodes> must hold 'left right feature threshold' groups")

            nodes = []
            for n in range(0, len(values), 4):
                left, right = _integer(values[n], what), _integer(values[n + 1], what)
                feature_idx = _integer(values[n + 2], f"{what} feature index")
                if not 0 <= feature_idx < len(features):
                    raise MalformedCascade(f"{what}: feature index {feature_idx} out of range")
                nodes.append(TreeNode(features[feature_idx],
                                      _finite(values[n + 3], f"{what} threshold"), left, right))

            leaves = [_finite(v, f"{what} leaf")
                      for v in _child_text(weak, 'leafValues', what).split()]
            classifiers.append(_weak_classifier(nodes, leaves))
        stages.append(Stage(tuple(classifiers), threshold))

    return _build_model(stages, width, height)


def _weak_classifier(nodes, leaves):
    """Stump for a single (0, -1) node with two leaves, a tree otherwise"""
    if len(nodes) == 1 and len(leaves) == 2 and (nodes[0].left, nodes[0].right) == (0, -1):
        node = nodes[0]
        return WeakClassifier(node.feature, node.threshold, leaves[0], leaves[1])
    return TreeClassifier(tuple(nodes), tuple(leaves))


def _parse_feature_node(feature_node, what):
    tilted = feature_node.findtext('tilted')
    if tilted is not None and tilted.strip() not in ('', '0'):
        raise MalformedCascade(f"{what}: tilted features are not supported")

    rects = []
    for r, rect_node in enumerate(_child(feature_node, 'rects', what).findall('_')):
        text = (rect_node.text or '').split()
        rects.append(_make_rect(text, f"{what} rect {r}"))
    return RectFeature(tuple(rects))


def _parse_legacy_cascade(node):
    size = _child_text(node, 'size', 'cascade').split()
    if len(size) != 2:
        raise MalformedCascade(f"Invalid <size>: {' '.join(size)}")
    width, height = (_integer(v, 'size') for v in size)

    stages = []
    for s, stage_node in enumerate(_child(node, 'stages', 'cascade').findall('_')):
        threshold = _finite(_child_text(stage_node, 'stage_threshold', f"stage {s}"),
                            f"stage {s} threshold")
        classifiers = []
        for c, tree in enumerate(_child(stage_node, 'trees', f"stage {s}").findall('_')):
            what = f"stage {s} classifier {c}"
            nodes, leaves = [], []
            for n, tree_node in enumerate(tree.findall('_')):
                node_what = f"{what} node {n}"
                children = []
                for side in ('left', 'right'):
                    # a leaf value, or the index of the next node in this tree
                    if tree_node.find(f'{side}_val') is not None:
                        leaves.append(_finite(_child_text(tree_node, f'{side}_val', node_what),
                                              f"{node_what} {side} leaf"))
                        children.append(1 - len(leaves))
                    else:
                        children.append(_integer(
                            _child_text(tree_node, f'{side}_node', node_what), node_what))

                nodes.append(TreeNode(
                    _parse_feature_node(_child(tree_node, 'feature', node_what), node_what),
                    _finite(_child_text(tree_node, 'threshold', node_what),
                            f"{node_what} threshold"),
                    *children,
                ))
            classifiers.append(_weak_classifier(nodes, leaves))
        stages.append(Stage(tuple(classifiers), threshold))

    return _build_model(stages, width, height)
