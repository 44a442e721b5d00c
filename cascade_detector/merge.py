# cascade_detector/merge.py
"""
Detection Merging
Groups overlapping raw hits into final detections.

Two boxes are similar when, on each axis, their centres are at most
center_tolerance x (mean side) apart and the larger side is at most
size_ratio x the smaller one. Clusters are the connected components of
that similarity graph; a cluster's box is the hit-weighted mean of its
members. Clustering is repeated on the cluster boxes until no two are
similar, so merging a merge result changes nothing.
"""
from typing import NamedTuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from .errors import InvalidInput

DEFAULT_CENTER_TOLERANCE = 0.5
DEFAULT_SIZE_RATIO = 1.5
DEFAULT_IOU_THRESHOLD = 0.3


class Detection(NamedTuple):
    x: int
    y: int
    w: int
    h: int
    hit_count: int


def calculate_iou(boxA, boxB):
    """Calculate IoU between two (x, y, w, h) boxes"""
    # determine the (x, y)-coordinates of the intersection rectangle
    xA = max(boxA[0], boxB[0])
    yA = max(boxA[1], boxB[1])
    xB = min(boxA[0] + boxA[2], boxB[0] + boxB[2])
    yB = min(boxA[1] + boxA[3], boxB[1] + boxB[3])

    interArea = max(0, xB - xA) * max(0, yB - yA)

    boxAArea = boxA[2] * boxA[3]
    boxBArea = boxB[2] * boxB[3]

    return interArea / float(boxAArea + boxBArea - interArea + 1e-6)


def non_max_suppression(boxes, scores, iou_threshold=DEFAULT_IOU_THRESHOLD):
    """
    Apply Non-Maximum Suppression to filter overlapping boxes

    Returns:
        Indices of kept boxes, highest score first
    """
    if len(boxes) == 0:
        return []

    # Sort indices by score (descending); stable so ties keep input order
    idxs = np.argsort(-np.asarray(scores, dtype=np.float64), kind='stable')

    pick = []
    while len(idxs) > 0:
        i = idxs[0]
        pick.append(int(i))

        ious = np.array([calculate_iou(boxes[i], boxes[j]) for j in idxs[1:]])

        # Keep only boxes with IoU up to the threshold
        suppressed = np.flatnonzero(ious > iou_threshold) + 1
        idxs = np.delete(idxs, np.concatenate(([0], suppressed)))

    return pick


def _weighted_boxes(hits):
    """(N, 4) int boxes and (N,) weights from RawHit / Detection / tuples"""
    boxes, weights = [], []
    for hit in hits:
        if isinstance(hit, Detection):
            boxes.append((hit.x, hit.y, hit.w, hit.h))
            weights.append(hit.hit_count)
        elif len(hit) == 3:
            x, y, size = hit
            boxes.append((x, y, size, size))
            weights.append(1)
        elif len(hit) == 4:
            boxes.append(tuple(hit))
            weights.append(1)
        else:
            raise InvalidInput(f"Cannot interpret hit {hit!r}")
    return (np.array(boxes, dtype=np.int64).reshape(-1, 4),
            np.array(weights, dtype=np.int64))


def similarity_matrix(boxes, center_tolerance=DEFAULT_CENTER_TOLERANCE,
                      size_ratio=DEFAULT_SIZE_RATIO):
    """Boolean (N, N) matrix of pairwise box similarity"""
    boxes = boxes.astype(np.float64)
    cx = boxes[:, 0] + boxes[:, 2] / 2.0
    cy = boxes[:, 1] + boxes[:, 3] / 2.0
    side = (boxes[:, 2] + boxes[:, 3]) / 2.0

    mean_side = (side[:, None] + side[None, :]) / 2.0
    reach = center_tolerance * mean_side
    close = ((np.abs(cx[:, None] - cx[None, :]) <= reach)
             & (np.abs(cy[:, None] - cy[None, :]) <= reach))

    ratio = np.maximum(side[:, None], side[None, :]) / np.minimum(side[:, None], side[None, :])
    return close & (ratio <= size_ratio)


def _cluster_once(boxes, weights, center_tolerance, size_ratio):
    n_clusters, labels = connected_components(
        csr_matrix(similarity_matrix(boxes, center_tolerance, size_ratio)), directed=False)

    merged = np.zeros((n_clusters, 4), dtype=np.int64)
    counts = np.zeros(n_clusters, dtype=np.int64)
    for c in range(n_clusters):
        members = labels == c
        w = weights[members]
        mean = (boxes[members] * w[:, None]).sum(axis=0) / w.sum()
        merged[c] = np.floor(mean + 0.5).astype(np.int64)
        counts[c] = w.sum()
    return merged, counts


def group_hits(boxes, weights, center_tolerance=DEFAULT_CENTER_TOLERANCE,
               size_ratio=DEFAULT_SIZE_RATIO):
    """Cluster boxes until no two cluster boxes are similar"""
    while len(boxes) > 1:
        merged, counts = _cluster_once(boxes, weights, center_tolerance, size_ratio)
        if len(merged) == len(boxes):
            break
        boxes, weights = merged, counts
    return boxes, weights


def merge_detections(hits, min_neighbors=3, center_tolerance=DEFAULT_CENTER_TOLERANCE,
                     size_ratio=DEFAULT_SIZE_RATIO, iou_threshold=DEFAULT_IOU_THRESHOLD):
    """
    Merge raw hits into detections

    Args:
        hits: iterable of RawHit, Detection (weighted by hit_count) or
            (x, y, size) / (x, y, w, h) tuples
        min_neighbors: clusters with fewer hits are dropped
        center_tolerance, size_ratio: similarity rule
        iou_threshold: of two kept boxes overlapping more than this, the
            one with fewer hits is removed

    Returns:
        List of Detection, most hits first
    """
    boxes, weights = _weighted_boxes(hits)
    if len(boxes) == 0:
        return []

    boxes, counts = group_hits(boxes, weights, center_tolerance, size_ratio)

    keep = counts >= min_neighbors
    boxes, counts = boxes[keep], counts[keep]
    if len(boxes) == 0:
        return []

    # deterministic order: hit count, then top-to-bottom, left-to-right
    order = np.lexsort((boxes[:, 2], boxes[:, 0], boxes[:, 1], -counts))
    boxes, counts = boxes[order], counts[order]

    pick = non_max_suppression(boxes, counts, iou_threshold)
    return [Detection(int(boxes[i, 0]), int(boxes[i, 1]), int(boxes[i, 2]), int(boxes[i, 3]),
                      int(counts[i]))
            for i in pick]
