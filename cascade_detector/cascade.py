# cascade_detector/cascade.py
"""
Stage classification and the cascade state machine

A window walks the stages in order. The first failing stage rejects it and
no later stage is evaluated; passing the last stage accepts it.
"""
from enum import Enum
from typing import NamedTuple

import numpy as np

from .features import batch_feature_response, batch_window_norm, scale_stage


class CascadeState(Enum):
    EVALUATING = 'evaluating'
    REJECTED = 'rejected'
    ACCEPTED = 'accepted'


class CascadeResult(NamedTuple):
    state: CascadeState
    stage_index: int

    @property
    def accepted(self):
        return self.state is CascadeState.ACCEPTED


def evaluate_stage(stage, features, ctx):
    """
    Run every weak classifier of a stage and apply the stage threshold

    Args:
        stage: Stage
        features: FeatureEvaluator bound to the image
        ctx: WindowContext of the window

    Returns:
        True if the summed leaf outputs reach the stage threshold
    """
    def response(feature):
        return features.evaluate(feature, ctx)

    total = 0.0
    for clf in stage.classifiers:
        total += clf.predict(response)
    return total >= stage.threshold


def _classifier_outputs(integral, scaled, pack, i, xs, ys, norm):
    """Leaf values of classifier i of a stage for many windows"""
    first, last = int(pack.node_start[i]), int(pack.node_start[i + 1])
    leaves = pack.leaves[pack.leaf_start[i]:pack.leaf_start[i + 1]]

    if pack.is_stump(i):
        response = batch_feature_response(integral, scaled, first, xs, ys, norm)
        return np.where(response < pack.thresholds[first],
                        leaves[-pack.left[first]], leaves[-pack.right[first]])

    # children come after their parent: one pass in node order walks every tree
    node = np.zeros(xs.shape, dtype=np.int64)
    leaf = np.full(xs.shape, -1, dtype=np.int64)
    for j in range(last - first):
        at = np.flatnonzero((node == j) & (leaf < 0))
        if at.size == 0:
            continue
        m = first + j
        response = batch_feature_response(integral, scaled, m, xs[at], ys[at], norm[at])
        nxt = np.where(response < pack.thresholds[m], pack.left[m], pack.right[m])
        done = nxt <= 0
        leaf[at[done]] = -nxt[done]
        node[at[~done]] = nxt[~done]
    return leaves[leaf]


class CascadeEvaluator:
    """
    Runs a CascadeModel against windows

    Args:
        model: CascadeModel, shared read-only
        stage_classifier: callable(stage, features, ctx) -> bool
    """

    def __init__(self, model, stage_classifier=evaluate_stage):
        self.model = model
        self.stage_classifier = stage_classifier

    @property
    def n_stages(self):
        return len(self.model.stages)

    def evaluate(self, features, window):
        """
        Evaluate a single window

        Args:
            features: FeatureEvaluator bound to the image
            window: Window

        Returns:
            CascadeResult, either REJECTED at a stage index or ACCEPTED
        """
        stages = self.model.stages
        last = len(stages) - 1
        ctx = features.window_context(window)

        result = CascadeResult(CascadeState.EVALUATING, 0)
        while result.state is CascadeState.EVALUATING:
            k = result.stage_index
            if not self.stage_classifier(stages[k], features, ctx):
                result = CascadeResult(CascadeState.REJECTED, k)
            elif k == last:
                result = CascadeResult(CascadeState.ACCEPTED, k)
            else:
                result = CascadeResult(CascadeState.EVALUATING, k + 1)
        return result

    def evaluate_batch(self, integral, squared, xs, ys, width, height):
        """
        Evaluate many windows of one size at once

        Only windows that passed stage k take part in stage k + 1.
        The built-in stage rule is applied; stage_classifier is only used by
        evaluate().

        Args:
            integral, squared: IntegralImage pair of the image
            xs, ys: 1D integer arrays of window top-left corners
            width, height: window size in pixels

        Returns:
            int array with, per window, the index of the rejecting stage or
            n_stages for accepted windows
        """
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        n_stages = self.n_stages
        levels = np.full(xs.shape, n_stages, dtype=np.int64)
        if xs.size == 0:
            return levels

        norm = batch_window_norm(integral, squared, xs, ys, width, height,
                                 self.model.width, self.model.height)
        alive = np.arange(xs.size)

        for k, stage in enumerate(self.model.stages):
            pack = stage.pack
            scaled = scale_stage(pack, width, height, self.model.width)
            ax, ay, an = xs[alive], ys[alive], norm[alive]

            total = np.zeros(alive.shape, dtype=np.float64)
            for i in range(len(stage.classifiers)):
                total += _classifier_outputs(integral, scaled, pack, i, ax, ay, an)

            passed = total >= stage.threshold
            levels[alive[~passed]] = k
            alive = alive[passed]
            if alive.size == 0:
                break

        return levels
