# synthetic_cascades.py
"""
Small cascades built in memory for the test suite
"""

from cascade_detector import (CascadeModel, Rect, RectFeature, Stage, TreeClassifier, TreeNode,
                              WeakClassifier)


def halves_feature(base=24):
    """Right half minus left half; balanced (area-weighted weights sum to zero)"""
    half = base // 2
    return RectFeature((Rect(0, 0, base, base, -1.0), Rect(half, 0, base - half, base, 2.0)))


def thirds_feature(base=24):
    """Middle third against the whole window"""
    third = base // 3
    return RectFeature((Rect(0, 0, third, base, 1.0),
                        Rect(third, 0, third, base, -2.0),
                        Rect(2 * third, 0, base - 2 * third, base, 1.0)))


def make_stage(threshold, base=24, n=1, clf_threshold=0.0, leaf_left=1.0, leaf_right=1.0):
    clf = WeakClassifier(halves_feature(base), clf_threshold, leaf_left, leaf_right)
    return Stage(tuple([clf] * n), threshold)


def make_cascade(stage_thresholds, base=24):
    """Cascade whose stages always output 1.0 per classifier; thresholds decide pass/fail"""
    return CascadeModel(tuple(make_stage(t, base) for t in stage_thresholds), base, base)


def make_edge_cascade(base=24):
    """Cascade that actually looks at the image: responds to bright right halves"""
    stage0 = Stage((WeakClassifier(halves_feature(base), 0.0, -1.0, 1.0),), 0.0)
    stage1 = Stage((WeakClassifier(halves_feature(base), 0.2, -1.0, 1.0),
                    WeakClassifier(thirds_feature(base), 0.0, 0.5, -0.5)), 0.0)
    return CascadeModel((stage0, stage1), base, base)




def make_tree(base=24, root_threshold=0.5, inner_threshold=-0.1, leaves=(10.0, 20.0, 30.0)):
    """
    Two-node tree: a weak halves response ends at leaf 0, otherwise the
    thirds feature picks leaf 1 (below inner_threshold) or leaf 2
    """
    return TreeClassifier(
        (TreeNode(halves_feature(base), root_threshold, 0, 1),
         TreeNode(thirds_feature(base), inner_threshold, -1, -2)),
        leaves,
    )


def make_tree_cascade(base=24):
    """Edge cascade whose second stage is made of trees"""
    stage0 = Stage((WeakClassifier(halves_feature(base), 0.0, -1.0, 1.0),), 0.0)
    stage1 = Stage((make_tree(base, 0.2, 0.0, (-1.0, 1.0, 0.4)),
                    WeakClassifier(thirds_feature(base), 0.0, 0.5, -0.5)), 0.0)
    return CascadeModel((stage0, stage1), base, base)
