# test_cascade_model.py
import dataclasses

import pytest

from cascade_detector import (CascadeModel, FeatureKind, MalformedCascade, Rect, RectFeature,
                              Stage, TreeClassifier, TreeNode, WeakClassifier,
                              default_cascade_path, dumps_cascade, load_cascade, loads_cascade)

OPENCV_XML = """<?xml version="1.0"?>
<opencv_storage>
<cascade type_id="opencv-cascade-classifier">
  <stageType>BOOST</stageType>
  <featureType>HAAR</featureType>
  <height>24</height>
  <width>24</width>
  <stageParams>
    <maxWeakCount>2</maxWeakCount></stageParams>
  <featureParams>
    <maxCatCount>0</maxCatCount></featureParams>
  <stageNum>{stage_num}</stageNum>
  <stages>{stages}</stages>
  <features>
    <_>
      <rects>
        <_>
          6 4 12 9 -1.</_>
        <_>
          6 7 12 3 3.</_></rects></_>
    <_>
      <rects>
        <_>
          0 0 24 24 -1.</_>
        <_>
          8 0 8 24 3.</_></rects>{extra_feature}</_></features></cascade>
</opencv_storage>
"""

OPENCV_STAGES = """
    <_>
      <maxWeakCount>1</maxWeakCount>
      <stageThreshold>-1.5</stageThreshold>
      <weakClassifiers>
        <_>
          <internalNodes>
            0 -1 0 -3.1511999666690826e-02</internalNodes>
          <leafValues>
            2.0875380039215088e+00 -2.2172100543975830e+00</leafValues></_></weakClassifiers></_>
    <_>
      <maxWeakCount>2</maxWeakCount>
      <stageThreshold>{threshold}</stageThreshold>
      <weakClassifiers>
        <_>
          <internalNodes>
            {nodes}</internalNodes>
          <leafValues>
            {leaves}</leafValues></_>
        <_>
          <internalNodes>
            0 -1 0 0.2</internalNodes>
          <leafValues>
            0.5 -0.5</leafValues></_></weakClassifiers></_>"""

LEGACY_TREE_XML = """<?xml version="1.0"?>
<opencv_storage>
<tree_cascade type_id="opencv-haar-classifier">
  <size>20 20</size>
  <stages>
    <_>
      <trees>
        <_>
          <_>
            <feature>
              <rects>
                <_>3 7 14 4 -1.</_>
                <_>3 9 14 2 2.</_></rects>
              <tilted>0</tilted></feature>
            <threshold>4.0e-03</threshold>
            <left_val>0.25</left_val>
            <right_node>1</right_node></_>
          <_>
            <feature>
              <rects>
                <_>1 2 18 4 -1.</_>
                <_>7 2 6 4 3.</_></rects>
              <tilted>0</tilted></feature>
            <threshold>0.015</threshold>
            <left_val>0.5</left_val>
            <right_val>0.75</right_val></_></_></trees>
      <stage_threshold>0.6</stage_threshold>
      <parent>-1</parent>
      <next>-1</next></_>
  </stages>
</tree_cascade>
</opencv_storage>
"""

LEGACY_XML = """<?xml version="1.0"?>
<opencv_storage>
<tiny_cascade type_id="opencv-haar-classifier">
  <size>20 20</size>
  <stages>
    <_>
      <!-- stage 0 -->
      <trees>
        <_>
          <!-- tree 0 -->
          <_>
            <!-- root node -->
            <feature>
              <rects>
                <_>3 7 14 4 -1.</_>
                <_>3 9 14 2 2.</_></rects>
              <tilted>0</tilted></feature>
            <threshold>4.0141958743333817e-03</threshold>
            <left_val>0.0337941907346249</left_val>
            <right_val>0.8378106951713562</right_val></_></_>
        <_>
          <_>
            <feature>
              <rects>
                <_>1 2 18 4 -1.</_>
                <_>7 2 6 4 3.</_></rects>
              <tilted>0</tilted></feature>
            <threshold>0.0151513395830989</threshold>
            <left_val>0.1514132022857666</left_val>
            <right_val>0.7488812208175659</right_val></_></_></trees>
      <stage_threshold>0.8226894140243530</stage_threshold>
      <parent>-1</parent>
      <next>-1</next></_>
  </stages>
</tiny_cascade>
</opencv_storage>
"""


def opencv_xml(threshold="0.5", nodes="0 -1 1 0.1", leaves="-1.0 1.0", extra_feature="",
               stages=None, stage_num=2):
    if stages is None:
        stages = OPENCV_STAGES.format(threshold=threshold, nodes=nodes, leaves=leaves)
    return OPENCV_XML.format(stages=stages, stage_num=stage_num, extra_feature=extra_feature)


def test_load_opencv_xml(tmp_path):
    path = tmp_path / "tiny.xml"
    path.write_text(opencv_xml())

    model = load_cascade(path)

    assert (model.width, model.height) == (24, 24)
    assert len(model.stages) == 2
    assert model.n_classifiers == 3
    assert model.stages[0].threshold == pytest.approx(-1.5)

    first = model.stages[0].classifiers[0]
    assert first.threshold == pytest.approx(-0.031512)
    assert first.leaf_left == pytest.approx(2.087538)
    assert first.leaf_right == pytest.approx(-2.21721)
    assert first.feature.kind is FeatureKind.TWO_RECT
    assert first.feature.rects[0] == Rect(6, 4, 12, 9, -1.0)
    assert first.feature.rects[1] == Rect(6, 7, 12, 3, 3.0)

    # feature index 1 is shared by reference, not copied
    assert model.stages[1].classifiers[0].feature.rects[1] == Rect(8, 0, 8, 24, 3.0)
    assert model.stages[1].classifiers[1].feature is first.feature


def test_load_legacy_xml(tmp_path):
    path = tmp_path / "legacy.xml"
    path.write_text(LEGACY_XML)

    model = load_cascade(str(path))

    assert (model.width, model.height) == (20, 20)
    assert len(model.stages) == 1
    stage = model.stages[0]
    assert stage.threshold == pytest.approx(0.8226894)
    assert len(stage.classifiers) == 2
    assert stage.classifiers[1].feature.rects[1] == Rect(7, 2, 6, 4, 3.0)
    assert stage.classifiers[0].leaf_right == pytest.approx(0.8378107)


def test_json_round_trip(tmp_path):
    model = loads_cascade(opencv_xml())
    path = tmp_path / "tiny.json"
    path.write_text(dumps_cascade(model))

    assert load_cascade(path) == model


def test_model_is_immutable():
    model = loads_cascade(opencv_xml())
    with pytest.raises(dataclasses.FrozenInstanceError):
        model.width = 12
    with pytest.raises(dataclasses.FrozenInstanceError):
        model.stages[0].threshold = 0.0
    with pytest.raises(ValueError):
        model.stages[0].pack.thresholds[0] = 1.0


def test_zero_stages_is_malformed():
    with pytest.raises(MalformedCascade):
        loads_cascade(opencv_xml(stages="", stage_num=0))
    with pytest.raises(MalformedCascade):
        loads_cascade('{"version": 1, "width": 24, "height": 24, "stages": []}')
    with pytest.raises(MalformedCascade):
        CascadeModel((), 24, 24)


def test_rect_outside_base_window_is_malformed():
    outside = """
    <_>
      <rects>
        <_>
          20 0 8 24 -1.</_>
        <_>
          0 0 4 24 2.</_></rects></_>"""
    xml = opencv_xml(extra_feature="").replace("</features>", outside + "</features>")
    xml = xml.replace("0 -1 1 0.1", "0 -1 2 0.1")
    with pytest.raises(MalformedCascade, match="outside"):
        loads_cascade(xml)


@pytest.mark.parametrize("threshold", ["nan", "inf", "-inf", "abc"])
def test_non_finite_threshold_is_malformed(threshold):
    with pytest.raises(MalformedCascade):
        loads_cascade(opencv_xml(threshold=threshold))


def test_load_tree_classifier():
    model = loads_cascade(opencv_xml(nodes="0 1 0 0.5 -1 -2 1 0.2", leaves="0.1 0.2 0.3"))

    tree = model.stages[1].classifiers[0]
    assert isinstance(tree, TreeClassifier)
    assert tree.leaves == (0.1, 0.2, 0.3)
    assert tree.nodes[0] == TreeNode(model.stages[0].classifiers[0].feature, 0.5, 0, 1)
    assert tree.nodes[1].feature.rects[1] == Rect(8, 0, 8, 24, 3.0)
    assert (tree.nodes[1].left, tree.nodes[1].right) == (-1, -2)
    # plain stumps stay stumps
    assert isinstance(model.stages[1].classifiers[1], WeakClassifier)

    # a response of 0.7 passes the root, fails node 1 -> leaf 1
    assert tree.predict(lambda feature: 0.7 if feature is tree.nodes[0].feature else 0.0) == 0.2
    assert tree.predict(lambda feature: 0.0) == 0.1

    pack = model.stages[1].pack
    assert pack.node_start.tolist() == [0, 2, 3]
    assert pack.leaf_start.tolist() == [0, 3, 5]


def test_load_legacy_tree():
    model = loads_cascade(LEGACY_TREE_XML)

    tree = model.stages[0].classifiers[0]
    assert isinstance(tree, TreeClassifier)
    assert [(n.left, n.right) for n in tree.nodes] == [(0, 1), (-1, -2)]
    assert tree.leaves == (0.25, 0.5, 0.75)


@pytest.mark.parametrize("nodes, leaves, match", [
    ("1 -1 1 0.1", "-1.0 1.0", "child"),
    ("0 1 0 0.5 1 -1 1 0.2", "-1.0 1.0", "child"),
    ("0 1 0 0.5 -1 -2 1 0.2", "-1.0 1.0", "leaf"),
    ("0 -1 1", "-1.0 1.0", "internalNodes"),
])
def test_malformed_trees(nodes, leaves, match):
    with pytest.raises(MalformedCascade, match=match):
        loads_cascade(opencv_xml(nodes=nodes, leaves=leaves))


def test_tree_json_round_trip():
    model = loads_cascade(opencv_xml(nodes="0 1 0 0.5 -1 -2 1 0.2", leaves="0.1 0.2 0.3"))
    assert loads_cascade(dumps_cascade(model)) == model


def test_tilted_feature_is_rejected():
    with pytest.raises(MalformedCascade, match="tilted"):
        loads_cascade(opencv_xml(extra_feature="<tilted>1</tilted>"))


def test_stage_count_mismatch_is_malformed():
    with pytest.raises(MalformedCascade, match="stageNum"):
        loads_cascade(opencv_xml(stage_num=3))


def test_bad_feature_index_is_malformed():
    with pytest.raises(MalformedCascade, match="out of range"):
        loads_cascade(opencv_xml(nodes="0 -1 7 0.1"))


@pytest.mark.parametrize("text", [
    "",
    "not a cascade",
    "<opencv_storage><cascade>",
    "<opencv_storage><other/></opencv_storage>",
    '{"version": 2, "width": 24, "height": 24, "stages": []}',
    '{"version": 1, "width": 24, "height": 24, "stages": [{"threshold": 0}]}',
    '{"version": 1, "width": 24, "height": 24, "stages": [{"threshold": 0, "classifiers": []}]}',
])
def test_unparseable_definitions_are_malformed(text):
    with pytest.raises(MalformedCascade):
        loads_cascade(text)


def test_json_feature_with_four_rects_is_malformed():
    text = ('{"version": 1, "width": 4, "height": 4, "stages": [{"threshold": 0, "classifiers": ['
            '{"rects": [[0,0,1,1,1],[1,0,1,1,1],[2,0,1,1,1],[3,0,1,1,-3]],'
            '"threshold": 0, "left": 1, "right": 1}]}]}')
    with pytest.raises(MalformedCascade, match="2 or 3"):
        loads_cascade(text)


def test_missing_file_is_malformed(tmp_path):
    with pytest.raises(MalformedCascade, match="not found"):
        load_cascade(tmp_path / "nope.xml")


def test_in_memory_model_accepts_unbounded_stage_threshold():
    feature = RectFeature((Rect(0, 0, 4, 4, -1.0), Rect(2, 0, 2, 4, 2.0)))
    stage = Stage((WeakClassifier(feature, 0.0, 1.0, 1.0),), float('-inf'))
    model = CascadeModel((stage,), 4, 4)
    assert model.stages[0].threshold == float('-inf')


def test_opencv_frontal_face_cascade_loads():
    path = default_cascade_path()
    assert path.is_file()

    model = load_cascade(path)

    assert (model.width, model.height) == (24, 24)
    assert len(model.stages) == 25
    # early stages are the cheap ones
    assert len(model.stages[0].classifiers) < len(model.stages[-1].classifiers)


def test_opencv_alt2_tree_cascade_loads():
    model = load_cascade(default_cascade_path('haarcascade_frontalface_alt2.xml'))

    assert (model.width, model.height) == (20, 20)
    assert len(model.stages) == 20
    first = model.stages[0].classifiers[0]
    assert isinstance(first, TreeClassifier)
    assert len(first.nodes) == 2
    assert len(first.leaves) == 3
