"""
Test module for experiment list resolution.

Uses a small two-experiment document: a rotation sweep with a crystal and
a still shot without one.
"""

import copy
import json
import math
import warnings

import numpy as np
import pytest

from dialsreader.config import ReaderConfig
from dialsreader.errors import FormatError, MissingDataError
from dialsreader.experiment_list import ExperimentList, is_dials_expt, is_expt_json
from dialsreader.image_codec import compress_image_data
from dialsreader.reflection_table import Reflection


def create_panel(name, x_offset):
    return {
        "name": name,
        "fast_axis": [1.0, 0.0, 0.0],
        "slow_axis": [0.0, 1.0, 0.0],
        "origin": [x_offset, 0.0, -200.0],
        "pixel_size": [0.1, 0.1],
        "image_size": [100, 50],
    }


def create_test_document():
    """Sweep (experiment 0) plus still shot (experiment 1)"""
    return {
        "__id__": "ExperimentList",
        "experiment": [
            {"__id__": "Experiment", "identifier": "sweep", "beam": 0, "detector": 0,
             "goniometer": 0, "scan": 0, "crystal": 0, "imageset": 0},
            {"__id__": "Experiment", "identifier": "still", "beam": 1, "detector": 0,
             "imageset": 1},
        ],
        "imageset": [
            {"__id__": "ImageSequence", "template": "/data/run1/image_#####.cbf"},
            {"__id__": "ImageSet", "images": ["/data/run2/shot_0001.h5"]},
        ],
        "beam": [
            {"direction": [0.0, 0.0, 1.0], "wavelength": 0.9793},
            {"direction": [0.0, 0.0, 1.0]},
        ],
        "detector": [
            {"panels": [create_panel("P0", 0.0), create_panel("P1", 12.0)],
             "hierarchy": {"fast_axis": [1.0, 0.0, 0.0], "slow_axis": [0.0, 1.0, 0.0],
                           "origin": [0.0, 0.0, 0.0]}},
        ],
        "goniometer": [
            {"rotation_axis": [1.0, 0.0, 0.0],
             "fixed_rotation": [1, 0, 0, 0, 1, 0, 0, 0, 1],
             "setting_rotation": [1, 0, 0, 0, 1, 0, 0, 0, 1]},
        ],
        "scan": [
            {"image_range": [1, 100], "properties": {"oscillation": [0.0, 0.1]}},
        ],
        "crystal": [
            {"__id__": "crystal",
             "real_space_a": [10.0, 0.0, 0.0],
             "real_space_b": [0.0, 10.0, 0.0],
             "real_space_c": [0.0, 0.0, 10.0],
             "space_group_hall_symbol": " P 1"},
        ],
    }


def test_resolution():
    """Every reference is followed into its shared array"""
    print("Testing experiment resolution...")

    experiments = ExperimentList.from_dict(create_test_document(), "indexed.expt")

    assert len(experiments) == 2
    assert experiments.experiment_ids == [0, 1]
    assert not experiments.failures

    sweep = experiments[0]
    assert sweep.image_filename == "/data/run1/image_#####.cbf"
    assert sweep.crystal_index == 0
    assert sweep.has_crystal()
    assert sweep.crystal_summary.startswith("a: 10.000")
    assert sweep.num_panels == 2
    np.testing.assert_array_equal(sweep.goniometer.rotation_axis, [1, 0, 0])
    assert sweep.scan.image_range_start == 0
    assert sweep.scan.num_images == 100

    still = experiments[1]
    assert still.image_filename == "/data/run2/shot_0001.h5"
    assert still.crystal is None
    assert still.crystal_summary is None
    assert still.goniometer is None
    assert still.scan is None
    assert still.beam.wavelength is None

    # Both experiments share the detector entry but own their geometry
    assert sweep.detector is not still.detector
    np.testing.assert_array_equal(sweep.panels[1].origin, still.panels[1].origin)

    with pytest.raises(KeyError):
        experiments[5]

    print("✓ Experiment resolution")


def test_document_detection():
    """ExperimentList sentinel and .expt file detection"""
    print("Testing document detection...")

    document = create_test_document()
    assert is_expt_json(document)
    assert not is_expt_json({"__id__": "ReflectionTable"})
    assert not is_expt_json([1, 2])

    text = json.dumps(document)
    assert is_dials_expt("indexed.expt", text)
    assert not is_dials_expt("indexed.refl", text)
    assert not is_dials_expt("indexed.expt", "[]")
    assert not is_dials_expt("expt", text)

    print("✓ Document detection")


def test_invalid_documents():
    """Structural problems fail the whole list"""
    print("Testing invalid documents...")

    with pytest.raises(FormatError):
        ExperimentList.from_json("{not json")
    with pytest.raises(FormatError):
        ExperimentList(dict(create_test_document(), __id__="ReflectionTable"))
    with pytest.raises(FormatError):
        ExperimentList([])

    document = create_test_document()
    del document["imageset"]
    with pytest.raises(MissingDataError):
        ExperimentList(document)

    document = create_test_document()
    document["crystal"] = {"real_space_a": [1, 0, 0]}
    with pytest.raises(FormatError):
        ExperimentList(document)

    document = create_test_document()
    del document["__id__"]
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        experiments = ExperimentList(document)
    assert len(experiments) == 2
    assert any("__id__" in str(w.message) for w in caught)

    print("✓ Invalid documents")


def test_empty_goniometer_list():
    """An empty shared array means the experiment does not model it"""
    print("Testing empty goniometer list...")

    document = create_test_document()
    document["goniometer"] = []
    document["scan"] = []
    experiments = ExperimentList(document)

    assert experiments[0].goniometer is None
    assert experiments[0].scan is None

    reflections = [Reflection(index=0, experiment_id=0, xyz_obs=(1.0, 2.0, 30.0),
                              xyz_cal=(1.0, 2.0, 31.0))]
    updated = experiments.add_angles_to_reflections(reflections)
    assert updated[0].angle_obs == 0.0
    assert updated[0].angle_cal == 0.0

    print("✓ Empty goniometer list")


def test_scan_angles():
    """Frame numbers convert to rotation angles in radians"""
    print("Testing scan angles...")

    experiments = ExperimentList(create_test_document())
    scan = experiments[0].scan

    assert math.isclose(ExperimentList.angle_from_frame(scan, 10.0), math.radians(1.0))
    assert ExperimentList.angle_from_frame(None, 10.0) is None
    np.testing.assert_allclose(scan.angle_from_frame(np.array([0.0, 5.0])),
                               [0.0, math.radians(0.5)])

    reflections = [
        Reflection(index=0, experiment_id=0, xyz_obs=(5.0, 5.0, 20.0)),
        Reflection(index=1, experiment_id=1, xyz_obs=(5.0, 5.0, 20.0)),
        Reflection(index=2, experiment_id=0),
    ]
    updated = experiments.add_angles_to_reflections(reflections)

    assert math.isclose(updated[0].angle_obs, math.radians(2.0))
    assert updated[0].angle_cal is None
    assert updated[1].angle_obs == 0.0
    assert updated[2].angle_obs is None
    assert reflections[0].angle_obs is None

    print("✓ Scan angles")


def test_bad_reference_is_isolated():
    """Out-of-range indices fail only their own experiment"""
    print("Testing bad reference isolation...")

    document = create_test_document()
    document["experiment"][1]["detector"] = 3

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        experiments = ExperimentList(document)

    assert experiments.experiment_ids == [0]
    assert 1 in experiments.failures
    error = experiments.failures[1]
    assert isinstance(error, MissingDataError)
    assert error.context == "experiment 1"
    assert "detector" in str(error)
    assert any("Skipping experiment 1" in str(w.message) for w in caught)

    with pytest.raises(KeyError, match="failed to resolve"):
        experiments[1]

    with pytest.raises(MissingDataError):
        ExperimentList(document, config=ReaderConfig(strict=True))

    print("✓ Bad reference isolation")


def test_malformed_shared_entries_are_isolated():
    """Shared-array entries that are not objects fail only their experiment"""
    print("Testing malformed shared entries...")

    document = create_test_document()
    document["imageset"].append("x")
    document["experiment"][1]["imageset"] = 2
    document["scan"].append(["bad"])
    document["experiment"].append({"beam": 0, "detector": 0, "imageset": 0, "scan": 1})

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        experiments = ExperimentList(document)

    assert experiments.experiment_ids == [0]
    assert isinstance(experiments.failures[1], FormatError)
    assert "imageset" in str(experiments.failures[1])
    assert experiments.failures[2].context == "experiment 2"
    assert "scan" in str(experiments.failures[2])

    document = create_test_document()
    document["crystal"] = ["not a crystal"]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        experiments = ExperimentList(document)
        assert experiments.all_crystals() == [None]
    assert 0 in experiments.failures
    assert experiments[1].crystal is None

    print("✓ Malformed shared entries")


def test_resolved_records_are_read_only():
    """Arrays held by resolved experiments cannot be modified in place"""
    print("Testing read-only records...")

    experiments = ExperimentList(create_test_document())
    expt = experiments[0]
    panel = expt.panels[0]

    for array in (expt.crystal.U, expt.crystal.B, expt.crystal.UB, expt.crystal.reciprocal_cell,
                  expt.goniometer.fixed_rotation, expt.goniometer.rotation_axis,
                  expt.beam.direction, panel.centroid, panel.lab_matrix, panel.origin):
        with pytest.raises(ValueError):
            array[0] = 99.0

    np.testing.assert_allclose(experiments.crystal_u(0), np.identity(3), atol=1e-12)

    # Accessors hand out writable copies
    centroid = experiments.panel_centroid_by_name(0, "P0")
    centroid[0] = -1.0
    assert experiments.panel_centroid_by_name(0, "P0")[0] == 5.0
    size = experiments.panel_image_size(0, 0)
    size[0] = 1.0
    assert experiments.panel_image_size(0, 0)[0] == 100.0

    with pytest.raises(TypeError):
        expt.detector.name_index["P9"] = 0

    print("✓ Read-only records")


def test_document_not_reread():
    """Later changes to the source document do not leak into resolved results"""
    print("Testing document independence...")

    document = create_test_document()
    experiments = ExperimentList(document)

    document["experiment"][0]["crystal"] = 7
    document["crystal"][0]["real_space_a"] = [20.0, 0.0, 0.0]
    document["beam"][0]["direction"][2] = -1.0

    assert experiments.crystal_ids_map() == {"-1": "-1", "0": "0", "1": "-1"}
    assert experiments.all_crystals()[0].lattice.a == 10.0
    assert experiments[0].crystal_summary.startswith("a: 10.000")
    np.testing.assert_array_equal(experiments.beam_direction(0), [0, 0, 1])

    ids = experiments.crystal_ids_map()
    ids["0"] = "5"
    assert experiments.crystal_ids_map()["0"] == "0"

    print("✓ Document independence")


def test_degenerate_crystal():
    """A singular cell fails its experiment and is None in all_crystals"""
    print("Testing degenerate crystal...")

    document = create_test_document()
    document["crystal"].append({
        "real_space_a": [1.0, 0.0, 0.0],
        "real_space_b": [2.0, 0.0, 0.0],
        "real_space_c": [0.0, 0.0, 1.0],
    })
    document["experiment"][1]["crystal"] = 1

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        experiments = ExperimentList(document)
        crystals = experiments.all_crystals()

    assert 1 in experiments.failures
    assert crystals[0] is not None
    assert crystals[1] is None
    assert len(experiments.all_crystal_rlvs()) == 1
    np.testing.assert_allclose(experiments.all_crystal_rcvs()[0], np.diag([0.1] * 3), atol=1e-12)

    print("✓ Degenerate crystal")


def test_idempotent_resolution():
    """Resolving the same document twice gives identical results"""
    print("Testing idempotent resolution...")

    document = create_test_document()
    snapshot = copy.deepcopy(document)
    first = ExperimentList(document)
    second = ExperimentList(document)

    assert document == snapshot
    assert first.experiment_labels() == second.experiment_labels()
    assert first.crystal_ids_map() == second.crystal_ids_map()
    np.testing.assert_array_equal(first.crystal_u(0), second.crystal_u(0))
    for p1, p2 in zip(first[0].panels, second[0].panels):
        np.testing.assert_array_equal(p1.lab_matrix, p2.lab_matrix)
        np.testing.assert_array_equal(p1.centroid, p2.centroid)

    print("✓ Idempotent resolution")


def test_labels_and_crystal_ids():
    """Labels use the configured separator; crystal ids are strings"""
    print("Testing labels and crystal ids...")

    experiments = ExperimentList(create_test_document())
    assert experiments.image_filenames == ["/data/run1/image_#####.cbf", "/data/run2/shot_0001.h5"]
    assert experiments.experiment_labels() == ["image_#####.cbf", "shot_0001.h5"]

    document = create_test_document()
    document["imageset"][0]["template"] = "C:\\data\\run1\\image_#####.cbf"
    windows = ExperimentList(document, config=ReaderConfig(path_separator="\\"))
    assert windows.experiment_labels()[0] == "image_#####.cbf"
    assert windows.experiment_labels(separator="/")[0] == "C:\\data\\run1\\image_#####.cbf"

    assert experiments.crystal_ids_map() == {"-1": "-1", "0": "0", "1": "-1"}

    print("✓ Labels and crystal ids")


def test_accessors():
    """Per-experiment accessors return copies or None"""
    print("Testing accessors...")

    experiments = ExperimentList(create_test_document())

    assert experiments.has_crystal(0)
    assert not experiments.has_crystal(1)
    assert not experiments.has_crystal(9)
    assert experiments.crystal(1) is None
    assert experiments.crystal_u(1) is None
    np.testing.assert_allclose(experiments.crystal_rlv(0), np.diag([0.1] * 3), atol=1e-12)

    u = experiments.crystal_u(0)
    u[0, 0] = 99.0
    assert experiments.crystal_u(0)[0, 0] != 99.0

    np.testing.assert_array_equal(experiments.beam_direction(0), [0, 0, 1])
    assert experiments.beam_summary(0) == "direction: (0.000,0.000,1.000),  wavelength: 0.979"
    assert experiments.beam_summary(1) == "direction: (0.000,0.000,1.000), "

    assert experiments.num_panels(0) == 2
    assert experiments.panel_name(0, 1) == "P1"
    assert experiments.panel_index_by_name(0, "P1") == 1
    assert experiments.panel_index_by_name(0, "P7") is None
    np.testing.assert_allclose(experiments.panel_centroid_by_name(0, "P0"), [5.0, 2.5, -200.0])
    assert experiments.panel_centroid_by_name(0, "P7") is None
    np.testing.assert_allclose(experiments.panel_corners(0, 0)[2], [10.0, 5.0, -200.0])
    np.testing.assert_allclose(experiments.panel_normal(0, 0), [0, 0, 1])
    np.testing.assert_array_equal(experiments.panel_image_size(0, 0), [100, 50])

    print("✓ Accessors")


def test_panel_images():
    """Decoded images are stored per experiment and panel and can be cleared"""
    print("Testing panel images...")

    experiments = ExperimentList(create_test_document(), config=ReaderConfig(max_workers=2))
    grid = np.arange(6, dtype=np.float64).reshape(2, 3)

    image = experiments.add_image_data(0, 1, compress_image_data(grid), [2, 3])
    np.testing.assert_array_equal(image, grid)
    np.testing.assert_array_equal(experiments.image(0, 1), grid)
    assert experiments.image(0, 0) is None

    with pytest.raises(IndexError):
        experiments.add_image_data(0, 2, compress_image_data(grid), [2, 3])
    with pytest.raises(KeyError):
        experiments.add_image_data(4, 0, compress_image_data(grid), [2, 3])

    counts = np.ones((2, 2), dtype=np.int32)
    decoded = experiments.add_experiment_image_data(
        1, [compress_image_data(counts, "int")] * 2, [(2, 2), (2, 2)], kind="int")
    assert len(decoded) == 2
    assert decoded[0].dtype == np.int32
    assert len(experiments.images) == 3

    with pytest.raises(FormatError, match="experiment 1"):
        experiments.add_experiment_image_data(1, [compress_image_data(counts, "int")] * 3,
                                              [(2, 2)] * 3, kind="int")
    assert len(experiments.images) == 3

    experiments.clear_images(1)
    assert experiments.image(1, 0) is None
    assert experiments.image(0, 1) is not None

    experiments.clear_images()
    assert len(experiments.images) == 0
    # Geometry survives clearing images
    assert experiments.num_panels(0) == 2

    print("✓ Panel images")


def test_reader_config():
    """Invalid options are rejected when the config is built"""
    print("Testing reader config...")

    with pytest.raises(ValueError):
        ReaderConfig(image_kind="complex")
    with pytest.raises(ValueError):
        ReaderConfig(path_separator="")

    config = ReaderConfig(image_kind="int")
    experiments = ExperimentList(create_test_document(), config=config)
    counts = np.arange(4, dtype=np.int32).reshape(2, 2)
    image = experiments.add_image_data(0, 0, compress_image_data(counts, "int"), (2, 2))
    assert image.dtype == np.int32

    print("✓ Reader config")


def test_load_from_file(tmp_path):
    """Experiment lists can be read from a .expt file"""
    print("Testing file loading...")

    path = tmp_path / "indexed.expt"
    path.write_text(json.dumps(create_test_document()), encoding='utf-8')

    experiments = ExperimentList.load(str(path))
    assert experiments.filename == "indexed.expt"
    assert len(experiments) == 2

    print("✓ File loading")


def run_all_tests():
    """Run all experiment list tests"""
    import tempfile
    from pathlib import Path

    print("Running experiment list tests...\n")

    try:
        test_resolution()
        test_document_detection()
        test_invalid_documents()
        test_empty_goniometer_list()
        test_scan_angles()
        test_bad_reference_is_isolated()
        test_malformed_shared_entries_are_isolated()
        test_resolved_records_are_read_only()
        test_document_not_reread()
        test_degenerate_crystal()
        test_idempotent_resolution()
        test_labels_and_crystal_ids()
        test_accessors()
        test_panel_images()
        test_reader_config()
        with tempfile.TemporaryDirectory() as tmp:
            test_load_from_file(Path(tmp))

        print("\n✅ All experiment list tests passed!")
        return True

    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        return False


if __name__ == "__main__":
    import sys
    success = run_all_tests()
    sys.exit(0 if success else 1)
