"""Tests for the command line driver."""

from dataclasses import replace

import pytest

from camloc.config.config import MatchingAlgorithm
from camloc.datatypes import Features
from camloc.errors import ConfigurationError
from camloc.main import Args, build_config, main, run_sequence
from camloc.modules.localizer import create_localizer
from camloc.modules.map_io import ResultLog, bundle_path, load_results, save_map, save_results
from camloc.state.statistics import LocalizationStats


class RingDescriber:
    """Stands in for image description: returns the ring features of each frame."""

    def __init__(self, features: dict[int, Features]) -> None:
        self.features = features
        self.frame = iter(sorted(features))

    def describe(self, img) -> Features:
        return self.features[next(self.frame)]


class TestBuildConfig:
    """Preset plus command line overrides."""

    def test_overrides_apply_on_top_of_the_preset(self):
        cfg = build_config(Args(preset="fast", algorithm=MatchingAlgorithm.ALL_RESULTS))
        assert cfg.describer == "orb"
        assert cfg.algorithm == MatchingAlgorithm.ALL_RESULTS

    def test_unset_overrides_keep_the_preset(self):
        cfg = build_config(Args(preset="accurate"))
        assert cfg.refine_intrinsics

    def test_invalid_combination(self):
        with pytest.raises(ConfigurationError):
            build_config(Args(resection_estimator="loransac", resection_error_max=0.0))


class TestRunSequence:
    """Frame loop of the driver."""

    def test_every_frame_gets_a_result(self, tmp_path, cfg, ring_map_model, query_factory):
        queries = [query_factory(c) for c in (1, 3, 5)]
        frame, features = queries[1]
        # second frame without enough features
        queries[1] = (frame, features.subset([0, 1, 2]))
        describer = RingDescriber({f.frame_id: feats for f, feats in queries})

        localizer = create_localizer(replace(cfg, nb_frame_buffer_matching=0))
        localizer.initialize(ring_map_model)
        stats = LocalizationStats()
        log = ResultLog(tmp_path / "results.jsonl")
        results = run_sequence(localizer, describer, [f for f, _ in queries], stats, log)

        assert [r.valid for r in results] == [True, False, True]
        assert stats.count == 3
        assert len(stats.localized) == 2
        assert [r.frame_id for r in log.load()] == [1, 3, 5]


class TestMain:
    """Exit codes and outputs of a run."""

    def test_bad_configuration_exits_with_an_error(self, tmp_path):
        args = Args(
            map=tmp_path / "scene.json",
            matching_estimator="loransac",
            matching_error_max=0.0,
            output_dir=tmp_path / "out",
        )
        assert main(args) == 1

    def test_missing_map(self, tmp_path):
        args = Args(map=tmp_path / "missing.json", output_dir=tmp_path / "out")
        assert main(args) == 1

    def test_refine_only(self, tmp_path, cfg, ring_map_model, query_factory):
        localizer = create_localizer(cfg)
        localizer.initialize(ring_map_model)
        results = [localizer.localize(*query_factory(c)) for c in (1, 3, 5)]
        log_path = tmp_path / "results.jsonl"
        save_results(results, log_path)

        args = Args(refine_only=log_path, output_dir=tmp_path / "out")
        assert main(args) == 0
        refined = load_results(bundle_path(tmp_path / "out" / "results.jsonl"))
        assert len(refined) == 3
        assert all(r.valid for r in refined)
        assert (tmp_path / "out" / "trajectory.BUNDLE.txt").exists()

    def test_map_round_trip_through_the_driver(self, tmp_path, ring_map_model):
        save_map(ring_map_model, tmp_path / "scene.json")
        images = tmp_path / "images"
        images.mkdir()
        # no readable image: the run ends with an empty sequence
        args = Args(map=tmp_path / "scene.json", source=images, output_dir=tmp_path / "out")
        assert main(args) == 0
        assert (tmp_path / "out" / "results.jsonl").read_text() == ""

    def test_describer_incompatible_with_the_map(self, tmp_path, ring_map_model):
        save_map(ring_map_model, tmp_path / "scene.json")
        images = tmp_path / "images"
        images.mkdir()
        args = Args(
            map=tmp_path / "scene.json",
            source=images,
            describer="orb",
            output_dir=tmp_path / "out",
        )
        assert main(args) == 1
        assert not (tmp_path / "out" / "results.jsonl").exists()
