"""lmaxent self-consistency tests: interning, ingestion, classification, I/O.

Usage:
    python3 -m pytest test_lmaxent.py -v
"""

import os
import tempfile

import numpy as np
import pytest

import lmaxent
from lmaxent import (
    CorruptModelFile, DimensionMismatch, Distribution, Interner,
    JointFeatureEncoder, JointFeatureKey, MAX_FEATURES, MAX_LABELS, MaxEnt,
    Observation, SampleStore, StoreFrozen, TooManyFeatures, TooManyLabels,
    UnknownModelFile,
)

WEATHER = [
    Observation("sunny", ["warm", "dry"], {"temp": 0.9}),
    Observation("sunny", ["warm", "clear"], {"temp": 0.8}),
    Observation("rainy", ["wet", "cloudy"], {"temp": 0.3}),
    Observation("rainy", ["wet", "cold"], {"temp": 0.2}),
    Observation("snowy", ["cold", "white"], {"temp": -0.5}),
    Observation("snowy", ["cold", "cloudy"], {"temp": -0.7}),
    Observation("sunny", ["dry", "clear"], {"temp": 0.7}),
    Observation("rainy", ["wet", "cloudy", "warm"], {"temp": 0.4}),
]

HELD_OUT = [
    Observation("sunny", ["warm", "clear"]),
    Observation("rainy", ["wet"], {"temp": 0.1}),
    Observation("snowy", ["white", "never_seen"]),
    Observation("rainy", ["unknown_feature"]),
]


def _tmp_path(suffix=".npz"):
    fd, path = tempfile.mkstemp(suffix=suffix, prefix="lmaxent_")
    os.close(fd)
    return path


def _write_model(path, labels, features, keys, weights):
    label_data, label_offsets = lmaxent._pack_strings(labels)
    feature_data, feature_offsets = lmaxent._pack_strings(features)
    np.savez(path, format=np.array(["lmaxent", "1"]),
             labels=label_data, label_offsets=label_offsets,
             features=feature_data, feature_offsets=feature_offsets,
             keys=keys, weights=weights)


@pytest.fixture(scope="module")
def weather_model():
    return MaxEnt.train(WEATHER, sigma2=5.0, verbose=0)


class TestInterner:

    def test_put_is_idempotent(self):
        """Repeated put returns the id assigned the first time."""
        it = Interner()
        a = it.put("a")
        b = it.put("b")
        assert (a, b) == (0, 1)
        assert it.put("a") == a
        assert it.put("b") == b
        assert len(it) == 2

    def test_lookup_and_resolve(self):
        it = Interner(["x", "y", "x", "z"])
        assert list(it) == ["x", "y", "z"]
        assert it.lookup("y") == 1
        assert it.lookup("missing") is None
        assert "z" in it and "missing" not in it
        assert it.resolve(2) == "z"
        with pytest.raises(IndexError):
            it.resolve(3)
        with pytest.raises(IndexError):
            it.resolve(-1)

    def test_frozen_rejects_new_strings(self):
        it = Interner(["x"])
        it.freeze()
        assert it.put("x") == 0
        with pytest.raises(StoreFrozen):
            it.put("y")
        assert len(it) == 1


class TestJointFeatureEncoder:

    def test_put_is_idempotent(self):
        enc = JointFeatureEncoder()
        i = enc.put(3, 7)
        j = enc.put(0, 7)
        assert (i, j) == (0, 1)
        assert enc.put(3, 7) == i
        assert len(enc) == 2
        assert enc.resolve(i) == JointFeatureKey(3, 7)
        assert enc.lookup(0, 7) == j
        assert enc.lookup(1, 7) is None
        with pytest.raises(IndexError):
            enc.resolve(2)

    def test_label_bound(self):
        enc = JointFeatureEncoder()
        assert enc.put(MAX_LABELS - 1, 0) == 0
        with pytest.raises(TooManyLabels):
            enc.put(MAX_LABELS, 0)
        assert len(enc) == 1

    def test_feature_bound(self):
        enc = JointFeatureEncoder()
        assert enc.put(0, MAX_FEATURES - 1) == 0
        with pytest.raises(TooManyFeatures):
            enc.put(0, MAX_FEATURES)
        with pytest.raises(TooManyFeatures):
            JointFeatureKey(0, 1 << 24)

    def test_feature_table(self):
        """CSR table lists each feature's (label, parameter) pairs."""
        enc = JointFeatureEncoder()
        enc.put(1, 2)   # 0
        enc.put(0, 0)   # 1
        enc.put(0, 2)   # 2
        t = enc.feature_table(4)
        assert list(t.ptr) == [0, 1, 1, 3, 3]
        assert list(t.label) == [0, 0, 1]
        assert list(t.index) == [1, 2, 0]


class TestSampleStore:

    def test_deterministic_ids(self):
        """Same observations in the same order → same id assignment."""
        stores = []
        for _ in range(2):
            s = SampleStore()
            s.extend(WEATHER)
            s.freeze()
            stores.append(s)
        a, b = stores
        assert list(a.labels) == list(b.labels)
        assert list(a.features) == list(b.features)
        assert np.array_equal(a.encoder.keys_array(), b.encoder.keys_array())
        assert list(a.labels) == ["sunny", "rainy", "snowy"]

    def test_observation_inputs(self):
        """A bare string is one feature name, not a sequence of characters."""
        obs = Observation("a", "good", {"len": 4})
        assert obs.features == ("good",)
        assert obs.real_features == (("len", 4.0),)
        assert Observation("a", ["good", "fun"]).features == ("good", "fun")

        store = SampleStore()
        store.add(obs)
        assert list(store.features) == ["good", "len"]

    def test_label_limit_boundary(self):
        """255 distinct labels are accepted, the 256th raises TooManyLabels."""
        store = SampleStore()
        for i in range(255):
            store.add(Observation(f"L{i}", ["shared"]))
        assert len(store.labels) == 255

        with pytest.raises(TooManyLabels):
            store.add(Observation("L255", ["brand_new"], {"also_new": 1.0}))

        assert len(store) == 255
        assert len(store.labels) == 255
        assert "L255" not in store.labels
        assert list(store.features) == ["shared"]

        # known labels are still fine
        store.add(Observation("L0", ["shared"]))
        assert len(store) == 256

    def test_feature_limit_leaves_state_intact(self, monkeypatch):
        monkeypatch.setattr(lmaxent, "MAX_FEATURES", 3)
        store = SampleStore()
        store.add(Observation("a", ["f1", "f2"]))
        with pytest.raises(TooManyFeatures):
            store.add(Observation("b", ["f1", "f3"], {"f4": 2.0}))
        assert len(store) == 1
        assert list(store.labels) == ["a"]
        assert list(store.features) == ["f1", "f2"]
        store.add(Observation("b", ["f2", "f3"]))
        assert len(store.features) == 3

    def test_non_finite_value_rejected(self):
        store = SampleStore()
        store.add(Observation("a", ["f"]))
        with pytest.raises(ValueError):
            store.add(Observation("b", ["g"], {"h": float("nan")}))
        assert list(store.labels) == ["a"]
        assert list(store.features) == ["f"]
        assert len(store) == 1

    def test_frozen_store_rejects_samples(self):
        store = SampleStore()
        store.extend(WEATHER)
        store.freeze()
        with pytest.raises(StoreFrozen):
            store.add(WEATHER[0])

    def test_joint_keys_from_training_pairs(self):
        """Parameters exist only for (label, feature) pairs seen in training."""
        store = SampleStore()
        store.add(Observation("a", ["x", "y"]))
        store.add(Observation("b", ["y"], {"r": 0.5}))
        store.freeze()
        enc = store.encoder
        ids = {name: store.features.lookup(name) for name in ("x", "y", "r")}
        assert len(enc) == 4
        assert enc.lookup(0, ids["x"]) is not None
        assert enc.lookup(1, ids["x"]) is None
        assert enc.lookup(1, ids["r"]) is not None

    def test_min_count_and_heldout(self):
        store = SampleStore()
        store.extend([
            Observation("a", ["x", "rare"]),
            Observation("a", ["x"]),
            Observation("b", ["y"]),
            Observation("b", ["y"]),
            Observation("a", ["only_heldout"]),
        ])
        store.freeze(min_count=2, heldout=1)
        assert len(store.encoder) == 2
        assert store.training.n_samples == 4
        assert store.heldout.n_samples == 1
        # heldout features are interned but never parameters
        assert "only_heldout" in store.features
        fid = store.features.lookup("only_heldout")
        assert store.encoder.lookup(0, fid) is None


class TestClassify:

    def test_distribution_is_valid(self, weather_model):
        """Probabilities are non-negative and sum to one."""
        for obs in WEATHER + HELD_OUT:
            dist = weather_model.classify(obs)
            assert len(dist) == 3
            assert np.all(dist.probs >= 0)
            assert abs(dist.probs.sum() - 1.0) < 1e-6

    def test_training_accuracy(self, weather_model):
        n, acc = weather_model.test(WEATHER)
        assert n == len(WEATHER)
        assert acc == 1.0

    def test_unseen_features_ignored(self, weather_model):
        base = weather_model.classify(Observation(features=["wet"]))
        noisy = weather_model.classify(
            Observation(features=["wet", "zzz"], real_features={"qqq": 5.0}))
        assert np.array_equal(base.probs, noisy.probs)

        empty = weather_model.classify(Observation(features=["nothing"]))
        assert np.allclose(empty.probs, 1.0 / 3)

    def test_query_by_label_and_ranked(self, weather_model):
        dist = weather_model.classify(Observation(features=["cold", "white"]))
        ranked = dist.ranked()
        assert ranked[0][0] == "snowy" == dist.best
        assert [p for _, p in ranked] == sorted(
            (p for _, p in ranked), reverse=True)
        assert dist["snowy"] == ranked[0][1]
        assert dist["no_such_label"] == 0.0
        assert dict(dist) == dict(ranked)
        assert weather_model.predict(Observation(features=["wet"])) == "rainy"

    def test_parameters_listing(self, weather_model):
        params = weather_model.parameters()
        assert len(params) == len(weather_model.weights)
        by_pair = {(lbl, feat): w for lbl, feat, w in params}
        assert by_pair["snowy", "white"] > 0
        big = weather_model.parameters(threshold=1e9)
        assert big == []

    def test_empty_distribution(self):
        dist = Distribution(Interner(), np.empty(0))
        assert dist.best is None
        assert dist.ranked() == []


class TestPersistence:

    def test_save_load_roundtrip(self, weather_model):
        """Distributions are identical before and after save/load."""
        path = _tmp_path()
        try:
            weather_model.save(path)
            loaded = MaxEnt.load(path)
            assert list(loaded.labels) == list(weather_model.labels)
            assert list(loaded.features) == list(weather_model.features)
            for obs in WEATHER + HELD_OUT:
                a = weather_model.classify(obs)
                b = loaded.classify(obs)
                assert np.array_equal(a.probs, b.probs)
        finally:
            os.unlink(path)

    def test_names_survive_roundtrip(self):
        """NUL-suffixed, empty and non-ASCII names are stored byte-exact."""
        data = [
            Observation("a\x00", ["x"]),
            Observation("b", ["x\x00", ""]),
            Observation("b", ["x", "ß\x00\x00"]),
            Observation("", ["x"]),
        ]
        model = MaxEnt.train(data, sigma2=1.0, verbose=0)
        path = _tmp_path()
        try:
            model.save(path)
            loaded = MaxEnt.load(path)
            assert list(loaded.labels) == ["a\x00", "b", ""]
            assert list(loaded.features) == ["x", "x\x00", "", "ß\x00\x00"]
            for obs in data:
                assert np.array_equal(model.classify(obs).probs,
                                      loaded.classify(obs).probs)
        finally:
            os.unlink(path)

    def test_malformed_string_table(self):
        path = _tmp_path()
        try:
            label_data, _ = lmaxent._pack_strings(["a", "b"])
            feature_data, feature_offsets = lmaxent._pack_strings(["x"])
            np.savez(path, format=np.array(["lmaxent", "1"]),
                     labels=label_data,
                     label_offsets=np.array([0, 5, 1], dtype=np.int64),
                     features=feature_data, feature_offsets=feature_offsets,
                     keys=np.array([[0, 0]], dtype=np.int32),
                     weights=np.array([0.5]))
            with pytest.raises(CorruptModelFile):
                MaxEnt.load(path)

            np.savez(path, format=np.array(["lmaxent", "1"]),
                     labels=np.frombuffer(b"\xff\xfe", dtype=np.uint8),
                     label_offsets=np.array([0, 2], dtype=np.int64),
                     features=feature_data, feature_offsets=feature_offsets,
                     keys=np.array([[0, 0]], dtype=np.int32),
                     weights=np.array([0.5]))
            with pytest.raises(CorruptModelFile):
                MaxEnt.load(path)
        finally:
            os.unlink(path)

    def test_threshold_drops_parameters(self):
        """Sparse L1 models save only their non-zero weights."""
        model = MaxEnt.train(WEATHER, l1=0.5, verbose=0)
        n_zero = int(np.sum(model.weights == 0))
        assert n_zero > 0
        path = _tmp_path()
        try:
            model.save(path)
            loaded = MaxEnt.load(path)
            assert len(loaded.weights) == len(model.weights) - n_zero
            for obs in WEATHER + HELD_OUT:
                assert np.array_equal(model.classify(obs).probs,
                                      loaded.classify(obs).probs)
        finally:
            os.unlink(path)

    def test_unknown_file(self):
        path = _tmp_path(suffix=".txt")
        try:
            with open(path, "w") as f:
                f.write("this is not a model\n")
            with pytest.raises(UnknownModelFile):
                MaxEnt.load(path)

            np.savez(path + ".npz", something=np.arange(3))
            with pytest.raises(UnknownModelFile):
                MaxEnt.load(path + ".npz")
        finally:
            for p in (path, path + ".npz"):
                if os.path.exists(p):
                    os.unlink(p)

    def test_truncated_file(self, weather_model):
        path = _tmp_path()
        try:
            weather_model.save(path)
            with open(path, "rb") as f:
                data = f.read()
            with open(path, "wb") as f:
                f.write(data[:len(data) // 2])
            with pytest.raises(CorruptModelFile):
                MaxEnt.load(path)

            open(path, "wb").close()
            with pytest.raises(CorruptModelFile):
                MaxEnt.load(path)
        finally:
            os.unlink(path)

    def test_missing_array(self):
        path = _tmp_path()
        try:
            np.savez(path, format=np.array(["lmaxent", "1"]),
                     labels=np.array(["a"]))
            with pytest.raises(CorruptModelFile):
                MaxEnt.load(path)
        finally:
            os.unlink(path)

    def test_dimension_mismatch(self):
        path = _tmp_path()
        try:
            _write_model(path, ["a", "b"], ["x"],
                         keys=np.array([[0, 0], [1, 0]], dtype=np.int32),
                         weights=np.array([0.5]))
            with pytest.raises(DimensionMismatch):
                MaxEnt.load(path)
        finally:
            os.unlink(path)

    def test_out_of_range_keys(self):
        path = _tmp_path()
        try:
            _write_model(path, ["a"], ["x"],
                         keys=np.array([[3, 0]], dtype=np.int32),
                         weights=np.array([0.5]))
            with pytest.raises(CorruptModelFile):
                MaxEnt.load(path)
        finally:
            os.unlink(path)

    def test_constructor_checks_dimensions(self, weather_model):
        with pytest.raises(DimensionMismatch):
            MaxEnt(labels=weather_model.labels,
                   features=weather_model.features,
                   encoder=weather_model.encoder,
                   weights=np.zeros(len(weather_model.weights) + 1))


class TestReferenceModel:

    def test_untrained_stack_reproduces_reference(self, weather_model):
        """With zero weights, a stacked model returns the reference's output."""
        store = SampleStore(reference=weather_model)
        assert list(store.labels) == list(weather_model.labels)
        store.extend(WEATHER)
        stacked = MaxEnt.train(store, max_iterations=0, verbose=0)
        assert stacked.reference is weather_model
        for obs in HELD_OUT:
            a = weather_model.classify(obs).probs
            b = stacked.classify(obs).probs
            assert np.allclose(a, b, atol=1e-8)

    def test_stacked_training(self, weather_model):
        """Stacking adds labels the reference never saw."""
        extra = WEATHER + [
            Observation("foggy", ["grey", "wet"]),
            Observation("foggy", ["grey", "cold"]),
        ]
        model = MaxEnt.train(extra, sigma2=2.0, reference=weather_model,
                             verbose=0)
        assert list(model.labels) == ["sunny", "rainy", "snowy", "foggy"]
        dist = model.classify(Observation(features=["grey"]))
        assert abs(dist.probs.sum() - 1.0) < 1e-6
        assert dist.best == "foggy"
        assert model.predict(Observation(features=["dry", "clear"])) == "sunny"


class TestTraining:

    def test_heldout_early_stopping(self):
        """Stops after N iterations without held-out improvement."""
        data = [
            Observation("pos", ["x"]), Observation("pos", ["x"]),
            Observation("neg", ["y"]), Observation("neg", ["y"]),
            Observation("pos", ["x"]), Observation("neg", ["y"]),
        ]
        model = MaxEnt.train(data, heldout=2, early_stopping=2,
                             tolerance=0.0, max_iterations=100, verbose=0)
        assert model.result.reason == "callback"
        assert model.result.iterations == 3
        assert not model.result.converged

    def test_early_stopping_keeps_best_heldout_weights(self):
        """Held-out accuracy peaks at iteration 1; those weights are kept."""
        data = [
            Observation("pos", ["x"]), Observation("pos", ["x"]),
            Observation("neg", ["y"]), Observation("neg", ["y"]),
            Observation("pos", ["x"]), Observation("neg", ["y"]),
        ]
        stopped = MaxEnt.train(data, heldout=2, early_stopping=2,
                               tolerance=0.0, max_iterations=100, verbose=0)
        first = MaxEnt.train(data, heldout=2, tolerance=0.0,
                             max_iterations=1, verbose=0)
        last = MaxEnt.train(data, heldout=2, tolerance=0.0,
                            max_iterations=3, verbose=0)
        assert stopped.result.iterations == 3
        assert np.array_equal(stopped.weights, first.weights)
        assert stopped.result.value == first.result.value
        assert not np.array_equal(stopped.weights, last.weights)

    def test_verbose_progress(self, capsys):
        MaxEnt.train(WEATHER, sigma2=1.0, heldout=2, verbose=1)
        err = capsys.readouterr().err
        assert "Read 8 samples" in err
        assert "heldout=" in err
        assert "Done:" in err

    def test_l1_requires_owlqn(self):
        with pytest.raises(ValueError):
            MaxEnt.train(WEATHER, l1=0.1, optimizer="lbfgs", verbose=0)
        with pytest.raises(ValueError):
            MaxEnt.train(WEATHER, l1=0.1, optimizer="sgd", verbose=0)
        with pytest.raises(ValueError):
            MaxEnt.train(WEATHER, optimizer="newton", verbose=0)

    def test_random_init_is_seeded(self):
        a = MaxEnt.train(WEATHER, sigma2=1.0, init_rand_sd=0.1, seed=3,
                         max_iterations=2, verbose=0)
        b = MaxEnt.train(WEATHER, sigma2=1.0, init_rand_sd=0.1, seed=3,
                         max_iterations=2, verbose=0)
        assert np.array_equal(a.weights, b.weights)
