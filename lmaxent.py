"""lmaxent: maximum-entropy (multinomial logistic regression) classifiers.

Trains log-linear models over sparse binary and real-valued features:

- String interning for labels and feature names
- Joint (label, feature) parameter encoding, one weight per observed pair
- Penalized log-likelihood + gradient (Gaussian prior)
- Three interchangeable optimisers: L-BFGS, OWL-QN (L1), SGD
- Optional reference model (model stacking / calibration)

::

    data = [Observation("pos", ["good", "fun"]),
            Observation("neg", ["bad"], {"length": 0.3})]
    model = MaxEnt.train(data, sigma2=1.0)
    model.classify(Observation(features=["good"])).ranked()
    # → [("pos", 0.83), ("neg", 0.17)]

    model.save("model.npz")
    model = MaxEnt.load("model.npz")

Optimisers::

    lbfgs   limited-memory quasi-Newton, Armijo backtracking
    owlqn   orthant-wise L-BFGS for L1-regularised objectives (l1 > 0)
    sgd     per-sample (or mini-batch) gradient ascent, decaying rate

Requires only **numpy** and **numba**.

Labels are capped at 255 and feature names at 16,777,215; exceeding either
raises a recoverable error and leaves already ingested data intact.
"""

from __future__ import annotations

import sys
import time
import zipfile
import zlib
from collections import Counter
from dataclasses import dataclass, field, replace
from itertools import chain
from typing import Callable, Iterable, Iterator, Optional

import numpy as np
from numba import njit


MAX_LABELS = 255
MAX_FEATURES = (1 << 24) - 1

# lower bound on reference probabilities, keeps log scores finite
_REF_FLOOR = 1e-10

_MAGIC = "lmaxent"
_FORMAT_VERSION = 1


# ── errors ───────────────────────────────────────────────────────────────────


class MaxEntError(Exception):
    """Base class for all lmaxent errors."""


class TooManyLabels(MaxEntError):
    pass


class TooManyFeatures(MaxEntError):
    pass


class StoreFrozen(MaxEntError):
    """Raised when interning or ingesting after training has started."""


class ModelFileError(MaxEntError):
    pass


class UnknownModelFile(ModelFileError):
    """The file is not an lmaxent model (or a newer format version)."""


class CorruptModelFile(ModelFileError):
    """The file is an lmaxent model but truncated or inconsistent."""


class DimensionMismatch(MaxEntError, ValueError):
    """Weight vector length disagrees with the number of parameters."""


# ── observations ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Observation:
    """A labeled (or unlabeled) feature set.

    *features* accepts any iterable of names (a bare string is one name);
    *real_features* accepts ``(name, value)`` pairs or a mapping.
    """
    label: str                                   = ""
    features: tuple[str, ...]                    = ()
    real_features: tuple[tuple[str, float], ...] = ()

    def __post_init__(self):
        features = self.features
        if isinstance(features, str):
            features = (features,)
        rf = self.real_features
        if isinstance(rf, dict):
            rf = rf.items()
        object.__setattr__(self, "features", tuple(features))
        object.__setattr__(self, "real_features",
                           tuple((name, float(value)) for name, value in rf))


# ── interning ────────────────────────────────────────────────────────────────


class Interner:
    """Bidirectional ``str <-> int`` map, ids assigned in first-seen order."""

    __slots__ = ("_ids", "_strings", "_frozen")

    def __init__(self, strings: Iterable[str] = ()):
        self._ids: dict[str, int] = {}
        self._strings: list[str] = []
        self._frozen = False
        for s in strings:
            self.put(s)

    def put(self, s: str) -> int:
        i = self._ids.get(s)
        if i is None:
            if self._frozen:
                raise StoreFrozen(f"cannot intern {s!r}: interner is frozen")
            i = len(self._strings)
            self._ids[s] = i
            self._strings.append(s)
        return i

    def lookup(self, s: str) -> Optional[int]:
        return self._ids.get(s)

    def resolve(self, i: int) -> str:
        if not 0 <= i < len(self._strings):
            raise IndexError(f"id {i} out of range [0, {len(self._strings)})")
        return self._strings[i]

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._strings)

    def __contains__(self, s) -> bool:
        return s in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._strings)


# ── joint (label, feature) parameters ────────────────────────────────────────


@dataclass(frozen=True)
class JointFeatureKey:
    label: int
    feature: int

    def __post_init__(self):
        if self.label < 0 or self.feature < 0:
            raise ValueError(f"negative id in {self}")
        if self.label >= MAX_LABELS:
            raise TooManyLabels(
                f"label id {self.label} exceeds the {MAX_LABELS}-label limit")
        if self.feature >= MAX_FEATURES:
            raise TooManyFeatures(
                f"feature id {self.feature} exceeds the "
                f"{MAX_FEATURES}-feature limit")


@dataclass
class FeatureTable:
    """CSR view: feature id → [(label id, parameter index), ...]."""
    ptr: np.ndarray         # int64, n_features + 1
    label: np.ndarray       # int32
    index: np.ndarray       # int64


class JointFeatureEncoder:
    """Dense parameter index for every (label, feature) pair in the model."""

    __slots__ = ("_index", "_keys", "_frozen")

    def __init__(self):
        self._index: dict[JointFeatureKey, int] = {}
        self._keys: list[JointFeatureKey] = []
        self._frozen = False

    @classmethod
    def from_keys(cls, keys: np.ndarray) -> JointFeatureEncoder:
        enc = cls()
        for label, feature in keys:
            enc.put(int(label), int(feature))
        return enc

    def put(self, label: int, feature: int) -> int:
        key = JointFeatureKey(label, feature)
        i = self._index.get(key)
        if i is None:
            if self._frozen:
                raise StoreFrozen(f"cannot add {key}: encoder is frozen")
            i = len(self._keys)
            self._index[key] = i
            self._keys.append(key)
        return i

    def lookup(self, label: int, feature: int) -> Optional[int]:
        if not (0 <= label < MAX_LABELS and 0 <= feature < MAX_FEATURES):
            return None
        return self._index.get(JointFeatureKey(label, feature))

    def resolve(self, i: int) -> JointFeatureKey:
        if not 0 <= i < len(self._keys):
            raise IndexError(f"parameter {i} out of range [0, {len(self._keys)})")
        return self._keys[i]

    def freeze(self):
        self._frozen = True

    def __len__(self) -> int:
        return len(self._keys)

    def keys_array(self) -> np.ndarray:
        """(N, 2) int32 array of (label, feature), row i = parameter i."""
        out = np.empty((len(self._keys), 2), np.int32)
        for i, key in enumerate(self._keys):
            out[i, 0] = key.label
            out[i, 1] = key.feature
        return out

    def feature_table(self, n_features: int) -> FeatureTable:
        keys = self.keys_array()
        # stable: parameters of one feature stay in label order
        order = np.lexsort((keys[:, 0], keys[:, 1]))
        counts = np.bincount(keys[:, 1], minlength=n_features)
        ptr = np.zeros(n_features + 1, np.int64)
        np.cumsum(counts, out=ptr[1:])
        return FeatureTable(
            ptr=ptr,
            label=np.ascontiguousarray(keys[order, 0], dtype=np.int32),
            index=order.astype(np.int64))


# ── samples ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class Sample:
    label: int
    features: tuple[int, ...]
    real_features: tuple[tuple[int, float], ...]
    ref: Optional[np.ndarray] = None    # log reference probabilities


@dataclass
class PackedSamples:
    """Contiguous arrays for a block of samples, as consumed by the kernels."""
    labels: np.ndarray          # int32, n
    ptr: np.ndarray             # int64, n + 1
    feats: np.ndarray           # int32
    vals: np.ndarray            # float64 (1.0 for binary features)
    ref_log: np.ndarray         # float64, (n, n_labels) or (0, n_labels)
    has_ref: bool
    n_labels: int
    table: FeatureTable         = field(repr=False)

    @property
    def n_samples(self) -> int:
        return len(self.labels)


def _reference_log(reference, obs: Observation,
                   labels: Interner) -> np.ndarray:
    """Log reference probabilities for *obs*, indexed by our label ids.

    Labels the reference does not know get a uniform share 1/K of its K
    labels.
    """
    dist = reference.classify(obs)
    out = np.full(len(labels), -np.log(max(len(dist.probs), 1)))
    for label, p in zip(dist.labels, dist.probs):
        i = labels.lookup(label)
        if i is not None:
            out[i] = np.log(max(float(p), _REF_FLOOR))
    return out


class SampleStore:
    """Interns observations into the training set.

    Ingestion (``add``) only records label and feature ids; ``freeze``
    creates the joint (label, feature) parameters and packs the samples.
    """

    def __init__(self, reference=None):
        self.labels = Interner()
        self.features = Interner()
        self.encoder = JointFeatureEncoder()
        self.reference = reference
        self.training: Optional[PackedSamples] = None
        self.heldout: Optional[PackedSamples] = None
        self._samples: list[Sample] = []
        self._frozen = False
        self._ref_unknown = 0.0
        if reference is not None:
            # reference distributions then index directly by label id
            for label in reference.labels:
                self.labels.put(label)
            self._ref_unknown = -np.log(max(len(self.labels), 1))

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add(self, obs: Observation):
        if self._frozen:
            raise StoreFrozen("sample store is frozen; training has started")
        labels, features = self.labels, self.features

        # validate everything before touching the interners
        if obs.label not in labels and len(labels) >= MAX_LABELS:
            raise TooManyLabels(
                f"label {obs.label!r} would exceed the {MAX_LABELS}-label limit")
        new_names = {name for name in chain(
            obs.features, (n for n, _ in obs.real_features))
            if name not in features}
        if len(features) + len(new_names) > MAX_FEATURES:
            raise TooManyFeatures(
                f"observation would exceed the {MAX_FEATURES}-feature limit")
        for name, value in obs.real_features:
            if not np.isfinite(value):
                raise ValueError(f"feature {name!r} has non-finite value {value}")
        ref = None
        if self.reference is not None:
            ref = _reference_log(self.reference, obs, labels)

        self._samples.append(Sample(
            label=labels.put(obs.label),
            features=tuple(features.put(name) for name in obs.features),
            real_features=tuple((features.put(name), value)
                                for name, value in obs.real_features),
            ref=ref))

    def extend(self, observations: Iterable[Observation]):
        for obs in observations:
            self.add(obs)

    def freeze(self, min_count: int = 1, heldout: int = 0) -> SampleStore:
        """Create joint parameters, freeze interners, pack samples.

        The last *heldout* samples are kept out of the objective (and out of
        parameter creation); a (label, feature) pair becomes a parameter when
        it occurs at least *min_count* times in the training samples.
        Idempotent: later calls return immediately.
        """
        if self._frozen:
            return self
        if not 0 <= heldout <= len(self._samples):
            raise ValueError(f"heldout={heldout} out of range for "
                             f"{len(self._samples)} samples")
        n_train = len(self._samples) - heldout
        train = self._samples[:n_train]

        counts: Counter = Counter()
        for s in train:
            for f in chain(s.features, (f for f, _ in s.real_features)):
                counts[s.label, f] += 1
        for s in train:
            for f in chain(s.features, (f for f, _ in s.real_features)):
                if counts[s.label, f] >= min_count:
                    self.encoder.put(s.label, f)

        self.labels.freeze()
        self.features.freeze()
        self.encoder.freeze()
        self._frozen = True

        table = self.encoder.feature_table(len(self.features))
        self.training = self._pack(train, table)
        if heldout:
            self.heldout = self._pack(self._samples[n_train:], table)
        return self

    def _pack(self, samples: list[Sample], table: FeatureTable) -> PackedSamples:
        n = len(samples)
        n_labels = len(self.labels)
        labels = np.empty(n, np.int32)
        ptr = np.zeros(n + 1, np.int64)
        feats: list[int] = []
        vals: list[float] = []
        for i, s in enumerate(samples):
            labels[i] = s.label
            feats.extend(s.features)
            vals.extend([1.0] * len(s.features))
            for f, v in s.real_features:
                feats.append(f)
                vals.append(v)
            ptr[i + 1] = len(feats)

        has_ref = self.reference is not None
        ref_log = np.full((n if has_ref else 0, n_labels), self._ref_unknown)
        if has_ref:
            for i, s in enumerate(samples):
                ref_log[i, :len(s.ref)] = s.ref

        return PackedSamples(
            labels=labels, ptr=ptr,
            feats=np.array(feats, dtype=np.int32),
            vals=np.array(vals, dtype=np.float64),
            ref_log=ref_log, has_ref=has_ref, n_labels=n_labels, table=table)


# ── kernels ──────────────────────────────────────────────────────────────────


@njit(cache=True)
def _label_scores(s, ptr, feats, vals, f_ptr, f_label, f_index,
                  w, scale, ref_log, has_ref, scores):
    """Linear score of every label for sample *s* (weights = scale * w)."""
    n_labels = scores.shape[0]
    for y in range(n_labels):
        if has_ref:
            scores[y] = ref_log[s, y]
        else:
            scores[y] = 0.0
    for k in range(ptr[s], ptr[s + 1]):
        f = feats[k]
        v = vals[k] * scale
        for j in range(f_ptr[f], f_ptr[f + 1]):
            scores[f_label[j]] += v * w[f_index[j]]


@njit(cache=True)
def _softmax(scores, probs):
    """Stable normalised exponential. Returns log Z."""
    n = scores.shape[0]
    m = scores[0]
    for y in range(1, n):
        if scores[y] > m:
            m = scores[y]
    z = 0.0
    for y in range(n):
        probs[y] = np.exp(scores[y] - m)
        z += probs[y]
    for y in range(n):
        probs[y] /= z
    return m + np.log(z)


@njit(cache=True)
def _loglik_grad(w, labels, ptr, feats, vals, f_ptr, f_label, f_index,
                 ref_log, has_ref, n_labels, grad):
    """Log-likelihood of all samples; fills *grad* with its gradient."""
    for i in range(grad.shape[0]):
        grad[i] = 0.0
    scores = np.empty(n_labels)
    probs = np.empty(n_labels)
    loglik = 0.0

    for s in range(labels.shape[0]):
        _label_scores(s, ptr, feats, vals, f_ptr, f_label, f_index,
                      w, 1.0, ref_log, has_ref, scores)
        log_z = _softmax(scores, probs)
        y = labels[s]
        loglik += scores[y] - log_z

        # empirical minus expected feature counts
        for k in range(ptr[s], ptr[s + 1]):
            f = feats[k]
            v = vals[k]
            for j in range(f_ptr[f], f_ptr[f + 1]):
                lbl = f_label[j]
                g = -probs[lbl]
                if lbl == y:
                    g += 1.0
                grad[f_index[j]] += v * g
    return loglik


@njit(cache=True)
def _distributions(w, ptr, feats, vals, f_ptr, f_label, f_index,
                   ref_log, has_ref, out):
    """Label distribution of every sample into *out* (n_samples, n_labels)."""
    n_labels = out.shape[1]
    scores = np.empty(n_labels)
    for s in range(out.shape[0]):
        _label_scores(s, ptr, feats, vals, f_ptr, f_label, f_index,
                      w, 1.0, ref_log, has_ref, scores)
        _softmax(scores, out[s])


@njit(cache=True)
def _shuffle(perm, rng_state):
    """Fisher-Yates shuffle with a Lehmer (minstd) generator."""
    for i in range(perm.shape[0] - 1, 0, -1):
        rng_state = (rng_state * np.int64(48271)) % np.int64(2147483647)
        j = np.int64(np.uint64(rng_state) % np.uint64(i + 1))
        perm[i], perm[j] = perm[j], perm[i]
    return rng_state


@njit(cache=True)
def _sgd_epoch(w, order, labels, ptr, feats, vals, f_ptr, f_label, f_index,
               ref_log, has_ref, n_labels,
               step, eta0, decay, schedule, batch_size, l2):
    """One SGD pass over the samples in *order*, updating *w* in place.

    The Gaussian prior is applied as a multiplicative decay of a shared
    scale factor (true weights = scale * w), so each update only touches
    the parameters active in the batch.

    schedule: 0 = eta0 * decay^(step/N), 1 = eta0 / (1 + step/N),
    2 = constant. Returns the updated step counter.
    """
    n = order.shape[0]
    n_total = np.float64(n)
    scale = 1.0
    scores = np.empty(n_labels)
    probs = np.empty((batch_size, n_labels))

    start = 0
    while start < n:
        stop = min(start + batch_size, n)
        if schedule == 0:
            rate = eta0 * decay ** (step / n_total)
        elif schedule == 1:
            rate = eta0 / (1.0 + step / n_total)
        else:
            rate = eta0

        # predictions for the whole batch under the current weights
        for b in range(stop - start):
            _label_scores(order[start + b], ptr, feats, vals,
                          f_ptr, f_label, f_index,
                          w, scale, ref_log, has_ref, scores)
            _softmax(scores, probs[b])

        if l2 > 0.0:
            shrink = 1.0 - rate * l2 * (stop - start) / n_total
            if shrink < 1e-8:
                shrink = 1e-8
            scale *= shrink

        for b in range(stop - start):
            s = order[start + b]
            y = labels[s]
            for k in range(ptr[s], ptr[s + 1]):
                f = feats[k]
                v = vals[k]
                for j in range(f_ptr[f], f_ptr[f + 1]):
                    lbl = f_label[j]
                    g = -probs[b, lbl]
                    if lbl == y:
                        g += 1.0
                    w[f_index[j]] += rate * v * g / scale

        if scale < 1e-9:
            for i in range(w.shape[0]):
                w[i] *= scale
            scale = 1.0

        step += stop - start
        start = stop

    for i in range(w.shape[0]):
        w[i] *= scale
    return step


# ── objective ────────────────────────────────────────────────────────────────


class Evaluator:
    """Penalised log-likelihood of a frozen sample store and its gradient.

    ``evaluator(w)`` returns ``(objective, gradient)``; the objective is to be
    maximised. With *sigma2* a Gaussian prior ``-w²/(2·sigma2)`` is added.
    Freezes the store (with default settings) if it is not frozen yet.
    """

    def __init__(self, store: SampleStore, sigma2: Optional[float] = None):
        if sigma2 is not None and not sigma2 > 0:
            raise ValueError(f"sigma2 must be positive, got {sigma2}")
        store.freeze()
        self.store = store
        self.sigma2 = sigma2
        self.data = store.training
        self.n_params = len(store.encoder)

    @property
    def n_samples(self) -> int:
        return self.data.n_samples

    @property
    def n_labels(self) -> int:
        return self.data.n_labels

    def _check(self, w) -> np.ndarray:
        w = np.ascontiguousarray(w, dtype=np.float64)
        if w.shape != (self.n_params,):
            raise DimensionMismatch(
                f"expected {self.n_params} weights, got shape {w.shape}")
        return w

    def __call__(self, w) -> tuple[float, np.ndarray]:
        w = self._check(w)
        d, t = self.data, self.data.table
        grad = np.empty(self.n_params)
        value = _loglik_grad(w, d.labels, d.ptr, d.feats, d.vals,
                             t.ptr, t.label, t.index,
                             d.ref_log, d.has_ref, d.n_labels, grad)
        if self.sigma2 is not None:
            value -= float(w @ w) / (2.0 * self.sigma2)
            grad -= w / self.sigma2
        return float(value), grad

    def distributions(self, w, heldout: bool = False) -> np.ndarray:
        w = self._check(w)
        d = self.store.heldout if heldout else self.data
        if d is None:
            raise ValueError("no held-out samples")
        t = d.table
        out = np.empty((d.n_samples, d.n_labels))
        if d.n_labels:
            _distributions(w, d.ptr, d.feats, d.vals, t.ptr, t.label, t.index,
                           d.ref_log, d.has_ref, out)
        return out

    def accuracy(self, w, heldout: bool = False) -> float:
        d = self.store.heldout if heldout else self.data
        probs = self.distributions(w, heldout)
        if d.n_samples == 0:
            return 0.0
        return float(np.mean(np.argmax(probs, axis=1) == d.labels))


# ── optimisers ───────────────────────────────────────────────────────────────


@dataclass
class OptimizeResult:
    x: np.ndarray           # best parameters found
    value: float            # objective at x (the maximised quantity)
    iterations: int
    converged: bool
    reason: str             # converged | max_iterations | line_search | callback


Callback = Callable[[int, np.ndarray, float], bool]


class Optimizer:
    """Maximises an ``Evaluator`` objective.

    ``optimize(x0, evaluate, tolerance, max_iterations, callback)``: stops
    when the relative objective change ``|Δf| / max(|f|, 1)`` drops below
    *tolerance*, after *max_iterations*, or when *callback(it, x, value)*
    returns True.
    """

    name = "optimizer"
    supports_l1 = False

    def optimize(self, x0, evaluate: Evaluator, tolerance: float = 1e-6,
                 max_iterations: int = 300,
                 callback: Optional[Callback] = None) -> OptimizeResult:
        raise NotImplementedError


class _History:
    """Circular buffer of the last *m* (s, y) pairs for the two-loop recursion."""

    def __init__(self, m: int, n: int):
        self.s = np.zeros((m, n))
        self.y = np.zeros((m, n))
        self.rho = np.zeros(m)
        self.m = m
        self.count = 0
        self.head = 0

    def push(self, s: np.ndarray, y: np.ndarray) -> bool:
        sy = float(s @ y)
        if sy <= 1e-10 * float(y @ y):
            return False
        self.s[self.head] = s
        self.y[self.head] = y
        self.rho[self.head] = 1.0 / sy
        self.head = (self.head + 1) % self.m
        self.count = min(self.count + 1, self.m)
        return True

    def clear(self):
        self.count = 0
        self.head = 0

    def apply(self, g: np.ndarray) -> np.ndarray:
        """Approximate inverse Hessian times *g*."""
        q = g.copy()
        newest_first = [(self.head - 1 - i) % self.m for i in range(self.count)]
        alpha = np.empty(self.count)
        for i, j in enumerate(newest_first):
            alpha[i] = self.rho[j] * float(self.s[j] @ q)
            q -= alpha[i] * self.y[j]
        if self.count:
            j = newest_first[0]
            q *= float(self.s[j] @ self.y[j]) / float(self.y[j] @ self.y[j])
        for i in reversed(range(self.count)):
            j = newest_first[i]
            beta = self.rho[j] * float(self.y[j] @ q)
            q += (alpha[i] - beta) * self.s[j]
        return q


class LBFGS(Optimizer):
    """Limited-memory BFGS with backtracking (Armijo) line search."""

    name = "lbfgs"
    c1 = 1e-4
    shrink = 0.5
    max_backtracks = 50
    gtol = 1e-10

    def __init__(self, memory: int = 10):
        if memory < 1:
            raise ValueError(f"memory must be >= 1, got {memory}")
        self.memory = memory

    # hooks (overridden by OWLQN) ──────────────────────────────────────────

    def _loss(self, evaluate, x):
        """Minimised loss and its smooth gradient."""
        value, grad = evaluate(x)
        return -value, -grad

    def _steepest(self, x, g):
        return g

    def _constrain(self, d, pg):
        return d

    def _orthant(self, x, pg):
        return None

    def _project(self, x, orthant):
        return x

    def _objective(self, x, loss):
        return -loss

    # ──────────────────────────────────────────────────────────────────────

    def _line_search(self, evaluate, x, f, pg, d, step):
        orthant = self._orthant(x, pg)
        for _ in range(self.max_backtracks):
            x_new = self._project(x + step * d, orthant)
            f_new, g_new = self._loss(evaluate, x_new)
            if f_new <= f + self.c1 * float(pg @ (x_new - x)):
                return x_new, f_new, g_new
            step *= self.shrink
        return None

    def optimize(self, x0, evaluate, tolerance=1e-6, max_iterations=300,
                 callback=None):
        x = np.array(x0, dtype=np.float64)
        f, g = self._loss(evaluate, x)
        history = _History(self.memory, x.shape[0])
        iterations = 0
        reason = "max_iterations"

        while iterations < max_iterations:
            pg = self._steepest(x, g)
            gnorm = float(np.linalg.norm(pg))
            if gnorm <= self.gtol * max(1.0, float(np.linalg.norm(x))):
                reason = "converged"
                break

            d = self._constrain(-history.apply(pg), pg)
            if float(d @ pg) >= 0.0:
                # not a descent direction: restart from steepest descent
                history.clear()
                d = -pg
            step = 1.0 / gnorm if history.count == 0 else 1.0

            found = self._line_search(evaluate, x, f, pg, d, step)
            if found is None:
                reason = "line_search"
                break
            x_new, f_new, g_new = found
            history.push(x_new - x, g_new - g)

            f_prev = f
            x, f, g = x_new, f_new, g_new
            iterations += 1

            if callback is not None and callback(iterations, x,
                                                 self._objective(x, f)):
                reason = "callback"
                break
            if abs(f_prev - f) / max(abs(f), 1.0) < tolerance:
                reason = "converged"
                break

        return OptimizeResult(x=x, value=self._objective(x, f),
                              iterations=iterations,
                              converged=reason == "converged", reason=reason)


class OWLQN(LBFGS):
    """Orthant-wise limited-memory quasi-Newton for ``objective - l1·|w|₁``.

    Andrew & Gao (2007): the L-BFGS direction is computed from the
    pseudo-gradient, restricted to the orthant it points into, and every
    line-search point is projected back onto the current orthant, so no
    weight crosses zero within a step. Weights driven to zero stay exactly
    zero, which is what makes the result sparse.
    """

    name = "owlqn"
    supports_l1 = True

    def __init__(self, l1: float, memory: int = 10):
        super().__init__(memory)
        if l1 < 0:
            raise ValueError(f"l1 must be >= 0, got {l1}")
        self.l1 = l1

    def _loss(self, evaluate, x):
        value, grad = evaluate(x)
        return -value + self.l1 * float(np.abs(x).sum()), -grad

    def _steepest(self, x, g):
        l1 = self.l1
        pg = np.where(x > 0, g + l1, np.where(x < 0, g - l1, 0.0))
        zero = x == 0
        right = g + l1      # derivative moving up from zero
        left = g - l1       # derivative moving down from zero
        pg[zero & (right < 0)] = right[zero & (right < 0)]
        pg[zero & (left > 0)] = left[zero & (left > 0)]
        return pg

    def _constrain(self, d, pg):
        d = d.copy()
        d[d * pg >= 0] = 0.0
        return d

    def _orthant(self, x, pg):
        return np.where(x != 0, np.sign(x), -np.sign(pg))

    def _project(self, x, orthant):
        x = x.copy()
        x[np.sign(x) != orthant] = 0.0
        return x


_SCHEDULES = {"exponential": 0, "inverse": 1, "constant": 2}


class SGD(Optimizer):
    """Stochastic gradient ascent on the log-likelihood.

    Each epoch visits every training sample once (shuffled with a seeded
    generator), *batch_size* samples per update. The rate follows
    *schedule*: ``exponential`` ``lr·decay^(t/N)``, ``inverse``
    ``lr/(1 + t/N)`` or ``constant``, with *t* the number of samples
    processed so far. Convergence is checked on the full objective after
    every epoch. L1 is not supported; use OWLQN.
    """

    name = "sgd"

    def __init__(self, learning_rate: float = 1.0, decay: float = 0.85,
                 schedule: str = "exponential", batch_size: int = 1,
                 shuffle: bool = True, seed: int = 0):
        if schedule not in _SCHEDULES:
            raise ValueError(f"unknown schedule {schedule!r}; "
                             f"expected one of {sorted(_SCHEDULES)}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if not learning_rate > 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")
        self.learning_rate = learning_rate
        self.decay = decay
        self.schedule = schedule
        self.batch_size = batch_size
        self.shuffle = shuffle
        self.seed = seed

    def optimize(self, x0, evaluate, tolerance=1e-6, max_iterations=30,
                 callback=None):
        x = evaluate._check(np.array(x0, dtype=np.float64))
        d, t = evaluate.data, evaluate.data.table
        f, _ = evaluate(x)
        best_x, best_f = x.copy(), f
        if d.n_samples == 0:
            return OptimizeResult(x=best_x, value=best_f, iterations=0,
                                  converged=True, reason="converged")

        l2 = 1.0 / evaluate.sigma2 if evaluate.sigma2 is not None else 0.0
        order = np.arange(d.n_samples, dtype=np.int64)
        rng_state = np.int64(self.seed % 2147483646 + 1)
        step = np.int64(0)
        epochs = 0
        reason = "max_iterations"

        while epochs < max_iterations:
            if self.shuffle:
                rng_state = _shuffle(order, rng_state)
            step = _sgd_epoch(
                x, order, d.labels, d.ptr, d.feats, d.vals,
                t.ptr, t.label, t.index, d.ref_log, d.has_ref, d.n_labels,
                step, np.float64(self.learning_rate), np.float64(self.decay),
                np.int32(_SCHEDULES[self.schedule]),
                np.int64(self.batch_size), np.float64(l2))
            epochs += 1

            f_prev = f
            f, _ = evaluate(x)
            if f > best_f:
                best_x, best_f = x.copy(), f

            if callback is not None and callback(epochs, x, f):
                reason = "callback"
                break
            if abs(f_prev - f) / max(abs(f), 1.0) < tolerance:
                reason = "converged"
                break

        return OptimizeResult(x=best_x, value=best_f, iterations=epochs,
                              converged=reason == "converged", reason=reason)


# ── string tables ────────────────────────────────────────────────────────────


def _pack_strings(strings: Iterable[str]) -> tuple[np.ndarray, np.ndarray]:
    """UTF-8 bytes of all strings back to back, plus n + 1 start offsets.

    Fixed-width ``np.str_`` arrays drop trailing NULs; raw bytes keep every
    name exactly.
    """
    encoded = [s.encode("utf-8") for s in strings]
    offsets = np.zeros(len(encoded) + 1, np.int64)
    offsets[1:] = np.cumsum([len(b) for b in encoded], dtype=np.int64)
    data = np.frombuffer(b"".join(encoded), dtype=np.uint8)
    return data, offsets


def _unpack_strings(data, offsets, path: str) -> list[str]:
    data = np.asarray(data)
    offsets = np.asarray(offsets)
    if (data.ndim != 1 or data.dtype != np.uint8 or offsets.ndim != 1
            or offsets.dtype.kind not in "iu" or len(offsets) == 0
            or offsets[0] != 0 or offsets[-1] != len(data)
            or np.any(np.diff(offsets) < 0)):
        raise CorruptModelFile(f"{path}: malformed string table")
    raw = data.tobytes()
    return [raw[a:b].decode("utf-8")
            for a, b in zip(offsets[:-1].tolist(), offsets[1:].tolist())]


# ── model ────────────────────────────────────────────────────────────────────


class Distribution:
    """Probability of every known label for one observation."""

    __slots__ = ("_labels", "probs")

    def __init__(self, labels: Interner, probs: np.ndarray):
        self._labels = labels
        self.probs = probs

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def __getitem__(self, label: str) -> float:
        i = self._labels.lookup(label)
        return 0.0 if i is None else float(self.probs[i])

    def __len__(self) -> int:
        return len(self.probs)

    def __iter__(self) -> Iterator[tuple[str, float]]:
        return zip(self._labels, (float(p) for p in self.probs))

    def ranked(self) -> list[tuple[str, float]]:
        order = np.argsort(-self.probs, kind="stable")
        return [(self._labels.resolve(int(i)), float(self.probs[i]))
                for i in order]

    @property
    def best(self) -> Optional[str]:
        if len(self.probs) == 0:
            return None
        return self._labels.resolve(int(np.argmax(self.probs)))


class MaxEnt:
    """Trained log-linear classifier.

    ::

        model = MaxEnt.train(observations, sigma2=1.0)
        model.classify(obs)["NN"]
    """

    __slots__ = ("labels", "features", "encoder", "weights", "reference",
                 "result", "_table")

    def __init__(self, *, labels: Interner, features: Interner,
                 encoder: JointFeatureEncoder, weights: np.ndarray,
                 reference=None, result: Optional[OptimizeResult] = None):
        weights = np.ascontiguousarray(weights, dtype=np.float64)
        if weights.shape != (len(encoder),):
            raise DimensionMismatch(
                f"{len(encoder)} parameters but weights of shape "
                f"{weights.shape}")
        self.labels, self.features = labels, features
        self.encoder, self.weights = encoder, weights
        self.reference = reference
        self.result = result
        self._table = encoder.feature_table(len(features))

    # ── prediction ────────────────────────────────────────────────────────

    def classify(self, obs: Observation) -> Distribution:
        """Label distribution for *obs*. Unknown feature names are ignored."""
        n_labels = len(self.labels)
        feats, vals = [], []
        for name in obs.features:
            fid = self.features.lookup(name)
            if fid is not None:
                feats.append(fid)
                vals.append(1.0)
        for name, value in obs.real_features:
            fid = self.features.lookup(name)
            if fid is not None:
                feats.append(fid)
                vals.append(value)

        if self.reference is not None:
            ref_log = _reference_log(
                self.reference, obs, self.labels).reshape(1, n_labels)
        else:
            ref_log = np.empty((0, n_labels))

        probs = np.empty((1, n_labels))
        if n_labels:
            t = self._table
            _distributions(self.weights, np.array([0, len(feats)], np.int64),
                           np.array(feats, np.int32),
                           np.array(vals, np.float64),
                           t.ptr, t.label, t.index,
                           ref_log, self.reference is not None, probs)
        return Distribution(self.labels, probs[0])

    def predict(self, obs: Observation) -> Optional[str]:
        return self.classify(obs).best

    def test(self, observations: Iterable[Observation]) -> tuple[int, float]:
        """Evaluate on labeled data. Returns (N, accuracy)."""
        n = correct = 0
        for obs in observations:
            n += 1
            correct += self.predict(obs) == obs.label
        return n, correct / max(n, 1)

    def parameters(self, threshold: float = 0.0
                         ) -> list[tuple[str, str, float]]:
        """``(label, feature, weight)`` for every ``|weight| > threshold``."""
        out = []
        for i, w in enumerate(self.weights):
            if abs(w) > threshold:
                key = self.encoder.resolve(i)
                out.append((self.labels.resolve(key.label),
                            self.features.resolve(key.feature), float(w)))
        return out

    # ── I/O ──────────────────────────────────────────────────────────────

    def save(self, path: str, threshold: float = 0.0):
        """Write a compressed ``.npz``; drops weights with ``|w| <= threshold``.

        The default threshold only drops exact zeros, which never change a
        distribution. The reference model, if any, is not saved.
        """
        keep = np.abs(self.weights) > threshold
        labels, label_offsets = _pack_strings(self.labels)
        features, feature_offsets = _pack_strings(self.features)
        np.savez_compressed(
            path,
            format=np.array([_MAGIC, str(_FORMAT_VERSION)]),
            labels=labels, label_offsets=label_offsets,
            features=features, feature_offsets=feature_offsets,
            keys=self.encoder.keys_array()[keep],
            weights=self.weights[keep],
        )

    @classmethod
    def load(cls, path: str, reference=None) -> MaxEnt:
        """Read a model written by ``save``.

        Raises ``UnknownModelFile`` for files that are not lmaxent models,
        ``CorruptModelFile`` for truncated or inconsistent ones and
        ``DimensionMismatch`` when weights and parameters disagree.
        """
        try:
            archive = np.load(path, allow_pickle=False)
        except (zipfile.BadZipFile, EOFError) as e:
            raise CorruptModelFile(f"{path}: {e}") from e
        except ValueError as e:
            raise UnknownModelFile(f"{path}: not an lmaxent model ({e})") from e
        if not hasattr(archive, "files"):
            raise UnknownModelFile(f"{path}: not an lmaxent model")

        with archive:
            if "format" not in archive.files:
                raise UnknownModelFile(f"{path}: not an lmaxent model")
            try:
                fmt = [str(v) for v in archive["format"]]
                if len(fmt) != 2 or fmt[0] != _MAGIC:
                    raise UnknownModelFile(f"{path}: not an lmaxent model")
                if int(fmt[1]) > _FORMAT_VERSION:
                    raise UnknownModelFile(
                        f"{path}: format version {fmt[1]} is newer than "
                        f"{_FORMAT_VERSION}")
                labels = _unpack_strings(
                    archive["labels"], archive["label_offsets"], path)
                features = _unpack_strings(
                    archive["features"], archive["feature_offsets"], path)
                keys = np.asarray(archive["keys"], dtype=np.int64)
                weights = np.asarray(archive["weights"], dtype=np.float64)
            except KeyError as e:
                raise CorruptModelFile(f"{path}: missing array {e}") from e
            except (zipfile.BadZipFile, zlib.error, EOFError, OSError,
                    ValueError) as e:
                raise CorruptModelFile(f"{path}: {e}") from e

        if keys.ndim != 2 or keys.shape[1] != 2 or weights.ndim != 1:
            raise CorruptModelFile(f"{path}: malformed parameter arrays")
        if len(weights) != len(keys):
            raise DimensionMismatch(
                f"{path}: {len(keys)} parameters but {len(weights)} weights")
        if len(keys) and (keys.min() < 0
                          or keys[:, 0].max() >= len(labels)
                          or keys[:, 1].max() >= len(features)):
            raise CorruptModelFile(f"{path}: parameter ids out of range")
        if not np.all(np.isfinite(weights)):
            raise CorruptModelFile(f"{path}: non-finite weights")

        label_ids, feature_ids = Interner(labels), Interner(features)
        if len(label_ids) != len(labels) or len(feature_ids) != len(features):
            raise CorruptModelFile(f"{path}: duplicate label or feature names")
        try:
            encoder = JointFeatureEncoder.from_keys(keys)
        except MaxEntError as e:
            raise CorruptModelFile(f"{path}: {e}") from e
        if len(encoder) != len(keys):
            raise CorruptModelFile(f"{path}: duplicate parameters")

        label_ids.freeze()
        feature_ids.freeze()
        encoder.freeze()
        return cls(labels=label_ids, features=feature_ids, encoder=encoder,
                   weights=weights, reference=reference)

    # ── training ─────────────────────────────────────────────────────────

    @classmethod
    def train(cls, data, *, optimizer=None, l1=0.0, sigma2=None,
              tolerance=1e-6, max_iterations=300, memory=10,
              learning_rate=1.0, decay=0.85, schedule="exponential",
              batch_size=1, epochs=None, min_count=1, heldout=0,
              early_stopping=0, init_rand_sd=0.0, seed=0, reference=None,
              verbose=2) -> MaxEnt:
        """Train a model.

        *data* is an iterable of ``Observation`` or a ``SampleStore`` (whose
        own reference model is then used). *optimizer* is ``"lbfgs"``,
        ``"owlqn"``, ``"sgd"`` or an ``Optimizer``; by default OWL-QN when
        ``l1 > 0``, L-BFGS otherwise. The last *heldout* observations are
        only used to report accuracy and, with *early_stopping* > 0, to stop
        after that many iterations without held-out improvement; the model
        then keeps the weights of the best held-out iteration.
        """
        if isinstance(data, SampleStore):
            store = data
        else:
            store = SampleStore(reference=reference)
            store.extend(data)

        opt = _make_optimizer(
            optimizer, l1=l1, memory=memory, learning_rate=learning_rate,
            decay=decay, schedule=schedule, batch_size=batch_size, seed=seed)
        if isinstance(opt, SGD):
            max_iterations = epochs if epochs is not None else 30

        store.freeze(min_count=min_count, heldout=heldout)
        evaluator = Evaluator(store, sigma2=sigma2)

        if verbose > 0:
            print(f"\rRead {len(store)} samples: {len(store.labels)} labels, "
                  f"{len(store.features)} features, "
                  f"{evaluator.n_params} parameters "
                  f"(min_count={min_count}, heldout={heldout})",
                  file=sys.stderr)

        if init_rand_sd > 0:
            rng = np.random.RandomState(seed)
            x0 = rng.normal(0, init_rand_sd, evaluator.n_params)
        else:
            x0 = np.zeros(evaluator.n_params)

        t0 = time.time()
        monitor = _Monitor(evaluator, early_stopping, verbose, t0)
        result = opt.optimize(x0, evaluator, tolerance=tolerance,
                              max_iterations=max_iterations, callback=monitor)
        if monitor.best_x is not None:
            # weights with the best held-out accuracy, not the last iterate
            result = replace(result, x=monitor.best_x,
                             value=monitor.best_value)

        if verbose > 0:
            print(f"\rDone: {result.reason} after {result.iterations} "
                  f"iterations, objective {result.value:.4f}"
                  f"  ({time.time() - t0:.1f}s)", file=sys.stderr)

        return cls(labels=store.labels, features=store.features,
                   encoder=store.encoder, weights=result.x,
                   reference=store.reference, result=result)


def _make_optimizer(optimizer, *, l1, memory, learning_rate, decay,
                    schedule, batch_size, seed) -> Optimizer:
    if isinstance(optimizer, Optimizer):
        opt = optimizer
    elif optimizer is None:
        opt = OWLQN(l1, memory) if l1 > 0 else LBFGS(memory)
    elif optimizer == "lbfgs":
        opt = LBFGS(memory)
    elif optimizer == "owlqn":
        opt = OWLQN(l1, memory)
    elif optimizer == "sgd":
        opt = SGD(learning_rate=learning_rate, decay=decay, schedule=schedule,
                  batch_size=batch_size, seed=seed)
    else:
        raise ValueError(f"unknown optimizer {optimizer!r}")
    if l1 > 0 and not opt.supports_l1:
        raise ValueError(f"l1 regularisation requires the owlqn optimizer, "
                         f"not {opt.name}")
    return opt


class _Monitor:
    """Per-iteration progress and held-out early stopping."""

    def __init__(self, evaluator: Evaluator, early_stopping: int,
                 verbose: int, t0: float):
        self.evaluator = evaluator
        self.early_stopping = early_stopping
        self.verbose = verbose
        self.t0 = t0
        self.best_heldout = -1.0
        self.best_x: Optional[np.ndarray] = None
        self.best_value = 0.0
        self.stale = 0

    def __call__(self, iteration: int, x: np.ndarray, value: float) -> bool:
        ev = self.evaluator
        has_heldout = ev.store.heldout is not None
        heldout = None
        if has_heldout and (self.early_stopping or self.verbose > 0):
            heldout = ev.accuracy(x, heldout=True)

        if self.verbose > 0:
            msg = (f"\riter={iteration:<4d} obj={value:.4f}"
                   f"  acc={ev.accuracy(x):.4f}")
            if heldout is not None:
                msg += f"  heldout={heldout:.4f}"
            print(f"{msg}  ({time.time() - self.t0:.1f}s)",
                  end="", file=sys.stderr)

        if self.early_stopping and heldout is not None:
            if heldout > self.best_heldout:
                self.best_heldout, self.stale = heldout, 0
                self.best_x, self.best_value = x.copy(), value
            else:
                self.stale += 1
                return self.stale >= self.early_stopping
        return False
