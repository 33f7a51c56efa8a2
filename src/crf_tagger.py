#!/usr/bin/env python3
"""
crf_tagger.py - Tagger collaborator backed by pycrfsuite

================================================================================
OVERVIEW
================================================================================

Wraps a trained crfsuite model for decoding:

    load_model_handle(source)      path or bytes → (handle, labels, attrs)
    CrfsuiteTagger.viterbi(...)    best label-id sequence + probability
    crf_nbest_viterbi(...)         top-N label sequences (pure Python)

pycrfsuite.Tagger keeps the "current instance" as internal state, so one
Tagger cannot be shared between threads. The handle opens one Tagger per
thread from the same model bytes.

================================================================================
"""

import os
import heapq
import logging
import threading
from collections import namedtuple

import pycrfsuite

from crf_core import instance_to_xseq
from crf_dictionary import Dictionary
from name_errors import ModelLoadFailed, ModelNotFound, OutOfMemory, PredictionError

logger = logging.getLogger(__name__)


TaggerOutput = namedtuple('TaggerOutput', ['label_ids', 'score', 'marginals'])
TaggerOutput.__new__.__defaults__ = (None,)


class CrfsuiteModelHandle:
    """
    Opaque, read-only handle on one trained crfsuite model.

    Holds the serialized model bytes, the state/transition weights used by
    N-best decoding, and one pycrfsuite.Tagger per thread.
    """

    def __init__(self, data, state_features, transitions, labels):
        self._data = data
        self.state_features = state_features
        self.transitions = transitions
        self.labels = labels
        self._local = threading.local()

    @property
    def size(self):
        return len(self._data)

    def tagger(self):
        tagger = getattr(self._local, 'tagger', None)
        if tagger is None:
            tagger = pycrfsuite.Tagger()
            tagger.open_inmemory(self._data)
            self._local.tagger = tagger
        return tagger


def _read_source(source):
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    path = os.fspath(source)
    if not os.path.exists(path):
        raise ModelNotFound(f'Model file not found: {path}')
    with open(path, 'rb') as f:
        return f.read()


def _read_model_dump(tagger):
    """
    tagger.info() with its parse failures reported as ModelLoadFailed.

    info() re-parses crfsuite's text dump; a model whose attribute names
    contain line breaks makes that parser fail with AttributeError or
    IndexError rather than ValueError.
    """
    try:
        info = tagger.info()
        # label and attribute ids must be integers
        for mapping in (info.labels, info.attributes):
            for value in mapping.values():
                int(value)
    except MemoryError:
        raise
    except Exception as e:
        raise ModelLoadFailed(f'Unreadable CRF model dump: {type(e).__name__}: {e}') from e
    return info


def load_model_handle(source):
    """
    Open a crfsuite model and extract its dictionaries.

    Args:
        source: Path to a model file, or the model bytes (e.g. a blob
                fetched from the datastore).

    Returns:
        Tuple of (handle, labels, attrs): a CrfsuiteModelHandle and the frozen
        label and attribute Dictionary of the model.

    Raises:
        ModelNotFound: The path does not exist.
        ModelLoadFailed: The bytes are empty or not a crfsuite model.
        OutOfMemory: Allocation failed while loading.
    """
    try:
        data = _read_source(source)
        if not data:
            raise ModelLoadFailed('Model data is empty')

        tagger = pycrfsuite.Tagger()
        try:
            tagger.open_inmemory(data)
            label_list = tagger.labels()
            info = _read_model_dump(tagger)
        finally:
            tagger.close()
    except MemoryError as e:
        raise OutOfMemory('Out of memory while loading CRF model') from e
    except (ValueError, OSError) as e:
        raise ModelLoadFailed(f'Malformed CRF model: {e}') from e

    labels = Dictionary.from_mapping(info.labels) if info.labels else Dictionary(label_list).freeze()
    attrs = Dictionary.from_mapping(info.attributes)
    handle = CrfsuiteModelHandle(data, info.state_features, info.transitions, labels.strings())

    logger.debug(f'Opened CRF model: {len(data):,} bytes, {labels.count()} labels, {attrs.count():,} attributes')
    return handle, labels, attrs


class CrfsuiteTagger:
    """Default tagger collaborator: Viterbi decoding through pycrfsuite."""

    def __init__(self, with_marginals=True):
        self.with_marginals = with_marginals

    def viterbi(self, model, instance):
        """
        Decode one instance against a loaded model.

        Returns:
            TaggerOutput(label_ids, score, marginals). score is the
            probability of the predicted sequence; marginals are the
            per-token marginal probabilities of the predicted labels.

        Raises:
            PredictionError: pycrfsuite failed or returned unknown labels.
        """
        xseq = instance_to_xseq(instance, model.attrs)
        try:
            tagger = model.handle.tagger()
            tagger.set(xseq)
            yseq = tagger.tag()
            score = tagger.probability(yseq)
            marginals = None
            if self.with_marginals:
                marginals = [tagger.marginal(y, i) for i, y in enumerate(yseq)]
        except (ValueError, RuntimeError) as e:
            raise PredictionError(f'CRF tagging failed: {e}') from e

        label_ids = []
        for y in yseq:
            lid = model.labels.to_id(y)
            if lid is None:
                raise PredictionError(f'Tagger returned a label missing from the model dictionary: {y!r}')
            label_ids.append(lid)

        return TaggerOutput(label_ids, score, marginals)

    def nbest(self, model, instance, n_best=5):
        """Top-N (label strings, score) sequences, best first."""
        xseq = instance_to_xseq(instance, model.attrs)
        handle = model.handle
        emission = crf_compute_emission_scores(xseq, handle.state_features, handle.labels)
        return crf_nbest_viterbi(emission, handle.transitions, handle.labels, n_best)


# ─── CRF N-best Viterbi ───────────────────────────────────────────────

def crf_compute_emission_scores(features, state_features, labels):
    """Compute emission scores for each position and label.

    Args:
        features: List of {attribute: weight} dicts (one per position)
        state_features: Dict of (attribute, label) → weight from tagger.info()
        labels: List of label strings

    Returns:
        2D list: emission[t][label_idx] = score for label at position t
    """
    n_labels = len(labels)
    emission = [[0.0] * n_labels for _ in range(len(features))]

    for t, feat_dict in enumerate(features):
        for attr, value in feat_dict.items():
            for j, label in enumerate(labels):
                weight = state_features.get((attr, label), 0.0)
                if weight != 0.0:
                    emission[t][j] += weight * value

    return emission


def crf_nbest_viterbi(emission, transitions, labels, n_best=5):
    """Top-N label sequences by unnormalized path score, best first.

    Args:
        emission: emission[t][j] = score of labels[j] at position t
        transitions: Dict of (from_label, to_label) → weight
        labels: List of label strings
        n_best: Number of sequences to return

    Returns:
        List of (labels_list, score) tuples.
    """
    if not emission or not labels or n_best <= 0:
        return []

    n_labels = len(labels)
    trans = [[transitions.get((a, b), 0.0) for b in labels] for a in labels]

    # beams[j] = up to n_best (score, path) pairs ending in label j
    beams = [[(emission[0][j], (j,))] for j in range(n_labels)]
    for scores in emission[1:]:
        beams = [
            heapq.nlargest(n_best, (
                (score + trans[prev][curr] + scores[curr], path + (curr,))
                for prev in range(n_labels)
                for score, path in beams[prev]
            ), key=lambda c: c[0])
            for curr in range(n_labels)
        ]

    best = heapq.nlargest(n_best, (c for beam in beams for c in beam), key=lambda c: c[0])
    return [([labels[i] for i in path], score) for score, path in best]
