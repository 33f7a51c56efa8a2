#!/usr/bin/env python3
# tests/test_crf_tagger.py - Tests for crf_tagger.py (N-best Viterbi and the pycrfsuite tagger)

import pytest
import os
import sys
from unittest.mock import MagicMock, patch

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

pycrfsuite = pytest.importorskip('pycrfsuite')

import util
import crf_core
from crf_tagger import crf_compute_emission_scores, crf_nbest_viterbi, load_model_handle
from model_registry import ModelRegistry
from name_errors import ModelLoadFailed, ModelNotFound, OutOfMemory
import name_parser


TRAINING_CORPUS = """<NameCollection>
<Name><PrefixMarital>Mr.</PrefixMarital> <GivenName>John</GivenName> <Surname>Kennedy</Surname></Name>
<Name><PrefixMarital>Mrs.</PrefixMarital> <GivenName>Jane</GivenName> <Surname>Smith</Surname></Name>
<Name><GivenName>Mary</GivenName> <Surname>Jones</Surname> <SuffixGenerational>Jr.</SuffixGenerational></Name>
<Name><GivenName>Robert</GivenName> <MiddleInitial>Q</MiddleInitial> <Surname>Public</Surname></Name>
<Name><CorporationName>Acme</CorporationName> <CorporationLegalType>Inc.</CorporationLegalType></Name>
</NameCollection>
"""


class TestEmissionScores:
    """Test suite for crf_compute_emission_scores()"""

    def test_weighted_sum(self):
        features = [{'a': 1.0, 'b': 0.5}, {'b': 2.0}]
        state = {('a', 'X'): 1.0, ('b', 'X'): 2.0, ('b', 'Y'): -1.0}
        emission = crf_compute_emission_scores(features, state, ['X', 'Y'])
        assert emission == [[2.0, -0.5], [4.0, -2.0]]

    def test_unknown_attributes_score_zero(self):
        emission = crf_compute_emission_scores([{'zzz': 1.0}], {}, ['X'])
        assert emission == [[0.0]]


class TestNbestViterbi:
    """Test suite for crf_nbest_viterbi()"""

    def test_best_path_and_order(self):
        labels = ['A', 'B']
        emission = [[1.0, 0.0], [0.0, 2.0]]
        transitions = {('A', 'B'): 1.0, ('B', 'A'): -1.0}
        results = crf_nbest_viterbi(emission, transitions, labels, n_best=4)
        assert results[0] == (['A', 'B'], 4.0)
        assert [r[0] for r in results] == [['A', 'B'], ['B', 'B'], ['A', 'A'], ['B', 'A']]
        scores = [r[1] for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_n_best_limits_results(self):
        emission = [[0.0, 0.0, 0.0]] * 3
        results = crf_nbest_viterbi(emission, {}, ['A', 'B', 'C'], n_best=5)
        assert len(results) == 5
        assert len({tuple(r[0]) for r in results}) == 5

    def test_degenerate_input(self):
        assert crf_nbest_viterbi([], {}, ['A']) == []
        assert crf_nbest_viterbi([[1.0]], {}, ['A'], n_best=0) == []

    def test_single_position(self):
        assert crf_nbest_viterbi([[0.5, 1.5]], {}, ['A', 'B'], n_best=1) == [(['B'], 1.5)]


class TestLoadModelHandle:
    """Test suite for load_model_handle() error mapping"""

    def test_missing_path(self, tmp_path):
        with pytest.raises(ModelNotFound):
            load_model_handle(str(tmp_path / 'missing.crfsuite'))

    def test_empty_bytes(self):
        with pytest.raises(ModelLoadFailed):
            load_model_handle(b'')

    def test_garbage_bytes(self):
        with pytest.raises(ModelLoadFailed):
            load_model_handle(b'this is not a crfsuite model')

    @pytest.mark.parametrize('failure', [
        AttributeError("'NoneType' object has no attribute 'groups'"),
        IndexError('list index out of range'),
        KeyError('LABELS'),
    ])
    def test_unreadable_dump(self, failure):
        tagger = MagicMock()
        tagger.labels.return_value = ['A']
        tagger.info.side_effect = failure
        with patch('crf_tagger.pycrfsuite.Tagger', return_value=tagger):
            with pytest.raises(ModelLoadFailed) as excinfo:
                load_model_handle(b'lCRF0000')
        assert type(failure).__name__ in str(excinfo.value)
        tagger.close.assert_called_once()

    def test_non_integer_ids_in_dump(self):
        tagger = MagicMock()
        tagger.labels.return_value = ['A']
        tagger.info.return_value = MagicMock(labels={'A': '0'}, attributes={'bias': 'oops'})
        with patch('crf_tagger.pycrfsuite.Tagger', return_value=tagger):
            with pytest.raises(ModelLoadFailed):
                load_model_handle(b'lCRF0000')

    def test_memory_error_still_out_of_memory(self):
        tagger = MagicMock()
        tagger.info.side_effect = MemoryError()
        with patch('crf_tagger.pycrfsuite.Tagger', return_value=tagger):
            with pytest.raises(OutOfMemory):
                load_model_handle(b'lCRF0000')


class TestCrfsuiteIntegration:
    """Train a real model, load it and decode with it."""

    @pytest.fixture(autouse=True)
    def default_config(self):
        with patch('util.get_config_data', return_value=(util.get_default_config_data(), '')):
            name_parser._default_parser = None
            yield
        name_parser._default_parser = None

    @pytest.fixture(scope='class')
    def model_path(self, tmp_path_factory):
        path = str(tmp_path_factory.mktemp('models') / 'person.crfsuite')
        config = crf_core.TrainingConfig(c2=0.01, max_iterations=50)
        result = crf_core.train_model(crf_core.parse_corpus(TRAINING_CORPUS), path, config)
        assert result.success, result.error_message
        return path

    def test_load_from_path_and_bytes(self, model_path):
        handle, labels, attrs = load_model_handle(model_path)
        assert labels.frozen and attrs.frozen
        assert 'GivenName' in labels
        assert attrs.count() > 0
        with open(model_path, 'rb') as f:
            data = f.read()
        assert handle.size == len(data)
        _, labels2, _ = load_model_handle(data)
        assert labels2.strings() == labels.strings()

    def test_decode(self, model_path):
        registry = ModelRegistry()
        model = registry.load('person', model_path, version='test-1')
        result = name_parser.decode('Mr. John Kennedy', model)

        assert [t.text for t in result.tokens] == ['Mr.', 'John', 'Kennedy']
        assert [t.label for t in result.tokens] == ['PrefixMarital', 'GivenName', 'Surname']
        assert 0.0 < result.overall_confidence <= 1.0
        assert all(0.0 <= t.confidence <= 1.0 for t in result.tokens)
        assert result.model_version == 'test-1'

    def test_multiline_label_text(self, tmp_path):
        """A label spanning lines in the corpus still yields a loadable model."""
        corpus = crf_core.parse_corpus(TRAINING_CORPUS.replace(
            '<CorporationName>Acme</CorporationName>',
            '<CorporationName>Acme\n  &amp;\tSons</CorporationName>'))
        path = str(tmp_path / 'company.crfsuite')
        result = crf_core.train_model(corpus, path, crf_core.TrainingConfig(max_iterations=20))
        assert result.success, result.error_message

        model = ModelRegistry().load('company', path)
        assert model.attrs.to_id('token:Acme & Sons') is not None
        assert len(name_parser.decode('Acme Inc.', model).tokens) == 2

    def test_decode_unseen_words(self, model_path):
        model = ModelRegistry().load('person', model_path)
        result = name_parser.decode('Zebulon Quixote', model)
        assert len(result.tokens) == 2

    def test_nbest(self, model_path):
        model = ModelRegistry().load('person', model_path)
        results = name_parser.NameParser().decode_nbest('Jane Smith', model, n_best=3)
        assert len(results) == 3
        assert all(len(labels) == 2 for labels, _ in results)
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)
