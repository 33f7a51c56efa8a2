#!/usr/bin/env python3
# tests/test_crf_features.py - Unit tests for crf_features.py

import os
import sys

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import util
import crf_features
from crf_features import extract_features, FeatureSet, get_token_shape


def features_for(text, position=0, groups=crf_features.FEATURE_GROUPS):
    return extract_features(util.tokenize_name(text), position, groups)


class TestTokenShape:
    """Test suite for get_token_shape()"""

    def test_mixed(self):
        assert get_token_shape("O'Brien-2") == "X'Xxxxx-d"

    def test_plain(self):
        assert get_token_shape('John') == 'Xxxx'
        assert get_token_shape('IBM') == 'XXX'
        assert get_token_shape('1st') == 'dxx'

    def test_empty_and_none(self):
        assert get_token_shape('') == ''
        assert get_token_shape(None) is None


class TestStringHelpers:
    """Test suite for the predicate helpers"""

    def test_normalize(self):
        assert crf_features.normalize_token("O'Brien-2") == 'obrien2'

    def test_case_predicates(self):
        assert crf_features.is_capitalized('John')
        assert not crf_features.is_capitalized('john')
        assert crf_features.is_all_caps('IBM')
        assert crf_features.is_all_caps('A.B.')
        assert not crf_features.is_all_caps('123')
        assert crf_features.is_all_lower('van')
        assert not crf_features.is_all_lower('')

    def test_is_numeric(self):
        assert crf_features.is_numeric('1,000.50')
        assert not crf_features.is_numeric('')
        assert not crf_features.is_numeric('3M')

    def test_prefix_suffix(self):
        assert crf_features.get_prefix('kennedy', 3) == 'ken'
        assert crf_features.get_suffix('kennedy', 3) == 'edy'
        assert crf_features.get_prefix('kennedy', 0) is None


class TestFeatureSet:
    """Test suite for FeatureSet"""

    def test_keeps_duplicates_in_order(self):
        fs = FeatureSet()
        fs.add('a')
        fs.add('b', 2)
        fs.add('a', 0.5)
        assert fs.names() == ['a', 'b', 'a']
        assert [f.weight for f in fs] == [1.0, 2.0, 0.5]

    def test_truncates_long_names(self):
        fs = FeatureSet()
        fs.add('token:' + 'x' * 300)
        assert len(fs[0].name) == crf_features.MAX_FEATURE_NAME_LEN

    def test_none_name_ignored(self):
        fs = FeatureSet()
        fs.add(None)
        assert len(fs) == 0


class TestExtractFeatures:
    """Test suite for extract_features()"""

    def test_bias_always_last(self):
        for groups in (crf_features.FEATURE_GROUPS, (), ('shape',)):
            fs = features_for('John Smith', 0, groups)
            assert fs.names()[-1] == 'bias'

    def test_no_groups_only_bias(self):
        fs = features_for('John', 0, ())
        assert fs.names() == ['bias']

    def test_identity(self):
        names = features_for("O'Brien", 0, ('identity',)).names()
        assert names == ["token:O'Brien", "lower:o'brien", 'nopunc:obrien', 'bias']

    def test_identity_skips_empty_nopunc(self):
        names = features_for('&', 0, ('identity',)).names()
        assert names == ['token:&', 'lower:&', 'bias']

    def test_affix_respects_length(self):
        names = features_for('Li', 0, ('affix',)).names()
        assert names == ['prefix_1:l', 'prefix_2:li', 'suffix_1:i', 'suffix_2:li', 'bias']

    def test_affix_uses_normalized_text(self):
        names = features_for("O'Neil", 0, ('affix',)).names()
        assert 'prefix_2:on' in names
        assert 'suffix_4:neil' in names

    def test_case_non_exclusive(self):
        names = features_for('IBM', 0, ('case',)).names()
        assert names == ['is_capitalized', 'is_all_caps', 'bias']

    def test_length_value_and_bucket(self):
        fs = features_for('Kennedy', 0, ('length',))
        assert fs[0] == crf_features.Feature('length', 7.0)
        # 5..9 characters get no bucket
        assert fs.names() == ['length', 'bias']

        assert features_for('A', 0, ('length',)).names() == ['length', 'length:single_char', 'bias']
        assert features_for('Li', 0, ('length',)).names() == ['length', 'length:two_char', 'bias']
        assert features_for('Anna', 0, ('length',)).names() == ['length', 'length:short', 'bias']
        assert features_for('Vanderbilts', 0, ('length',)).names() == ['length', 'length:long', 'bias']

    def test_character(self):
        names = features_for('Jean-Luc.', 0, ('character',)).names()
        # tokenizer strips the trailing dot
        assert names == ['has_punct', 'has_hyphen', 'bias']

        names = features_for('Jr.', 0, ('character',)).names()
        assert names == ['has_punct', 'has_dot', 'ends_with_dot', 'bias']

        names = features_for('1,000', 0, ('character',)).names()
        assert names == ['has_digit', 'has_punct', 'is_numeric', 'bias']

    def test_context_window_and_weights(self):
        fs = features_for('Mr. John Kennedy', 1, ('context',))
        assert list(fs) == [
            crf_features.Feature('prev_1:Mr.', 0.8),
            crf_features.Feature('prev_2:BOS', 0.5),
            crf_features.Feature('next_1:Kennedy', 0.8),
            crf_features.Feature('next_2:EOS', 0.5),
            crf_features.Feature('bias', 1.0),
        ]

    def test_position_buckets(self):
        tokens = util.tokenize_name('A B C D E F')
        buckets = [crf_features.position_bucket(i, 6) for i in range(6)]
        # relative positions 0, .2, .4, .6, .8, 1
        assert buckets == ['early', 'early', 'middle', 'middle', 'late', 'late']

        first = extract_features(tokens, 0, ('position',)).names()
        last = extract_features(tokens, 5, ('position',)).names()
        assert first == ['is_first', 'position:early', 'position_index:0', 'bias']
        assert last == ['is_last', 'position:late', 'position_index:5', 'bias']

    def test_position_index_weight(self):
        fs = features_for('John Smith', 1, ('position',))
        assert crf_features.Feature('position_index:1', 0.5) in list(fs)

    def test_singleton(self):
        names = features_for('Cher', 0, ('position',)).names()
        assert names == ['is_first', 'is_last', 'singleton', 'position_index:0', 'bias']

    def test_group_order_independent_of_argument_order(self):
        a = features_for('John Smith', 0, ('case', 'shape')).names()
        b = features_for('John Smith', 0, ('shape', 'case')).names()
        assert a == b == ['shape:Xxxx', 'is_capitalized', 'bias']

    def test_deterministic(self):
        tokens = util.tokenize_name('Dr. Mary-Ann O\'Brien')
        first = crf_features.extract_sequence_features(tokens)
        second = crf_features.extract_sequence_features(tokens)
        assert [list(f) for f in first] == [list(f) for f in second]

    def test_unknown_group_ignored(self):
        names = features_for('John', 0, ('shape', 'nonsense')).names()
        assert names == ['shape:Xxxx', 'bias']
