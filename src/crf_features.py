#!/usr/bin/env python3
"""
crf_features.py - Per-token CRF feature extraction for name labeling

================================================================================
PURPOSE
================================================================================

Turns a token (plus its neighbours in the same name string) into a list of
named, weighted features. The same function is used when building training
instances and when decoding, so a model only ever sees features produced by
this module. Changing a feature name or weight here invalidates every model
trained before the change.

================================================================================
FEATURE NAMES
================================================================================

One delimiter convention everywhere: "group:value" for valued features,
a bare name for boolean ones.

    token:O'Brien      identity       weight 1.0
    lower:o'brien
    nopunc:obrien
    shape:X'Xxxxx      shape
    prefix_2:ob        affix          (lowercased, depunctuated)
    suffix_3:ien
    is_capitalized     case
    length             length         weight = number of characters
    length:short
    has_punct          character
    prev_1:John        context        weight 0.8
    next_2:EOS                        weight 0.5 (sentinel)
    is_first           position
    position:early
    position_index:0                  weight 0.5
    bias               always last

================================================================================
"""

import string
import logging
from collections import namedtuple

logger = logging.getLogger(__name__)


MAX_FEATURE_NAME_LEN = 128

# Feature groups in emission order. 'bias' is not a group: it is always emitted.
FEATURE_GROUPS = (
    'identity',
    'shape',
    'affix',
    'case',
    'length',
    'character',
    'context',
    'position',
)

AFFIX_LENGTHS = (1, 2, 3, 4)

# Length buckets (characters). Exactly one bucket, or none for 5..9.
LENGTH_SINGLE_CHAR = 1
LENGTH_TWO_CHAR = 2
LENGTH_SHORT_MAX = 4
LENGTH_LONG_MIN = 10

CONTEXT_WINDOW = 2
CONTEXT_WEIGHT = 0.8
SENTINEL_WEIGHT = 0.5
BOS = 'BOS'
EOS = 'EOS'

# Relative position thresholds for the early/middle/late buckets
POSITION_EARLY_MAX = 0.33
POSITION_MIDDLE_MAX = 0.67
POSITION_INDEX_WEIGHT = 0.5

# Same set as C's ispunct() in the "C" locale
PUNCTUATION = frozenset(string.punctuation)


Feature = namedtuple('Feature', ['name', 'weight'])


class FeatureSet:
    """
    Insertion-ordered list of features for one token.

    Duplicates are kept: two features with the same name both contribute
    to the model's dot product.
    """

    def __init__(self):
        self._features = []

    def add(self, name, weight=1.0):
        if name is None:
            return
        self._features.append(Feature(name[:MAX_FEATURE_NAME_LEN], float(weight)))

    def names(self):
        return [f.name for f in self._features]

    def __iter__(self):
        return iter(self._features)

    def __len__(self):
        return len(self._features)

    def __getitem__(self, i):
        return self._features[i]

    def __repr__(self):
        return f'FeatureSet({self._features!r})'


# ═══════════════════════════════════════════════════════════════════════════════
# STRING HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def get_token_shape(token):
    """
    Word shape: uppercase → X, lowercase → x, digit → d, others unchanged.

        get_token_shape("O'Brien-2") → "X'Xxxxx-d"
    """
    if token is None:
        return None
    shape = []
    for c in token:
        if c.isupper():
            shape.append('X')
        elif c.islower():
            shape.append('x')
        elif c.isdigit():
            shape.append('d')
        else:
            shape.append(c)
    return ''.join(shape)


def strip_punctuation(text):
    return ''.join(c for c in text if c not in PUNCTUATION)


def normalize_token(token):
    """Lowercase and drop ASCII punctuation: "O'Brien-2" → "obrien2"."""
    return strip_punctuation(token.lower())


def get_prefix(token, length):
    if token is None or length <= 0:
        return None
    return token[:length]


def get_suffix(token, length):
    if token is None or length <= 0:
        return None
    return token[-length:]


def is_capitalized(token):
    return bool(token) and token[0].isupper()


def is_all_caps(token):
    return bool(token) and token.isupper()


def is_all_lower(token):
    return bool(token) and token.islower()


def has_digit(token):
    return any(c.isdigit() for c in token)


def has_punctuation(token):
    return any(c in PUNCTUATION for c in token)


def is_numeric(token):
    """Digits plus '.' and ',' only (e.g. "1,000.50")."""
    if not token:
        return False
    return all(c.isdigit() or c in '.,' for c in token)


# ═══════════════════════════════════════════════════════════════════════════════
# FEATURE GROUPS
# ═══════════════════════════════════════════════════════════════════════════════

def extract_identity_features(text, features):
    features.add(f'token:{text}')
    lower = text.lower()
    features.add(f'lower:{lower}')
    nopunc = strip_punctuation(lower)
    if nopunc:
        features.add(f'nopunc:{nopunc}')


def extract_shape_features(text, features):
    if text:
        features.add(f'shape:{get_token_shape(text)}')


def extract_affix_features(text, features):
    clean = normalize_token(text)
    for n in AFFIX_LENGTHS:
        if n <= len(clean):
            features.add(f'prefix_{n}:{get_prefix(clean, n)}')
    for n in AFFIX_LENGTHS:
        if n <= len(clean):
            features.add(f'suffix_{n}:{get_suffix(clean, n)}')


def extract_case_features(text, features):
    if is_capitalized(text):
        features.add('is_capitalized')
    if is_all_caps(text):
        features.add('is_all_caps')
    if is_all_lower(text):
        features.add('is_all_lower')


def extract_length_features(text, features):
    n = len(text)
    # continuous: the weight carries the value
    features.add('length', n)

    if n == LENGTH_SINGLE_CHAR:
        features.add('length:single_char')
    elif n == LENGTH_TWO_CHAR:
        features.add('length:two_char')
    elif 0 < n <= LENGTH_SHORT_MAX:
        features.add('length:short')
    elif n >= LENGTH_LONG_MIN:
        features.add('length:long')


def extract_character_features(text, features):
    if has_digit(text):
        features.add('has_digit')
    if has_punctuation(text):
        features.add('has_punct')
    if '-' in text:
        features.add('has_hyphen')
    if '.' in text:
        features.add('has_dot')
    if len(text) > 1 and text.endswith('.'):
        features.add('ends_with_dot')
    if is_numeric(text):
        features.add('is_numeric')


def extract_context_features(tokens, position, features, window=CONTEXT_WINDOW):
    n = len(tokens)
    for k in range(1, window + 1):
        i = position - k
        if i >= 0:
            features.add(f'prev_{k}:{tokens[i].text}', CONTEXT_WEIGHT)
        else:
            features.add(f'prev_{k}:{BOS}', SENTINEL_WEIGHT)

    for k in range(1, window + 1):
        i = position + k
        if i < n:
            features.add(f'next_{k}:{tokens[i].text}', CONTEXT_WEIGHT)
        else:
            features.add(f'next_{k}:{EOS}', SENTINEL_WEIGHT)


def position_bucket(position, total):
    """'early' / 'middle' / 'late' third of the sequence (None for one token)."""
    if total <= 1:
        return None
    relative = position / (total - 1)
    if relative < POSITION_EARLY_MAX:
        return 'early'
    elif relative < POSITION_MIDDLE_MAX:
        return 'middle'
    return 'late'


def extract_position_features(token, total, features):
    if token.is_first:
        features.add('is_first')
    if token.is_last:
        features.add('is_last')

    bucket = position_bucket(token.position, total)
    if bucket is None:
        features.add('singleton')
    else:
        features.add(f'position:{bucket}')

    features.add(f'position_index:{token.position}', POSITION_INDEX_WEIGHT)


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINTS
# ═══════════════════════════════════════════════════════════════════════════════

def extract_features(tokens, position, groups=FEATURE_GROUPS):
    """
    Extract CRF features for the token at `position`.

    ============================================================================
    DETERMINISM
    ============================================================================

    The output depends only on (tokens, position, groups). Training and
    decoding both call this function, which is what keeps the feature
    vocabulary of a trained model and of live input identical.

    ============================================================================

    Args:
        tokens: Sequence of util.Token for the whole name string.
        position: Index of the token to describe.
        groups: Enabled feature groups. Order is always FEATURE_GROUPS order,
                regardless of the order given here.

    Returns:
        FeatureSet, with 'bias' as the final feature.
    """
    features = FeatureSet()
    token = tokens[position]
    text = token.text or ''
    enabled = set(groups)

    unknown = enabled.difference(FEATURE_GROUPS)
    if unknown:
        logger.debug(f'Ignoring unknown feature groups: {sorted(unknown)}')

    if 'identity' in enabled:
        extract_identity_features(text, features)
    if 'shape' in enabled:
        extract_shape_features(text, features)
    if 'affix' in enabled:
        extract_affix_features(text, features)
    if 'case' in enabled:
        extract_case_features(text, features)
    if 'length' in enabled:
        extract_length_features(text, features)
    if 'character' in enabled:
        extract_character_features(text, features)
    if 'context' in enabled:
        extract_context_features(tokens, position, features)
    if 'position' in enabled:
        extract_position_features(token, len(tokens), features)

    features.add('bias')
    return features


def extract_sequence_features(tokens, groups=FEATURE_GROUPS):
    """Feature sets for every token of a sequence, in order."""
    return [extract_features(tokens, i, groups) for i in range(len(tokens))]
