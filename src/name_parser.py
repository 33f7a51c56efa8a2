#!/usr/bin/env python3
"""
name_parser.py - Decode name strings with a trained CRF model

================================================================================
OVERVIEW
================================================================================

    "Mr. John Kennedy Jr."
        │  util.tokenize_name()
        ▼
    ['Mr.', 'John', 'Kennedy', 'Jr.']
        │  crf_core.build_instance()   (unknown features dropped)
        ▼
    Instance
        │  tagger.viterbi()
        ▼
    [PREFIX, GIVEN, SURNAME, SUFFIX]   label ids → label strings
        │  LABEL_RENAMES
        ▼
    ParseResult: Mr./PrefixMarital John/GivenName Kennedy/Surname Jr./SuffixGenerational
        │  to_columns()
        ▼
    ParsedNameColumns(prefix='Mr.', given_name='John', surname='Kennedy', suffix='Jr.')

The decode path never mutates the model, so any number of threads may
decode against the same Model concurrently.

================================================================================
"""

import time
import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

import orjson

import util
from crf_core import build_instance
from crf_features import FEATURE_GROUPS
from crf_tagger import CrfsuiteTagger
from name_errors import EmptyInput, ModelNotLoaded, PredictionError

logger = logging.getLogger(__name__)


UNKNOWN_LABEL = 'Unknown'

# Internal model labels → public component names. Labels not listed here
# (e.g. the probablepeople-style names used in the training corpora) pass
# through unchanged.
LABEL_RENAMES = {
    'GIVEN': 'GivenName',
    'SURNAME': 'Surname',
    'MIDDLE': 'MiddleName',
    'PREFIX': 'PrefixMarital',
    'SUFFIX': 'SuffixGenerational',
    'NICKNAME': 'Nickname',
    'TITLE': 'PrefixOther',
}

COLUMN_NAMES = (
    'prefix',
    'given_name',
    'middle_name',
    'surname',
    'suffix',
    'nickname',
    'corporation_name',
    'corporation_type',
    'organization',
    'other',
)

LABEL_COLUMNS = {
    'GivenName': 'given_name',
    'FirstInitial': 'given_name',
    'MiddleName': 'middle_name',
    'MiddleInitial': 'middle_name',
    'Surname': 'surname',
    'LastInitial': 'surname',
    'Nickname': 'nickname',
    'CorporationName': 'corporation_name',
    'ShortForm': 'corporation_name',
    'CorporationLegalType': 'corporation_type',
    'CorporationNameOrganization': 'organization',
    'CorporationNameAndCompany': 'organization',
    'CorporationCommitteeType': 'organization',
    'CorporationNameBranchType': 'organization',
    'CorporationNameBranchIdentifier': 'organization',
}


@dataclass(frozen=True)
class ParsedToken:
    text: str
    label: str
    confidence: Optional[float]
    start_pos: int
    end_pos: int


@dataclass(frozen=True)
class ParseResult:
    tokens: List[ParsedToken]
    overall_confidence: float
    model_version: str
    processing_time_ms: float


@dataclass(frozen=True)
class ParsedNameColumns:
    prefix: Optional[str] = None
    given_name: Optional[str] = None
    middle_name: Optional[str] = None
    surname: Optional[str] = None
    suffix: Optional[str] = None
    nickname: Optional[str] = None
    corporation_name: Optional[str] = None
    corporation_type: Optional[str] = None
    organization: Optional[str] = None
    other: Optional[str] = None

    def as_dict(self):
        return asdict(self)


def rename_label(label):
    return LABEL_RENAMES.get(label, label)


def map_label_id(label_id, model):
    """Label id → public component name ('Unknown' for ids outside the model)."""
    label = model.labels.to_string(label_id)
    if label is None:
        return UNKNOWN_LABEL
    return rename_label(label)


class NameParser:
    """
    Decoder: turns text into a ParseResult using a loaded Model.

    Args:
        tagger: Tagger collaborator with viterbi(model, instance) → TaggerOutput
                (default: CrfsuiteTagger).
        groups: Feature groups; must be the groups the model was trained with.
    """

    def __init__(self, tagger=None, groups=FEATURE_GROUPS):
        self.tagger = tagger if tagger is not None else CrfsuiteTagger()
        self.groups = tuple(groups)

    @classmethod
    def from_config(cls, config_data=None, tagger=None):
        """Parser using the "feature_groups" setting shared with the trainer."""
        if config_data is None:
            config_data, _ = util.get_config_data()
        return cls(tagger, config_data.get('feature_groups', FEATURE_GROUPS))

    def _prepare(self, text, model):
        if model is None or not model.is_loaded:
            raise ModelNotLoaded('CRF model is not loaded')
        tokens = util.tokenize_name(text)
        if not tokens:
            raise EmptyInput('No tokens to label')
        return tokens, build_instance(tokens, model.attrs, groups=self.groups)

    def decode(self, text, model):
        """
        Label every token of `text`.

        Raises:
            ModelNotLoaded: model is None or not loaded.
            EmptyInput: text has no tokens after tokenization.
            PredictionError: the tagger failed.
        """
        start_time = time.perf_counter()
        tokens, instance = self._prepare(text, model)

        output = self.tagger.viterbi(model, instance)
        label_ids = list(output.label_ids)
        if len(label_ids) != len(tokens):
            raise PredictionError(f'Tagger returned {len(label_ids)} labels for {len(tokens)} tokens')
        marginals = getattr(output, 'marginals', None)

        parsed = []
        for i, (token, label_id) in enumerate(zip(tokens, label_ids)):
            parsed.append(ParsedToken(
                text=token.text,
                label=map_label_id(label_id, model),
                confidence=marginals[i] if marginals else None,
                start_pos=token.start_char,
                end_pos=token.end_char,
            ))

        elapsed_ms = (time.perf_counter() - start_time) * 1000.0
        result = ParseResult(
            tokens=parsed,
            overall_confidence=output.score,
            model_version=model.version or 'unknown',
            processing_time_ms=elapsed_ms,
        )
        logger.debug(f'Parsed name "{text}" with confidence {result.overall_confidence:.2f} in {elapsed_ms:.1f} ms')
        return result

    def decode_nbest(self, text, model, n_best=5):
        """
        Top-N labelings of `text` as (component names, score), best first.
        Scores are unnormalized path scores, comparable only within one call.
        """
        tokens, instance = self._prepare(text, model)
        results = []
        for labels, score in self.tagger.nbest(model, instance, n_best):
            results.append(([rename_label(label) for label in labels], score))
        return results


_default_parser = None


def _parser():
    global _default_parser
    if _default_parser is None:
        _default_parser = NameParser.from_config()
    return _default_parser


def decode(text, model):
    """decode() with the default pycrfsuite-backed parser (feature groups from config)."""
    return _parser().decode(text, model)


# ═══════════════════════════════════════════════════════════════════════════════
# PROJECTIONS
# ═══════════════════════════════════════════════════════════════════════════════

def label_column(label):
    if label.startswith('Prefix'):
        return 'prefix'
    if label.startswith('Suffix'):
        return 'suffix'
    return LABEL_COLUMNS.get(label, 'other')


def to_columns(result):
    """
    Bucket the tokens of a ParseResult by component column.

    Tokens landing in the same column are joined with single spaces in
    token order; columns without tokens stay None.
    """
    buckets = {}
    for token in result.tokens:
        buckets.setdefault(label_column(token.label), []).append(token.text)
    return ParsedNameColumns(**{column: ' '.join(texts) for column, texts in buckets.items()})


def result_to_dict(result):
    return {
        'tokens': [{'text': t.text, 'label': t.label} for t in result.tokens],
        'confidence': result.overall_confidence,
        'model_version': result.model_version,
    }


def to_cache_record(text, result):
    """Row for the parsed-names cache kept by the datastore collaborator."""
    return {
        'original_text': text,
        'parsed_components': orjson.dumps(result_to_dict(result)).decode('utf-8'),
        'model_version': result.model_version,
        'processing_time_ms': int(result.processing_time_ms),
    }


def cache_parse_result(store, text, result, config_data=None):
    """
    Hand the cache row to store.save_parse_result() when "cache_enabled" is
    set in the configuration.

    Returns:
        True if a row was written.
    """
    if text is None or result is None:
        return False
    if config_data is None:
        config_data, _ = util.get_config_data()
    if not config_data.get('cache_enabled', False):
        return False

    store.save_parse_result(to_cache_record(text, result))
    logger.debug(f'Cached parse of "{text}" (model {result.model_version})')
    return True


# ─── Host entry points ────────────────────────────────────────────────

def parse_name_rows(text, model, parser=None):
    """(token, label) rows; [] for None input."""
    if text is None:
        return []
    result = (parser or _parser()).decode(text, model)
    return [(t.text, t.label) for t in result.tokens]


def tag_name_json(text, model, parser=None):
    """JSON document bytes; None for None input."""
    if text is None:
        return None
    result = (parser or _parser()).decode(text, model)
    return orjson.dumps(result_to_dict(result))


def parse_name_parts(text, model, parser=None):
    """ParsedNameColumns; None for None input."""
    if text is None:
        return None
    return to_columns((parser or _parser()).decode(text, model))
