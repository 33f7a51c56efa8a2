#!/usr/bin/env python3
"""
crf_core.py - Core CRF training logic for name labeling

================================================================================
PURPOSE
================================================================================

Everything between a labeled corpus file and a trained model file:

    1. Corpus parsing      <Name><GivenName>Jane</GivenName>...</Name>
    2. Instance building   features → attribute ids, gold labels → label ids
    3. Training            pycrfsuite.Trainer (L2-regularized SGD)

Used by the command-line trainer (crf_train_cli.py) and by tests. The
decode side lives in name_parser.py and shares crf_features.py and
build_instance() with this module, so training and decoding see exactly
the same features.

================================================================================
ARCHITECTURE
================================================================================

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                              crf_core.py                                │
    │   ┌─────────────────┐  ┌──────────────────┐  ┌─────────────────────┐   │
    │   │   Parsing       │  │   Instances      │  │   Training          │   │
    │   │   parse_corpus()│  │   build_instance │  │   train_model()     │   │
    │   │   load_corpus() │  │   Instance       │  │   train_generic_*() │   │
    │   └─────────────────┘  └──────────────────┘  └─────────────────────┘   │
    └─────────────────────────────────────────────────────────────────────────┘
              ↑                      ↑                        ↑
      ┌───────┴─────────┐   ┌────────┴────────┐     ┌─────────┴─────────┐
      │ crf_train_cli.py│   │  name_parser.py │     │   crf_features.py │
      │     (CLI)       │   │    (decoding)   │     │   crf_dictionary  │
      └─────────────────┘   └─────────────────┘     └───────────────────┘

================================================================================
"""

import os
import time
import logging
from collections import Counter, namedtuple
from contextlib import contextmanager
from dataclasses import dataclass
from html import unescape

logger = logging.getLogger(__name__)

import util
from crf_dictionary import Dictionary
from crf_features import FEATURE_GROUPS, extract_sequence_features
from name_errors import CorpusFormatError

# Check for pycrfsuite availability
try:
    import pycrfsuite
    HAS_CRFSUITE = True
except ImportError:
    HAS_CRFSUITE = False
    logger.warning('pycrfsuite not installed. Training will be unavailable.')


PROGRESS_INTERVAL = 500
PLACEHOLDER_LABEL_ID = 0
SEQUENCE_ELEMENT = 'Name'


LabeledToken = namedtuple('LabeledToken', ['text', 'label'])


# ═══════════════════════════════════════════════════════════════════════════════
# CORPUS PARSING
# ═══════════════════════════════════════════════════════════════════════════════
#
# FORMAT
# ──────
#
#     <NameCollection>
#       <Name><PrefixMarital>Mr.</PrefixMarital> <GivenName>John</GivenName>
#             <Surname>Kennedy</Surname></Name>
#       <Name><CorporationName>Acme</CorporationName>
#             <CorporationLegalType>Inc.</CorporationLegalType></Name>
#     </NameCollection>
#
# The element name of each child of <Name> is the gold label, its text
# (entities decoded, whitespace runs collapsed to one space) is the token.
# Anything outside <Name> (wrapper element, XML declaration, comments) is
# skipped. Whitespace anywhere between tags is free.
#
# STATES
# ──────
#
#     OUTSIDE ──<Name>──▶ IN_NAME ──<Label>──▶ IN_LABEL
#        ▲                 │   ▲                   │
#        └────</Name>──────┘   └────</Label>───────┘
#
# ─────────────────────────────────────────────────────────────────────────────

_OUTSIDE = 'outside'
_IN_NAME = 'in_name'
_IN_LABEL = 'in_label'

_SPECIAL_TAGS = (
    ('<!--', '-->'),
    ('<?', '?>'),
    ('<!', '>'),
)


def normalize_token_text(raw):
    """
    Decode character references and collapse whitespace runs.

    Live input is split on whitespace, so a decoded token never contains a
    newline or tab; corpus tokens must not either. Feature names carry the
    token text and crfsuite's model dump is line-oriented.

        normalize_token_text(' Smith\\n&amp; Sons ') → 'Smith & Sons'
        normalize_token_text('O&#39;Brien')         → "O'Brien"
    """
    return ' '.join(unescape(raw).split())


def _line_of(text, pos):
    return text.count('\n', 0, pos) + 1


def _scan_markup(text):
    """
    Split markup into ('text', value, pos) and ('open'|'close'|'empty', name, pos)
    events. Comments, processing instructions and declarations are skipped.
    """
    pos = 0
    n = len(text)
    while pos < n:
        lt = text.find('<', pos)
        if lt < 0:
            yield 'text', text[pos:], pos
            return
        if lt > pos:
            yield 'text', text[pos:lt], pos

        for opener, closer in _SPECIAL_TAGS:
            if text.startswith(opener, lt):
                end = text.find(closer, lt + len(opener))
                if end < 0:
                    raise CorpusFormatError(f'Unterminated {opener} section', _line_of(text, lt))
                pos = end + len(closer)
                break
        else:
            gt = text.find('>', lt + 1)
            next_lt = text.find('<', lt + 1)
            if gt < 0 or (0 <= next_lt < gt):
                raise CorpusFormatError('Unterminated tag', _line_of(text, lt))

            inner = text[lt + 1:gt].strip()
            kind = 'open'
            if inner.startswith('/'):
                kind = 'close'
                inner = inner[1:].strip()
            elif inner.endswith('/'):
                kind = 'empty'
                inner = inner[:-1].strip()

            name = inner.split(None, 1)[0] if inner else ''
            if not name:
                raise CorpusFormatError('Tag without a name', _line_of(text, lt))

            yield kind, name, lt
            pos = gt + 1


def parse_corpus(corpus_text):
    """
    Parse labeled markup into a training corpus.

    Args:
        corpus_text: Full corpus as a string.

    Returns:
        List of labeled sequences; each sequence is a tuple of
        LabeledToken(text, label) in source order. <Name> elements without
        any non-empty token are left out.

    Raises:
        CorpusFormatError: unterminated tags, a tag opened inside a label
            element, mismatched closing tags, nested <Name>, or input ending
            inside an open element.
    """
    corpus = []
    if not corpus_text:
        return corpus

    state = _OUTSIDE
    tokens = []
    label = None
    label_pos = 0
    name_pos = 0
    buffer = []
    dropped = 0

    for kind, value, pos in _scan_markup(corpus_text):
        if state == _OUTSIDE:
            if kind == 'open' and value == SEQUENCE_ELEMENT:
                state = _IN_NAME
                tokens = []
                name_pos = pos
            # wrapper elements and free text are skipped

        elif state == _IN_NAME:
            if kind == 'text' or kind == 'empty':
                continue
            if kind == 'open':
                if value == SEQUENCE_ELEMENT:
                    raise CorpusFormatError(f'Nested <{SEQUENCE_ELEMENT}> element', _line_of(corpus_text, pos))
                state = _IN_LABEL
                label = value
                label_pos = pos
                buffer = []
            elif value == SEQUENCE_ELEMENT:
                if tokens:
                    corpus.append(tuple(tokens))
                else:
                    dropped += 1
                state = _OUTSIDE
            else:
                raise CorpusFormatError(f'Unexpected closing tag </{value}> inside <{SEQUENCE_ELEMENT}>',
                                        _line_of(corpus_text, pos))

        else:  # _IN_LABEL
            if kind == 'text':
                buffer.append(value)
            elif kind == 'close' and value == label:
                token_text = normalize_token_text(''.join(buffer))
                if token_text:
                    tokens.append(LabeledToken(token_text, label))
                state = _IN_NAME
            elif kind == 'close':
                raise CorpusFormatError(f'Mismatched closing tag </{value}>, expected </{label}>',
                                        _line_of(corpus_text, pos))
            else:
                raise CorpusFormatError(f'Tag <{value}> opened inside <{label}>', _line_of(corpus_text, pos))

    if state == _IN_LABEL:
        raise CorpusFormatError(f'Unterminated <{label}> element', _line_of(corpus_text, label_pos))
    if state == _IN_NAME:
        raise CorpusFormatError(f'Unterminated <{SEQUENCE_ELEMENT}> element', _line_of(corpus_text, name_pos))

    if dropped:
        logger.debug(f'Dropped {dropped} empty <{SEQUENCE_ELEMENT}> elements')
    return corpus


def corpus_stats(corpus):
    label_counts = Counter(tok.label for seq in corpus for tok in seq)
    return {
        'sequence_count': len(corpus),
        'total_tokens': sum(len(seq) for seq in corpus),
        'label_counts': dict(label_counts),
    }


def load_corpus(path):
    """
    Load and parse a training corpus file.

    Args:
        path: Path to the UTF-8 corpus file.

    Returns:
        Tuple of (corpus, stats) where:
            - corpus: List of labeled sequences (see parse_corpus)
            - stats: Dictionary with corpus statistics

    Raises:
        FileNotFoundError: If corpus file doesn't exist
        CorpusFormatError: If the markup is malformed
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Corpus file not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        corpus = parse_corpus(f.read())

    stats = corpus_stats(corpus)
    logger.info(f'Loaded {stats["sequence_count"]:,} sequences ({stats["total_tokens"]:,} tokens) from {path}')
    return corpus, stats


def format_training_summary(corpus, examples=5):
    """Human-readable summary: counts plus the first few sequences as text/label."""
    stats = corpus_stats(corpus)
    lines = [
        'Training data summary:',
        f'  Total sequences: {stats["sequence_count"]:,}',
        f'  Total tokens: {stats["total_tokens"]:,}',
        '',
        f'First {min(examples, len(corpus))} examples:',
    ]
    for i, seq in enumerate(corpus[:examples]):
        pairs = ' '.join(f'{tok.text}/{tok.label}' for tok in seq)
        lines.append(f'  [{i + 1}] {pairs}')
    return '\n'.join(lines)


# ═══════════════════════════════════════════════════════════════════════════════
# INSTANCE BUILDING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Instance:
    """
    Model-ready representation of one token sequence.

    items[t] is the list of (attribute_id, weight) for token t, in feature
    order. labels[t] is the gold label id (training) or the placeholder id
    (inference; never decode it).
    """
    items: list
    labels: list
    training: bool = False

    def __len__(self):
        return len(self.items)


def build_instance(tokens, attrs, labels=None, gold=None, groups=FEATURE_GROUPS):
    """
    Convert a token sequence into an Instance.

    ============================================================================
    TRAINING vs INFERENCE
    ============================================================================

        labels given (training):   attrs.get() / labels.get(); unseen feature
                                   names and labels are inserted, the
                                   dictionaries grow.
        labels None  (inference):  attrs.to_id() only; feature names the model
                                   never saw are dropped. Every item gets
                                   PLACEHOLDER_LABEL_ID.

    ============================================================================

    Args:
        tokens: List of util.Token.
        attrs: Attribute Dictionary.
        labels: Label Dictionary for training, None for inference.
        gold: Gold label strings, one per token (training only).
        groups: Enabled feature groups.

    Returns:
        Instance
    """
    training = labels is not None
    if training:
        if gold is None or len(gold) != len(tokens):
            raise ValueError(f'Expected {len(tokens)} gold labels, got {0 if gold is None else len(gold)}')

    items = []
    label_ids = []
    for i, features in enumerate(extract_sequence_features(tokens, groups)):
        item = []
        for name, weight in features:
            if training:
                aid = attrs.get(name)
            else:
                aid = attrs.to_id(name)
                if aid is None:
                    continue
            item.append((aid, weight))
        items.append(item)
        label_ids.append(labels.get(gold[i]) if training else PLACEHOLDER_LABEL_ID)

    return Instance(items=items, labels=label_ids, training=training)


def instance_to_xseq(instance, attrs):
    """
    (attribute_id, weight) items → pycrfsuite feature dicts.

    Repeated attributes are summed; ids missing from attrs are skipped.
    """
    xseq = []
    for item in instance.items:
        feats = {}
        for aid, weight in item:
            name = attrs.to_string(aid)
            if name is not None:
                feats[name] = feats.get(name, 0.0) + weight
        xseq.append(feats)
    return xseq


def build_training_instances(corpus, attrs, labels, groups=FEATURE_GROUPS, progress_callback=None):
    """
    Build one training Instance per labeled sequence.

    Args:
        corpus: List of labeled sequences.
        attrs, labels: Growing dictionaries shared by all instances.
        progress_callback: Optional callback(message), called every
                           PROGRESS_INTERVAL sequences and at the end.
    """
    instances = []
    total = len(corpus)

    for idx, seq in enumerate(corpus):
        tokens = util.tokens_from_texts([tok.text for tok in seq])
        gold = [tok.label for tok in seq]
        instances.append(build_instance(tokens, attrs, labels, gold, groups))

        if (idx + 1) % PROGRESS_INTERVAL == 0 or idx + 1 == total:
            message = f'  Processed {idx + 1:,}/{total:,} sequences'
            logger.debug(message)
            if progress_callback:
                progress_callback(message)

    return instances


# ═══════════════════════════════════════════════════════════════════════════════
# TRAINING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class TrainingConfig:
    c2: float = 1.0                 # L2 regularization
    max_iterations: int = 100
    epsilon: float = 0.0001         # stopping threshold on the improvement ratio
    algorithm: str = 'l2sgd'

    @classmethod
    def from_config(cls, config_data):
        training = (config_data or {}).get('training', {})
        defaults = cls()
        return cls(
            c2=float(training.get('c2', defaults.c2)),
            max_iterations=int(training.get('max_iterations', defaults.max_iterations)),
            epsilon=float(training.get('epsilon', defaults.epsilon)),
        )

    def to_params(self):
        """pycrfsuite parameters. l2sgd names the stopping threshold 'delta'."""
        params = {
            'c2': self.c2,
            'max_iterations': self.max_iterations,
        }
        if self.algorithm == 'l2sgd':
            params['delta'] = self.epsilon
        else:
            params['epsilon'] = self.epsilon
        return params


class TrainingResult:
    """
    Result of CRF training.
    """
    def __init__(self):
        self.success = False
        self.model_path = None
        self.training_time = 0.0
        self.model_size = 0
        self.sequence_count = 0
        self.instance_count = 0
        self.token_count = 0
        self.attribute_count = 0
        self.label_count = 0
        self.last_iteration = None
        self.loss = None
        self.feature_count = None
        self.error_message = None

    def read_model(self):
        """Serialized model bytes (e.g. for storing in the datastore)."""
        if not self.success:
            raise RuntimeError(f'No model was produced: {self.error_message}')
        with open(self.model_path, 'rb') as f:
            return f.read()


if HAS_CRFSUITE:
    class _CallbackTrainer(pycrfsuite.Trainer):
        """pycrfsuite.Trainer forwarding crfsuite's log output line by line."""

        log_callback = None
        _pending = ''

        def message(self, message):
            super().message(message)
            self._pending += message
            *lines, self._pending = self._pending.split('\n')
            for line in lines:
                line = line.rstrip()
                if not line:
                    continue
                logger.debug(line)
                if self.log_callback:
                    self.log_callback(line)


class CrfsuiteTrainer:
    """Default trainer collaborator: writes a crfsuite model file."""

    def __init__(self, verbose=False):
        self.verbose = verbose

    def train(self, instances, attrs, labels, model_path, config, log_callback=None):
        """
        Train on the given instances and write the model to model_path.

        Returns:
            Dict with the trainer's last-iteration statistics (may be empty).
        """
        trainer = _CallbackTrainer(algorithm=config.algorithm, verbose=self.verbose)
        trainer.log_callback = log_callback

        for inst in instances:
            yseq = [labels.to_string(lid) for lid in inst.labels]
            trainer.append(instance_to_xseq(inst, attrs), yseq)

        trainer.set_params(config.to_params())
        trainer.train(model_path)

        return trainer.logparser.last_iteration or {}


@contextmanager
def _target_lock(model_path):
    """Exclusive lock file next to the output model, held for one training run."""
    lock_path = f'{model_path}.lock'
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        raise RuntimeError(f'Another training run is writing {model_path} (lock file {lock_path})')
    try:
        os.write(fd, str(os.getpid()).encode('ascii'))
        os.close(fd)
        yield
    finally:
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass


def train_model(corpus, model_path, config=None, trainer=None, progress_callback=None, groups=FEATURE_GROUPS):
    """
    Train a CRF model from a labeled corpus.

    ============================================================================
    TRAINING PROCESS
    ============================================================================

    1. Converts every labeled sequence into an Instance (dictionaries grow)
    2. Hands the instances to the trainer collaborator
    3. The trainer runs L2-regularized SGD and writes the model file

    ============================================================================

    Args:
        corpus: List of labeled sequences (from parse_corpus/load_corpus).
        model_path: Output path for the model.
        config: TrainingConfig (default: TrainingConfig()).
        trainer: Trainer collaborator (default: CrfsuiteTrainer()).
        progress_callback: Optional callback(message) for progress updates.
        groups: Feature groups; must match the groups used when decoding.

    Returns:
        TrainingResult with training statistics.
    """
    result = TrainingResult()

    if config is None:
        config = TrainingConfig()

    if not corpus:
        result.error_message = "No training data provided"
        return result

    if trainer is None:
        if not HAS_CRFSUITE:
            result.error_message = "pycrfsuite not installed. Install with: pip install python-crfsuite"
            return result
        trainer = CrfsuiteTrainer()

    if progress_callback:
        progress_callback("Converting training data...")

    attrs = Dictionary()
    labels = Dictionary()
    instances = build_training_instances(corpus, attrs, labels, groups, progress_callback)

    result.sequence_count = len(corpus)
    result.instance_count = len(instances)
    result.token_count = sum(len(inst) for inst in instances)
    result.attribute_count = attrs.count()
    result.label_count = labels.count()

    if progress_callback:
        progress_callback(f"Created {result.instance_count:,} training instances")
        progress_callback(f"Attributes: {result.attribute_count:,}, Labels: {result.label_count}")
        progress_callback(f"Training CRF model ({config.algorithm}, c2={config.c2}, "
                          f"max_iterations={config.max_iterations}, epsilon={config.epsilon})...")

    train_start_time = time.time()
    try:
        with _target_lock(model_path):
            info = trainer.train(instances, attrs, labels, model_path, config, progress_callback)
    except (RuntimeError, ValueError, OSError) as e:
        logger.error(f'Training failed: {e}')
        result.error_message = f'Training failed: {e}'
        return result
    result.training_time = time.time() - train_start_time

    if not os.path.exists(model_path):
        result.error_message = f'Trainer did not write a model to {model_path}'
        return result

    result.success = True
    result.model_path = model_path
    result.model_size = os.path.getsize(model_path)

    if info:
        result.last_iteration = info.get('num')
        result.loss = info.get('loss')
        result.feature_count = info.get('active_features')

    logger.info(f'Trained model {model_path} ({result.model_size:,} bytes) in {result.training_time:.2f}s')
    if progress_callback:
        progress_callback(f"Training complete in {result.training_time:.2f}s")

    return result


def train_generic_model(corpus_a, corpus_b, model_path, config=None, trainer=None, progress_callback=None,
                        groups=FEATURE_GROUPS):
    """
    Train one model on the union of two corpora (e.g. person + company).

    The sequences are simply concatenated: no weighting, no deduplication.
    """
    combined = list(corpus_a) + list(corpus_b)
    if progress_callback:
        progress_callback(f"Combined training data: {len(combined):,} sequences")
    return train_model(combined, model_path, config, trainer, progress_callback, groups)


# ═══════════════════════════════════════════════════════════════════════════════
# TRAINING PIPELINES
# ═══════════════════════════════════════════════════════════════════════════════

def run_training_pipeline(corpus_path, model_path, config=None, trainer=None, progress_callback=None,
                          groups=FEATURE_GROUPS):
    """
    Run the complete training pipeline: load corpus → build instances → train.

    Returns:
        Tuple of (result, stats) where result is TrainingResult and stats is
        the corpus statistics dictionary.
    """
    if progress_callback:
        progress_callback("Loading corpus...")

    corpus, stats = load_corpus(corpus_path)

    if progress_callback:
        progress_callback(f"Loaded {stats['sequence_count']:,} sequences, {stats['total_tokens']:,} tokens")

    result = train_model(corpus, model_path, config, trainer, progress_callback, groups)
    return result, stats


def run_generic_training_pipeline(person_path, company_path, model_path, config=None, trainer=None,
                                  progress_callback=None, groups=FEATURE_GROUPS):
    """Load the person and company corpora and train one generic model on both."""
    if progress_callback:
        progress_callback("Loading person and company corpora...")

    person, person_stats = load_corpus(person_path)
    company, company_stats = load_corpus(company_path)

    stats = corpus_stats(person + company)
    stats['person_sequences'] = person_stats['sequence_count']
    stats['company_sequences'] = company_stats['sequence_count']

    result = train_generic_model(person, company, model_path, config, trainer, progress_callback, groups)
    return result, stats
