import copy
import os
import logging
from dataclasses import dataclass

import orjson

logger = logging.getLogger(__name__)


# ─── Tokenization ─────────────────────────────────────────────────────

# Tokens that keep their trailing dot. Matched case-sensitively against the
# token as it stands while trailing punctuation is being stripped.
ABBREVIATIONS = frozenset({
    'Jr.', 'Sr.', 'Dr.', 'Mr.', 'Ms.', 'Mrs.',
    'Inc.', 'Corp.', 'Co.', 'Ltd.', 'Esq.',
})

TRAILING_PUNCTUATION = (',', '.')


@dataclass(frozen=True)
class Token:
    """One token of a name string.

    start_char/end_char are offsets into the original input; end_char is
    exclusive and covers the cleaned text only.
    """
    text: str
    position: int
    start_char: int
    end_char: int
    is_first: bool
    is_last: bool


def clean_token(raw):
    """Strip trailing commas/dots, keeping the dot of known abbreviations.

    Example:
        clean_token('Kennedy,')  → 'Kennedy'
        clean_token('Jr.,')      → 'Jr.'
        clean_token('J.')        → 'J'
        clean_token('.,')        → ''
    """
    token = raw
    while token and token.endswith(TRAILING_PUNCTUATION):
        if token.endswith('.') and token in ABBREVIATIONS:
            break
        token = token[:-1]
    return token


def _split_with_offsets(text):
    """Yield (raw_token, start_offset) for each whitespace-separated chunk."""
    i = 0
    n = len(text)
    while i < n:
        while i < n and text[i].isspace():
            i += 1
        if i >= n:
            break
        start = i
        while i < n and not text[i].isspace():
            i += 1
        yield text[start:i], start


def tokenize_name(text):
    """Tokenize a raw name/company string.

    Tokenization rules:
    - Split on whitespace
    - Strip trailing ',' and '.' repeatedly, except the final '.' of an
      abbreviation in ABBREVIATIONS
    - Tokens that end up empty are dropped and do not consume a position
    - is_first marks index 0, is_last marks the final emitted token

    Example: "Mr. John Kennedy Jr."
      → ['Mr.', 'John', 'Kennedy', 'Jr.']

    Example: "Smith, John A."
      → ['Smith', 'John', 'A']

    Args:
        text: Input string, may be None

    Returns:
        List of Token (empty for None or blank input)
    """
    if not text:
        return []

    kept = []
    for raw, start in _split_with_offsets(text):
        cleaned = clean_token(raw)
        if cleaned:
            kept.append((cleaned, start))

    last = len(kept) - 1
    return [
        Token(text=cleaned, position=i, start_char=start,
              end_char=start + len(cleaned),
              is_first=(i == 0), is_last=(i == last))
        for i, (cleaned, start) in enumerate(kept)
    ]


def tokens_from_texts(texts):
    """Build Token objects from already-split token texts (training corpus).

    No cleaning is applied: corpus tokens are used exactly as annotated.
    Offsets are computed as if the texts were joined by single spaces.
    """
    tokens = []
    offset = 0
    last = len(texts) - 1
    for i, t in enumerate(texts):
        tokens.append(Token(text=t, position=i, start_char=offset,
                            end_char=offset + len(t),
                            is_first=(i == 0), is_last=(i == last)))
        offset += len(t) + 1
    return tokens


# ─── Package / Paths ──────────────────────────────────────────────────

def get_package_name():
    '''
    returns 'crfname-ner'
    '''
    return 'crfname-ner'


def get_homedir():
    '''
    Return the path to the $HOME directory.
    '''
    return os.path.expanduser('~')


def get_user_config_dir():
    '''
    Return the path to the config directory under $HOME.
    Typically, it would be $HOME/.config/crfname-ner
    '''
    base = os.environ.get('XDG_CONFIG_HOME') or os.path.join(get_homedir(), '.config')
    return os.path.join(base, get_package_name())


def get_config_path():
    return os.path.join(get_user_config_dir(), 'config.json')


# ─── Configuration ────────────────────────────────────────────────────

DEFAULT_CONFIG = {
    # slot name → path of a trained crfsuite model
    "models": {},
    "default_model": "generic",
    "cache_enabled": False,
    "training": {
        "c2": 1.0,
        "max_iterations": 100,
        "epsilon": 0.0001,
    },
    # subset of crf_features.FEATURE_GROUPS; must match between training and inference
    "feature_groups": [
        "identity", "shape", "affix", "case", "length",
        "character", "context", "position",
    ],
}


def get_default_config_data():
    return copy.deepcopy(DEFAULT_CONFIG)


def _merge_defaults(config_data, default_config, prefix, warnings):
    for k, default_value in default_config.items():
        key_name = f'{prefix}{k}'
        if k not in config_data:
            warnings.append(f'The key "{key_name}" was not found in {get_config_path()} . Using the default value')
            config_data[k] = copy.deepcopy(default_value)
            continue
        value = config_data[k]
        # ints are acceptable where the default is a float (e.g. "c2": 1)
        if isinstance(default_value, float) and isinstance(value, int) and not isinstance(value, bool):
            config_data[k] = float(value)
            continue
        if type(value) != type(default_value):
            warnings.append(f'Type mismatch found for the key "{key_name}" in {get_config_path()} . Replacing it with the default value')
            config_data[k] = copy.deepcopy(default_value)
            continue
        if isinstance(default_value, dict) and default_value:
            _merge_defaults(value, default_value, f'{key_name}.', warnings)


def get_config_data(config_path=None):
    '''
    Load the config JSON file from $HOME/.config/crfname-ner (or config_path).
    When the file is not present (e.g., on first run), the defaults are
    written there.

    Returns:
        tuple: (config_data, warnings_string) where warnings_string is empty if no warnings
    '''
    if config_path is None:
        config_path = get_config_path()
    default_config = get_default_config_data()

    if not os.path.exists(config_path):
        warning_msg = f'config.json is not found at {config_path} . Writing the default configuration ..'
        logger.warning(warning_msg)
        save_config_data(default_config, config_path)
        return default_config, warning_msg

    try:
        with open(config_path, 'rb') as f:
            config_data = orjson.loads(f.read())
    except orjson.JSONDecodeError as e:
        logger.error(f'Error loading {config_path}')
        logger.error(e)
        logger.error('Using (but not writing) the default configuration ..')
        return default_config, f'Malformed config.json at {config_path}: {e}'

    if not isinstance(config_data, dict):
        warning_msg = f'{config_path} does not contain a JSON object. Using the default configuration'
        logger.warning(warning_msg)
        return default_config, warning_msg

    warnings = []
    _merge_defaults(config_data, default_config, '', warnings)
    for w in warnings:
        logger.warning(w)

    return config_data, '\n'.join(warnings)


def save_config_data(config_data, config_path=None):
    '''
    Save config data to the user config directory.

    Returns:
        bool: True if save was successful, False otherwise
    '''
    if config_path is None:
        config_path = get_config_path()

    try:
        os.makedirs(os.path.dirname(config_path) or '.', exist_ok=True)
        with open(config_path, 'wb') as f:
            f.write(orjson.dumps(config_data, option=orjson.OPT_INDENT_2))
        logger.info(f'Configuration saved successfully to {config_path}')
        return True
    except OSError as e:
        logger.error(f'Error saving config.json to {config_path}')
        logger.error(e)
        return False
