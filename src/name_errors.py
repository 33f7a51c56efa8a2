#!/usr/bin/env python3
# name_errors.py - Exception hierarchy for the name parsing pipeline

"""
Errors raised by the tokenizer/feature/decoder/training pipeline.

Only structural failures are errors: corpus markup, model loading and
tagger invocation. Tokenization and feature extraction never raise on
token content.

    NameParserError
    ├── InputError
    │   ├── EmptyInput
    │   └── CorpusFormatError
    ├── ModelError
    │   ├── ModelNotFound
    │   ├── ModelLoadFailed
    │   └── ModelNotLoaded
    ├── PredictionError
    └── ResourceError
        └── OutOfMemory
"""


class NameParserError(Exception):
    """Base class for every error raised by this package."""


class InputError(NameParserError):
    pass


class EmptyInput(InputError):
    """Tokenization produced no tokens to label."""


class CorpusFormatError(InputError):
    """
    Malformed training markup.

    Args:
        message: Human readable description.
        line: 1-based line number in the corpus text, if known.
    """

    def __init__(self, message, line=None):
        self.line = line
        if line is not None:
            message = f'{message} (line {line})'
        super().__init__(message)


class ModelError(NameParserError):
    pass


class ModelNotFound(ModelError):
    pass


class ModelLoadFailed(ModelError):
    pass


class ModelNotLoaded(ModelError):
    pass


class PredictionError(NameParserError):
    """The tagger failed to decode an instance."""


class ResourceError(NameParserError):
    pass


class OutOfMemory(ResourceError):
    pass
