#!/usr/bin/env python3
# model_registry.py - Named slots of loaded CRF models (person / company / generic)

import os
import logging
import threading
from dataclasses import dataclass
from typing import Any

import util
from crf_dictionary import Dictionary
from crf_tagger import load_model_handle
from name_errors import ModelError, ModelNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Model:
    """
    A fully loaded model. Never mutated after construction: a reload builds
    a new Model and swaps it into the registry, so a handle obtained from
    get() stays valid for as long as the caller holds it.
    """
    name: str
    version: str
    labels: Dictionary
    attrs: Dictionary
    handle: Any
    model_size: int = 0
    is_loaded: bool = True


class ModelRegistry:
    """
    Holds zero or more independently loaded models by name.

    This object is the single mutation point for load/unload. Lookups are
    lock-free reads of an immutable Model; load() does the expensive work
    outside the lock and only publishes the finished Model under it.

    Example:
        registry = ModelRegistry()
        registry.load('person', '/var/lib/crfname/person.crfsuite', version='2024.1')
        model = registry.get('person')
    """

    def __init__(self, loader=load_model_handle, default_model=None):
        self._loader = loader
        self._lock = threading.Lock()
        self._models = {}
        self.default_model = default_model

    def load(self, name, source, version=None):
        """
        Load a model from a file path or from model bytes into slot `name`,
        replacing any previous model in that slot.

        Raises:
            ModelNotFound: source path does not exist.
            ModelLoadFailed: source is empty or not a valid model.
            OutOfMemory: allocation failed while loading.
        """
        try:
            handle, labels, attrs = self._loader(source)
        except ModelError as e:
            logger.error(f'Failed to load CRF model "{name}": {e}')
            raise

        if version is None:
            version = _default_version(source)

        model = Model(
            name=name,
            version=version,
            labels=labels.freeze(),
            attrs=attrs.freeze(),
            handle=handle,
            model_size=getattr(handle, 'size', 0),
        )

        with self._lock:
            previous = self._models.get(name)
            self._models[name] = model

        if previous is not None:
            logger.info(f'Replaced CRF model "{name}" (version {previous.version} → {model.version})')
        else:
            logger.info(f'Successfully loaded CRF model: {name} (version {model.version})')
        return model

    def load_from_store(self, store, name=None):
        """
        Load a model from the datastore collaborator.

        Args:
            store: Object with fetch_model(name) returning (model_bytes,
                   model_name, version), or None when there is no such model.
                   name=None asks for the active model.
            name: Model name, or None for the active model.
        """
        row = store.fetch_model(name)
        if row is None:
            raise ModelNotFound(f'No CRF model found: {name if name else "active model"}')
        data, db_name, version = row
        return self.load(name or db_name, data, version=version)

    def get(self, name):
        return self._models.get(name)

    def get_default(self):
        """Model in the default slot (config key "default_model"), or None."""
        if self.default_model is None:
            return None
        return self._models.get(self.default_model)

    def unload(self, name):
        """
        Drop the model in slot `name`. Callers still holding the Model keep a
        working handle; its resources are released with the last reference.

        Returns:
            True if a model was removed.
        """
        with self._lock:
            model = self._models.pop(name, None)
        if model is not None:
            logger.info(f'Unloaded CRF model "{name}"')
        return model is not None

    def names(self):
        with self._lock:
            return sorted(self._models)

    def __contains__(self, name):
        return name in self._models

    def __len__(self):
        return len(self._models)


def _default_version(source):
    if isinstance(source, (bytes, bytearray, memoryview)):
        return 'unknown'
    return os.path.basename(os.fspath(source))


def default_registry(config_data=None, loader=load_model_handle):
    """
    Build a registry from the "models" section of the configuration.

    Slots that fail to load are logged and skipped so that one bad model
    does not keep the others from being served.
    """
    if config_data is None:
        config_data, _ = util.get_config_data()

    registry = ModelRegistry(loader, default_model=config_data.get('default_model'))
    for name, path in config_data.get('models', {}).items():
        try:
            registry.load(name, os.path.expanduser(path))
        except ModelError as e:
            logger.warning(f'Skipping model "{name}": {e}')
    return registry
