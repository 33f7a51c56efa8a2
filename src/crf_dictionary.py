#!/usr/bin/env python3
# crf_dictionary.py - Bidirectional string <-> id dictionary for CRF labels/attributes

import logging

logger = logging.getLogger(__name__)


class Dictionary:
    """
    Dense, bidirectional mapping between strings and integer ids.

    Used for both the label set and the attribute (feature name) set of a
    model. Ids are assigned in insertion order starting at 0.

    Mutability contract:
        - While training, get() inserts unseen strings and the dictionary grows.
        - Once frozen (every dictionary attached to a loaded model), only
          lookups are allowed. get() raises, to_id() returns None for
          unknown strings.

    Example:
        attrs = Dictionary()
        attrs.get('token:John')   # → 0 (inserted)
        attrs.get('bias')         # → 1 (inserted)
        attrs.to_id('token:Jane') # → None
        attrs.to_string(1)        # → 'bias'
    """

    def __init__(self, strings=None):
        self._ids = {}
        self._strings = []
        self._frozen = False
        if strings:
            for s in strings:
                self.get(s)

    @classmethod
    def from_mapping(cls, mapping):
        """
        Build a frozen dictionary from an existing {string: id} mapping,
        e.g. the LABELS/ATTRIBUTES sections of a crfsuite model dump.

        Source ids may be strings ("12") and may have gaps; the order is
        kept but ids are renumbered densely from 0.
        """
        d = cls()
        ordered = sorted(mapping.items(), key=lambda kv: int(kv[1]))
        for s, _ in ordered:
            d.get(s)
        d.freeze()
        return d

    @property
    def frozen(self):
        return self._frozen

    def freeze(self):
        self._frozen = True
        return self

    def get(self, s):
        """Return the id for s, inserting it first if unseen (training only)."""
        i = self._ids.get(s)
        if i is not None:
            return i
        if self._frozen:
            raise RuntimeError(f'Cannot insert {s!r}: dictionary is read-only')
        i = len(self._strings)
        self._ids[s] = i
        self._strings.append(s)
        return i

    def to_id(self, s):
        return self._ids.get(s)

    def to_string(self, i):
        if isinstance(i, int) and 0 <= i < len(self._strings):
            return self._strings[i]
        return None

    def count(self):
        return len(self._strings)

    def strings(self):
        return list(self._strings)

    def __len__(self):
        return len(self._strings)

    def __contains__(self, s):
        return s in self._ids

    def __repr__(self):
        state = 'frozen' if self._frozen else 'growing'
        return f'<Dictionary {len(self._strings)} entries, {state}>'
