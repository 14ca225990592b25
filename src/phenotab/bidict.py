"""
Bidirectional label/synonym/identifier lookups for ontologies.

The core only needs two questions answered: "is this an identifier?" and
"what does this string resolve to?". OntologyBiDict answers them from memory
and can be built from an hpotk ontology. BiDictLibrary bundles several
dictionaries of one category (e.g. MONDO and OMIM for diseases); the first
registered dictionary that resolves a value wins.
"""

from __future__ import annotations

import abc
import logging
import typing

import hpotk

LOGGER = logging.getLogger(__name__)


def _key(text: str) -> str:
    return text.strip().lower()


class BiDict(metaclass=abc.ABCMeta):

    @abc.abstractmethod
    def is_id(self, value: str) -> bool:
        """True if `value` is a known identifier of this dictionary."""
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, value: str) -> typing.Optional[str]:
        """
        Case-insensitive lookup: label -> id, synonym -> id, id -> label.
        """
        raise NotImplementedError

    def resolve(self, value: str) -> typing.Optional[typing.Tuple[str, str]]:
        """Return (id, label) for a label, synonym or id; None when unknown."""
        if self.is_id(value):
            label = self.get(value)
            term_id = self.get(label) if label is not None else None
            if term_id is None or label is None:
                return None
            return term_id, label
        term_id = self.get(value)
        if term_id is None:
            return None
        label = self.get(term_id)
        return (term_id, label) if label is not None else None


class OntologyBiDict(BiDict):
    """
    In-memory dictionary for one ontology.

    Parameters
    ----------
    prefix : str
        CURIE prefix of the ontology, e.g. "HP".
    terms : iterable of (term_id, label, synonyms)
    version : str, optional
        Ontology release, reported in phenopacket metadata.
    """

    def __init__(
            self,
            prefix: str,
            terms: typing.Iterable[typing.Tuple[str, str, typing.Iterable[str]]],
            version: typing.Optional[str] = None,
    ):
        self.prefix = prefix
        self.version = version
        self._label_to_id: dict[str, str] = {}
        self._synonym_to_id: dict[str, str] = {}
        self._id_to_label: dict[str, str] = {}
        for term_id, label, synonyms in terms:
            self._id_to_label[_key(term_id)] = label
            self._label_to_id[_key(label)] = term_id
            for synonym in synonyms:
                self._synonym_to_id.setdefault(_key(synonym), term_id)

    def __len__(self) -> int:
        return len(self._id_to_label)

    def __repr__(self) -> str:
        return f"OntologyBiDict(prefix={self.prefix!r}, terms={len(self)}, version={self.version!r})"

    def is_id(self, value: str) -> bool:
        return isinstance(value, str) and _key(value) in self._id_to_label

    def get(self, value: str) -> typing.Optional[str]:
        if not isinstance(value, str):
            return None
        key = _key(value)
        return (
            self._label_to_id.get(key)
            or self._synonym_to_id.get(key)
            or self._id_to_label.get(key)
        )

    @classmethod
    def from_ontology(
            cls,
            ontology: hpotk.MinimalOntology,
            prefix: typing.Optional[str] = None,
    ) -> "OntologyBiDict":
        """
        Build a dictionary from an hpotk ontology.

        Obsolete terms are skipped; their ids become synonyms of the current term.
        Synonyms are taken when the ontology carries them (hpotk.Ontology does,
        hpotk.MinimalOntology does not). With `prefix`, only terms of that prefix
        are included.
        """
        entries = []
        for term in ontology.terms:
            if term.is_obsolete:
                continue
            term_id: hpotk.TermId = term.identifier
            if prefix is not None and term_id.prefix != prefix:
                continue
            synonyms = [str(alt) for alt in term.alt_term_ids]
            for synonym in getattr(term, "synonyms", None) or ():
                synonyms.append(synonym.name)
            entries.append((str(term_id), term.name, synonyms))
        version = getattr(ontology, "version", None)
        bidict = cls(prefix or _common_prefix(entries), entries, version=version)
        LOGGER.info("Loaded %d %s terms (version %s)", len(bidict), bidict.prefix, version)
        return bidict


def _common_prefix(entries: typing.Sequence[typing.Tuple[str, str, typing.Any]]) -> str:
    prefixes = {term_id.split(":", 1)[0] for term_id, _, _ in entries}
    return prefixes.pop() if len(prefixes) == 1 else "MIXED"


class BiDictLibrary(BiDict):
    """
    Several dictionaries for one category, queried in registration order.

    When two dictionaries both resolve a value, the one registered first wins.
    """

    def __init__(self, name: str, bidicts: typing.Sequence[BiDict] = ()):
        self.name = name
        self._bidicts: list[BiDict] = list(bidicts)

    def __repr__(self) -> str:
        return f"BiDictLibrary(name={self.name!r}, bidicts={self._bidicts!r})"

    @property
    def bidicts(self) -> tuple[BiDict, ...]:
        return tuple(self._bidicts)

    def register(self, bidict: BiDict) -> None:
        self._bidicts.append(bidict)

    def is_id(self, value: str) -> bool:
        return any(b.is_id(value) for b in self._bidicts)

    def get(self, value: str) -> typing.Optional[str]:
        for bidict in self._bidicts:
            found = bidict.get(value)
            if found is not None:
                return found
        return None

    def resolve(self, value: str) -> typing.Optional[typing.Tuple[str, str]]:
        for bidict in self._bidicts:
            found = bidict.resolve(value)
            if found is not None:
                return found
        return None
