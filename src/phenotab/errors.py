"""
Error taxonomy.

Structural problems (ValidationError) fail the triggering operation at once.
Content problems (MappingErrorInfo) are collected across a whole pass and
reported together as one MappingError per strategy. Collection-time problems
are CollectorErrors. TransformError wraps whatever a strategy raised so the
pipeline can carry on with the next strategy.
"""

from __future__ import annotations

import typing
from collections import defaultdict
from dataclasses import dataclass, field


class PhenotabError(Exception):
    """Base class for all errors raised by phenotab."""


# ----------------------
# Structural validation
# ----------------------


class ValidationError(PhenotabError):
    """A SemanticTable violates one of its structural invariants."""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"Table {table!r}: {message}")


class DuplicateColumnOwnership(ValidationError):
    def __init__(self, table: str, column: str, annotations: typing.Sequence[str]):
        self.column = column
        self.annotations = tuple(annotations)
        super().__init__(
            table,
            f"column {column!r} is claimed by more than one annotation: {list(self.annotations)}",
        )


class DanglingAnnotation(ValidationError):
    def __init__(self, table: str, annotations: typing.Sequence[str]):
        self.annotations = tuple(annotations)
        super().__init__(
            table, f"annotations do not match any column: {list(self.annotations)}"
        )


class NoOrManySubjectIdColumns(ValidationError):
    def __init__(self, table: str, found: typing.Sequence[str]):
        self.found = tuple(found)
        super().__init__(
            table,
            f"expected exactly one subject id column, found {len(self.found)}: {list(self.found)}",
        )


class NullSubjectId(ValidationError):
    def __init__(self, table: str, column: str, n_missing: int):
        self.column = column
        self.n_missing = n_missing
        super().__init__(
            table, f"subject id column {column!r} has {n_missing} missing value(s)"
        )


class OrphanedColumnError(ValidationError):
    """Columns supplied with an annotation do not line up with its identifier."""

    def __init__(self, table: str, columns: typing.Sequence[str], when: str):
        self.columns = tuple(columns)
        self.when = when
        super().__init__(table, f"orphaned columns {list(self.columns)} when {when}")


# ----------------------
# Mapping errors
# ----------------------


@dataclass(frozen=True, order=True)
class MappingSuggestion:
    source: str
    target: str

    def __str__(self) -> str:
        return f"{self.source!r} -> {self.target!r}"


@dataclass(frozen=True, order=True)
class MappingErrorInfo:
    """
    One offending cell value in one column of one table.

    Instances are hashable: a set of them deduplicates repeated values.
    """
    column: str
    table: str
    old_value: str
    suggestions: tuple[MappingSuggestion, ...] = field(default=(), compare=False)

    def __str__(self) -> str:
        if not self.suggestions:
            return repr(self.old_value)
        hints = ", ".join(str(s) for s in self.suggestions)
        return f"{self.old_value!r} (possible mappings: {hints})"


class StrategyError(PhenotabError):
    """Base class for errors raised by a Strategy."""


class MappingError(StrategyError):
    """
    Aggregate of every unmapped value a strategy met during one pass.
    """

    def __init__(self, strategy_name: str, message: str, infos: typing.Iterable[MappingErrorInfo]):
        self.strategy_name = strategy_name
        self.message = message
        self.infos = sorted(set(infos))
        super().__init__(self._format())

    def _format(self) -> str:
        grouped: dict[tuple[str, str], list[MappingErrorInfo]] = defaultdict(list)
        for info in self.infos:
            grouped[(info.table, info.column)].append(info)
        lines = [f"{self.strategy_name}: {self.message}"]
        for (table, column), infos in grouped.items():
            values = ", ".join(str(info) for info in infos)
            lines.append(f"  column {column!r} in table {table!r}: {values}")
        return "\n".join(lines)

    @property
    def old_values(self) -> list[str]:
        return [info.old_value for info in self.infos]


class DataProcessingError(StrategyError):
    """A column could not be processed (e.g. cast to its declared type)."""


class CastingError(DataProcessingError):
    def __init__(self, column: str, value: typing.Any, target: str):
        self.column = column
        self.value = value
        self.target = target
        super().__init__(f"Cannot cast value {value!r} in column {column!r} to {target}")


# ----------------------
# Collection errors
# ----------------------


class CollectorError(PhenotabError):
    """Base class for problems met while collecting entities from tables."""


class AmbiguousLinkedColumn(CollectorError):
    def __init__(self, table: str, block_id: str, candidates: typing.Sequence[typing.Any], columns: typing.Sequence[str]):
        self.table = table
        self.block_id = block_id
        self.candidates = tuple(candidates)
        self.columns = tuple(columns)
        names = [getattr(c, "value", c) for c in self.candidates]
        super().__init__(
            f"Table {table!r}: expected at most one column linked to building block "
            f"{block_id!r} with semantics {names}, found {len(self.columns)}: {list(self.columns)}"
        )

    @property
    def count(self) -> int:
        return len(self.columns)


class MissingSubjectIdColumn(CollectorError):
    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table {table!r}: no subject id column declared")


class FieldParseError(CollectorError):
    def __init__(self, subject: str, semantic: typing.Any, value: str, expected: str):
        self.subject = subject
        self.semantic = semantic
        self.value = value
        super().__init__(
            f"Subject {subject!r}: cannot parse {getattr(semantic, 'value', semantic)} "
            f"value {value!r} as {expected}"
        )


class GeneVariantDataError(CollectorError):
    def __init__(self, subject: str, genes: typing.Sequence[str], variants: typing.Sequence[str]):
        self.subject = subject
        self.genes = tuple(genes)
        self.variants = tuple(variants)
        super().__init__(
            f"Subject {subject!r}: cannot interpret {len(self.genes)} gene(s) {list(self.genes)} "
            f"with {len(self.variants)} variant(s) {list(self.variants)}"
        )


class MultiplicityError(CollectorError):
    """More than one distinct value for a single-valued semantic of one subject."""

    def __init__(self, semantic: typing.Any, subject: str, values: typing.Sequence[str]):
        self.semantic = semantic
        self.subject = subject
        self.values = tuple(values)
        super().__init__(
            f"Subject {subject!r}: found {len(self.values)} conflicting values for "
            f"{getattr(semantic, 'value', semantic)}: {list(self.values)}"
        )


# ----------------------
# Wrappers and programmer errors
# ----------------------


class TransformError(PhenotabError):
    """A strategy failed during a pipeline run."""

    def __init__(self, strategy_name: str, cause: Exception):
        self.strategy_name = strategy_name
        self.cause = cause
        super().__init__(f"Strategy {strategy_name!r} failed: {cause}")


class EditorError(RuntimeError):
    """Misuse of a TableEditor."""


class UncommittedEditError(EditorError):
    """A dirty TableEditor was left without commit() or discard()."""


class EditorClosedError(EditorError):
    """A TableEditor was used after commit() or discard()."""


class ValidatorError(PhenotabError):
    """An external gene/variant validator rejected its input."""

    def __init__(self, value: str, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"{value!r}: {reason}")


class BuilderError(PhenotabError):
    """The phenopacket builder could not use a value it was handed."""
