"""
Query builders over the annotations and columns of a SemanticTable.

Conditions given for the same field are OR'd, different fields are AND'd:

    table.filter_columns()
        .where_header(SemanticTag.NONE)
        .where_data(SemanticTag.ONSET_AGE, SemanticTag.ONSET_DATETIME)
        .where_dtype(OutputDataType.STRING)
        .names()
"""

from __future__ import annotations

import typing
from dataclasses import dataclass
from enum import Enum

import pandas as pd

from .casting import infer_output_type, is_missing
from .semantics import SeriesAnnotation
from .table import resolve_columns

if typing.TYPE_CHECKING:
    from .table import SemanticTable


class FilterKind(Enum):
    IS = "is"
    IS_NOT = "is_not"
    IS_SOME = "is_some"
    IS_NONE = "is_none"


@dataclass(frozen=True)
class Filter:
    """
    One condition on one field. Plain values passed to `where_*` mean `Filter.is_(value)`.
    """
    kind: FilterKind
    value: typing.Any = None

    @classmethod
    def is_(cls, value: typing.Any) -> "Filter":
        return cls(FilterKind.IS, value)

    @classmethod
    def is_not(cls, value: typing.Any) -> "Filter":
        return cls(FilterKind.IS_NOT, value)

    @classmethod
    def is_some(cls) -> "Filter":
        return cls(FilterKind.IS_SOME)

    @classmethod
    def is_none(cls) -> "Filter":
        return cls(FilterKind.IS_NONE)

    def matches(self, candidate: typing.Any) -> bool:
        if self.kind is FilterKind.IS:
            return candidate == self.value
        if self.kind is FilterKind.IS_NOT:
            return candidate != self.value
        if self.kind is FilterKind.IS_SOME:
            return candidate is not None
        return candidate is None


def _as_filters(conditions: typing.Iterable[typing.Any]) -> list[Filter]:
    return [c if isinstance(c, Filter) else Filter.is_(c) for c in conditions]


class AnnotationFilterQuery:
    """Select annotations of a table by their declared attributes."""

    def __init__(self, table: "SemanticTable"):
        self._table = table
        self._fields: dict[str, list[Filter]] = {}

    def _add(self, field_name: str, conditions: typing.Iterable[typing.Any]) -> "AnnotationFilterQuery":
        self._fields.setdefault(field_name, []).extend(_as_filters(conditions))
        return self

    def where_identifier(self, *conditions: typing.Any) -> "AnnotationFilterQuery":
        return self._add("identifier", conditions)

    def where_header(self, *conditions: typing.Any) -> "AnnotationFilterQuery":
        return self._add("header_semantic", conditions)

    def where_data(self, *conditions: typing.Any) -> "AnnotationFilterQuery":
        return self._add("data_semantic", conditions)

    def where_building_block(self, *conditions: typing.Any) -> "AnnotationFilterQuery":
        return self._add("building_block_id", conditions)

    def where_fill_missing(self, *conditions: typing.Any) -> "AnnotationFilterQuery":
        return self._add("fill_missing", conditions)

    def where_alias_map(self, *conditions: typing.Any) -> "AnnotationFilterQuery":
        return self._add("alias_map", conditions)

    def _accepts(self, annotation: SeriesAnnotation) -> bool:
        for field_name, filters in self._fields.items():
            candidate = getattr(annotation, field_name)
            if not any(f.matches(candidate) for f in filters):
                return False
        return True

    def collect(self) -> list[SeriesAnnotation]:
        return [a for a in self._table.annotations if self._accepts(a)]


class ColumnFilterQuery(AnnotationFilterQuery):
    """
    Select annotated columns by their annotation's attributes, their content type,
    or the ontology prefix they carry.
    """

    def __init__(self, table: "SemanticTable"):
        super().__init__(table)
        self._dtypes: list[Filter] = []
        self._prefixes: list[str] = []

    def where_dtype(self, *conditions: typing.Any) -> "ColumnFilterQuery":
        """Filter on the OutputDataType inferred from the column content."""
        self._dtypes.extend(_as_filters(conditions))
        return self

    def where_ontology_prefix(self, *prefixes: str) -> "ColumnFilterQuery":
        """
        Keep columns whose header is a CURIE with one of the prefixes, or whose
        non-missing values all are.
        """
        self._prefixes.extend(p.rstrip(":") for p in prefixes)
        return self

    def _column_accepts(self, series: pd.Series) -> bool:
        if self._dtypes:
            inferred = infer_output_type(series)
            if not any(f.matches(inferred) for f in self._dtypes):
                return False
        if self._prefixes:
            return any(_carries_prefix(series, prefix) for prefix in self._prefixes)
        return True

    def names(self) -> list[str]:
        data = self._table.data
        columns = list(data.columns)
        found: list[str] = []
        for annotation in self._table.annotations:
            if not self._accepts(annotation):
                continue
            for name in resolve_columns(annotation.identifier, columns):
                if self._column_accepts(data[name]):
                    found.append(name)
        return found

    def collect(self) -> list[pd.Series]:  # type: ignore[override]
        data = self._table.data
        return [data[name] for name in self.names()]

    def annotations(self) -> list[SeriesAnnotation]:
        """Annotations owning at least one selected column."""
        selected = set(self.names())
        columns = list(self._table.data.columns)
        return [
            a for a in self._table.annotations
            if selected.intersection(resolve_columns(a.identifier, columns))
        ]


def _carries_prefix(series: pd.Series, prefix: str) -> bool:
    marker = f"{prefix}:"
    if str(series.name).startswith(marker):
        return True
    values = [v for v in series if not is_missing(v)]
    return bool(values) and all(isinstance(v, str) and v.strip().startswith(marker) for v in values)


