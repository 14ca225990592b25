"""
SemanticTable: a pandas DataFrame plus the annotations that give its columns meaning.

Tables are validated on construction and after every committed edit:
- no column is claimed by two annotations,
- exactly one column carries the subject id and it has no missing values,
- (unless allow_dangling) every annotation resolves to at least one column.
"""

from __future__ import annotations

import logging
import re
import typing

import pandas as pd

from .casting import is_missing, stringify
from .errors import (
    AmbiguousLinkedColumn,
    DanglingAnnotation,
    DuplicateColumnOwnership,
    NoOrManySubjectIdColumns,
    NullSubjectId,
)
from .semantics import ByExplicitList, ByPattern, ColumnIdentifier, SemanticTag, SeriesAnnotation

if typing.TYPE_CHECKING:
    import weakref

    from .editor import TableEditor
    from .filters import AnnotationFilterQuery, ColumnFilterQuery

LOGGER = logging.getLogger(__name__)


# ----------------------
# Column selection
# ----------------------


def resolve_columns(identifier: ColumnIdentifier, column_names: typing.Sequence[str]) -> list[str]:
    """
    Resolve an identifier against column names, keeping table order.

    ByPattern: an exact name match wins; otherwise the pattern is searched in
    every name. A pattern that is not a valid regular expression matches nothing.
    ByExplicitList: the names present in the list.
    """
    if isinstance(identifier, ByPattern):
        if identifier.pattern in column_names:
            return [identifier.pattern]
        try:
            regex = re.compile(identifier.pattern)
        except re.error:
            LOGGER.debug("Column pattern %r is not a valid regular expression", identifier.pattern)
            return []
        return [name for name in column_names if regex.search(str(name))]
    if isinstance(identifier, ByExplicitList):
        wanted = set(identifier.names)
        return [name for name in column_names if name in wanted]
    raise TypeError(f"Unsupported column identifier: {identifier!r}")


def validate_table(
        name: str,
        annotations: typing.Sequence[SeriesAnnotation],
        data: pd.DataFrame,
        allow_dangling: bool = False,
) -> None:
    """
    Check the structural invariants of a table; raise the matching ValidationError.
    """
    columns = list(data.columns)
    owners: dict[str, list[str]] = {}
    dangling: list[str] = []
    for annotation in annotations:
        matched = resolve_columns(annotation.identifier, columns)
        if not matched:
            dangling.append(str(annotation.identifier))
        for column in matched:
            owners.setdefault(column, []).append(str(annotation.identifier))

    for column, claimed_by in owners.items():
        if len(claimed_by) > 1:
            raise DuplicateColumnOwnership(name, column, claimed_by)

    if dangling:
        if not allow_dangling:
            raise DanglingAnnotation(name, dangling)
        LOGGER.debug("Table %r: dangling annotations %s", name, dangling)

    subject_columns = [
        column
        for annotation in annotations
        if annotation.is_subject_id
        for column in resolve_columns(annotation.identifier, columns)
    ]
    if len(subject_columns) != 1:
        raise NoOrManySubjectIdColumns(name, subject_columns)

    n_missing = int(data[subject_columns[0]].isna().sum())
    if n_missing:
        raise NullSubjectId(name, subject_columns[0], n_missing)


# ----------------------
# The table itself
# ----------------------


class SemanticTable:
    """
    A DataFrame paired with an ordered list of SeriesAnnotation objects.

    The table is read-only from the outside: all changes go through `edit()`.
    """

    def __init__(
            self,
            name: str,
            annotations: typing.Iterable[SeriesAnnotation],
            data: pd.DataFrame,
            allow_dangling: bool = False,
    ):
        if not isinstance(data, pd.DataFrame):
            raise TypeError(f"data must be a pandas DataFrame, got {type(data).__name__}")
        annotations = list(annotations)
        validate_table(name, annotations, data, allow_dangling)
        self._name = name
        self._annotations = annotations
        self._data = data
        self._allow_dangling = allow_dangling
        self._editor: typing.Optional["weakref.ReferenceType[TableEditor]"] = None

    def __repr__(self) -> str:
        return (
            f"SemanticTable(name={self._name!r}, annotations={len(self._annotations)}, "
            f"shape={self._data.shape})"
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def annotations(self) -> tuple[SeriesAnnotation, ...]:
        return tuple(self._annotations)

    @property
    def data(self) -> pd.DataFrame:
        return self._data

    @property
    def allow_dangling(self) -> bool:
        return self._allow_dangling

    @property
    def column_names(self) -> list[str]:
        return list(self._data.columns)

    # ---- selection ------------------------------------------------------------

    def columns_for(self, identifier: ColumnIdentifier) -> list[str]:
        """Names of the columns an identifier resolves to; warns when there are none."""
        found = resolve_columns(identifier, self.column_names)
        if not found:
            LOGGER.warning("Table %r: no columns found for identifier %r", self._name, str(identifier))
        return found

    def column_data(self, annotation: SeriesAnnotation) -> list[pd.Series]:
        return [self._data[name] for name in resolve_columns(annotation.identifier, self.column_names)]

    def annotation_for_column(self, column: str) -> typing.Optional[SeriesAnnotation]:
        for annotation in self._annotations:
            if column in resolve_columns(annotation.identifier, self.column_names):
                return annotation
        return None

    def dangling_annotations(self) -> list[SeriesAnnotation]:
        return [
            annotation
            for annotation in self._annotations
            if not resolve_columns(annotation.identifier, self.column_names)
        ]

    def subject_id_column(self) -> str:
        """Name of the single subject id column (re-validated on every call)."""
        columns = [
            column
            for annotation in self._annotations
            if annotation.is_subject_id
            for column in resolve_columns(annotation.identifier, self.column_names)
        ]
        if len(columns) != 1:
            raise NoOrManySubjectIdColumns(self._name, columns)
        return columns[0]

    def subject_ids(self) -> list[str]:
        """Distinct stringified subject ids in order of first appearance."""
        seen: dict[str, None] = {}
        for value in self._data[self.subject_id_column()]:
            seen.setdefault(stringify(value), None)
        return list(seen)

    def building_block_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for annotation in self._annotations:
            if annotation.building_block_id is not None:
                seen.setdefault(annotation.building_block_id, None)
        return list(seen)

    def annotations_in_block(self, block_id: str) -> list[SeriesAnnotation]:
        return [a for a in self._annotations if a.building_block_id == block_id]

    def linked_columns(
            self,
            block_id: typing.Optional[str],
            data_semantics: typing.Iterable[SemanticTag],
            header_semantic: SemanticTag = SemanticTag.NONE,
    ) -> list[str]:
        """All columns in a building block whose annotation carries one of `data_semantics`."""
        if block_id is None:
            return []
        wanted = set(data_semantics)
        return [
            column
            for annotation in self._annotations
            if annotation.building_block_id == block_id
            and annotation.header_semantic is header_semantic
            and annotation.data_semantic in wanted
            for column in resolve_columns(annotation.identifier, self.column_names)
        ]

    def single_linked_column(
            self,
            block_id: typing.Optional[str],
            candidate_semantics: typing.Sequence[SemanticTag],
    ) -> typing.Optional[str]:
        """
        The one column of `block_id` carrying any of `candidate_semantics`.

        Returns None when there is no such column (or no block), raises
        AmbiguousLinkedColumn when there is more than one.
        """
        if block_id is None:
            return None
        found = self.linked_columns(block_id, candidate_semantics)
        if len(found) > 1:
            raise AmbiguousLinkedColumn(self._name, block_id, candidate_semantics, found)
        return found[0] if found else None

    def filter_annotations(self) -> "AnnotationFilterQuery":
        from .filters import AnnotationFilterQuery
        return AnnotationFilterQuery(self)

    def filter_columns(self) -> "ColumnFilterQuery":
        from .filters import ColumnFilterQuery
        return ColumnFilterQuery(self)

    # ---- grouping -------------------------------------------------------------

    def group_by_subject(self) -> list[tuple[str, "SemanticTable"]]:
        """
        Split the table into one table per subject.

        Groups follow the order in which subjects first appear, rows keep their
        order inside a group. Every partition keeps the full column set and all
        annotations, so columns resolve and link the same way for every subject.
        """
        subject_column = self.subject_id_column()
        keys = self._data[subject_column].map(stringify)
        partitions: list[tuple[str, SemanticTable]] = []
        for subject_id, rows in self._data.groupby(keys, sort=False):
            part = SemanticTable(
                self._name, self._annotations, rows.reset_index(drop=True), allow_dangling=self._allow_dangling
            )
            partitions.append((str(subject_id), part))
        return partitions

    # ---- editing --------------------------------------------------------------

    def edit(self) -> "TableEditor":
        """Open the exclusive editor of this table (see TableEditor)."""
        from .editor import TableEditor
        return TableEditor(self)

    def _swap(self, annotations: list[SeriesAnnotation], data: pd.DataFrame) -> None:
        self._annotations = annotations
        self._data = data


def single_values(series: pd.Series) -> list[str]:
    """Stringified non-missing values of a column, unique, in first-seen order."""
    seen: dict[str, None] = {}
    for value in series:
        if not is_missing(value):
            seen.setdefault(stringify(value), None)
    return list(seen)
