"""
TableEditor: the only sanctioned way to change a SemanticTable.

An editor works on a staged copy of the table's data and annotations. Changes
become visible only through `commit()`, which re-validates the staged state
first; a failed commit leaves the table untouched. Use it as a context manager:

    with table.edit() as editor:
        editor.drop_columns(["tmp"])
        editor.commit()

Leaving the block with uncommitted changes raises UncommittedEditError; leaving
it through an exception drops the staged changes and lets the exception through.
"""

from __future__ import annotations

import dataclasses
import logging
import typing
import weakref

import pandas as pd

from .casting import cast_series
from .errors import (
    EditorClosedError,
    OrphanedColumnError,
    UncommittedEditError,
    ValidationError,
)
from .semantics import ByExplicitList, OutputDataType, SemanticTag, SeriesAnnotation
from .table import resolve_columns, validate_table

if typing.TYPE_CHECKING:
    from .table import SemanticTable

LOGGER = logging.getLogger(__name__)


class TableEditor:

    def __init__(self, table: "SemanticTable"):
        previous = table._editor() if table._editor is not None else None
        if previous is not None and not previous.closed:
            if previous.dirty:
                raise UncommittedEditError(
                    f"Table {table.name!r} still has an open editor with uncommitted changes"
                )
            previous.discard()
        self._table = table
        self._data = table.data.copy()
        self._annotations = list(table.annotations)
        self._dirty = False
        self._closed = False
        table._editor = weakref.ref(self)

    def __del__(self) -> None:
        if getattr(self, "_dirty", False) and not self._closed:
            LOGGER.warning(
                "Editor of table %r was dropped with uncommitted changes; they are lost", self._table.name
            )

    def __enter__(self) -> "TableEditor":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        if self._closed:
            return False
        if exc_type is not None:
            self.discard()
            return False
        if self._dirty:
            self.discard()
            raise UncommittedEditError(
                f"Editor of table {self._table.name!r} was left with uncommitted changes"
            )
        self.discard()
        return False

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def data(self) -> pd.DataFrame:
        """The staged data (read it, do not mutate it)."""
        return self._data

    @property
    def annotations(self) -> tuple[SeriesAnnotation, ...]:
        return tuple(self._annotations)

    def columns_for(self, annotation: SeriesAnnotation) -> list[str]:
        return resolve_columns(annotation.identifier, list(self._data.columns))

    # ---- lifecycle ------------------------------------------------------------

    def commit(self) -> "SemanticTable":
        """Validate the staged table and make it the table's content."""
        self._check_open()
        if self._dirty:
            validate_table(
                self._table.name, self._annotations, self._data, self._table.allow_dangling
            )
            self._table._swap(self._annotations, self._data)
        self._close()
        return self._table

    def discard(self) -> None:
        """Drop every staged change."""
        self._close()

    def _close(self) -> None:
        self._closed = True
        self._dirty = False
        if self._table._editor is not None and self._table._editor() is self:
            self._table._editor = None

    def _check_open(self) -> None:
        if self._closed:
            raise EditorClosedError(f"Editor of table {self._table.name!r} is already closed")

    def _touch(self) -> "TableEditor":
        self._dirty = True
        return self

    # ---- columns --------------------------------------------------------------

    def insert_column(self, name: str, values: typing.Sequence[typing.Any]) -> "TableEditor":
        self._check_open()
        if name in self._data.columns:
            raise ValidationError(self._table.name, f"column {name!r} already exists")
        if len(values) != len(self._data):
            raise ValidationError(
                self._table.name,
                f"column {name!r} has {len(values)} values, table has {len(self._data)} rows",
            )
        self._data[name] = pd.Series(list(values), index=self._data.index, dtype=_dtype_of(values))
        return self._touch()

    def insert_columns(self, columns: typing.Mapping[str, typing.Sequence[typing.Any]]) -> "TableEditor":
        for name, values in columns.items():
            self.insert_column(name, values)
        return self

    def replace_column(self, name: str, values: typing.Sequence[typing.Any]) -> "TableEditor":
        self._check_open()
        if name not in self._data.columns:
            raise ValidationError(self._table.name, f"cannot replace missing column {name!r}")
        if len(values) != len(self._data):
            raise ValidationError(
                self._table.name,
                f"replacement for {name!r} has {len(values)} values, table has {len(self._data)} rows",
            )
        self._data[name] = pd.Series(list(values), index=self._data.index, dtype=_dtype_of(values))
        return self._touch()

    def drop_columns(self, names: typing.Iterable[str]) -> "TableEditor":
        self._check_open()
        names = list(names)
        missing = [n for n in names if n not in self._data.columns]
        if missing:
            raise ValidationError(self._table.name, f"cannot drop missing columns {missing}")
        if names:
            self._data = self._data.drop(columns=names)
            self._touch()
        return self

    def drop_null_columns(self) -> "TableEditor":
        """Drop every column whose values are all missing."""
        self._check_open()
        null_columns = [name for name in self._data.columns if self._data[name].isna().all()]
        if null_columns:
            LOGGER.debug("Table %r: dropping all-null columns %s", self._table.name, null_columns)
            self.drop_columns(null_columns)
        return self

    def cast_columns(
            self,
            header_semantic: SemanticTag,
            data_semantic: SemanticTag,
            output_type: OutputDataType,
    ) -> "TableEditor":
        """Cast every column of annotations carrying the (header, data) pair."""
        self._check_open()
        for annotation in self._annotations:
            if annotation.header_semantic is header_semantic and annotation.data_semantic is data_semantic:
                for column in self.columns_for(annotation):
                    self._data[column] = cast_series(self._data[column], output_type, column)
                    self._touch()
        return self

    # ---- annotations ----------------------------------------------------------

    def insert_annotation(self, annotation: SeriesAnnotation) -> "TableEditor":
        self._check_open()
        self._annotations.append(annotation)
        return self._touch()

    def drop_annotations(self, annotations: typing.Iterable[SeriesAnnotation]) -> "TableEditor":
        self._check_open()
        doomed = [id(a) for a in annotations]
        kept = [a for a in self._annotations if id(a) not in doomed]
        if len(kept) != len(self._annotations):
            self._annotations = kept
            self._touch()
        return self

    def drop_dangling_annotations(self) -> "TableEditor":
        self._check_open()
        dangling = [a for a in self._annotations if not self.columns_for(a)]
        if dangling:
            LOGGER.debug(
                "Table %r: dropping dangling annotations %s",
                self._table.name,
                [str(a.identifier) for a in dangling],
            )
        return self.drop_annotations(dangling)

    def replace_header_semantic(self, old: SemanticTag, new: SemanticTag) -> "TableEditor":
        return self._replace_semantic("header_semantic", old, new)

    def replace_data_semantic(self, old: SemanticTag, new: SemanticTag) -> "TableEditor":
        return self._replace_semantic("data_semantic", old, new)

    def _replace_semantic(self, attr: str, old: SemanticTag, new: SemanticTag) -> "TableEditor":
        self._check_open()
        for i, annotation in enumerate(self._annotations):
            if getattr(annotation, attr) is old:
                self._annotations[i] = dataclasses.replace(annotation, **{attr: new})
                self._touch()
        return self

    # ---- annotations together with their columns ------------------------------

    def insert_annotation_with_columns(
            self,
            annotation: SeriesAnnotation,
            columns: typing.Mapping[str, typing.Sequence[typing.Any]],
    ) -> "TableEditor":
        """
        Add columns and the annotation that owns them.

        Every supplied column must be matched by the annotation's identifier, and
        an explicit list may not name a column that was neither supplied nor present.
        """
        self._check_open()
        supplied = list(columns)
        existing = list(self._data.columns)
        matched = set(resolve_columns(annotation.identifier, existing + supplied))
        orphaned = [name for name in supplied if name not in matched]
        if isinstance(annotation.identifier, ByExplicitList):
            orphaned += [
                name for name in annotation.identifier.names
                if name not in supplied and name not in existing
            ]
        if orphaned:
            raise OrphanedColumnError(
                self._table.name, orphaned, f"inserting annotation {annotation.describe()}"
            )
        self.insert_columns(columns)
        return self.insert_annotation(annotation)

    def drop_annotation_with_columns(self, annotation: SeriesAnnotation) -> "TableEditor":
        self._check_open()
        self.drop_columns(self.columns_for(annotation))
        return self.drop_annotations([annotation])

    def drop_annotations_with_columns_matching(
            self, header_semantic: SemanticTag, data_semantic: SemanticTag
    ) -> "TableEditor":
        for annotation in list(self._annotations):
            if annotation.header_semantic is header_semantic and annotation.data_semantic is data_semantic:
                self.drop_annotation_with_columns(annotation)
        return self


def _dtype_of(values: typing.Sequence[typing.Any]) -> typing.Optional[typing.Any]:
    """Keep the dtype of pandas input; let pandas infer for plain Python sequences."""
    if isinstance(values, pd.Series):
        return values.dtype
    return None
