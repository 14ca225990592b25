"""
Transformation strategies.

A Strategy is one self-contained cleaning or normalization step run over the
whole list of tables. Strategies change tables only through TableEditor, so
every table is still valid after a strategy ran. Cell-level problems do not
stop a strategy: every offending (column, table, value) is collected and
raised at the end as one MappingError, with the offending cells left as they
were so the run can be repeated after the configuration is fixed.
"""

from __future__ import annotations

import abc
import calendar
import datetime
import logging
import math
import re
import typing
from collections import defaultdict
from enum import Enum

import pandas as pd

from .bidict import BiDict
from .casting import cast_series, cast_value, is_missing, parse_datetime, stringify
from .errors import MappingError, MappingErrorInfo, MappingSuggestion, ValidatorError
from .filters import Filter
from .semantics import (
    AGE_SEMANTICS,
    ByExplicitList,
    OutputDataType,
    SemanticTag,
    SeriesAnnotation,
)
from .table import SemanticTable
from .validators import CachedValidator, GeneValidator, HgvsValidator

LOGGER = logging.getLogger(__name__)

Tables = typing.Sequence[SemanticTable]

# ISO8601 durations as written in phenopackets, e.g. P45Y, P3Y2M, P10D, PT3H
ISO8601_DURATION = re.compile(r"^P(\d+Y)?(\d+M)?(\d+D)?(T(\d+H)?(\d+M)?(\d+S)?)?$")
HPO_ID_PATTERN = r"HP:\d{7}"
OBSERVED = "OBSERVED"
UNKNOWN = "UNKNOWN"


class Strategy(metaclass=abc.ABCMeta):

    @property
    def name(self) -> str:
        return type(self).__name__

    @abc.abstractmethod
    def is_applicable(self, tables: Tables) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def apply(self, tables: Tables) -> None:
        """Run the strategy; raise a StrategyError if any cell or table could not be handled."""
        raise NotImplementedError

    def transform(self, tables: Tables) -> None:
        """Apply the strategy if it has anything to work on, otherwise do nothing."""
        if not self.is_applicable(tables):
            LOGGER.debug("Strategy %s is not applicable, skipping", self.name)
            return
        LOGGER.info("Applying %s strategy", self.name)
        self.apply(tables)


def string_columns(
        table: SemanticTable,
        header_semantic: SemanticTag,
        data_semantics: typing.Iterable[SemanticTag],
) -> list[str]:
    return (
        table.filter_columns()
        .where_header(header_semantic)
        .where_data(*data_semantics)
        .where_dtype(OutputDataType.STRING)
        .names()
    )


# ----------------------
# Cell-by-cell mapping
# ----------------------


class CellMappingStrategy(Strategy, metaclass=abc.ABCMeta):
    """
    Base for strategies rewriting single cells of selected columns.

    Subclasses pick the columns and map one non-missing cell; unmappable cells
    are recorded in `errors` and returned unchanged.
    """

    message = "Could not map these values."

    @abc.abstractmethod
    def columns(self, table: SemanticTable) -> list[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def map_cell(self, value: typing.Any, column: str, table: str, errors: set[MappingErrorInfo]) -> typing.Any:
        raise NotImplementedError

    def is_applicable(self, tables: Tables) -> bool:
        return any(self.columns(table) for table in tables)

    def apply(self, tables: Tables) -> None:
        errors: set[MappingErrorInfo] = set()
        for table in tables:
            columns = self.columns(table)
            if not columns:
                continue
            LOGGER.debug("%s: table %r, columns %s", self.name, table.name, columns)
            with table.edit() as editor:
                for column in columns:
                    mapped = [
                        value if is_missing(value) else self.map_cell(value, column, table.name, errors)
                        for value in editor.data[column]
                    ]
                    editor.replace_column(column, mapped)
                editor.commit()
        if errors:
            raise MappingError(self.name, self.message, errors)


class SynonymMapping(CellMappingStrategy):
    """
    Replace cells by dictionary lookup (case-insensitive, trimmed, exact match).

    Values already spelled exactly like one of the dictionary's targets are kept,
    so running the strategy twice changes nothing. Other spellings of a target
    (e.g. "male" for "MALE") are not keys and are reported.
    """

    message = "Could not map these values with the synonym dictionary."

    def __init__(
            self,
            data_semantic: SemanticTag,
            synonyms: typing.Mapping[str, str],
            header_semantic: SemanticTag = SemanticTag.NONE,
            name: typing.Optional[str] = None,
    ):
        self.data_semantic = data_semantic
        self.header_semantic = header_semantic
        self._name = name
        self._synonyms = {key.strip().lower(): value for key, value in synonyms.items()}
        self._targets = set(synonyms.values())
        self._suggestions = tuple(
            sorted(MappingSuggestion(key, value) for key, value in synonyms.items())
        )

    @property
    def name(self) -> str:
        return self._name or f"{type(self).__name__}[{self.data_semantic.value}]"

    def columns(self, table: SemanticTable) -> list[str]:
        return string_columns(table, self.header_semantic, [self.data_semantic])

    def map_cell(self, value, column, table, errors):
        text = stringify(value)
        key = text.strip().lower()
        if not key:
            return value
        if key in self._synonyms:
            return self._synonyms[key]
        if text.strip() in self._targets:
            return text.strip()
        errors.add(MappingErrorInfo(column, table, text, self._suggestions))
        return value

    @classmethod
    def default_sex_mapping(cls) -> "SynonymMapping":
        return cls(
            SemanticTag.SUBJECT_SEX,
            {
                "m": "MALE",
                "male": "MALE",
                "man": "MALE",
                "f": "FEMALE",
                "female": "FEMALE",
                "woman": "FEMALE",
                "diverse": "OTHER_SEX",
                "intersex": "OTHER_SEX",
                "other": "OTHER_SEX",
            },
            name="SexMapping",
        )

    @classmethod
    def default_vital_status_mapping(cls) -> "SynonymMapping":
        return cls(
            SemanticTag.VITAL_STATUS,
            {
                "yes": "ALIVE",
                "living": "ALIVE",
                "alive": "ALIVE",
                "no": "DECEASED",
                "dead": "DECEASED",
                "deceased": "DECEASED",
                "unknown": "UNKNOWN_STATUS",
                "no data": "UNKNOWN_STATUS",
            },
            name="VitalStatusMapping",
        )

    @classmethod
    def default_zygosity_mapping(cls) -> "SynonymMapping":
        return cls(
            SemanticTag.ZYGOSITY,
            {
                "het": "heterozygous",
                "heterozygous": "heterozygous",
                "hom": "homozygous",
                "homozygous": "homozygous",
                "comphet": "compound_heterozygosity",
                "compound heterozygous": "compound_heterozygosity",
                "hemi": "hemizygous",
                "hemizygous": "hemizygous",
                "mosaic": "mosaic",
            },
            name="ZygosityMapping",
        )


class UnresolvedPolicy(Enum):
    """What OntologyNormalization does with a value it cannot resolve."""
    KEEP = "keep"
    NULL = "null"

    @classmethod
    def from_label(cls, label: str) -> "UnresolvedPolicy":
        try:
            return cls(label.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown unresolved-value policy: {label!r}")


class OntologyNormalization(CellMappingStrategy):
    """
    Turn ontology labels and synonyms into identifiers.

    Identifiers the dictionary knows are kept; other values are looked up
    (case-insensitive) as labels or synonyms. Unresolved values are reported and,
    depending on `unresolved`, kept as they are or replaced by a missing value.
    """

    message = "Could not find ontology terms for these strings."

    def __init__(
            self,
            data_semantic: SemanticTag,
            bidict: BiDict,
            unresolved: UnresolvedPolicy = UnresolvedPolicy.KEEP,
            header_semantic: SemanticTag = SemanticTag.NONE,
    ):
        self.data_semantic = data_semantic
        self.header_semantic = header_semantic
        self.bidict = bidict
        self.unresolved = unresolved

    @property
    def name(self) -> str:
        return f"{type(self).__name__}[{self.data_semantic.value}]"

    def columns(self, table: SemanticTable) -> list[str]:
        return string_columns(table, self.header_semantic, [self.data_semantic])

    def map_cell(self, value, column, table, errors):
        text = stringify(value).strip()
        if not text:
            return value
        if self.bidict.is_id(text):
            return value
        term_id = self.bidict.get(text)
        if term_id is not None:
            return term_id
        errors.add(MappingErrorInfo(column, table, text))
        return None if self.unresolved is UnresolvedPolicy.NULL else value


class StringCorrection(CellMappingStrategy):
    """Literal substring replacement in string columns of one (header, data) pair."""

    def __init__(
            self,
            header_semantic: SemanticTag,
            data_semantic: SemanticTag,
            find: str,
            replace: str,
    ):
        if not find:
            raise ValueError("StringCorrection needs a non-empty search string")
        self.header_semantic = header_semantic
        self.data_semantic = data_semantic
        self.find = find
        self.replace = replace

    def columns(self, table: SemanticTable) -> list[str]:
        return string_columns(table, self.header_semantic, [self.data_semantic])

    def map_cell(self, value, column, table, errors):
        if isinstance(value, str):
            return value.replace(self.find, self.replace)
        return value


class HgvsCorrection(StringCorrection):
    """NM_001173464.1*c.2860C>T -> NM_001173464.1:c.2860C>T"""

    def __init__(self):
        super().__init__(SemanticTag.NONE, SemanticTag.HGVS, "*", ":")


class AgeToISO8601Duration(CellMappingStrategy):
    """
    Write ages given in years as ISO8601 durations (45 -> "P45Y").

    Whole numbers within [min_age, max_age] are converted, values that already
    are ISO8601 durations are kept, anything else is reported.
    """

    message = "Could not convert these values to ISO8601 durations."

    def __init__(
            self,
            min_age: int = 0,
            max_age: int = 150,
            semantics: typing.Sequence[SemanticTag] = AGE_SEMANTICS,
    ):
        if min_age > max_age:
            raise ValueError(f"min_age ({min_age}) must not exceed max_age ({max_age})")
        self.min_age = min_age
        self.max_age = max_age
        self.semantics = tuple(semantics)

    def columns(self, table: SemanticTable) -> list[str]:
        return (
            table.filter_columns()
            .where_header(SemanticTag.NONE)
            .where_data(*self.semantics)
            .names()
        )

    def map_cell(self, value, column, table, errors):
        if isinstance(value, str):
            text = value.strip()
            if not text or ISO8601_DURATION.match(text):
                return value
        try:
            years = cast_value(value, OutputDataType.INT64)
        except (ValueError, TypeError, OverflowError):
            years = None
        if years is not None and self.min_age <= years <= self.max_age:
            return f"P{years}Y"
        errors.add(MappingErrorInfo(column, table, stringify(value)))
        return value


def _as_date(value: typing.Any) -> typing.Optional[datetime.date]:
    """A cell as a calendar date; None for anything that is not a date (ages, numbers, durations)."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or text.isdigit():
        return None
    moment = parse_datetime(text)
    return moment.date() if moment is not None else None


def _add_months(day: datetime.date, months: int) -> datetime.date:
    year, month = divmod(day.month - 1 + months, 12)
    year += day.year
    last_day = calendar.monthrange(year, month + 1)[1]
    return day.replace(year=year, month=month + 1, day=min(day.day, last_day))


def iso8601_age(birth: datetime.date, on: datetime.date) -> str:
    """
    Age on `on` of someone born on `birth`, as an ISO8601 duration
    (2020-01-01, 2021-03-15 -> "P1Y2M14D"). Zero components are left out.
    """
    if on < birth:
        raise ValueError(f"{on} is before the date of birth {birth}")
    months = (on.year - birth.year) * 12 + on.month - birth.month
    if _add_months(birth, months) > on:
        months -= 1
    days = (on - _add_months(birth, months)).days
    years, months = divmod(months, 12)
    parts = "".join(f"{n}{unit}" for n, unit in ((years, "Y"), (months, "M"), (days, "D")) if n)
    return f"P{parts or '0D'}"


class DateToAge(Strategy):
    """
    Rewrite dates found in age columns as the subject's age on that date.

    The date of birth comes from any table's DATE_OF_BIRTH column. Cells that
    are not dates are left for AgeToISO8601Duration. A date whose subject has
    no date of birth, more than one, or a later one is reported.
    """

    message = "Could not convert these dates to ages."

    def __init__(self, semantics: typing.Sequence[SemanticTag] = AGE_SEMANTICS):
        self.semantics = tuple(semantics)

    @staticmethod
    def _birth_columns(table: SemanticTable) -> list[str]:
        return (
            table.filter_columns()
            .where_header(SemanticTag.NONE)
            .where_data(SemanticTag.DATE_OF_BIRTH)
            .names()
        )

    def _age_columns(self, table: SemanticTable) -> list[str]:
        return (
            table.filter_columns()
            .where_header(SemanticTag.NONE)
            .where_data(*self.semantics)
            .names()
        )

    def is_applicable(self, tables: Tables) -> bool:
        if not any(self._birth_columns(table) for table in tables):
            LOGGER.debug("No date of birth column, %s cannot be applied", self.name)
            return False
        return any(self._age_columns(table) for table in tables)

    def _births(self, tables: Tables) -> dict[str, set[datetime.date]]:
        births: dict[str, set[datetime.date]] = defaultdict(set)
        for table in tables:
            subjects = table.data[table.subject_id_column()]
            for column in self._birth_columns(table):
                for subject, value in zip(subjects, table.data[column]):
                    birth = None if is_missing(value) else _as_date(value)
                    if birth is not None:
                        births[stringify(subject)].add(birth)
        return births

    def apply(self, tables: Tables) -> None:
        births = self._births(tables)
        errors: set[MappingErrorInfo] = set()
        for table in tables:
            columns = self._age_columns(table)
            if not columns:
                continue
            subjects = [stringify(s) for s in table.data[table.subject_id_column()]]
            with table.edit() as editor:
                for column in columns:
                    values = list(editor.data[column])
                    converted = [
                        self._convert(value, births.get(subject, set()), column, table.name, errors)
                        for subject, value in zip(subjects, values)
                    ]
                    if any(new is not old for new, old in zip(converted, values)):
                        editor.replace_column(column, converted)
                editor.commit()
        if errors:
            raise MappingError(self.name, self.message, errors)

    @staticmethod
    def _convert(value, births, column, table, errors):
        if is_missing(value):
            return value
        on = _as_date(value)
        if on is None:
            return value
        if len(births) == 1:
            birth = next(iter(births))
            if on >= birth:
                return iso8601_age(birth, on)
        errors.add(MappingErrorInfo(column, table, stringify(value)))
        return value


class _ValidatorStrategy(CellMappingStrategy):

    data_semantic: SemanticTag

    def __init__(self, validator: typing.Union[GeneValidator, HgvsValidator, CachedValidator]):
        self._validator = validator if isinstance(validator, CachedValidator) else CachedValidator(validator)

    def columns(self, table: SemanticTable) -> list[str]:
        return string_columns(table, SemanticTag.NONE, [self.data_semantic])

    def map_cell(self, value, column, table, errors):
        text = stringify(value).strip()
        if not text:
            return value
        try:
            return self._validator.normalize(text)
        except ValidatorError as e:
            LOGGER.debug("%s: %s", self.name, e)
            errors.add(MappingErrorInfo(column, table, text))
            return value


class GeneSymbolNormalization(_ValidatorStrategy):
    message = "Could not validate these gene symbols."
    data_semantic = SemanticTag.HGNC_SYMBOL_OR_ID


class VariantNormalization(_ValidatorStrategy):
    message = "Could not validate these variants."
    data_semantic = SemanticTag.HGVS


# ----------------------
# Whole-column strategies
# ----------------------


class AliasSubstitution(Strategy):
    """
    Apply each annotation's AliasMap: literal, case-sensitive substitution of
    whole cell values, then coercion of the column to the map's output type.

    A column holding a value that cannot be coerced is left as it was; every
    such value, across all tables, is reported in one MappingError.
    """

    message = "Could not cast these values after alias substitution."

    def _targets(self, table: SemanticTable) -> list[SeriesAnnotation]:
        return table.filter_annotations().where_alias_map(Filter.is_some()).collect()

    def is_applicable(self, tables: Tables) -> bool:
        return any(self._targets(table) for table in tables)

    def apply(self, tables: Tables) -> None:
        errors: set[MappingErrorInfo] = set()
        for table in tables:
            annotations = self._targets(table)
            if not annotations:
                continue
            with table.edit() as editor:
                for annotation in annotations:
                    alias_map = annotation.alias_map
                    for column in editor.columns_for(annotation):
                        substituted = _as_series(
                            [_substitute(value, alias_map.mapping) for value in editor.data[column]],
                            editor.data[column],
                        )
                        failed = _uncastable(substituted, alias_map.output_type)
                        if failed:
                            errors.update(MappingErrorInfo(column, table.name, value) for value in failed)
                            continue
                        editor.replace_column(column, cast_series(substituted, alias_map.output_type, column))
                editor.commit()
        if errors:
            raise MappingError(self.name, self.message, errors)


def _substitute(value: typing.Any, mapping: dict[str, typing.Optional[str]]) -> typing.Optional[str]:
    if is_missing(value):
        return None
    text = stringify(value)
    return mapping[text] if text in mapping else text


def _uncastable(series: pd.Series, target: OutputDataType) -> list[str]:
    """Stringified values of `series` that cast_series would reject."""
    failed: list[str] = []
    for value in series:
        if is_missing(value) or (target is not OutputDataType.STRING and not str(value).strip()):
            continue
        try:
            cast_value(value, target)
        except (ValueError, TypeError, OverflowError):
            failed.append(stringify(value))
    return failed


class FillMissing(Strategy):
    """Fill missing cells with the annotation's `fill_missing` value."""

    def _targets(self, table: SemanticTable) -> list[SeriesAnnotation]:
        return table.filter_annotations().where_fill_missing(Filter.is_some()).collect()

    def is_applicable(self, tables: Tables) -> bool:
        return any(self._targets(table) for table in tables)

    def apply(self, tables: Tables) -> None:
        for table in tables:
            annotations = self._targets(table)
            if not annotations:
                continue
            with table.edit() as editor:
                for annotation in annotations:
                    for column in editor.columns_for(annotation):
                        series = editor.data[column]
                        if not series.isna().any():
                            continue
                        editor.replace_column(
                            column,
                            [annotation.fill_missing if is_missing(v) else v for v in series],
                        )
                editor.commit()


class MultiValueColumnExpansion(Strategy):
    """
    Expand columns listing several HPO ids per cell into one column per id.

    For every subject the ids found in any of its rows are collected. Each id
    found anywhere in the table gets its own column holding OBSERVED for the
    subjects that have it and UNKNOWN for the others. The original columns and
    their annotations are replaced by one annotation (header: HPO id, data:
    observation status) covering the new columns.
    """

    def __init__(self, id_pattern: str = HPO_ID_PATTERN):
        self.id_pattern = re.compile(id_pattern)

    def _targets(self, table: SemanticTable) -> list[SeriesAnnotation]:
        return (
            table.filter_annotations()
            .where_header(SemanticTag.NONE)
            .where_data(SemanticTag.MULTI_HPO_ID)
            .collect()
        )

    def is_applicable(self, tables: Tables) -> bool:
        return any(self._targets(table) for table in tables)

    def apply(self, tables: Tables) -> None:
        for table in tables:
            annotations = self._targets(table)
            if annotations:
                self._expand(table, annotations)

    def _expand(self, table: SemanticTable, annotations: list[SeriesAnnotation]) -> None:
        subjects = [stringify(v) for v in table.data[table.subject_id_column()]]
        per_subject: dict[str, set[str]] = {}
        found: set[str] = set()
        for annotation in annotations:
            for series in table.column_data(annotation):
                for subject, cell in zip(subjects, series):
                    if is_missing(cell):
                        continue
                    ids = self.id_pattern.findall(stringify(cell))
                    if not ids and stringify(cell).strip():
                        LOGGER.warning(
                            "Table %r: no ontology ids in cell %r of column %r",
                            table.name, cell, series.name,
                        )
                    per_subject.setdefault(subject, set()).update(ids)
                    found.update(ids)

        new_columns = {
            term_id: [OBSERVED if term_id in per_subject.get(subject, ()) else UNKNOWN for subject in subjects]
            for term_id in sorted(found)
        }
        LOGGER.info(
            "Table %r: expanding %d multi-value annotation(s) into %d column(s)",
            table.name, len(annotations), len(new_columns),
        )
        with table.edit() as editor:
            for annotation in annotations:
                editor.drop_annotation_with_columns(annotation)
            if new_columns:
                expanded = SeriesAnnotation(
                    identifier=ByExplicitList(tuple(new_columns)),
                    header_semantic=SemanticTag.HPO_LABEL_OR_ID,
                    data_semantic=SemanticTag.OBSERVATION_STATUS,
                    building_block_id=annotations[0].building_block_id,
                )
                editor.insert_annotation_with_columns(expanded, new_columns)
            editor.commit()


class TablePreprocessor(Strategy):
    """
    Tidy raw cells before the configured strategies run: trim strings, turn
    blank strings into missing values, and store float columns holding only
    whole numbers as nullable Int64.
    """

    @property
    def name(self) -> str:
        return "Preprocessing"

    def is_applicable(self, tables: Tables) -> bool:
        return bool(tables)

    def apply(self, tables: Tables) -> None:
        for table in tables:
            with table.edit() as editor:
                for column in list(editor.data.columns):
                    series = editor.data[column]
                    if series.dtype == object or str(series.dtype) == "string":
                        if any(isinstance(v, str) for v in series):
                            editor.replace_column(column, [_trim(v) for v in series])
                    elif series.dtype.kind == "f" and _all_whole(series):
                        editor.replace_column(column, cast_series(series, OutputDataType.INT64, column))
                editor.commit()


def _trim(value: typing.Any) -> typing.Any:
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return value


def _all_whole(series: pd.Series) -> bool:
    values = series.dropna()
    if not len(values) or not all(math.isfinite(v) for v in values):
        return False
    return bool((values == values.round()).all())


def _as_series(values: list, like: pd.Series) -> pd.Series:
    return pd.Series(values, index=like.index, name=like.name, dtype=object)
