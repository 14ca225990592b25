"""
Semantic vocabulary and column annotations.

A SemanticTable pairs a DataFrame with a list of SeriesAnnotation objects.
Each annotation says which columns it owns (ColumnIdentifier), what the
column headers mean (header_semantic) and what the cells mean
(data_semantic). Annotations sharing a building_block_id jointly describe one
sub-entity of a subject's record (e.g. a disease with its gene and variant).
"""

from __future__ import annotations

import re
import typing
from dataclasses import dataclass, field
from enum import Enum


class SemanticTag(Enum):
    """
    Meaning a column header or a column's cells can carry.
    """
    SUBJECT_ID = "subject_id"
    SUBJECT_SEX = "subject_sex"
    DATE_OF_BIRTH = "date_of_birth"
    VITAL_STATUS = "vital_status"
    TIME_OF_DEATH = "time_of_death"
    CAUSE_OF_DEATH = "cause_of_death"
    SURVIVAL_TIME_DAYS = "survival_time_days"
    TIME_AT_LAST_ENCOUNTER = "time_at_last_encounter"
    HPO_LABEL_OR_ID = "hpo_label_or_id"
    MULTI_HPO_ID = "multi_hpo_id"
    OBSERVATION_STATUS = "observation_status"
    DISEASE_LABEL_OR_ID = "disease_label_or_id"
    HGNC_SYMBOL_OR_ID = "hgnc_symbol_or_id"
    HGVS = "hgvs"
    ZYGOSITY = "zygosity"
    ONSET_AGE = "onset_age"
    ONSET_DATETIME = "onset_datetime"
    QUANTITATIVE_MEASUREMENT = "quantitative_measurement"
    QUALITATIVE_MEASUREMENT = "qualitative_measurement"
    REFERENCE_RANGE_LOW = "reference_range_low"
    REFERENCE_RANGE_HIGH = "reference_range_high"
    NONE = "none"

    @classmethod
    def from_label(cls, label: str) -> "SemanticTag":
        """
        Convert a human-readable label ("Subject ID", "hpo-label-or-id") into a tag.
        """
        key = re.sub(r"[\s\-]+", "_", label.strip().lower())
        for tag in cls:
            if tag.value == key:
                return tag
        raise ValueError(f"Unknown semantic tag label: {label!r}")


# Semantics an onset column can carry, in lookup order
ONSET_SEMANTICS: tuple[SemanticTag, ...] = (SemanticTag.ONSET_AGE, SemanticTag.ONSET_DATETIME)

# Semantics whose cells are ages that may be rewritten as ISO8601 durations
AGE_SEMANTICS: tuple[SemanticTag, ...] = (
    SemanticTag.ONSET_AGE,
    SemanticTag.TIME_AT_LAST_ENCOUNTER,
    SemanticTag.TIME_OF_DEATH,
)


class OutputDataType(Enum):
    """Target type of a column after alias substitution or casting."""
    BOOLEAN = "boolean"
    STRING = "string"
    FLOAT64 = "float64"
    INT64 = "int64"
    DATE = "date"
    DATETIME = "datetime"


CellValue = typing.Union[str, int, float, bool]


# ----------------------
# Column identifiers
# ----------------------


@dataclass(frozen=True)
class ByPattern:
    """
    Select columns by name: an exact match wins, otherwise `pattern` is used as a
    regular expression searched in every column name.
    """
    pattern: str

    def __post_init__(self) -> None:
        if not isinstance(self.pattern, str) or not self.pattern:
            raise ValueError("ByPattern needs a non-empty pattern")

    def __str__(self) -> str:
        return self.pattern


@dataclass(frozen=True)
class ByExplicitList:
    """Select the columns whose name is literally in `names`."""
    names: tuple[str, ...]

    def __post_init__(self) -> None:
        # accept lists for convenience, store a tuple so the identifier stays hashable
        object.__setattr__(self, "names", tuple(self.names))
        if not self.names:
            raise ValueError("ByExplicitList needs at least one column name")
        for name in self.names:
            if not isinstance(name, str) or not name:
                raise ValueError(f"Invalid column name in ByExplicitList: {name!r}")

    def __str__(self) -> str:
        return ", ".join(self.names)


ColumnIdentifier = typing.Union[ByPattern, ByExplicitList]


# ----------------------
# Alias maps
# ----------------------


@dataclass
class AliasMap:
    """
    Literal cell substitutions for one annotation.

    Attributes:
        mapping: raw cell text -> replacement (None nulls the cell).
        output_type: type the column is coerced to after substitution.
    """
    mapping: dict[str, typing.Optional[str]]
    output_type: OutputDataType = OutputDataType.STRING

    def __post_init__(self) -> None:
        if not isinstance(self.output_type, OutputDataType):
            raise ValueError(f"Invalid output type: {self.output_type!r}")
        for key in self.mapping:
            if not isinstance(key, str):
                raise ValueError(f"Alias keys must be strings, got {key!r}")


# ----------------------
# Measurements
# ----------------------


@dataclass(frozen=True)
class Assay:
    """
    What a measurement column measures.

    Attributes:
        assay_id: CURIE of the assay, usually a LOINC code ("LOINC:8302-2").
        unit_id: CURIE of the unit (e.g. "UO:0000015"); required for quantitative values.
    """
    assay_id: str
    unit_id: typing.Optional[str] = None

    def __post_init__(self) -> None:
        for attr in ("assay_id", "unit_id"):
            value = getattr(self, attr)
            if value is None:
                continue
            if not isinstance(value, str) or ":" not in value.strip(":"):
                raise ValueError(f"{attr} must be a CURIE such as PREFIX:ID, got {value!r}")


# ----------------------
# Series annotations
# ----------------------


@dataclass
class SeriesAnnotation:
    """
    Declares the meaning of one or more columns of a table.

    Attributes:
        identifier: which columns this annotation owns.
        header_semantic: meaning of the column headers (NONE for ordinary columns).
        data_semantic: meaning of the cell values.
        fill_missing: value used for missing cells by the FillMissing strategy.
        alias_map: literal substitutions applied by the AliasSubstitution strategy.
        building_block_id: opaque id linking annotations of one sub-entity.
        sub_block_ids: ids of nested building blocks.
        assay: assay (and unit) of measurement columns.
    """

    identifier: ColumnIdentifier
    header_semantic: SemanticTag = SemanticTag.NONE
    data_semantic: SemanticTag = SemanticTag.NONE
    fill_missing: typing.Optional[CellValue] = None
    alias_map: typing.Optional[AliasMap] = None
    building_block_id: typing.Optional[str] = None
    sub_block_ids: typing.Sequence[str] = field(default_factory=tuple)
    assay: typing.Optional[Assay] = None

    def __post_init__(self) -> None:
        if not isinstance(self.identifier, (ByPattern, ByExplicitList)):
            raise ValueError(f"Invalid column identifier: {self.identifier!r}")
        for attr in ("header_semantic", "data_semantic"):
            if not isinstance(getattr(self, attr), SemanticTag):
                raise ValueError(f"{attr} must be a SemanticTag, got {getattr(self, attr)!r}")
        if self.building_block_id is not None and not str(self.building_block_id).strip():
            raise ValueError("building_block_id must be a non-empty string when given")
        self.sub_block_ids = tuple(self.sub_block_ids)
        if self.data_semantic is SemanticTag.QUANTITATIVE_MEASUREMENT:
            if self.assay is None or self.assay.unit_id is None:
                raise ValueError("Quantitative measurement columns need an assay with a unit")
        elif self.data_semantic is SemanticTag.QUALITATIVE_MEASUREMENT and self.assay is None:
            raise ValueError("Qualitative measurement columns need an assay")

    @property
    def is_subject_id(self) -> bool:
        return (
            self.header_semantic is SemanticTag.NONE
            and self.data_semantic is SemanticTag.SUBJECT_ID
        )

    def describe(self) -> str:
        """Short human-readable description used in log and error messages."""
        return (
            f"{self.identifier} "
            f"(header={self.header_semantic.value}, data={self.data_semantic.value})"
        )
