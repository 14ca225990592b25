"""
EntityCollector: rebuild per-subject records from annotated tables.

Process:
1) check every table declares one subject id column
2) split every table into per-subject partitions (stable order)
3) per subject, across all of its partitions:
   - individual fields and vital status (single-valued semantics),
   - phenotypic features from cells and from column headers,
   - diseases and genomic interpretations linked by building block
   - quantitative and qualitative measurements with their time observed
4) hand everything to the PhenopacketBuilder and build the packets

Two physical columns describe the same entity only through the subject id
(across tables) and a shared building_block_id (within a table).
"""

from __future__ import annotations

import logging
import typing

from phenopackets.schema.v2.phenopackets_pb2 import Phenopacket
from stairval.notepad import Notepad

from .assembly import GeneVariantData, PhenopacketBuilder
from .casting import is_missing, stringify
from .errors import (
    AmbiguousLinkedColumn,
    BuilderError,
    CollectorError,
    FieldParseError,
    GeneVariantDataError,
    MissingSubjectIdColumn,
    MultiplicityError,
    NoOrManySubjectIdColumns,
    PhenotabError,
)
from .semantics import ONSET_SEMANTICS, SemanticTag, SeriesAnnotation
from .table import SemanticTable, single_values

LOGGER = logging.getLogger(__name__)

_OBSERVED_STATUSES = {"observed", "true", "yes", "y", "1", "present"}
_EXCLUDED_STATUSES = {"excluded", "false", "no", "n", "0", "absent", "not observed"}


def _cell(table: SemanticTable, column: typing.Optional[str], row: int) -> typing.Optional[str]:
    """Stringified, trimmed cell value, None when missing or blank."""
    if column is None:
        return None
    value = table.data[column].iat[row]
    if is_missing(value):
        return None
    text = stringify(value).strip()
    return text or None


def classify_gene_variant_data(
        subject_id: str,
        genes: typing.Sequence[str],
        variants: typing.Sequence[str],
        declared_zygosity: typing.Optional[str] = None,
) -> typing.Optional[GeneVariantData]:
    """
    Decide what a row's genes and variants mean.

    (0 genes, 0 variants) -> nothing, (1, 0) -> causative gene,
    (0|1, 1) -> heterozygous (or the declared zygosity),
    (0|1, 2) -> homozygous when both variants are equal, compound heterozygous otherwise.
    Anything else raises GeneVariantDataError.
    """
    if len(genes) > 1 or len(variants) > 2:
        raise GeneVariantDataError(subject_id, genes, variants)
    gene = genes[0] if genes else None
    try:
        if not variants:
            return GeneVariantData(gene=gene) if gene is not None else None
        if len(variants) == 1:
            return GeneVariantData(gene=gene, variants=(variants[0],), zygosity=declared_zygosity or "heterozygous")
        if variants[0] == variants[1]:
            return GeneVariantData(gene=gene, variants=(variants[0],), zygosity="homozygous")
        return GeneVariantData(gene=gene, variants=tuple(variants), zygosity="compound_heterozygosity")
    except ValueError as e:
        raise GeneVariantDataError(subject_id, genes, variants) from e


class EntityCollector:
    """
    Walk the per-subject partitions and issue upserts to the builder.

    Per-subject problems are collected in `errors` (sorted, after `collect`) and
    never stop the other subjects. Missing subject id columns fail at once.
    """

    def __init__(self, builder: PhenopacketBuilder):
        self._builder = builder
        self.errors: list[PhenotabError] = []
        self.warnings: list[str] = []

    def collect(
            self,
            tables: typing.Sequence[SemanticTable],
            notepad: typing.Optional[Notepad] = None,
    ) -> list[Phenopacket]:
        self.errors = []
        self.warnings = []
        subjects: dict[str, list[SemanticTable]] = {}
        for table in tables:
            try:
                table.subject_id_column()
            except NoOrManySubjectIdColumns as e:
                raise MissingSubjectIdColumn(table.name) from e
            for subject_id, partition in table.group_by_subject():
                subjects.setdefault(subject_id, []).append(partition)

        LOGGER.info("Collecting %d subject(s) from %d table(s)", len(subjects), len(tables))
        for subject_id, partitions in subjects.items():
            self._collect_subject(subject_id, partitions)

        self.errors.sort(key=str)
        if notepad is not None:
            for warning in self.warnings:
                notepad.add_warning(warning)
            for error in self.errors:
                notepad.add_error(str(error))
        return self._builder.build()

    def _record(self, error: PhenotabError) -> None:
        LOGGER.warning("%s", error)
        self.errors.append(error)

    def _warn(self, message: str) -> None:
        LOGGER.warning("%s", message)
        self.warnings.append(message)

    def _collect_subject(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        self._builder.upsert_individual(subject_id)
        steps = (
            self._collect_individual,
            self._collect_vital_status,
            self._collect_phenotypes_in_cells,
            self._collect_phenotypes_in_headers,
            self._collect_diseases,
            self._collect_interpretations,
            self._collect_measurements,
        )
        for step in steps:
            try:
                step(subject_id, partitions)
            except (CollectorError, BuilderError) as e:
                self._record(e)

    # ----------------------
    # Single-valued fields
    # ----------------------

    @staticmethod
    def single_value(
            subject_id: str,
            partitions: typing.Sequence[SemanticTable],
            semantic: SemanticTag,
    ) -> typing.Optional[str]:
        """
        The one value of `semantic` for a subject, None if absent.

        Raises MultiplicityError when the subject's columns disagree.
        """
        values: dict[str, None] = {}
        for partition in partitions:
            annotations = (
                partition.filter_annotations()
                .where_header(SemanticTag.NONE)
                .where_data(semantic)
                .collect()
            )
            for annotation in annotations:
                for series in partition.column_data(annotation):
                    for value in single_values(series):
                        values.setdefault(value.strip(), None)
        values.pop("", None)
        if len(values) > 1:
            raise MultiplicityError(semantic, subject_id, list(values))
        return next(iter(values), None)

    def _single_or_record(self, subject_id, partitions, semantic) -> typing.Optional[str]:
        try:
            return self.single_value(subject_id, partitions, semantic)
        except MultiplicityError as e:
            self._record(e)
            return None

    def _collect_individual(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        date_of_birth = self._single_or_record(subject_id, partitions, SemanticTag.DATE_OF_BIRTH)
        sex = self._single_or_record(subject_id, partitions, SemanticTag.SUBJECT_SEX)
        last_encounter = self._single_or_record(subject_id, partitions, SemanticTag.TIME_AT_LAST_ENCOUNTER)
        self._builder.upsert_individual(
            subject_id,
            date_of_birth=date_of_birth,
            sex=sex,
            time_at_last_encounter=last_encounter,
        )

    def _collect_vital_status(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        status = self.single_value(subject_id, partitions, SemanticTag.VITAL_STATUS)
        if status is None:
            return
        time_of_death = self.single_value(subject_id, partitions, SemanticTag.TIME_OF_DEATH)
        cause_of_death = self.single_value(subject_id, partitions, SemanticTag.CAUSE_OF_DEATH)
        survival = self.single_value(subject_id, partitions, SemanticTag.SURVIVAL_TIME_DAYS)
        survival_days = None
        if survival is not None:
            try:
                survival_days = int(survival)
            except ValueError:
                survival_days = -1
            if survival_days < 0:
                raise FieldParseError(subject_id, SemanticTag.SURVIVAL_TIME_DAYS, survival, "a non-negative integer")
        self._builder.upsert_vital_status(
            subject_id,
            status,
            time_of_death=time_of_death,
            cause_of_death=cause_of_death,
            survival_time_days=survival_days,
        )

    # ----------------------
    # Building-block linked entities
    # ----------------------

    def _onset_column(self, partition: SemanticTable, annotation: SeriesAnnotation) -> typing.Optional[str]:
        try:
            return partition.single_linked_column(annotation.building_block_id, ONSET_SEMANTICS)
        except AmbiguousLinkedColumn as e:
            self._warn(f"{e}; no onset is attached to {annotation.describe()}")
            return None

    def _collect_phenotypes_in_cells(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        for partition in partitions:
            annotations = (
                partition.filter_annotations()
                .where_header(SemanticTag.NONE)
                .where_data(SemanticTag.HPO_LABEL_OR_ID)
                .collect()
            )
            for annotation in annotations:
                onset_column = self._onset_column(partition, annotation)
                for column in partition.columns_for(annotation.identifier):
                    for row in range(len(partition.data)):
                        phenotype = _cell(partition, column, row)
                        onset = _cell(partition, onset_column, row)
                        if phenotype is None:
                            if onset is not None:
                                self._warn(
                                    f"Subject {subject_id!r}: onset {onset!r} in table {partition.name!r} "
                                    f"has no phenotype in column {column!r}"
                                )
                            continue
                        try:
                            self._builder.upsert_phenotypic_feature(subject_id, phenotype, onset=onset)
                        except BuilderError as e:
                            self._record(e)

    @staticmethod
    def _observation_status(text: typing.Optional[str]) -> typing.Optional[bool]:
        if text is None:
            return None
        key = text.lower()
        if key in _OBSERVED_STATUSES:
            return True
        if key in _EXCLUDED_STATUSES:
            return False
        return None

    def _collect_phenotypes_in_headers(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        for partition in partitions:
            annotations = (
                partition.filter_annotations()
                .where_header(SemanticTag.HPO_LABEL_OR_ID)
                .where_data(SemanticTag.OBSERVATION_STATUS)
                .collect()
            )
            for annotation in annotations:
                onset_column = self._onset_column(partition, annotation)
                for column in partition.columns_for(annotation.identifier):
                    pairs: dict[tuple, None] = {}
                    for row in range(len(partition.data)):
                        status = self._observation_status(_cell(partition, column, row))
                        onset = _cell(partition, onset_column, row)
                        if status is None and onset is None:
                            continue
                        pairs.setdefault((status, onset), None)
                    if not pairs:
                        continue
                    if len(pairs) > 1:
                        self._record(MultiplicityError(
                            column, subject_id, [f"status={s}, onset={o}" for s, o in pairs]
                        ))
                        continue
                    status, onset = next(iter(pairs))
                    if status is None:
                        self._warn(
                            f"Subject {subject_id!r}: onset {onset!r} for {column!r} without an observation status"
                        )
                        continue
                    try:
                        self._builder.upsert_phenotypic_feature(
                            subject_id, column, excluded=not status, onset=onset
                        )
                    except BuilderError as e:
                        self._record(e)

    def _disease_annotations(self, partition: SemanticTable) -> list[SeriesAnnotation]:
        return (
            partition.filter_annotations()
            .where_header(SemanticTag.NONE)
            .where_data(SemanticTag.DISEASE_LABEL_OR_ID)
            .collect()
        )

    def _collect_diseases(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        for partition in partitions:
            for annotation in self._disease_annotations(partition):
                onset_column = self._onset_column(partition, annotation)
                for column in partition.columns_for(annotation.identifier):
                    for row in range(len(partition.data)):
                        disease = _cell(partition, column, row)
                        if disease is None:
                            continue
                        try:
                            self._builder.upsert_disease(
                                subject_id, disease, onset=_cell(partition, onset_column, row)
                            )
                        except BuilderError as e:
                            self._record(e)

    def _collect_interpretations(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        for partition in partitions:
            for annotation in self._disease_annotations(partition):
                block_id = annotation.building_block_id
                try:
                    gene_column = partition.single_linked_column(block_id, [SemanticTag.HGNC_SYMBOL_OR_ID])
                    zygosity_column = partition.single_linked_column(block_id, [SemanticTag.ZYGOSITY])
                except AmbiguousLinkedColumn as e:
                    self._record(e)
                    continue
                variant_columns = partition.linked_columns(block_id, [SemanticTag.HGVS])
                if gene_column is None and not variant_columns:
                    continue

                for column in partition.columns_for(annotation.identifier):
                    for row in range(len(partition.data)):
                        disease = _cell(partition, column, row)
                        if disease is None:
                            continue
                        gene = _cell(partition, gene_column, row)
                        variants = [v for v in (_cell(partition, c, row) for c in variant_columns) if v]
                        try:
                            data = classify_gene_variant_data(
                                subject_id,
                                [gene] if gene else [],
                                variants,
                                _cell(partition, zygosity_column, row),
                            )
                            self._builder.upsert_interpretation(subject_id, disease, data)
                        except (GeneVariantDataError, BuilderError) as e:
                            self._record(e)

    # ----------------------
    # Measurements
    # ----------------------

    @staticmethod
    def _number(subject_id: str, semantic: SemanticTag, text: typing.Optional[str]) -> typing.Optional[float]:
        if text is None:
            return None
        try:
            return float(text)
        except ValueError as e:
            raise FieldParseError(subject_id, semantic, text, "a number") from e

    def _collect_measurements(self, subject_id: str, partitions: list[SemanticTable]) -> None:
        for partition in partitions:
            annotations = (
                partition.filter_annotations()
                .where_header(SemanticTag.NONE)
                .where_data(SemanticTag.QUANTITATIVE_MEASUREMENT, SemanticTag.QUALITATIVE_MEASUREMENT)
                .collect()
            )
            for annotation in annotations:
                block_id = annotation.building_block_id
                time_column = self._onset_column(partition, annotation)
                try:
                    low_column = partition.single_linked_column(block_id, [SemanticTag.REFERENCE_RANGE_LOW])
                    high_column = partition.single_linked_column(block_id, [SemanticTag.REFERENCE_RANGE_HIGH])
                except AmbiguousLinkedColumn as e:
                    self._record(e)
                    continue
                quantitative = annotation.data_semantic is SemanticTag.QUANTITATIVE_MEASUREMENT
                for column in partition.columns_for(annotation.identifier):
                    for row in range(len(partition.data)):
                        value = _cell(partition, column, row)
                        if value is None:
                            continue
                        time_observed = _cell(partition, time_column, row)
                        try:
                            if quantitative:
                                low = self._number(
                                    subject_id, SemanticTag.REFERENCE_RANGE_LOW, _cell(partition, low_column, row)
                                )
                                high = self._number(
                                    subject_id, SemanticTag.REFERENCE_RANGE_HIGH, _cell(partition, high_column, row)
                                )
                                self._builder.upsert_quantitative_measurement(
                                    subject_id,
                                    self._number(subject_id, annotation.data_semantic, value),
                                    annotation.assay.assay_id,
                                    annotation.assay.unit_id,
                                    time_observed=time_observed,
                                    reference_range=(low, high) if low is not None and high is not None else None,
                                )
                            else:
                                self._builder.upsert_qualitative_measurement(
                                    subject_id, value, annotation.assay.assay_id, time_observed=time_observed
                                )
                        except (FieldParseError, BuilderError) as e:
                            self._record(e)
