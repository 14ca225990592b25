"""
PhenopacketBuilder: accumulate upserts per subject and build GA4GH phenopackets.

The collector hands over plain strings (subject ids, ontology labels or ids,
HGVS strings, ages/dates). The builder resolves ontology terms through the
per-category dictionaries, turns time strings into TimeElements and keeps
one Phenopacket message per subject. `build()` stamps metadata and returns
the messages in the order their subjects were first seen.
"""

from __future__ import annotations

import datetime
import logging
import re
import typing
from dataclasses import dataclass

import phenopackets.schema.v2 as pps2
from google.protobuf.timestamp_pb2 import Timestamp

from .bidict import BiDict
from .casting import parse_datetime
from .errors import BuilderError

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = "2.0"

_ISO8601_DURATION = re.compile(r"^P(\d+Y)?(\d+M)?(\d+D)?(T(\d+H)?(\d+M)?(\d+S)?)?$")

# GENO allelic_state terms keyed by normalized zygosity
_GENO_ALLELIC_STATES = {
    "heterozygous": "GENO:0000135",
    "homozygous": "GENO:0000136",
    "hemizygous": "GENO:0000134",
    "compound_heterozygosity": "GENO:0000402",
    "mosaic": "GENO:0000150",
}

# Metadata resources for the ontologies phenopackets commonly reference
_KNOWN_RESOURCES = {
    "HP": ("hp", "human phenotype ontology", "http://purl.obolibrary.org/obo/hp.json",
           "http://purl.obolibrary.org/obo/HP_"),
    "MONDO": ("mondo", "Mondo Disease Ontology", "http://purl.obolibrary.org/obo/mondo.json",
              "http://purl.obolibrary.org/obo/MONDO_"),
    "OMIM": ("omim", "Online Mendelian Inheritance in Man", "https://www.omim.org",
             "https://www.omim.org/entry/"),
    "ORPHA": ("orpha", "Orphanet Rare Disease Ontology", "https://www.orpha.net",
              "http://www.orpha.net/ORDO/Orphanet_"),
    "GENO": ("geno", "Genotype Ontology", "http://purl.obolibrary.org/obo/geno.json",
             "http://purl.obolibrary.org/obo/GENO_"),
    "HGNC": ("hgnc", "HUGO Gene Nomenclature Committee", "https://www.genenames.org",
             "https://www.genenames.org/data/gene-symbol-report/#!/hgnc_id/"),
    "LOINC": ("loinc", "Logical Observation Identifiers Names and Codes", "https://loinc.org",
              "https://loinc.org/"),
    "UO": ("uo", "Units of measurement ontology", "http://purl.obolibrary.org/obo/uo.owl",
           "http://purl.obolibrary.org/obo/UO_"),
}


@dataclass(frozen=True)
class GeneVariantData:
    """
    Gene and variants of one genomic interpretation.

    Attributes:
        gene: gene symbol or HGNC id (optional when variants are given).
        variants: zero, one or two HGVS strings.
        zygosity: one of the GENO zygosity terms; None for a causative gene without variant.
    """
    gene: typing.Optional[str] = None
    variants: tuple[str, ...] = ()
    zygosity: typing.Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variants", tuple(self.variants))
        if self.gene is None and not self.variants:
            raise ValueError("GeneVariantData needs a gene or at least one variant")
        if len(self.variants) > 2:
            raise ValueError(f"At most two variants are supported, got {len(self.variants)}")
        if self.zygosity is not None and self.zygosity not in _GENO_ALLELIC_STATES:
            raise ValueError(f"Invalid zygosity: {self.zygosity!r}")
        if self.variants and self.zygosity is None:
            raise ValueError("Variants need a zygosity")

    @property
    def allelic_count(self) -> int:
        """Number of affected alleles carried by each listed variant."""
        return 2 if self.zygosity == "homozygous" else 1

    @property
    def variant_allelic_state(self) -> typing.Optional[str]:
        # each variant of a compound heterozygote sits on one allele
        if self.zygosity == "compound_heterozygosity":
            return "heterozygous"
        return self.zygosity


def parse_time_element(text: str) -> "pps2.TimeElement":
    """
    Read a date/datetime as a timestamp, an ISO8601 duration as an age.
    """
    value = str(text).strip()
    element = pps2.TimeElement()
    parsed = parse_datetime(value)
    if parsed is not None:
        element.timestamp.FromDatetime(parsed)
        return element
    if _ISO8601_DURATION.match(value) and value != "P":
        element.age.iso8601duration = value
        return element
    raise BuilderError(f"Cannot parse {value!r} as a time element")


def _timestamp(moment: datetime.datetime) -> Timestamp:
    if moment.tzinfo is not None:
        moment = moment.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    ts = Timestamp()
    ts.FromDatetime(moment)
    return ts


class PhenopacketBuilder:
    """
    Output assembler for the entity collector.

    Parameters
    ----------
    cohort_name : str
        Prefix of every phenopacket id.
    hpo : BiDict
        Dictionary resolving phenotype labels and ids.
    diseases : BiDict, optional
        Dictionary (usually a BiDictLibrary of MONDO/OMIM) for diseases and causes of death.
    genes : BiDict, optional
        Dictionary resolving gene symbols to HGNC ids.
    assays : BiDict, optional
        Dictionary of measurement assays (LOINC).
    units : BiDict, optional
        Dictionary of measurement units (UO).
    qualitative_values : BiDict, optional
        Dictionary resolving the values of qualitative measurements.
    """

    def __init__(
            self,
            cohort_name: str,
            hpo: BiDict,
            diseases: typing.Optional[BiDict] = None,
            genes: typing.Optional[BiDict] = None,
            created_by: str = "phenotab",
            submitted_by: typing.Optional[str] = None,
            assays: typing.Optional[BiDict] = None,
            units: typing.Optional[BiDict] = None,
            qualitative_values: typing.Optional[BiDict] = None,
    ):
        if not cohort_name or not cohort_name.strip():
            raise ValueError("cohort_name must be a non-empty string")
        self.cohort_name = cohort_name.strip()
        self._hpo = hpo
        self._diseases = diseases
        self._genes = genes
        self._assays = assays
        self._units = units
        self._qualitative_values = qualitative_values
        self.created_by = created_by
        self.submitted_by = submitted_by or created_by
        self._packets: dict[str, pps2.Phenopacket] = {}
        self._prefixes: set[str] = set()

    # ---- ids ------------------------------------------------------------------

    def phenopacket_id(self, subject_id: str) -> str:
        return f"{self.cohort_name}-{subject_id}"

    def _packet(self, subject_id: str) -> "pps2.Phenopacket":
        pp_id = self.phenopacket_id(subject_id)
        packet = self._packets.get(pp_id)
        if packet is None:
            packet = pps2.Phenopacket()
            packet.id = pp_id
            packet.subject.id = subject_id
            self._packets[pp_id] = packet
        return packet

    # ---- term resolution ------------------------------------------------------

    def _term(self, bidict: typing.Optional[BiDict], value: str, what: str) -> "pps2.OntologyClass":
        if bidict is None:
            raise BuilderError(f"No dictionary configured to resolve {what} {value!r}")
        resolved = bidict.resolve(value)
        if resolved is None:
            raise BuilderError(f"Unknown {what} term {value!r}")
        term_id, label = resolved
        self._prefixes.add(term_id.split(":", 1)[0])
        return pps2.OntologyClass(id=term_id, label=label)

    # ---- upserts --------------------------------------------------------------

    def upsert_individual(
            self,
            subject_id: str,
            date_of_birth: typing.Optional[str] = None,
            sex: typing.Optional[str] = None,
            time_at_last_encounter: typing.Optional[str] = None,
    ) -> None:
        packet = self._packet(subject_id)
        if date_of_birth is not None:
            moment = parse_datetime(str(date_of_birth).strip())
            if moment is None:
                raise BuilderError(f"Cannot parse date of birth {date_of_birth!r}")
            packet.subject.date_of_birth.CopyFrom(_timestamp(moment))
        if sex is not None:
            try:
                packet.subject.sex = pps2.Sex.Value(sex.strip().upper())
            except ValueError as e:
                raise BuilderError(f"Unknown sex {sex!r}") from e
        if time_at_last_encounter is not None:
            packet.subject.time_at_last_encounter.CopyFrom(parse_time_element(time_at_last_encounter))

    def upsert_vital_status(
            self,
            subject_id: str,
            status: str,
            time_of_death: typing.Optional[str] = None,
            cause_of_death: typing.Optional[str] = None,
            survival_time_days: typing.Optional[int] = None,
    ) -> None:
        vital_status = pps2.VitalStatus()
        try:
            vital_status.status = pps2.VitalStatus.Status.Value(status.strip().upper())
        except ValueError as e:
            raise BuilderError(f"Unknown vital status {status!r}") from e
        if time_of_death is not None:
            vital_status.time_of_death.CopyFrom(parse_time_element(time_of_death))
        if cause_of_death is not None:
            vital_status.cause_of_death.CopyFrom(self._term(self._diseases, cause_of_death, "cause of death"))
        if survival_time_days is not None:
            vital_status.survival_time_in_days = survival_time_days
        self._packet(subject_id).subject.vital_status.CopyFrom(vital_status)

    def upsert_phenotypic_feature(
            self,
            subject_id: str,
            phenotype: str,
            excluded: bool = False,
            onset: typing.Optional[str] = None,
    ) -> None:
        """Add a feature or update the existing feature with the same term."""
        term = self._term(self._hpo, phenotype, "phenotype")
        onset_element = parse_time_element(onset) if onset is not None else None
        packet = self._packet(subject_id)
        feature = next((f for f in packet.phenotypic_features if f.type.id == term.id), None)
        if feature is None:
            feature = packet.phenotypic_features.add()
            feature.type.CopyFrom(term)
        feature.excluded = excluded
        if onset_element is not None:
            feature.onset.CopyFrom(onset_element)

    def upsert_disease(
            self,
            subject_id: str,
            disease: str,
            onset: typing.Optional[str] = None,
            excluded: bool = False,
    ) -> None:
        term = self._term(self._diseases, disease, "disease")
        onset_element = parse_time_element(onset) if onset is not None else None
        packet = self._packet(subject_id)
        entry = next((d for d in packet.diseases if d.term.id == term.id), None)
        if entry is None:
            entry = packet.diseases.add()
            entry.term.CopyFrom(term)
        entry.excluded = excluded
        if onset_element is not None:
            entry.onset.CopyFrom(onset_element)

    def upsert_interpretation(
            self,
            subject_id: str,
            disease: str,
            gene_variant_data: typing.Optional[GeneVariantData] = None,
    ) -> None:
        """
        Record the diagnosis of `disease`, with the gene/variants explaining it.

        One interpretation is kept per disease; new genomic interpretations are
        appended unless an identical one is already there.
        """
        term = self._term(self._diseases, disease, "disease")
        packet = self._packet(subject_id)
        interpretation = next(
            (i for i in packet.interpretations if i.diagnosis.disease.id == term.id), None
        )
        if interpretation is None:
            interpretation = packet.interpretations.add()
            interpretation.id = f"{packet.id}-{term.id}"
            interpretation.progress_status = interpretation.ProgressStatus.Value("COMPLETED")
            interpretation.diagnosis.disease.CopyFrom(term)
        if gene_variant_data is None:
            return
        for genomic in self._genomic_interpretations(subject_id, gene_variant_data):
            if genomic not in interpretation.diagnosis.genomic_interpretations:
                interpretation.diagnosis.genomic_interpretations.add().CopyFrom(genomic)

    def _add_measurement(self, subject_id: str, measurement: "pps2.Measurement") -> None:
        packet = self._packet(subject_id)
        if measurement not in packet.measurements:
            packet.measurements.add().CopyFrom(measurement)

    def upsert_quantitative_measurement(
            self,
            subject_id: str,
            value: float,
            assay_id: str,
            unit_id: str,
            time_observed: typing.Optional[str] = None,
            reference_range: typing.Optional[tuple[float, float]] = None,
    ) -> None:
        """Add a numeric measurement; an identical measurement is not added twice."""
        assay = self._term(self._assays, assay_id, "assay")
        unit = self._term(self._units, unit_id, "unit")
        measurement = pps2.Measurement()
        measurement.assay.CopyFrom(assay)
        quantity = measurement.value.quantity
        quantity.unit.CopyFrom(unit)
        quantity.value = float(value)
        if reference_range is not None:
            low, high = reference_range
            if low > high:
                raise BuilderError(f"Reference range low {low} exceeds high {high}")
            quantity.reference_range.unit.CopyFrom(unit)
            quantity.reference_range.low = float(low)
            quantity.reference_range.high = float(high)
        if time_observed is not None:
            measurement.time_observed.CopyFrom(parse_time_element(time_observed))
        self._add_measurement(subject_id, measurement)

    def upsert_qualitative_measurement(
            self,
            subject_id: str,
            value: str,
            assay_id: str,
            time_observed: typing.Optional[str] = None,
    ) -> None:
        assay = self._term(self._assays, assay_id, "assay")
        result = self._term(self._qualitative_values, value, "measurement value")
        measurement = pps2.Measurement()
        measurement.assay.CopyFrom(assay)
        measurement.value.ontology_class.CopyFrom(result)
        if time_observed is not None:
            measurement.time_observed.CopyFrom(parse_time_element(time_observed))
        self._add_measurement(subject_id, measurement)

    def _gene_descriptor(self, gene: str) -> "pps2.GeneDescriptor":
        descriptor = pps2.GeneDescriptor()
        resolved = self._genes.resolve(gene) if self._genes is not None else None
        if resolved is not None:
            descriptor.value_id, descriptor.symbol = resolved
        else:
            descriptor.symbol = gene
            descriptor.value_id = gene
        if descriptor.value_id.startswith("HGNC:"):
            self._prefixes.add("HGNC")
        return descriptor

    def _genomic_interpretations(
            self, subject_id: str, data: GeneVariantData
    ) -> list["pps2.GenomicInterpretation"]:
        status = pps2.GenomicInterpretation.InterpretationStatus.Value("CAUSATIVE")
        if not data.variants:
            genomic = pps2.GenomicInterpretation()
            genomic.subject_or_biosample_id = subject_id
            genomic.interpretation_status = status
            genomic.gene.CopyFrom(self._gene_descriptor(data.gene))
            return [genomic]

        out = []
        allelic_state = data.variant_allelic_state
        for variant in data.variants:
            genomic = pps2.GenomicInterpretation()
            genomic.subject_or_biosample_id = subject_id
            genomic.interpretation_status = status
            variant_interpretation = genomic.variant_interpretation
            variant_interpretation.acmg_pathogenicity_classification = (
                pps2.AcmgPathogenicityClassification.Value("PATHOGENIC")
            )
            descriptor = variant_interpretation.variation_descriptor
            descriptor.id = variant
            expression = descriptor.expressions.add()
            expression.syntax = "hgvs.c" if ":c." in variant else "hgvs"
            expression.value = variant
            descriptor.allelic_state.id = _GENO_ALLELIC_STATES[allelic_state]
            descriptor.allelic_state.label = allelic_state
            self._prefixes.add("GENO")
            if data.gene is not None:
                descriptor.gene_context.CopyFrom(self._gene_descriptor(data.gene))
            out.append(genomic)
        return out

    # ---- output ---------------------------------------------------------------

    def _meta_data(self, created: datetime.datetime) -> "pps2.MetaData":
        meta = pps2.MetaData()
        meta.created.CopyFrom(_timestamp(created))
        meta.created_by = self.created_by
        meta.submitted_by = self.submitted_by
        meta.phenopacket_schema_version = SCHEMA_VERSION
        versions = {
            getattr(b, "prefix", None): getattr(b, "version", None)
            for lib in (
                self._hpo, self._diseases, self._genes, self._assays, self._units, self._qualitative_values
            )
            if lib is not None
            for b in getattr(lib, "bidicts", (lib,))
        }
        for prefix in sorted(self._prefixes):
            resource = meta.resources.add()
            rid, name, url, iri = _KNOWN_RESOURCES.get(
                prefix, (prefix.lower(), prefix, "", "")
            )
            resource.id = rid
            resource.name = name
            resource.url = url
            resource.iri_prefix = iri
            resource.namespace_prefix = prefix
            resource.version = versions.get(prefix) or ""
        return meta

    def build(self, created: typing.Optional[datetime.datetime] = None) -> list["pps2.Phenopacket"]:
        created = created or datetime.datetime.now(datetime.timezone.utc)
        meta = self._meta_data(created)
        out = []
        for packet in self._packets.values():
            built = pps2.Phenopacket()
            built.CopyFrom(packet)
            built.meta_data.CopyFrom(meta)
            out.append(built)
        LOGGER.info("Built %d phenopacket(s) for cohort %r", len(out), self.cohort_name)
        return out
