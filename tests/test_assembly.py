import datetime

import phenopackets.schema.v2 as pps2
import pytest

from phenotab.assembly import GeneVariantData, PhenopacketBuilder, parse_time_element
from phenotab.errors import BuilderError


@pytest.fixture
def builder(hpo, diseases) -> PhenopacketBuilder:
    return PhenopacketBuilder("cohort", hpo, diseases, created_by="curator")


@pytest.mark.parametrize(
    "subject_id, expected",
    [
        ("P1", "cohort-P1"),
        ("cohort-7", "cohort-cohort-7"),
    ],
)
def test_phenopacket_id(builder, subject_id, expected):
    assert builder.phenopacket_id(subject_id) == expected


def test_subjects_sharing_a_cohort_prefix_stay_apart(builder):
    builder.upsert_individual("A", sex="MALE")
    builder.upsert_individual("cohort-A", sex="FEMALE")

    packets = {p.id: p for p in builder.build()}
    assert list(packets) == ["cohort-A", "cohort-cohort-A"]
    assert packets["cohort-A"].subject.id == "A"
    assert packets["cohort-A"].subject.sex == pps2.Sex.Value("MALE")
    assert packets["cohort-cohort-A"].subject.id == "cohort-A"
    assert packets["cohort-cohort-A"].subject.sex == pps2.Sex.Value("FEMALE")


def test_cohort_name_required(hpo):
    with pytest.raises(ValueError):
        PhenopacketBuilder("  ", hpo)


def test_time_elements():
    age = parse_time_element("P3Y2M")
    assert age.WhichOneof("element") == "age"
    assert age.age.iso8601duration == "P3Y2M"

    ts = parse_time_element("2020-01-31")
    assert ts.WhichOneof("element") == "timestamp"
    assert ts.timestamp.ToDatetime() == datetime.datetime(2020, 1, 31)


@pytest.mark.parametrize("text", ["soon", "P", "3 years"])
def test_bad_time_element(text):
    with pytest.raises(BuilderError):
        parse_time_element(text)


def test_upsert_individual(builder):
    builder.upsert_individual("P1", date_of_birth="2001-02-03", sex="female", time_at_last_encounter="P20Y")
    packet = builder.build()[0]
    assert packet.subject.sex == pps2.Sex.Value("FEMALE")
    assert packet.subject.date_of_birth.ToDatetime() == datetime.datetime(2001, 2, 3)
    assert packet.subject.time_at_last_encounter.age.iso8601duration == "P20Y"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"sex": "robot"},
        {"date_of_birth": "yesterday"},
    ],
)
def test_upsert_individual_rejects_bad_values(builder, kwargs):
    with pytest.raises(BuilderError):
        builder.upsert_individual("P1", **kwargs)


def test_phenotypic_feature_upsert_updates_in_place(builder):
    builder.upsert_phenotypic_feature("P1", "Seizure")
    builder.upsert_phenotypic_feature("P1", "HP:0001250", excluded=True, onset="P1Y")
    builder.upsert_phenotypic_feature("P1", "small head")

    features = builder.build()[0].phenotypic_features
    assert [f.type.id for f in features] == ["HP:0001250", "HP:0000252"]
    assert features[0].excluded
    assert features[0].onset.age.iso8601duration == "P1Y"
    assert features[1].type.label == "Microcephaly"


def test_unknown_term(builder):
    with pytest.raises(BuilderError):
        builder.upsert_phenotypic_feature("P1", "Tall stature")


def test_disease_needs_dictionary(hpo):
    builder = PhenopacketBuilder("cohort", hpo)
    with pytest.raises(BuilderError):
        builder.upsert_disease("P1", "OMIM:613720")


def test_vital_status(builder):
    builder.upsert_vital_status("P1", "deceased", time_of_death="P40Y", cause_of_death="OMIM:613720", survival_time_days=12)
    vital = builder.build()[0].subject.vital_status
    assert vital.status == pps2.VitalStatus.Status.Value("DECEASED")
    assert vital.cause_of_death.label == "Developmental and epileptic encephalopathy 9"
    assert vital.survival_time_in_days == 12

    with pytest.raises(BuilderError):
        builder.upsert_vital_status("P1", "sleeping")


def test_interpretation_is_not_duplicated(builder):
    data = GeneVariantData(gene="CDKL5", variants=("NM_003159.3:c.100A>G",), zygosity="heterozygous")
    builder.upsert_interpretation("P1", "OMIM:300672", data)
    builder.upsert_interpretation("P1", "OMIM:300672", data)
    builder.upsert_interpretation("P1", "OMIM:300672", GeneVariantData(gene="CDKL5"))

    interpretations = builder.build()[0].interpretations
    assert len(interpretations) == 1
    assert interpretations[0].id == "cohort-P1-OMIM:300672"
    genomic = interpretations[0].diagnosis.genomic_interpretations
    assert len(genomic) == 2
    assert genomic[0].interpretation_status == pps2.GenomicInterpretation.InterpretationStatus.Value("CAUSATIVE")
    assert genomic[1].gene.symbol == "CDKL5"


def test_metadata(builder):
    builder.upsert_phenotypic_feature("P1", "Seizure")
    builder.upsert_interpretation(
        "P1", "CDKL5 disorder",
        GeneVariantData(variants=("NM_003159.3:c.100A>G", "NM_003159.3:c.200C>T"), zygosity="compound_heterozygosity"),
    )
    created = datetime.datetime(2024, 1, 2, 3, 4, 5)
    meta = builder.build(created=created)[0].meta_data

    assert meta.created.ToDatetime() == created
    assert meta.created_by == "curator"
    assert meta.submitted_by == "curator"
    assert [r.namespace_prefix for r in meta.resources] == ["GENO", "HP", "MONDO"]
    versions = {r.namespace_prefix: r.version for r in meta.resources}
    assert versions["HP"] == "2024-04-26"
    assert versions["MONDO"] == "2024-03-04"


def test_build_keeps_subject_order(builder):
    for subject_id in ("P3", "P1", "P2"):
        builder.upsert_individual(subject_id)
    assert [p.subject.id for p in builder.build()] == ["P3", "P1", "P2"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"gene": "A", "variants": ("v1", "v2", "v3"), "zygosity": "heterozygous"},
        {"gene": "A", "variants": ("v1",)},
        {"gene": "A", "variants": ("v1",), "zygosity": "triploid"},
    ],
)
def test_gene_variant_data_validation(kwargs):
    with pytest.raises(ValueError):
        GeneVariantData(**kwargs)


def test_gene_variant_data_allelic_state():
    comphet = GeneVariantData(variants=("v1", "v2"), zygosity="compound_heterozygosity")
    assert comphet.variant_allelic_state == "heterozygous"
    assert comphet.allelic_count == 1
    assert GeneVariantData(variants=("v1",), zygosity="homozygous").allelic_count == 2


# ----------------------
# Measurements
# ----------------------


@pytest.fixture
def lab_builder(hpo, measurement_dictionaries) -> PhenopacketBuilder:
    return PhenopacketBuilder("cohort", hpo, created_by="curator", **measurement_dictionaries)


def test_quantitative_measurement(lab_builder):
    lab_builder.upsert_quantitative_measurement(
        "P1", 151.5, "Body height", "cm", time_observed="P12Y", reference_range=(140, 160)
    )
    lab_builder.upsert_quantitative_measurement(
        "P1", 151.5, "LOINC:8302-2", "UO:0000015", time_observed="P12Y", reference_range=(140, 160)
    )

    measurements = lab_builder.build()[0].measurements
    assert len(measurements) == 1
    measurement = measurements[0]
    assert measurement.assay.id == "LOINC:8302-2"
    quantity = measurement.value.quantity
    assert quantity.value == 151.5
    assert quantity.unit.label == "centimeter"
    assert quantity.reference_range.unit.id == "UO:0000015"
    assert (quantity.reference_range.low, quantity.reference_range.high) == (140, 160)
    assert measurement.time_observed.age.iso8601duration == "P12Y"


def test_quantitative_measurement_without_range(lab_builder):
    lab_builder.upsert_quantitative_measurement("P1", 98, "LOINC:8302-2", "UO:0000015")
    lab_builder.upsert_quantitative_measurement("P1", 99, "LOINC:8302-2", "UO:0000015")

    measurements = lab_builder.build()[0].measurements
    assert [m.value.quantity.value for m in measurements] == [98, 99]
    assert not measurements[0].value.quantity.HasField("reference_range")
    assert not measurements[0].HasField("time_observed")


def test_reference_range_must_be_ordered(lab_builder):
    with pytest.raises(BuilderError):
        lab_builder.upsert_quantitative_measurement("P1", 1, "LOINC:8302-2", "UO:0000015", reference_range=(5, 2))


def test_qualitative_measurement(lab_builder):
    lab_builder.upsert_qualitative_measurement("P1", "Yellow", "Color of Urine", time_observed="2021-06-01")

    measurement = lab_builder.build()[0].measurements[0]
    assert measurement.assay.id == "LOINC:5778-6"
    assert measurement.value.ontology_class.id == "NCIT:C48354"
    assert measurement.time_observed.timestamp.ToDatetime() == datetime.datetime(2021, 6, 1)


@pytest.mark.parametrize(
    "call, args",
    [
        ("upsert_quantitative_measurement", ("P1", 1, "LOINC:8302-2", "UO:0000015")),
        ("upsert_qualitative_measurement", ("P1", "Yellow", "LOINC:5778-6")),
    ],
)
def test_measurements_need_dictionaries(builder, call, args):
    with pytest.raises(BuilderError) as e:
        getattr(builder, call)(*args)
    assert "No dictionary" in str(e.value)


@pytest.mark.parametrize(
    "call, args",
    [
        ("upsert_quantitative_measurement", ("P1", 1, "LOINC:0000-0", "UO:0000015")),
        ("upsert_quantitative_measurement", ("P1", 1, "LOINC:8302-2", "inch")),
        ("upsert_qualitative_measurement", ("P1", "Purple", "LOINC:5778-6")),
    ],
)
def test_unknown_measurement_terms(lab_builder, call, args):
    with pytest.raises(BuilderError):
        getattr(lab_builder, call)(*args)


def test_measurement_resources(lab_builder):
    lab_builder.upsert_quantitative_measurement("P1", 151.5, "LOINC:8302-2", "UO:0000015")
    meta = lab_builder.build()[0].meta_data

    resources = {r.namespace_prefix: r for r in meta.resources}
    assert list(resources) == ["LOINC", "UO"]
    assert resources["LOINC"].version == "2.77"
    assert resources["LOINC"].iri_prefix == "https://loinc.org/"
    assert resources["UO"].version == "2023-05-25"
