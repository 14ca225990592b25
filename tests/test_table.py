import pandas as pd
import pytest

from phenotab.errors import (
    AmbiguousLinkedColumn,
    DanglingAnnotation,
    DuplicateColumnOwnership,
    NoOrManySubjectIdColumns,
    NullSubjectId,
)
from phenotab.semantics import ByExplicitList, ByPattern, SemanticTag, SeriesAnnotation
from phenotab.table import SemanticTable, resolve_columns, single_values


def subject() -> SeriesAnnotation:
    return SeriesAnnotation(ByPattern("subject_id"), data_semantic=SemanticTag.SUBJECT_ID)


# ----------------------
# Column resolution
# ----------------------


def test_exact_name_wins_over_pattern():
    """'age' must not also pick up 'ages'."""
    assert resolve_columns(ByPattern("age"), ["age", "ages"]) == ["age"]


def test_pattern_is_searched_when_no_exact_match():
    assert resolve_columns(ByPattern("^a.*"), ["age", "sex", "name"]) == ["age"]
    assert resolve_columns(ByPattern("HP:"), ["HP:0001250", "x", "HP:0000252"]) == ["HP:0001250", "HP:0000252"]


def test_invalid_regex_matches_nothing():
    assert resolve_columns(ByPattern("(["), ["(", "["]) == []


def test_explicit_list_keeps_table_order():
    assert resolve_columns(ByExplicitList(["c", "a", "zz"]), ["a", "b", "c"]) == ["a", "c"]


def test_columns_for(make_table):
    table = make_table(
        {"subject_id": ["P1"], "age": [1], "ages": [2]},
        [SeriesAnnotation(ByPattern("ages"), data_semantic=SemanticTag.ONSET_AGE)],
        allow_dangling=True,
    )
    assert table.columns_for(ByPattern("age")) == ["age"]
    assert table.columns_for(ByPattern("^a.*")) == ["age", "ages"]
    assert table.columns_for(ByPattern("^nothing$")) == []


# ----------------------
# Validation on construction
# ----------------------


def test_column_claimed_twice_is_rejected():
    data = pd.DataFrame({"subject_id": ["P1"], "age": [3]})
    with pytest.raises(DuplicateColumnOwnership) as e:
        SemanticTable(
            "t",
            [
                subject(),
                SeriesAnnotation(ByPattern("age"), data_semantic=SemanticTag.ONSET_AGE),
                SeriesAnnotation(ByExplicitList(["age"]), data_semantic=SemanticTag.TIME_AT_LAST_ENCOUNTER),
            ],
            data,
        )
    assert e.value.column == "age"


def test_dangling_annotation_is_rejected_unless_allowed():
    data = pd.DataFrame({"subject_id": ["P1"]})
    annotations = [subject(), SeriesAnnotation(ByPattern("^HP:"), header_semantic=SemanticTag.HPO_LABEL_OR_ID)]
    with pytest.raises(DanglingAnnotation):
        SemanticTable("t", annotations, data)
    table = SemanticTable("t", annotations, data, allow_dangling=True)
    assert table.dangling_annotations() == [annotations[1]]


@pytest.mark.parametrize(
    "annotations",
    [
        [],
        [
            SeriesAnnotation(ByPattern("subject_id"), data_semantic=SemanticTag.SUBJECT_ID),
            SeriesAnnotation(ByPattern("other_id"), data_semantic=SemanticTag.SUBJECT_ID),
        ],
    ],
)
def test_exactly_one_subject_id_column(annotations):
    data = pd.DataFrame({"subject_id": ["P1"], "other_id": ["X"]})
    with pytest.raises(NoOrManySubjectIdColumns):
        SemanticTable("t", annotations, data, allow_dangling=True)


def test_missing_subject_id_is_rejected():
    data = pd.DataFrame({"subject_id": ["P1", None]})
    with pytest.raises(NullSubjectId) as e:
        SemanticTable("t", [subject()], data)
    assert e.value.n_missing == 1


def test_data_must_be_dataframe():
    with pytest.raises(TypeError):
        SemanticTable("t", [subject()], {"subject_id": ["P1"]})


# ----------------------
# Building blocks
# ----------------------


def test_single_linked_column(make_table):
    table = make_table(
        {"subject_id": ["P1"], "pheno": ["Seizure"], "onset": ["P1Y"], "onset_date": ["2020-01-01"]},
        [
            SeriesAnnotation(ByPattern("pheno"), data_semantic=SemanticTag.HPO_LABEL_OR_ID, building_block_id="b1"),
            SeriesAnnotation(ByPattern("onset"), data_semantic=SemanticTag.ONSET_AGE, building_block_id="b1"),
            SeriesAnnotation(ByPattern("onset_date"), data_semantic=SemanticTag.ONSET_DATETIME, building_block_id="b2"),
        ],
    )
    assert table.single_linked_column("b1", [SemanticTag.ONSET_AGE, SemanticTag.ONSET_DATETIME]) == "onset"
    assert table.single_linked_column("b3", [SemanticTag.ONSET_AGE]) is None
    assert table.single_linked_column(None, [SemanticTag.ONSET_AGE]) is None
    assert table.building_block_ids() == ["b1", "b2"]


def test_two_linked_candidates_are_ambiguous(make_table):
    table = make_table(
        {"subject_id": ["P1"], "pheno": ["Seizure"], "onset": ["P1Y"], "onset_date": ["2020-01-01"]},
        [
            SeriesAnnotation(ByPattern("pheno"), data_semantic=SemanticTag.HPO_LABEL_OR_ID, building_block_id="b1"),
            SeriesAnnotation(ByPattern("onset"), data_semantic=SemanticTag.ONSET_AGE, building_block_id="b1"),
            SeriesAnnotation(ByPattern("onset_date"), data_semantic=SemanticTag.ONSET_DATETIME, building_block_id="b1"),
        ],
    )
    with pytest.raises(AmbiguousLinkedColumn) as e:
        table.single_linked_column("b1", [SemanticTag.ONSET_AGE, SemanticTag.ONSET_DATETIME])
    assert e.value.count == 2


# ----------------------
# Grouping
# ----------------------


def test_group_by_subject_keeps_first_seen_order(make_table):
    table = make_table(
        {
            "subject_id": ["P2", "P1", "P2"],
            "pheno": ["Seizure", None, "Microcephaly"],
            "sex": [None, "FEMALE", None],
        },
        [
            SeriesAnnotation(ByPattern("pheno"), data_semantic=SemanticTag.HPO_LABEL_OR_ID),
            SeriesAnnotation(ByPattern("sex"), data_semantic=SemanticTag.SUBJECT_SEX),
        ],
    )
    partitions = table.group_by_subject()
    assert [subject_id for subject_id, _ in partitions] == ["P2", "P1"]

    p2 = partitions[0][1]
    assert p2.data["pheno"].tolist() == ["Seizure", "Microcephaly"]
    assert p2.data["sex"].isna().all()

    p1 = partitions[1][1]
    assert p1.data["sex"].tolist() == ["FEMALE"]
    for _, part in partitions:
        assert part.column_names == ["subject_id", "pheno", "sex"]
        assert part.annotations == table.annotations


def test_group_by_subject_keeps_exact_pattern_bindings(make_table):
    table = make_table(
        {"subject_id": ["P1", "P2"], "onset": [None, "P1Y"], "onset_date": ["2020-01-01", None]},
        [
            SeriesAnnotation(ByPattern("onset"), data_semantic=SemanticTag.ONSET_AGE, building_block_id="b1"),
            SeriesAnnotation(ByPattern("onset_date"), data_semantic=SemanticTag.ONSET_DATETIME, building_block_id="b2"),
        ],
    )
    for _, part in table.group_by_subject():
        assert part.linked_columns("b1", [SemanticTag.ONSET_AGE]) == ["onset"]
        assert part.linked_columns("b2", [SemanticTag.ONSET_DATETIME]) == ["onset_date"]


def test_subject_ids_are_stringified(make_table):
    table = make_table({"subject_id": [1, 2, 1]})
    assert table.subject_ids() == ["1", "2"]


def test_single_values():
    assert single_values(pd.Series(["a", None, "b", "a", 3.0])) == ["a", "b", "3"]
