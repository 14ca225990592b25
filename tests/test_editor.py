"""
TableEditor: staged changes, commit/discard, and the structural checks run on commit.
"""

import gc
import logging

import pytest

from phenotab.errors import (
    DuplicateColumnOwnership,
    EditorClosedError,
    NoOrManySubjectIdColumns,
    OrphanedColumnError,
    UncommittedEditError,
    ValidationError,
)
from phenotab.semantics import ByExplicitList, ByPattern, OutputDataType, SemanticTag, SeriesAnnotation


@pytest.fixture
def table(make_table):
    return make_table(
        {
            "subject_id": ["P1", "P2"],
            "age": ["12", "40"],
            "tmp": [None, None],
        },
        [
            SeriesAnnotation(ByPattern("age"), data_semantic=SemanticTag.ONSET_AGE),
            SeriesAnnotation(ByPattern("tmp")),
        ],
    )


def test_changes_are_invisible_until_commit(table):
    with table.edit() as editor:
        editor.drop_columns(["tmp"])
        editor.drop_dangling_annotations()
        assert "tmp" in table.column_names
        assert editor.dirty
        editor.commit()
    assert table.column_names == ["subject_id", "age"]
    assert len(table.annotations) == 2


def test_discard_drops_staged_changes(table):
    with table.edit() as editor:
        editor.insert_column("new", [1, 2])
        editor.discard()
    assert "new" not in table.column_names


def test_leaving_dirty_editor_raises(table):
    with pytest.raises(UncommittedEditError):
        with table.edit() as editor:
            editor.insert_column("new", [1, 2])
    assert "new" not in table.column_names


def test_clean_editor_can_be_left_without_commit(table):
    with table.edit() as editor:
        assert not editor.dirty
    assert editor.closed


def test_exception_inside_block_discards_and_propagates(table):
    with pytest.raises(KeyError):
        with table.edit() as editor:
            editor.insert_column("new", [1, 2])
            raise KeyError("boom")
    assert "new" not in table.column_names
    assert editor.closed


def test_failed_commit_leaves_table_untouched(table):
    """Removing the subject id annotation breaks the table; the commit is refused."""
    subject = table.annotations[0]
    with pytest.raises(NoOrManySubjectIdColumns):
        with table.edit() as editor:
            editor.drop_annotation_with_columns(subject)
            editor.commit()
    assert table.column_names == ["subject_id", "age", "tmp"]
    assert table.annotations[0] is subject


def test_commit_rejects_double_ownership(table):
    with pytest.raises(DuplicateColumnOwnership):
        with table.edit() as editor:
            editor.insert_annotation(SeriesAnnotation(ByExplicitList(["age"]), data_semantic=SemanticTag.TIME_OF_DEATH))
            editor.commit()


def test_editor_is_exclusive_while_dirty(table):
    first = table.edit()
    first.insert_column("new", [1, 2])
    with pytest.raises(UncommittedEditError):
        table.edit()
    first.discard()

    clean = table.edit()
    second = table.edit()
    assert clean.closed
    assert not second.closed
    second.discard()


def test_dropped_dirty_editor_is_reported(table, caplog):
    editor = table.edit()
    editor.insert_column("new", [1, 2])
    with caplog.at_level(logging.WARNING, logger="phenotab.editor"):
        del editor
        gc.collect()

    assert any("uncommitted changes" in record.getMessage() for record in caplog.records)
    assert table.column_names == ["subject_id", "age", "tmp"]
    # the table is free for a new editor
    with table.edit() as editor:
        editor.commit()


def test_dropped_clean_editor_is_silent(table, caplog):
    editor = table.edit()
    with caplog.at_level(logging.WARNING, logger="phenotab.editor"):
        del editor
        gc.collect()
    assert caplog.records == []


def test_closed_editor_cannot_be_used(table):
    editor = table.edit()
    editor.commit()
    with pytest.raises(EditorClosedError):
        editor.drop_columns(["tmp"])
    with pytest.raises(EditorClosedError):
        editor.commit()


@pytest.mark.parametrize(
    "values",
    [[1], [1, 2, 3]],
)
def test_insert_column_length_must_match(table, values):
    with table.edit() as editor:
        with pytest.raises(ValidationError):
            editor.insert_column("new", values)


def test_insert_existing_column_is_rejected(table):
    with table.edit() as editor:
        with pytest.raises(ValidationError):
            editor.insert_column("age", [1, 2])


def test_insert_annotation_with_columns(table):
    annotation = SeriesAnnotation(
        ByPattern("^HP:"),
        header_semantic=SemanticTag.HPO_LABEL_OR_ID,
        data_semantic=SemanticTag.OBSERVATION_STATUS,
    )
    with table.edit() as editor:
        editor.insert_annotation_with_columns(
            annotation, {"HP:0001250": ["OBSERVED", "UNKNOWN"], "HP:0000252": ["UNKNOWN", "OBSERVED"]}
        )
        editor.commit()
    assert table.columns_for(annotation.identifier) == ["HP:0001250", "HP:0000252"]
    assert table.annotation_for_column("HP:0000252") is annotation


def test_columns_not_matched_by_annotation_are_orphaned(table):
    annotation = SeriesAnnotation(ByPattern("^HP:"), header_semantic=SemanticTag.HPO_LABEL_OR_ID)
    with table.edit() as editor:
        with pytest.raises(OrphanedColumnError) as e:
            editor.insert_annotation_with_columns(annotation, {"HP:0001250": ["x", "y"], "seizure": ["x", "y"]})
        assert e.value.columns == ("seizure",)
        assert not editor.dirty


def test_explicit_list_names_must_be_supplied(table):
    annotation = SeriesAnnotation(ByExplicitList(["a", "b"]))
    with table.edit() as editor:
        with pytest.raises(OrphanedColumnError) as e:
            editor.insert_annotation_with_columns(annotation, {"a": [1, 2]})
        assert e.value.columns == ("b",)


def test_drop_annotations_with_columns_matching(table):
    with table.edit() as editor:
        editor.drop_annotations_with_columns_matching(SemanticTag.NONE, SemanticTag.ONSET_AGE)
        editor.commit()
    assert "age" not in table.column_names
    assert all(a.data_semantic is not SemanticTag.ONSET_AGE for a in table.annotations)


def test_drop_null_columns_and_dangling_annotations(table):
    with table.edit() as editor:
        editor.drop_null_columns().drop_dangling_annotations()
        editor.commit()
    assert table.column_names == ["subject_id", "age"]
    assert [str(a.identifier) for a in table.annotations] == ["subject_id", "age"]


def test_replace_semantics(table):
    with table.edit() as editor:
        editor.replace_data_semantic(SemanticTag.ONSET_AGE, SemanticTag.TIME_AT_LAST_ENCOUNTER)
        editor.commit()
    assert table.annotation_for_column("age").data_semantic is SemanticTag.TIME_AT_LAST_ENCOUNTER


def test_cast_columns(table):
    with table.edit() as editor:
        editor.cast_columns(SemanticTag.NONE, SemanticTag.ONSET_AGE, OutputDataType.INT64)
        editor.commit()
    assert str(table.data["age"].dtype) == "Int64"
    assert table.data["age"].tolist() == [12, 40]
