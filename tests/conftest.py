import typing

import pandas as pd
import pytest

from phenotab.bidict import BiDictLibrary, OntologyBiDict
from phenotab.semantics import ByPattern, SemanticTag, SeriesAnnotation
from phenotab.table import SemanticTable


@pytest.fixture(scope="session")
def hpo() -> OntologyBiDict:
    """
    A handful of HPO terms, enough for the phenotype columns used in the tests.
    """
    return OntologyBiDict(
        "HP",
        [
            ("HP:0001250", "Seizure", ["Epileptic seizure", "Seizures"]),
            ("HP:0000252", "Microcephaly", ["Small head"]),
            ("HP:0001263", "Global developmental delay", []),
            ("HP:0001410", "Decreased liver function", []),
            ("HP:0012622", "Chronic kidney disease", ["CKD"]),
        ],
        version="2024-04-26",
    )


@pytest.fixture(scope="session")
def diseases() -> BiDictLibrary:
    """MONDO first, OMIM second."""
    mondo = OntologyBiDict(
        "MONDO",
        [("MONDO:0100039", "CDKL5 disorder", ["CDKL5 deficiency disorder"])],
        version="2024-03-04",
    )
    omim = OntologyBiDict(
        "OMIM",
        [
            ("OMIM:300672", "Developmental and epileptic encephalopathy 2", ["CDKL5 deficiency disorder"]),
            ("OMIM:613720", "Developmental and epileptic encephalopathy 9", []),
        ],
    )
    return BiDictLibrary("disease", [mondo, omim])


@pytest.fixture(scope="session")
def measurement_dictionaries() -> dict[str, OntologyBiDict]:
    """Assay, unit and qualitative value dictionaries, as PhenopacketBuilder keyword arguments."""
    return {
        "assays": OntologyBiDict(
            "LOINC",
            [("LOINC:8302-2", "Body height", []), ("LOINC:5778-6", "Color of Urine", [])],
            version="2.77",
        ),
        "units": OntologyBiDict("UO", [("UO:0000015", "centimeter", ["cm"])], version="2023-05-25"),
        "qualitative_values": OntologyBiDict(
            "NCIT",
            [("NCIT:C48354", "Yellow", []), ("NCIT:C48328", "Red", [])],
        ),
    }


def subject_annotation(column: str = "subject_id") -> SeriesAnnotation:
    return SeriesAnnotation(ByPattern(column), data_semantic=SemanticTag.SUBJECT_ID)


@pytest.fixture
def make_table() -> typing.Callable[..., SemanticTable]:
    """
    Build a SemanticTable from column data and (column name -> annotation) pairs.

    A `subject_id` column gets its annotation automatically.
    """

    def _make(
            columns: dict,
            annotations: typing.Sequence[SeriesAnnotation] = (),
            name: str = "table",
            allow_dangling: bool = False,
    ) -> SemanticTable:
        data = pd.DataFrame(columns)
        all_annotations = list(annotations)
        if "subject_id" in data.columns and not any(a.is_subject_id for a in all_annotations):
            all_annotations.insert(0, subject_annotation())
        return SemanticTable(name, all_annotations, data, allow_dangling=allow_dangling)

    return _make
