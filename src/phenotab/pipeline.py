"""
TransformationPipeline: run an ordered list of strategies over a set of tables.
"""

from __future__ import annotations

import logging
import typing

from stairval.notepad import Notepad

from .bidict import BiDict
from .errors import PhenotabError, TransformError
from .semantics import SemanticTag
from .settings import PipelineSettings
from .strategies import (
    AgeToISO8601Duration,
    AliasSubstitution,
    DateToAge,
    FillMissing,
    GeneSymbolNormalization,
    HgvsCorrection,
    MultiValueColumnExpansion,
    OntologyNormalization,
    Strategy,
    SynonymMapping,
    TablePreprocessor,
    VariantNormalization,
)
from .table import SemanticTable
from .validators import GeneValidator, HgncGeneLookup, HgvsValidator, VariantValidatorHgvs

LOGGER = logging.getLogger(__name__)


class TransformationPipeline:
    """
    Apply strategies in declared order, each to the whole list of tables.

    A failing strategy does not stop the run: its error is wrapped in a
    TransformError and the next strategy is applied. With `preprocess`, a
    TablePreprocessor runs before the configured strategies.
    """

    def __init__(self, strategies: typing.Iterable[Strategy], preprocess: bool = True):
        self._strategies: list[Strategy] = list(strategies)
        if preprocess:
            self._strategies.insert(0, TablePreprocessor())

    @property
    def strategies(self) -> tuple[Strategy, ...]:
        return tuple(self._strategies)

    def run(
            self,
            tables: typing.Sequence[SemanticTable],
            notepad: typing.Optional[Notepad] = None,
    ) -> list[TransformError]:
        """
        Transform `tables` in place.

        Returns the errors of the failed strategies, sorted by message. When a
        notepad is given, each error is also recorded there.
        """
        errors: list[TransformError] = []
        for strategy in self._strategies:
            try:
                strategy.transform(tables)
            except PhenotabError as e:
                LOGGER.warning("Strategy %s failed: %s", strategy.name, e)
                errors.append(TransformError(strategy.name, e))

        errors.sort(key=str)
        if notepad is not None:
            for error in errors:
                notepad.add_error(str(error))
        LOGGER.info(
            "Ran %d strategies over %d table(s), %d failed",
            len(self._strategies), len(tables), len(errors),
        )
        return errors


def build_pipeline(
        settings: PipelineSettings,
        hpo: BiDict,
        diseases: typing.Optional[BiDict] = None,
        gene_validator: typing.Optional[GeneValidator] = None,
        variant_validator: typing.Optional[HgvsValidator] = None,
        validate_genetics: bool = False,
) -> TransformationPipeline:
    """
    The usual strategy order: fill and alias cells first, then vocabulary
    mappings, dates and ages, multi-value expansion, ontology normalization and finally
    the (optional) gene/variant validators.

    With `validate_genetics`, missing validators default to the VariantValidator
    adapters, limited to local syntax checks when `settings.skip_validators` is set.
    """
    if validate_genetics:
        if gene_validator is None:
            gene_validator = HgncGeneLookup(skip_remote=settings.skip_validators)
        if variant_validator is None:
            variant_validator = VariantValidatorHgvs(skip_remote=settings.skip_validators)
    strategies: list[Strategy] = [
        FillMissing(),
        AliasSubstitution(),
        HgvsCorrection(),
        SynonymMapping.default_sex_mapping(),
        SynonymMapping.default_vital_status_mapping(),
        SynonymMapping.default_zygosity_mapping(),
        DateToAge(),
        AgeToISO8601Duration(settings.min_age, settings.max_age),
        MultiValueColumnExpansion(),
        OntologyNormalization(SemanticTag.HPO_LABEL_OR_ID, hpo, settings.unresolved_policy),
    ]
    if diseases is not None:
        strategies.append(
            OntologyNormalization(SemanticTag.DISEASE_LABEL_OR_ID, diseases, settings.unresolved_policy)
        )
    if gene_validator is not None:
        strategies.append(GeneSymbolNormalization(gene_validator))
    if variant_validator is not None:
        strategies.append(VariantNormalization(variant_validator))
    return TransformationPipeline(strategies)
