"""
Runtime settings and logging setup.

Settings come from keyword arguments or from the environment:

PHENOTAB_COHORT             : cohort name, prefix of the phenopacket ids (required by from_env)
PHENOTAB_CREATED_BY         : metadata created_by (default "phenotab")
PHENOTAB_SUBMITTED_BY       : metadata submitted_by (default: created_by)
PHENOTAB_UNRESOLVED_POLICY  : "keep" or "null" for unresolved ontology values (default "keep")
PHENOTAB_MIN_AGE            : lowest age accepted as a year count (default 0)
PHENOTAB_MAX_AGE            : highest age accepted as a year count (default 150)
PHENOTAB_SKIP_VV=1          : skip the remote VariantValidator checks
"""

from __future__ import annotations

import logging
import os
import typing
from dataclasses import dataclass

from .strategies import UnresolvedPolicy


def configure_logging(debug: bool) -> None:
    """
    Configure the root logger.

    Parameters
    ----------
    debug : bool
        If True, sets level to DEBUG; otherwise INFO.
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class PipelineSettings:
    """
    Attributes:
        cohort_name: prefix of the phenopacket ids.
        created_by: metadata created_by.
        submitted_by: metadata submitted_by (defaults to created_by).
        unresolved_policy: what OntologyNormalization does with unresolved values.
        min_age: lowest age in years accepted by AgeToISO8601Duration.
        max_age: highest age in years accepted by AgeToISO8601Duration.
        skip_validators: only run local syntax checks for genes and variants.
    """

    cohort_name: str
    created_by: str = "phenotab"
    submitted_by: typing.Optional[str] = None
    unresolved_policy: UnresolvedPolicy = UnresolvedPolicy.KEEP
    min_age: int = 0
    max_age: int = 150
    skip_validators: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.cohort_name, str) or not self.cohort_name.strip():
            raise ValueError("cohort_name must be a non-empty string")
        if isinstance(self.unresolved_policy, str):
            self.unresolved_policy = UnresolvedPolicy.from_label(self.unresolved_policy)
        if self.min_age < 0 or self.min_age > self.max_age:
            raise ValueError(f"Invalid age range [{self.min_age}, {self.max_age}]")
        if self.submitted_by is None:
            self.submitted_by = self.created_by

    @classmethod
    def from_env(cls, **overrides: typing.Any) -> "PipelineSettings":
        """Read settings from PHENOTAB_* variables; keyword arguments take precedence."""
        values: dict[str, typing.Any] = {
            "cohort_name": os.getenv("PHENOTAB_COHORT", ""),
            "created_by": os.getenv("PHENOTAB_CREATED_BY", "phenotab"),
            "submitted_by": os.getenv("PHENOTAB_SUBMITTED_BY") or None,
            "unresolved_policy": UnresolvedPolicy.from_label(
                os.getenv("PHENOTAB_UNRESOLVED_POLICY", "keep")
            ),
            "min_age": _env_int("PHENOTAB_MIN_AGE", 0),
            "max_age": _env_int("PHENOTAB_MAX_AGE", 150),
            "skip_validators": os.getenv("PHENOTAB_SKIP_VV", "").strip().lower() in {"1", "true"},
        }
        values.update(overrides)
        return cls(**values)
