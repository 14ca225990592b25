"""
Gene symbol and variant syntax validators.

The transformation core treats validators as black boxes: a string goes in,
a normalized string comes out or ValidatorError is raised. This module holds
the interfaces, a per-input cache, and two adapters around VariantValidator:

- VariantValidatorHgvs: checks transcript-level c. HGVS through pyphetools'
  VariantValidator client (the network path), after a local syntax check.
- HgncGeneLookup: resolves HGNC symbols/ids through the VariantValidator
  gene2transcripts REST endpoints.

Environment
-----------
PHENOTAB_SKIP_VV=1 : only run the local syntax checks (useful for CI/offline).
VV_BASE_URL        : base URL of the VariantValidator REST API
                     (default "https://rest.variantvalidator.org").
"""

from __future__ import annotations

import abc
import json
import logging
import os
import re
import time
import typing
from urllib.parse import quote as _urlencode

import requests
from pyphetools.creation.variant_validator import VariantValidator

from .errors import ValidatorError

LOGGER = logging.getLogger(__name__)

_VV_BASE = os.getenv("VV_BASE_URL", "https://rest.variantvalidator.org").rstrip("/")

# Transcript + c. part, e.g. "NM_000000.0:c.100A>G", "ENST00000205557.12:c.2428G>A"
_HGVSC_TXT_RE = re.compile(
    r"""
    ^\s*
    (?P<tx>
        (?:N[MR]|X[MR]|E(?:NST)?)      # NM/NR/XM/XR/ENST
        [_]?\d+(?:\.\d+)?              # id with optional dot-version
    )
    :
    (?P<c>c\..+)$
    """,
    re.IGNORECASE | re.VERBOSE,
)

_HGNC_SYMBOL_RE = re.compile(r"^(?:HGNC:\d+|[A-Za-z0-9][A-Za-z0-9\-\.@]*)$")


def skip_remote_validation() -> bool:
    return os.getenv("PHENOTAB_SKIP_VV", "").strip().lower() in {"1", "true"}


class GeneValidator(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def normalize(self, symbol: str) -> str:
        raise NotImplementedError


class HgvsValidator(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def normalize(self, hgvs: str) -> str:
        raise NotImplementedError


class CachedValidator:
    """
    Call the wrapped validator at most once per distinct input.

    Failures are cached too, so a bad value met in many rows is reported the
    same way every time without another round trip.
    """

    def __init__(self, validator: typing.Union[GeneValidator, HgvsValidator]):
        self._validator = validator
        self._results: dict[str, typing.Union[str, ValidatorError]] = {}

    def normalize(self, value: str) -> str:
        if value not in self._results:
            try:
                self._results[value] = self._validator.normalize(value)
            except ValidatorError as e:
                self._results[value] = e
        result = self._results[value]
        if isinstance(result, ValidatorError):
            raise result
        return result

    @property
    def n_cached(self) -> int:
        return len(self._results)


# ------------------------------------------------------------------------------
# VariantValidator adapters
# ------------------------------------------------------------------------------


class VariantValidatorHgvs(HgvsValidator):
    """
    Validate "<transcript>:c.<change>" strings.

    1) A local syntax check always runs.
    2) Unless PHENOTAB_SKIP_VV is set, pyphetools' VariantValidator encodes the
       c. part against the transcript; the c. expression it returns is used as
       the normalized form.
    """

    def __init__(self, genome_build: str = "GRCh38", skip_remote: typing.Optional[bool] = None):
        self.genome_build = genome_build
        self.skip_remote = skip_remote_validation() if skip_remote is None else skip_remote

    @staticmethod
    def parse_hgvsc(hgvsc: str) -> typing.Tuple[typing.Optional[str], typing.Optional[str]]:
        """
        Extract transcript identifier and the c. part from an hgvsc string.

        Examples:
            "NM_000000.0:c.100A>G" -> ("NM_000000.0", "c.100A>G")
            "ENST00000205557.12:c.2428G>A" -> ("ENST00000205557.12", "c.2428G>A")
        """
        if not isinstance(hgvsc, str):
            return None, None
        m = _HGVSC_TXT_RE.match(hgvsc.strip())
        if not m:
            return None, None
        return m.group("tx"), m.group("c").strip()

    def normalize(self, hgvs: str) -> str:
        tx, c_part = self.parse_hgvsc(hgvs)
        if not (tx and c_part):
            raise ValidatorError(hgvs, "not a transcript-level c. HGVS expression")
        local = f"{tx}:{c_part}"
        if self.skip_remote:
            return local

        try:
            vv = VariantValidator(genome_build=self.genome_build, transcript=tx)
            hv = vv.encode_hgvs(c_part)  # pyphetools expects ONLY the c. part
            vd = hv.to_variant_interpretation_202().variation_descriptor
        except (
            requests.RequestException,
            ValueError,
            TypeError,
            AttributeError,
            KeyError,
        ) as e:
            raise ValidatorError(hgvs, f"VariantValidator rejected the variant: {e}") from e

        for expression in getattr(vd, "expressions", None) or ():
            value = getattr(expression, "value", "")
            if ":c." in value:
                return value
        return local


def _sleep_backoff(i: int) -> None:
    """Sequence ~ 0.25s, 0.5s, 1s."""
    time.sleep(0.25 * (2**i))


def _request_json(url: str, *, timeout: float = 10.0, attempts: int = 3) -> dict:
    """GET JSON with simple retry/backoff; raise ValidatorError if all attempts fail."""
    last_exc: typing.Optional[Exception] = None
    for i in range(attempts):
        try:
            resp = requests.get(url, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, json.JSONDecodeError, ValueError) as e:
            last_exc = e
            LOGGER.debug("GET %s failed (attempt %d): %s", url, i + 1, e)
            if i + 1 < attempts:
                _sleep_backoff(i)
    raise ValidatorError(url, f"request failed: {last_exc}")


class HgncGeneLookup(GeneValidator):
    """
    Resolve an HGNC symbol or id to the current approved symbol.
    """

    def __init__(
            self,
            genome_build: str = "GRCh38",
            base_url: typing.Optional[str] = None,
            skip_remote: typing.Optional[bool] = None,
    ):
        self.genome_build = genome_build
        self.base_url = (base_url or _VV_BASE).rstrip("/")
        self.skip_remote = skip_remote_validation() if skip_remote is None else skip_remote

    def normalize(self, symbol: str) -> str:
        query = symbol.strip() if isinstance(symbol, str) else ""
        if not query or not _HGNC_SYMBOL_RE.match(query):
            raise ValidatorError(str(symbol), "not an HGNC symbol or id")
        if self.skip_remote:
            return query

        url = (
            f"{self.base_url}/VariantValidator/tools/gene2transcripts_v2/"
            f"{_urlencode(query)}/mane/refseq/{_urlencode(self.genome_build)}"
            "?content-type=application%2Fjson"
        )
        payload = _request_json(url)
        # the v2 endpoint answers with a list holding one record per query
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        if not isinstance(payload, dict):
            raise ValidatorError(query, "unexpected VariantValidator response")
        if payload.get("error"):
            raise ValidatorError(query, f"unknown gene: {payload['error']}")
        current = payload.get("current_symbol") or payload.get("requested_symbol")
        if not current:
            raise ValidatorError(query, "no approved symbol in VariantValidator response")
        return str(current)
