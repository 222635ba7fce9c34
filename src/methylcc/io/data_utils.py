#!/usr/bin/env python
# coding: utf-8


"""
Input containers and adapters for cell-composition estimation.

The estimator only needs one capability from its input: a region x sample
matrix of methylation levels with sample identifiers. Any object exposing
that capability can feed the estimator, whatever platform it came from.

Key Components
--------------
MethylationSource

- Structural protocol: a ``source_type`` tag and a ``region_matrix()`` method.

RegionMatrix

- Standard container for a region x sample methylation matrix. Implements
  ``MethylationSource`` and validates itself on construction.

AnchorRegions

- Region identifiers independently known to be unmethylated or methylated
  across cell types, used by ``known_regions`` initialization.

Helpers

- ``as_region_matrix(obj)`` resolves any supported input into a DataFrame
  plus its type tag.
- ``align_regions(Y, Z)`` restricts observations and signature to their
  shared regions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
import pandas as pd

from methylcc.core.exceptions import (
    INSUFFICIENT_SIGNAL_HINT,
    InsufficientSignalError,
    InvalidConfigurationError,
    InvalidInputError,
)
from methylcc.utils.logger import logger


@runtime_checkable
class MethylationSource(Protocol):
    """Anything that can produce a region x sample methylation matrix."""

    source_type: str

    def region_matrix(self) -> pd.DataFrame:
        ...


def _ensure_unique_strings(index: pd.Index, what: str) -> pd.Index:
    """Return ``index`` as strings, rejecting duplicated identifiers."""
    index = pd.Index(index).astype(str)
    dup = index[index.duplicated()]
    if len(dup):
        raise InvalidConfigurationError(
            f"Duplicated {what} identifiers: {sorted(set(dup))[:5]}"
        )
    return index


@dataclass
class RegionMatrix:
    """
    Region x sample matrix of methylation levels.

    Parameters
    ----------
    M : pd.DataFrame
        Methylation levels in [0, 1] with regions as rows and samples as
        columns. ``NaN`` marks a missing measurement.
    source_type : str, default "RegionMatrix"
        Tag describing where the matrix came from (e.g. the platform
        container it was extracted from). Reported in the estimation summary.
    meta : dict, optional
        Free-form provenance information.
    """

    M: pd.DataFrame
    source_type: str = "RegionMatrix"
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.M, pd.DataFrame):
            raise InvalidInputError("M must be a pandas DataFrame")
        self.M = self.M.copy()
        self.M.index = _ensure_unique_strings(self.M.index, "region")
        self.M.columns = _ensure_unique_strings(self.M.columns, "sample")

    def region_matrix(self) -> pd.DataFrame:
        return self.M


@dataclass(frozen=True)
class AnchorRegions:
    """Regions known to be unmethylated / methylated in every cell type."""

    unmethylated: Sequence[str] = ()
    methylated: Sequence[str] = ()

    def present_in(self, regions: pd.Index) -> Tuple[pd.Index, pd.Index]:
        """Return the anchors of each state that occur in ``regions``."""
        regions = pd.Index(regions).astype(str)
        unmeth = regions.intersection(pd.Index(self.unmethylated).astype(str))
        meth = regions.intersection(pd.Index(self.methylated).astype(str))
        return unmeth, meth


def as_region_matrix(obj: Any) -> Tuple[pd.DataFrame, str]:
    """
    Resolve ``obj`` into a numeric region x sample DataFrame.

    Parameters
    ----------
    obj : pd.DataFrame or MethylationSource
        Either a DataFrame (regions x samples) or any object implementing
        the :class:`MethylationSource` protocol.

    Returns
    -------
    tuple
        ``(matrix, source_type)`` where ``matrix`` has string region and
        sample identifiers and float values.

    Raises
    ------
    InvalidInputError
        If ``obj`` provides no region matrix.
    InvalidConfigurationError
        If values are non-numeric, outside [0, 1], or identifiers repeat.
    """
    if isinstance(obj, pd.DataFrame):
        source_type = type(obj).__name__
        M = RegionMatrix(obj).M
    elif isinstance(obj, MethylationSource):
        source_type = str(obj.source_type)
        M = obj.region_matrix()
        if not isinstance(M, pd.DataFrame):
            raise InvalidInputError(
                f"{type(obj).__name__}.region_matrix() must return a DataFrame"
            )
        M = RegionMatrix(M, source_type=source_type).M
    else:
        raise InvalidInputError(
            f"Unsupported input of type {type(obj).__name__}: expected a "
            "DataFrame or an object implementing region_matrix()"
        )

    try:
        M = M.astype(float)
    except (TypeError, ValueError) as e:
        raise InvalidConfigurationError(f"Methylation matrix must be numeric: {e}")

    values = M.to_numpy()
    observed = values[~np.isnan(values)]
    if observed.size and (observed.min() < 0.0 or observed.max() > 1.0):
        raise InvalidConfigurationError(
            "Methylation levels must lie in [0, 1] "
            f"(observed range [{observed.min():.3g}, {observed.max():.3g}])"
        )
    if np.isinf(values).any():
        raise InvalidConfigurationError("Methylation matrix contains infinite values")
    return M, source_type


def align_regions(
    Y: pd.DataFrame, Z: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Restrict observations and signature to their shared regions.

    Regions keep the order of ``Y``. Regions absent from either matrix are
    dropped with a log message.

    Parameters
    ----------
    Y : pd.DataFrame
        Region x sample methylation matrix.
    Z : pd.DataFrame
        Region x cell-type signature matrix.

    Returns
    -------
    tuple
        ``(Y_aligned, Z_aligned)`` sharing one index.

    Raises
    ------
    InvalidConfigurationError
        If the signature is malformed (non-numeric, missing values, repeated
        identifiers).
    InsufficientSignalError
        If fewer shared regions than cell types remain.
    """
    if not isinstance(Z, pd.DataFrame):
        raise InvalidInputError("signature must be a pandas DataFrame")
    if Z.shape[1] == 0:
        raise InvalidConfigurationError("signature must have at least one cell type")
    Z = Z.copy()
    Z.index = _ensure_unique_strings(Z.index, "signature region")
    Z.columns = _ensure_unique_strings(Z.columns, "cell type")
    try:
        Z = Z.astype(float)
    except (TypeError, ValueError) as e:
        raise InvalidConfigurationError(f"Signature matrix must be numeric: {e}")
    z = Z.to_numpy()
    if not np.all(np.isfinite(z)):
        raise InvalidConfigurationError(
            "Signature matrix must not contain missing or infinite values"
        )
    if z.min() < 0.0 or z.max() > 1.0:
        raise InvalidConfigurationError(
            "Signature entries must lie in [0, 1] (methylated share per cell type)"
        )

    shared = Y.index.intersection(Z.index, sort=False)
    n_dropped = (len(Y.index) - len(shared), len(Z.index) - len(shared))
    if any(n_dropped):
        logger.info(
            f"Aligned regions: kept {len(shared)}, dropped {n_dropped[0]} "
            f"observation-only and {n_dropped[1]} signature-only regions"
        )
    if len(shared) < Z.shape[1]:
        raise InsufficientSignalError(
            f"Only {len(shared)} regions shared between data and signature "
            f"for {Z.shape[1]} cell types. {INSUFFICIENT_SIGNAL_HINT}"
        )
    return Y.loc[shared], Z.loc[shared]
