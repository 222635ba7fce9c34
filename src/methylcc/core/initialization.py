#!/usr/bin/env python
# coding: utf-8


"""
Starting values for the cell-composition EM algorithm.

Two initialization modes are supported:

- ``"random"``: proportions drawn uniformly from the simplex, state means
  drawn from the lower / upper quantiles of the observed levels and
  variances drawn as fractions of their empirical spread.
- ``"known_regions"``: state means and variances measured on anchor regions
  that independently-sorted reference data show to be unmethylated or
  methylated in every cell type. Proportions start at the simplex solve
  implied by those states.

Caller-supplied values (``a0init``, ``a1init``, ``sig0init``, ``sig1init``,
``tauinit``) override the computed ones. When all five are supplied, both
modes are bypassed and the start is fully deterministic.
"""


from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Dict, Mapping, Optional, Union

import numpy as np
import pandas as pd

from methylcc.core.exceptions import (
    INSUFFICIENT_SIGNAL_HINT,
    InsufficientSignalError,
    InvalidConfigurationError,
)
from methylcc.core.solver import solve_proportions
from methylcc.io.data_utils import AnchorRegions
from methylcc.utils.logger import logger

INIT_METHODS = ("random", "known_regions")

# smallest separation enforced between random a0 and a1
MIN_STATE_GAP = 0.1

OVERRIDE_FIELDS = {
    "a0init": "a0",
    "a1init": "a1",
    "sig0init": "sig0",
    "sig1init": "sig1",
    "tauinit": "tau",
}


@dataclass
class StateParameters:
    """
    Region methylation-state parameters shared by all samples of a batch.

    Attributes
    ----------
    a0, a1 : float
        Mean methylation level of the unmethylated / methylated state.
    sig0, sig1 : float
        Variance of the latent methylation level around ``a0`` / ``a1``.
    tau : float
        Variance of the measurement error common to all regions.
    """

    a0: float
    a1: float
    sig0: float
    sig1: float
    tau: float

    def as_array(self) -> np.ndarray:
        return np.array([self.a0, self.a1, self.sig0, self.sig1, self.tau])

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    def copy(self) -> "StateParameters":
        return replace(self)

    def validate(self) -> None:
        """Raise if the parameters describe a degenerate likelihood."""
        values = self.as_array()
        if not np.all(np.isfinite(values)):
            raise InvalidConfigurationError(f"Non-finite state parameters: {self}")
        if min(self.sig0, self.sig1, self.tau) <= 0:
            raise InvalidConfigurationError(
                f"State variances must be positive: {self}"
            )
        if self.a0 >= self.a1:
            raise InvalidConfigurationError(
                f"Unmethylated mean a0={self.a0} must be below methylated "
                f"mean a1={self.a1}"
            )


@dataclass
class InitialEstimate:
    """Starting point of one EM run."""

    theta: StateParameters
    pi: np.ndarray
    method: str


def proportions_from_states(
    Ys: np.ndarray, Zs: np.ndarray, theta: StateParameters
) -> np.ndarray:
    """
    Deterministic starting proportions: the simplex fit of the methylated \
    share implied by ``theta`` for every sample.

    Parameters
    ----------
    Ys : np.ndarray
        R x m observed levels (complete).
    Zs : np.ndarray
        R x K signature.
    theta : StateParameters
        State parameters with ``a0 < a1``.

    Returns
    -------
    np.ndarray
        m x K proportions.
    """
    share = np.clip((Ys - theta.a0) / (theta.a1 - theta.a0), 0.0, 1.0)
    return np.vstack([solve_proportions(share[:, j], Zs) for j in range(Ys.shape[1])])


def _random_states(
    y: np.ndarray,
    rng: np.random.Generator,
    variance_floor: float,
    fixed: Optional[Mapping[str, float]] = None,
) -> StateParameters:
    """Draw states; a mean given in ``fixed`` is kept and the other drawn around it."""
    fixed = fixed or {}
    q05, q25, q75, q95 = np.quantile(y, [0.05, 0.25, 0.75, 0.95])
    a0 = rng.uniform(q05, q25)
    a1 = rng.uniform(q75, q95)
    if a1 - a0 < MIN_STATE_GAP:
        center = float(np.clip(y.mean(), MIN_STATE_GAP / 2, 1 - MIN_STATE_GAP / 2))
        a0, a1 = center - MIN_STATE_GAP / 2, center + MIN_STATE_GAP / 2
    if "a0" in fixed and "a1" not in fixed:
        a0 = fixed["a0"]
        a1 = max(a1, min(a0 + MIN_STATE_GAP, 1.0))
    elif "a1" in fixed and "a0" not in fixed:
        a1 = fixed["a1"]
        a0 = min(a0, max(a1 - MIN_STATE_GAP, 0.0))

    spread = max(float(np.var(y)), variance_floor)
    sig0, sig1 = spread * rng.uniform(0.1, 0.5, size=2)
    tau = spread * rng.uniform(0.05, 0.2)
    return StateParameters(
        a0=float(a0),
        a1=float(a1),
        sig0=max(float(sig0), variance_floor),
        sig1=max(float(sig1), variance_floor),
        tau=max(float(tau), variance_floor),
    )


def _anchor_states(
    Ys: pd.DataFrame, anchors: Optional[AnchorRegions], variance_floor: float
) -> StateParameters:
    if anchors is None:
        raise InvalidConfigurationError(
            "init_param_method='known_regions' requires anchor regions"
        )
    unmeth, meth = anchors.present_in(Ys.index)
    if len(unmeth) == 0 or len(meth) == 0:
        raise InsufficientSignalError(
            f"Found {len(unmeth)} unmethylated and {len(meth)} methylated anchor "
            f"regions among {len(Ys.index)} regions; both are required for "
            f"'known_regions' initialization. {INSUFFICIENT_SIGNAL_HINT}"
        )

    y0 = Ys.loc[unmeth].to_numpy()
    y1 = Ys.loc[meth].to_numpy()
    a0, a1 = float(y0.mean()), float(y1.mean())
    if a0 >= a1:
        raise InsufficientSignalError(
            f"Anchor regions do not separate methylation states "
            f"(unmethylated mean {a0:.3f} >= methylated mean {a1:.3f}). "
            f"{INSUFFICIENT_SIGNAL_HINT}"
        )
    sig0 = max(float(y0.var()), variance_floor)
    sig1 = max(float(y1.var()), variance_floor)

    if Ys.shape[1] > 1:
        anchor_rows = np.vstack([y0, y1])
        resid = anchor_rows - anchor_rows.mean(axis=1, keepdims=True)
        tau = float(np.mean(resid**2))
    else:
        tau = 0.5 * min(sig0, sig1)
    return StateParameters(a0, a1, sig0, sig1, max(tau, variance_floor))


def _check_init_pi(init_pi, n_samples: int, n_types: int) -> np.ndarray:
    pi = np.asarray(init_pi, dtype=float)
    if pi.shape != (n_samples, n_types):
        raise InvalidConfigurationError(
            f"init_pi must have shape {(n_samples, n_types)}, got {pi.shape}"
        )
    if np.any(pi < 0) or not np.allclose(pi.sum(axis=1), 1.0):
        raise InvalidConfigurationError(
            "init_pi rows must be non-negative and sum to 1"
        )
    return pi


def initialize_parameters(
    Ys: pd.DataFrame,
    Zs: pd.DataFrame,
    method: str = "random",
    anchors: Optional[AnchorRegions] = None,
    overrides: Optional[Mapping[str, Optional[float]]] = None,
    init_pi: Optional[np.ndarray] = None,
    random_state: Union[None, int, np.random.Generator, np.random.SeedSequence] = None,
    variance_floor: float = 1e-6,
) -> InitialEstimate:
    """
    Produce starting state parameters and proportions for one EM run.

    Parameters
    ----------
    Ys : pd.DataFrame
        Region x sample observed levels for the samples of this run (complete).
    Zs : pd.DataFrame
        Region x cell-type signature sharing ``Ys``'s index.
    method : {"random", "known_regions"}, default "random"
        Initialization mode.
    anchors : AnchorRegions, optional
        Anchor regions, required by ``"known_regions"``.
    overrides : mapping, optional
        Any of ``a0init``, ``a1init``, ``sig0init``, ``sig1init``, ``tauinit``.
        ``None`` values are ignored.
    init_pi : np.ndarray, optional
        Explicit m x K starting proportions.
    random_state : int, Generator or SeedSequence, optional
        Seed for the ``"random"`` draws.
    variance_floor : float, default 1e-6
        Lower bound for every starting variance.

    Returns
    -------
    InitialEstimate

    Raises
    ------
    InvalidConfigurationError
        Unknown mode, bad overrides or malformed ``init_pi``.
    InsufficientSignalError
        ``"known_regions"`` without usable anchors among ``Zs``'s regions.
    """
    if method not in INIT_METHODS:
        raise InvalidConfigurationError(
            f"init_param_method must be one of {INIT_METHODS}, got {method!r}"
        )
    if not Ys.index.equals(Zs.index):
        raise InvalidConfigurationError("Ys and Zs must share the same region index")

    overrides = dict(overrides or {})
    unknown = set(overrides) - set(OVERRIDE_FIELDS)
    if unknown:
        raise InvalidConfigurationError(f"Unknown initial values: {sorted(unknown)}")
    given = {OVERRIDE_FIELDS[k]: float(v) for k, v in overrides.items() if v is not None}

    rng = np.random.default_rng(random_state)
    y = Ys.to_numpy(dtype=float)
    z = Zs.to_numpy(dtype=float)

    if len(given) == len(OVERRIDE_FIELDS):
        theta = StateParameters(**given)
    else:
        if method == "known_regions":
            theta = _anchor_states(Ys, anchors, variance_floor)
        else:
            theta = _random_states(y.ravel(), rng, variance_floor, fixed=given)
        theta = replace(theta, **given)
    theta.validate()

    if init_pi is not None:
        pi = _check_init_pi(init_pi, y.shape[1], z.shape[1])
    elif method == "random" and len(given) < len(OVERRIDE_FIELDS):
        pi = rng.dirichlet(np.ones(z.shape[1]), size=y.shape[1])
    else:
        pi = proportions_from_states(y, z, theta)

    logger.debug(f"Initial state parameters ({method}): {theta.to_dict()}")
    return InitialEstimate(theta=theta, pi=pi, method=method)
