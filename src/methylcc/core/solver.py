#!/usr/bin/env python
# coding: utf-8


"""
Simplex-constrained least squares for cell-type proportions.

Solves, for a single sample,

    minimize   sum_r w_r * ((Z @ pi)_r - t_r)^2
    subject to pi_k >= 0,  sum_k pi_k = 1

as an exact dense quadratic program with ``quadprog`` (Goldfarb-Idnani
active-set method).
"""


from typing import Optional

import numpy as np
import quadprog

from methylcc.core.exceptions import RankDeficientSignatureError


def _weighted_design(
    signature: np.ndarray, target: np.ndarray, weights: Optional[np.ndarray]
):
    """Scale rows by sqrt(weights) so the problem becomes ordinary least squares."""
    if weights is None:
        return signature, target
    root_w = np.sqrt(weights)
    return signature * root_w[:, None], target * root_w


def check_signature_rank(signature: np.ndarray) -> None:
    """
    Raise :class:`RankDeficientSignatureError` unless ``signature`` has full \
    column rank.

    Parameters
    ----------
    signature : np.ndarray
        Region x cell-type matrix (optionally row-weighted).
    """
    n_regions, n_types = signature.shape
    if n_regions < n_types:
        raise RankDeficientSignatureError(
            f"Only {n_regions} regions available for {n_types} cell types; "
            "at least as many regions as cell types are required"
        )
    rank = np.linalg.matrix_rank(signature)
    if rank < n_types:
        raise RankDeficientSignatureError(
            f"Signature matrix has rank {rank} < {n_types} cell types; "
            "cell-type proportions are not identifiable"
        )


def solve_proportions(
    target: np.ndarray,
    signature: np.ndarray,
    weights: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Return the proportion vector on the probability simplex that minimises \
    the (weighted) squared error between ``signature @ pi`` and ``target``.

    Parameters
    ----------
    target : np.ndarray
        Length-R target vector.
    signature : np.ndarray
        R x K signature matrix.
    weights : np.ndarray, optional
        Length-R positive region weights. Unit weights when omitted.

    Returns
    -------
    np.ndarray
        Length-K vector with non-negative entries summing to one.

    Raises
    ------
    RankDeficientSignatureError
        If the (weighted) signature has fewer than K independent columns.
    ValueError
        On shape mismatch or non-finite inputs.
    """
    target = np.asarray(target, dtype=float).ravel()
    signature = np.asarray(signature, dtype=float)
    if signature.ndim != 2 or signature.shape[0] != target.size:
        raise ValueError(
            f"signature shape {signature.shape} does not match target "
            f"length {target.size}"
        )
    if weights is not None:
        weights = np.asarray(weights, dtype=float).ravel()
        if weights.size != target.size or np.any(weights < 0):
            raise ValueError("weights must be non-negative with one entry per region")
    if not (np.all(np.isfinite(target)) and np.all(np.isfinite(signature))):
        raise ValueError("target and signature must be finite")

    design, rhs = _weighted_design(signature, target, weights)
    check_signature_rank(design)

    n_types = signature.shape[1]
    G = design.T @ design
    a = design.T @ rhs

    # rescaling leaves the minimiser unchanged
    norm_factor = np.linalg.norm(G, 2)
    if norm_factor > 0:
        G = G / norm_factor
        a = a / norm_factor

    # constraints C^T x >= b, first column is the equality sum(pi) = 1
    C = np.column_stack([np.ones(n_types), np.eye(n_types)])
    b = np.concatenate([[1.0], np.zeros(n_types)])

    try:
        pi = quadprog.solve_qp(G, a, C, b, meq=1)[0]
    except ValueError as e:
        if "positive definite" in str(e):
            raise RankDeficientSignatureError(
                f"Signature matrix is numerically singular: {e}"
            ) from e
        raise

    pi = np.clip(pi, 0.0, None)
    return pi / pi.sum()
