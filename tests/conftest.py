#!/usr/bin/env python
# coding: utf-8


"""Shared fixtures: synthetic methylation data drawn from the mixture model."""


import numpy as np
import pandas as pd
import pytest

from methylcc.config.config_manager import reset_config

TRUE_THETA = {"a0": 0.15, "a1": 0.85, "sig0": 0.0009, "sig1": 0.0009, "tau": 0.0004}


def simulate_regions(
    n_samples=20,
    regions_per_type=30,
    n_types=3,
    n_anchors=5,
    pi=None,
    theta=None,
    seed=0,
):
    """
    Draw a region x sample matrix with block-diagonal signature.

    Each block of ``regions_per_type`` regions is methylated in exactly one
    cell type. ``n_anchors`` regions unmethylated in every type and
    ``n_anchors`` methylated in every type are appended.

    Returns
    -------
    tuple
        ``(Y, Z, pi)`` with ``Y`` regions x samples, ``Z`` regions x cell
        types and ``pi`` the true samples x cell types proportions.
    """
    theta = theta or TRUE_THETA
    rng = np.random.default_rng(seed)

    blocks = np.kron(np.eye(n_types), np.ones((regions_per_type, 1)))
    Z = np.vstack([blocks, np.zeros((n_anchors, n_types)), np.ones((n_anchors, n_types))])
    regions = (
        [f"dmr{i}" for i in range(len(blocks))]
        + [f"unmeth{i}" for i in range(n_anchors)]
        + [f"meth{i}" for i in range(n_anchors)]
    )

    if pi is None:
        pi = rng.dirichlet(np.ones(n_types), size=n_samples)
        pi[0] = np.eye(n_types)[0]
    pi = np.asarray(pi, dtype=float)

    W = Z @ pi.T
    shape = W.shape
    U = rng.normal(theta["a0"], np.sqrt(theta["sig0"]), shape)
    M = rng.normal(theta["a1"], np.sqrt(theta["sig1"]), shape)
    e = rng.normal(0.0, np.sqrt(theta["tau"]), shape)
    Y = np.clip((1 - W) * U + W * M + e, 0.0, 1.0)

    samples = [f"S{j}" for j in range(pi.shape[0])]
    celltypes = [f"cell{k}" for k in range(n_types)]
    return (
        pd.DataFrame(Y, index=regions, columns=samples),
        pd.DataFrame(Z, index=regions, columns=celltypes),
        pi,
    )


@pytest.fixture
def simulate():
    return simulate_regions


@pytest.fixture
def true_overrides():
    return {
        "a0init": TRUE_THETA["a0"],
        "a1init": TRUE_THETA["a1"],
        "sig0init": TRUE_THETA["sig0"],
        "sig1init": TRUE_THETA["sig1"],
        "tauinit": TRUE_THETA["tau"],
    }


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()
