#!/usr/bin/env python
# coding: utf-8


"""
Resource checks run before cell-composition estimation.

Estimation keeps one region x sample working set per concurrently running
batch. This module projects the peak footprint from the input size, batch
size and worker count, and fails early when the projection cannot fit in
available memory.
"""

from __future__ import annotations

from typing import Dict

import joblib
import numpy as np
import pandas as pd
import psutil

from methylcc.utils.logger import logger

# float64 arrays of batch shape alive during one EM iteration
WORKING_ARRAYS = 16


def check_estimation_memory(
    Y: pd.DataFrame,
    batch_size: int,
    n_jobs: int = 1,
    warn_threshold_gb: float = 8.0,
) -> Dict[str, float]:
    """
    Conservatively estimate RAM requirements for an estimation run.

    Parameters
    ----------
    Y : pd.DataFrame
        Region x sample methylation matrix.
    batch_size : int
        Complete samples per EM batch.
    n_jobs : int, default 1
        Number of concurrently running batches (joblib semantics).
    warn_threshold_gb : float, default 8.0
        Issue a warning if estimated peak exceeds this value.

    Returns
    -------
    dict
        Keys: ``data_gb``, ``peak_gb``, ``available_gb``.

    Raises
    ------
    MemoryError
        If the projected peak exceeds 85% of available RAM. Use a smaller
        ``batch_size`` or fewer ``n_jobs`` in that case.
    """
    data_gb = Y.memory_usage(deep=True).sum() / (1024**3)
    workers = max(1, joblib.effective_n_jobs(n_jobs))
    batch_cols = min(batch_size, max(Y.shape[1], 1))
    batch_gb = Y.shape[0] * batch_cols * 8 * WORKING_ARRAYS / (1024**3)
    estimated_peak_gb = data_gb + batch_gb * workers

    available_gb = psutil.virtual_memory().available / (1024**3)

    logger.debug(
        f"Methylation matrix: {data_gb:.3f} GB, estimated peak: "
        f"{estimated_peak_gb:.3f} GB with {workers} worker(s)"
    )

    if estimated_peak_gb > available_gb * 0.85:
        raise MemoryError(
            f"Projected memory usage (~{estimated_peak_gb:.1f} GB) exceeds "
            f"85% of available RAM ({available_gb:.1f} GB).\n"
            "Reduce batch_size or n_jobs."
        )
    elif estimated_peak_gb > warn_threshold_gb:
        logger.warning(
            f"Large estimation detected (~{estimated_peak_gb:.1f} GB peak). "
            "Consider a smaller batch_size."
        )

    return {
        "data_gb": float(data_gb),
        "peak_gb": float(estimated_peak_gb),
        "available_gb": float(available_gb),
    }


def samples_with_missing(Y: pd.DataFrame) -> pd.Index:
    """Return the samples with at least one missing region."""
    return Y.columns[Y.isna().any(axis=0).to_numpy()]


def observed_regions(Y: pd.DataFrame, sample: str) -> pd.Index:
    """Return the regions measured for ``sample``."""
    return Y.index[np.isfinite(Y[sample].to_numpy())]
