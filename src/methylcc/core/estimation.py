#!/usr/bin/env python
# coding: utf-8


"""
Cell-type composition estimation for bulk DNA methylation samples.

This module is the public entry point of methylcc. Given a region x sample
matrix of methylation levels and a region x cell-type signature matrix, it
estimates the cell-type proportions of every sample with the EM model in
:mod:`methylcc.core.engine`.

Workflow
--------
1. Resolve settings (explicit arguments override the configuration singleton).
2. Align observations and signature on their shared regions and validate them.
3. Plan estimation tasks:
    - every sample with missing values is estimated alone on its observed regions
    - complete samples are grouped in batches of ``batch_size`` that share one
      set of state parameters
4. Check every task for sufficient signal before any EM work starts.
5. Run the tasks (serially or with joblib) and merge the per-sample results
   back into the original sample order.

Features
--------
- Pooled state-parameter estimation across batches of up to ``batch_size`` samples
- Per-sample region subsetting for missing data, recorded in diagnostics
- Explicit, run-aborting errors when the signal is insufficient
- Iteration-capped batches reported as diagnostics, never silently
- Several random starts per batch, keeping the best ordered-state solution
- Optional parallel execution with results independent of ``n_jobs``
- Progress through the package logger and an optional callback hook
"""


from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import joblib
import numpy as np
import pandas as pd

from methylcc.config.config_manager import EstimationConfigModel, get_config
from methylcc.core.engine import EMResult, run_em
from methylcc.core.exceptions import (
    INSUFFICIENT_SIGNAL_HINT,
    InsufficientSignalError,
    InvalidConfigurationError,
    RankDeficientSignatureError,
)
from methylcc.core.initialization import initialize_parameters
from methylcc.core.solver import check_signature_rank
from methylcc.core.validation import (
    check_estimation_memory,
    observed_regions,
    samples_with_missing,
)
from methylcc.io.data_utils import AnchorRegions, align_regions, as_region_matrix
from methylcc.utils.logger import logger

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class EstimationTask:
    """One EM run: a batch of samples sharing a region set."""

    batch: int
    samples: List[str]
    regions: pd.Index
    missing: bool = False


@dataclass
class TaskResult:
    task: EstimationTask
    em: EMResult
    n_starts: int = 1


@dataclass
class CellCompositionEstimate:
    """
    Result of :func:`estimate_cell_counts`.

    Attributes
    ----------
    cell_counts : pd.DataFrame
        Samples x cell types; every row lies on the probability simplex.
    summary : dict
        ``class`` (input type tag), ``n_samples``, ``celltypes``,
        ``sample_names``, ``init_param_method`` and ``n_regions`` (regions used
        per sample, in sample order).
    diagnostics : pd.DataFrame
        Per sample: ``n_regions``, ``batch``, ``n_iter``, ``converged``,
        ``states_ordered``.
    parameters : pd.DataFrame
        Per batch: final state parameters, ``n_iter``, ``converged``,
        ``states_ordered``, ``loglik``, ``n_starts`` and ``n_samples``.
    """

    cell_counts: pd.DataFrame
    summary: Dict[str, Any]
    diagnostics: pd.DataFrame = field(default_factory=pd.DataFrame)
    parameters: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def converged(self) -> bool:
        """``True`` when every batch met the convergence threshold."""
        return bool(self.parameters["converged"].all())


def plan_tasks(Y: pd.DataFrame, batch_size: int = 100) -> List[EstimationTask]:
    """
    Split samples into estimation tasks.

    Samples with missing values become single-sample tasks restricted to
    their observed regions. Complete samples are cut, in order, into batches
    of ``batch_size``; the last batch holds the remainder.

    Parameters
    ----------
    Y : pd.DataFrame
        Region x sample methylation matrix.
    batch_size : int, default 100
        Maximum number of complete samples per batch.

    Returns
    -------
    list of EstimationTask
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    with_na = samples_with_missing(Y)
    tasks = [
        EstimationTask(batch=i, samples=[s], regions=observed_regions(Y, s), missing=True)
        for i, s in enumerate(with_na)
    ]

    na_set = set(with_na)
    complete = [s for s in Y.columns if s not in na_set]
    for start in range(0, len(complete), batch_size):
        tasks.append(
            EstimationTask(
                batch=len(tasks),
                samples=complete[start : start + batch_size],
                regions=Y.index,
            )
        )
    return tasks


def _check_task(
    task: EstimationTask,
    Y: pd.DataFrame,
    Z: pd.DataFrame,
    method: str,
    anchors: AnchorRegions,
    overrides: Dict[str, Optional[float]],
) -> None:
    """Raise before any EM work when a task cannot be estimated."""
    label = task.samples[0] if task.missing else f"batch {task.batch}"
    n_types = Z.shape[1]
    if len(task.regions) < n_types:
        raise InsufficientSignalError(
            f"{label}: only {len(task.regions)} observed regions for {n_types} "
            f"cell types. {INSUFFICIENT_SIGNAL_HINT}"
        )
    try:
        check_signature_rank(Z.loc[task.regions].to_numpy())
    except RankDeficientSignatureError as e:
        raise RankDeficientSignatureError(
            f"{label}: {e}. {INSUFFICIENT_SIGNAL_HINT}"
        ) from e

    if method != "known_regions" or all(v is not None for v in overrides.values()):
        return

    unmeth, meth = anchors.present_in(task.regions)
    if len(unmeth) == 0 or len(meth) == 0:
        raise InsufficientSignalError(
            f"{label}: {len(unmeth)} unmethylated and {len(meth)} methylated "
            f"anchor regions available; 'known_regions' initialization needs "
            f"both. {INSUFFICIENT_SIGNAL_HINT}"
        )

    # starting means as initialize_parameters will derive them
    a0 = overrides["a0init"]
    a1 = overrides["a1init"]
    anchor_a0 = float(Y.loc[unmeth, task.samples].to_numpy().mean())
    anchor_a1 = float(Y.loc[meth, task.samples].to_numpy().mean())
    start_a0 = anchor_a0 if a0 is None else a0
    start_a1 = anchor_a1 if a1 is None else a1
    if start_a0 < start_a1:
        return
    if a0 is None and a1 is None:
        raise InsufficientSignalError(
            f"{label}: anchor regions do not separate methylation states "
            f"(unmethylated mean {anchor_a0:.3f} >= methylated mean "
            f"{anchor_a1:.3f}). {INSUFFICIENT_SIGNAL_HINT}"
        )
    raise InvalidConfigurationError(
        f"{label}: starting means a0={start_a0:.3f}, a1={start_a1:.3f} are out of "
        f"order; the given initial value conflicts with the anchor-region estimate"
    )


def _run_task(
    task: EstimationTask,
    Ys: pd.DataFrame,
    Zs: pd.DataFrame,
    config: EstimationConfigModel,
    anchors: AnchorRegions,
    seed: np.random.SeedSequence,
) -> TaskResult:
    """
    Run EM for one task, keeping the best of ``n_init`` random starts.

    Starts are ranked by whether their states stayed ordered, then by final
    log-likelihood. Anchor-based and fully overridden starts are
    deterministic and run once.
    """
    settings = config.settings
    overrides = config.initial_values.model_dump()
    deterministic = settings.init_param_method == "known_regions" or all(
        v is not None for v in overrides.values()
    )
    n_starts = 1 if deterministic else settings.n_init

    best: Optional[EMResult] = None
    for start, child in enumerate(seed.spawn(n_starts), start=1):
        init = initialize_parameters(
            Ys,
            Zs,
            method=settings.init_param_method,
            anchors=anchors,
            overrides=overrides,
            random_state=child,
            variance_floor=settings.variance_floor,
        )
        em = run_em(
            Ys.to_numpy(),
            Zs.to_numpy(),
            init.pi,
            init.theta,
            epsilon=settings.epsilon,
            max_iter=settings.max_iter,
            convergence=settings.convergence,
            variance_floor=settings.variance_floor,
        )
        logger.debug(
            f"Batch {task.batch} start {start}/{n_starts}: "
            f"loglik={em.loglik[-1]:.4f}, states_ordered={em.states_ordered}"
        )
        if best is None or (em.states_ordered, em.loglik[-1]) > (
            best.states_ordered,
            best.loglik[-1],
        ):
            best = em
    return TaskResult(task=task, em=best, n_starts=n_starts)


def _merge_results(
    results: List[TaskResult], sample_names: pd.Index, celltypes: pd.Index
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Assemble per-sample tables in original sample order."""
    rows: Dict[str, np.ndarray] = {}
    diag: Dict[str, Dict[str, Any]] = {}
    params = []
    for res in results:
        em = res.em
        for j, sample in enumerate(res.task.samples):
            rows[sample] = em.pi[j]
            diag[sample] = {
                "n_regions": len(res.task.regions),
                "batch": res.task.batch,
                "n_iter": em.n_iter,
                "converged": em.converged,
                "states_ordered": em.states_ordered,
            }
        params.append(
            {
                "batch": res.task.batch,
                **em.theta.to_dict(),
                "n_iter": em.n_iter,
                "converged": em.converged,
                "states_ordered": em.states_ordered,
                "loglik": em.loglik[-1],
                "n_starts": res.n_starts,
                "n_samples": len(res.task.samples),
            }
        )

    props = np.vstack([rows[s] for s in sample_names])
    props = np.clip(props, 0.0, None)
    props = props / props.sum(axis=1, keepdims=True)

    cell_counts = pd.DataFrame(props, index=sample_names, columns=celltypes)
    diagnostics = pd.DataFrame.from_dict(diag, orient="index").loc[sample_names]
    parameters = pd.DataFrame(params).set_index("batch").sort_index()
    return cell_counts, diagnostics, parameters


def estimate_cell_counts(
    data: Any,
    signature: pd.DataFrame,
    anchors: Optional[AnchorRegions] = None,
    epsilon: Optional[float] = None,
    max_iter: Optional[int] = None,
    n_init: Optional[int] = None,
    batch_size: Optional[int] = None,
    init_param_method: Optional[str] = None,
    a0init: Optional[float] = None,
    a1init: Optional[float] = None,
    sig0init: Optional[float] = None,
    sig1init: Optional[float] = None,
    tauinit: Optional[float] = None,
    convergence: Optional[str] = None,
    n_jobs: Optional[int] = None,
    random_state: Optional[int] = None,
    verbose: bool = True,
    callback: Optional[ProgressCallback] = None,
) -> CellCompositionEstimate:
    """
    Estimate cell-type proportions of bulk methylation samples.

    Parameters
    ----------
    data : pd.DataFrame or MethylationSource
        Region x sample methylation levels in [0, 1]; ``NaN`` marks missing
        measurements. Sample identifiers are the columns.
    signature : pd.DataFrame
        Region x cell-type signature with entries in [0, 1] (share of each
        cell type in the methylated state). Rows are matched to ``data`` by
        region identifier.
    anchors : AnchorRegions, optional
        Anchor regions for ``init_param_method="known_regions"``. Defaults to
        the configured ``known_regions``.
    epsilon : float, optional
        EM convergence threshold (configured default 0.01).
    max_iter : int, optional
        Maximum EM iterations per batch (configured default 100).
    n_init : int, optional
        Random starts per task when initializing randomly; the start whose
        states stay ordered with the highest log-likelihood is kept
        (configured default 5).
    batch_size : int, optional
        Complete samples per batch (configured default 100).
    init_param_method : {"random", "known_regions"}, optional
        Initialization mode (configured default ``"random"``).
    a0init, a1init, sig0init, sig1init, tauinit : float, optional
        Starting state parameters overriding the initialization mode.
    convergence : {"parameter", "loglik"}, optional
        Convergence metric, see :func:`methylcc.core.engine.run_em`.
    n_jobs : int, optional
        Parallel workers for independent batches (joblib semantics).
    random_state : int, optional
        Seed for random initialization. Results do not depend on ``n_jobs``.
    verbose : bool, default True
        Log progress messages and show a progress bar.
    callback : callable, optional
        ``callback(event, done, total)`` with events ``"start"``, ``"task"``
        and ``"done"``.

    Returns
    -------
    CellCompositionEstimate

    Raises
    ------
    InvalidConfigurationError
        Invalid settings or malformed inputs.
    InvalidInputError
        ``data`` does not provide a region x sample matrix.
    InsufficientSignalError
        Too few regions (or anchors) for at least one sample; no partial
        result is returned.
    MemoryError
        Projected memory use exceeds available RAM.

    Examples
    --------
    >>> est = estimate_cell_counts(beta_regions, signature, random_state=1)
    >>> est.cell_counts.head()
    """
    cfg = get_config()
    config = cfg.resolve_settings(
        epsilon=epsilon,
        max_iter=max_iter,
        n_init=n_init,
        batch_size=batch_size,
        init_param_method=init_param_method,
        convergence=convergence,
        n_jobs=n_jobs,
        random_state=random_state,
        a0init=a0init,
        a1init=a1init,
        sig0init=sig0init,
        sig1init=sig1init,
        tauinit=tauinit,
    )
    settings = config.settings
    anchors = anchors if anchors is not None else config.anchors()
    overrides = config.initial_values.model_dump()

    Y, source_type = as_region_matrix(data)
    Y, Z = align_regions(Y, signature)
    celltypes = Z.columns
    sample_names = Y.columns
    if len(sample_names) == 0:
        raise InsufficientSignalError("No samples to estimate")

    try:
        check_signature_rank(Z.to_numpy())
    except RankDeficientSignatureError as e:
        raise RankDeficientSignatureError(f"{e}. {INSUFFICIENT_SIGNAL_HINT}") from e

    tasks = plan_tasks(Y, batch_size=settings.batch_size)
    for task in tasks:
        _check_task(task, Y, Z, settings.init_param_method, anchors, overrides)

    check_estimation_memory(
        Y, settings.batch_size, settings.n_jobs, settings.memory_warn_gb
    )

    n_missing = sum(task.missing for task in tasks)
    if verbose:
        logger.info(
            f"Starting parameter estimation using {len(Y.index)} regions, "
            f"{len(sample_names)} samples ({n_missing} with missing values), "
            f"{len(tasks)} tasks."
        )
    if callback is not None:
        callback("start", 0, len(tasks))

    seeds = np.random.SeedSequence(settings.random_state).spawn(len(tasks))
    jobs = [
        (task, Y.loc[task.regions, task.samples], Z.loc[task.regions], seed)
        for task, seed in zip(tasks, seeds)
    ]

    results: List[TaskResult] = []
    if settings.n_jobs != 1 and len(tasks) > 1:
        with joblib.Parallel(n_jobs=settings.n_jobs) as par:
            results = par(
                joblib.delayed(_run_task)(task, Ys, Zs, config, anchors, seed)
                for task, Ys, Zs, seed in jobs
            )
        if callback is not None:
            for done in range(1, len(results) + 1):
                callback("task", done, len(tasks))
    else:
        if verbose:
            logger.progress("Estimating cell composition", total=len(tasks))
        for done, (task, Ys, Zs, seed) in enumerate(jobs, start=1):
            results.append(_run_task(task, Ys, Zs, config, anchors, seed))
            if verbose:
                logger.progress_update(1)
            if callback is not None:
                callback("task", done, len(tasks))
        if verbose:
            logger.progress_close()

    capped = [
        res.task.batch
        for res in results
        if not res.em.converged and res.em.states_ordered
    ]
    if capped:
        logger.warning(
            f"{len(capped)} of {len(tasks)} tasks reached max_iter="
            f"{settings.max_iter} without converging (batches {capped[:10]}); "
            "their estimates are returned and flagged in diagnostics."
        )
    swapped = [res.task.batch for res in results if not res.em.states_ordered]
    if swapped:
        logger.warning(
            f"{len(swapped)} of {len(tasks)} tasks ended with the unmethylated "
            f"mean at or above the methylated mean in every start (batches "
            f"{swapped[:10]}); try a larger n_init or known_regions "
            "initialization."
        )

    cell_counts, diagnostics, parameters = _merge_results(
        results, sample_names, celltypes
    )

    if verbose:
        logger.info("Parameter estimation complete.")
    if callback is not None:
        callback("done", len(tasks), len(tasks))

    summary = {
        "class": source_type,
        "n_samples": len(sample_names),
        "celltypes": list(celltypes),
        "sample_names": list(sample_names),
        "init_param_method": settings.init_param_method,
        "n_regions": diagnostics["n_regions"].astype(int).tolist(),
    }
    return CellCompositionEstimate(
        cell_counts=cell_counts,
        summary=summary,
        diagnostics=diagnostics,
        parameters=parameters,
    )
