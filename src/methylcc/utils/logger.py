#!/usr/bin/env python
# coding: utf-8


"""
Centralised logging utilities for the methylcc cell-composition estimator.

This module configures a unified logger with the following features:

Features
--------
- Console (stdout) output with a consistent, timestamped format
- Optional timestamped log files saved to ``<output_dir>/log/`` when an \
output directory is given (argument or ``METHYLCC_LOG_DIR`` environment variable)
- A custom :class:`ProgressAwareLogger` that integrates ``tqdm`` progress bars:
    - ``logger.progress("Estimating batches", total=n)`` starts a progress bar
    - ``logger.progress_update(k)`` advances it
    - Any emitted log record closes the active bar first, so messages are \
    never interleaved with tqdm output. Records below the logger level \
    (e.g. ``debug`` calls inside a loop) leave the bar running

All other ``methylcc`` modules import the logger via ``get_logger()`` or the
module-level ``logger``.
"""


from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from typing import Optional

from tqdm import tqdm

LOG_DIR_ENV = "METHYLCC_LOG_DIR"


class ProgressAwareLogger(logging.Logger):
    """
    Logger class that supports a temporary progress bar.

    The bar stays active until a record is actually emitted: records
    filtered out by the logger level (e.g. ``debug`` at ``INFO``) leave it
    running.
    """

    def __init__(self, name) -> None:
        super().__init__(name)
        self._pbar: Optional[tqdm] = None

    @property
    def progress_active(self) -> bool:
        return self._pbar is not None

    def progress(self, msg: str, total: Optional[int] = None) -> None:
        """
        Start or replace the active tqdm progress bar.

        Parameters
        ----------
        msg : str
            Description displayed to the left of the progress bar.
        total : int, optional
            Expected total number of steps. If ``None``, an \
            indeterminate bar is used.
        """
        self.progress_close()
        self._pbar = tqdm(
            total=total or 0,
            desc=msg,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt}",
        )

    def progress_update(self, n: int = 1) -> None:
        """Advance the active progress bar by ``n`` steps, if there is one."""
        if self._pbar is not None:
            self._pbar.update(n)

    def progress_close(self) -> None:
        """Close the active progress bar, leaving its final state on screen."""
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def _log(self, level, msg, args, **kwargs) -> None:
        # only reached for records that pass the level check
        self.progress_close()
        super()._log(level, msg, args, **kwargs)


logging.setLoggerClass(ProgressAwareLogger)


def _configure_logger(
    name: str = "methylcc", output_dir: Optional[str] = None
) -> logging.Logger:
    """
    Configure and return the central methylcc logger instance.

    Parameters
    ----------
    name : str, default "methylcc"
        Logger name. Typically left as the default.
    output_dir : str, optional
        Base directory for log storage. When given (or when ``METHYLCC_LOG_DIR``
        is set), log files are also written to ``<output_dir>/log/``.

    Returns
    -------
    logging.Logger
        A :class:`ProgressAwareLogger` instance set to ``INFO`` level.
    """
    logger = logging.getLogger(name)

    if logger.hasHandlers():
        return logger

    logger.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    output_dir = output_dir or os.environ.get(LOG_DIR_ENV)
    if output_dir:
        log_dir = os.path.join(output_dir, "log")
        os.makedirs(log_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"{name}_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# Instantiate logger once
logger = _configure_logger()


def get_logger(name: str = "methylcc") -> logging.Logger:
    """Return the central methylcc logger instance."""
    return logging.getLogger(name)
