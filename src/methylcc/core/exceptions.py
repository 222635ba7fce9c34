#!/usr/bin/env python
# coding: utf-8


"""
Exception hierarchy for cell-composition estimation.

Each class also derives from the builtin exception raised for the same
condition elsewhere in the package, so ``except ValueError`` style handlers
keep working.
"""


class MethylCCError(Exception):
    """Base class for all methylcc errors."""


class InvalidConfigurationError(MethylCCError, ValueError):
    """Unsupported settings or malformed inputs, rejected before estimation."""


class InvalidInputError(MethylCCError, TypeError):
    """Input object does not provide a region x sample methylation matrix."""


class InsufficientSignalError(MethylCCError, RuntimeError):
    """Too few informative (or anchor) regions to estimate cell composition."""


class RankDeficientSignatureError(InsufficientSignalError):
    """Signature matrix has fewer independent columns than cell types."""


INSUFFICIENT_SIGNAL_HINT = (
    "There are not a sufficient number of differentially methylated regions "
    "for cell composition estimation. Try broadening the region-inclusion "
    "criteria (e.g. include both differentially methylated CpGs and regions) "
    "when building the signature matrix."
)
