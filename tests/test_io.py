#!/usr/bin/env python
# coding: utf-8


"""
Tests for methylcc.io.data_utils.

This suite covers:
- The RegionMatrix container and MethylationSource protocol.
- Input resolution and value validation.
- Region alignment between observations and signature.
- Anchor-region lookup.
"""


import numpy as np
import pandas as pd
import pytest

from methylcc.core.exceptions import (
    InsufficientSignalError,
    InvalidConfigurationError,
    InvalidInputError,
)
from methylcc.io.data_utils import (
    AnchorRegions,
    MethylationSource,
    RegionMatrix,
    align_regions,
    as_region_matrix,
)


class TestRegionMatrix:
    """Test the region x sample container"""

    def test_string_identifiers(self):
        rm = RegionMatrix(pd.DataFrame({1: [0.1, 0.2]}, index=[10, 11]))
        assert list(rm.M.index) == ["10", "11"]
        assert list(rm.M.columns) == ["1"]

    def test_does_not_modify_input(self):
        df = pd.DataFrame({"S1": [0.1, 0.2]}, index=[0, 1])
        RegionMatrix(df)
        assert list(df.index) == [0, 1]

    def test_duplicate_regions(self):
        df = pd.DataFrame({"S1": [0.1, 0.2]}, index=["r1", "r1"])
        with pytest.raises(InvalidConfigurationError, match="Duplicated region"):
            RegionMatrix(df)

    def test_rejects_non_dataframe(self):
        with pytest.raises(InvalidInputError):
            RegionMatrix(np.zeros((2, 2)))

    def test_implements_protocol(self):
        rm = RegionMatrix(pd.DataFrame({"S1": [0.5]}, index=["r1"]))
        assert isinstance(rm, MethylationSource)
        assert rm.region_matrix() is rm.M


class TestAsRegionMatrix:
    """Test input resolution"""

    def setup_method(self):
        self.df = pd.DataFrame(
            {"S1": [0.1, np.nan, 0.9], "S2": [0.2, 0.5, 0.8]},
            index=["r1", "r2", "r3"],
        )

    def test_dataframe_input(self):
        M, source_type = as_region_matrix(self.df)
        assert source_type == "DataFrame"
        assert M.dtypes.eq(float).all()
        assert np.isnan(M.loc["r2", "S1"])

    def test_protocol_input(self):
        df = self.df

        class Export:
            source_type = "RGChannelSet"

            def region_matrix(self):
                return df

        M, source_type = as_region_matrix(Export())
        assert source_type == "RGChannelSet"
        assert M.shape == (3, 2)

    def test_protocol_must_return_dataframe(self):
        class Broken:
            source_type = "Broken"

            def region_matrix(self):
                return [[0.1]]

        with pytest.raises(InvalidInputError):
            as_region_matrix(Broken())

    def test_unsupported_type(self):
        with pytest.raises(InvalidInputError, match="Unsupported input"):
            as_region_matrix({"S1": [0.1]})

    def test_non_numeric(self):
        df = self.df.astype(object)
        df.loc["r1", "S1"] = "high"
        with pytest.raises(InvalidConfigurationError, match="numeric"):
            as_region_matrix(df)

    def test_out_of_range(self):
        df = self.df.copy()
        df.loc["r3", "S2"] = -0.1
        with pytest.raises(InvalidConfigurationError, match=r"\[0, 1\]"):
            as_region_matrix(df)

    def test_infinite_values(self):
        df = self.df.copy()
        df.loc["r1", "S1"] = np.inf
        with pytest.raises(InvalidConfigurationError):
            as_region_matrix(df)


class TestAlignRegions:
    """Test region alignment"""

    def setup_method(self):
        self.Y = pd.DataFrame(
            {"S1": [0.1, 0.2, 0.3, 0.4]}, index=["r4", "r1", "r3", "r2"]
        )
        self.Z = pd.DataFrame(
            {"a": [1.0, 0.0, 1.0, 0.0], "b": [0.0, 1.0, 0.0, 1.0]},
            index=["r1", "r2", "r3", "r5"],
        )

    def test_keeps_observation_order(self):
        Y, Z = align_regions(self.Y, self.Z)
        assert list(Y.index) == ["r1", "r3", "r2"]
        assert Y.index.equals(Z.index)
        assert list(Z.columns) == ["a", "b"]

    def test_too_few_shared_regions(self):
        Z = self.Z.rename(index={"r1": "x1", "r2": "x2", "r3": "x3"})
        with pytest.raises(InsufficientSignalError):
            align_regions(self.Y, Z)

    def test_signature_out_of_range(self):
        Z = self.Z.copy()
        Z.iloc[0, 0] = 1.2
        with pytest.raises(InvalidConfigurationError):
            align_regions(self.Y, Z)

    def test_signature_missing_values(self):
        Z = self.Z.copy()
        Z.iloc[1, 1] = np.nan
        with pytest.raises(InvalidConfigurationError):
            align_regions(self.Y, Z)

    def test_signature_duplicate_celltypes(self):
        Z = self.Z.copy()
        Z.columns = ["a", "a"]
        with pytest.raises(InvalidConfigurationError, match="cell type"):
            align_regions(self.Y, Z)

    def test_signature_must_be_dataframe(self):
        with pytest.raises(InvalidInputError):
            align_regions(self.Y, self.Z.to_numpy())

    def test_signature_needs_celltypes(self):
        with pytest.raises(InvalidConfigurationError):
            align_regions(self.Y, pd.DataFrame(index=self.Z.index))


class TestAnchorRegions:
    """Test anchor lookup"""

    def test_present_in(self):
        anchors = AnchorRegions(unmethylated=["u1", "u2"], methylated=["m1"])
        unmeth, meth = anchors.present_in(pd.Index(["u2", "m1", "r9"]))
        assert list(unmeth) == ["u2"]
        assert list(meth) == ["m1"]

    def test_empty_defaults(self):
        unmeth, meth = AnchorRegions().present_in(pd.Index(["r1"]))
        assert len(unmeth) == 0 and len(meth) == 0
