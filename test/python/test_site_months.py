"""Test loading and aggregation of site x year-month data."""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from bfratio.data.site_months import (
    REQUIRED_COLUMNS,
    aggregate_site_months,
    build_site_month_table,
    list_sites,
    load_site_month_data,
    site_dataset,
)


def make_site_month_frame():
    """Two sites, months deliberately out of order for SITE_B."""
    return pd.DataFrame({
        "site_id": ["SITE_A", "SITE_A", "SITE_B", "SITE_B", "SITE_B"],
        "year_month": ["2017-01", "2017-02", "2017-05", "2017-03", "2017-04"],
        "ratio": [2.0, np.nan, 1.5, 1.2, 1.3],
        "min_temp": [-3.0, -1.0, 8.0, 2.0, 5.0],
        "precip": [1.2, 0.8, 3.1, 2.2, np.nan],
        "ph": [5.5, 5.6, 6.1, 6.0, 6.0],
        "litter_depth": [2.0, 2.1, 1.0, 1.1, 1.2],
    })


def test_missing_file_without_builder_raises(tmp_path):
    """A missing data file with no builder is a setup error."""
    with pytest.raises(FileNotFoundError):
        load_site_month_data(tmp_path / "missing.parquet")
    print("✓ missing data file raises FileNotFoundError")


def test_builder_runs_once_and_persists(tmp_path):
    """The builder is called only when the file is absent, and its output is saved."""
    calls = []

    def builder():
        calls.append(1)
        return make_site_month_frame()

    path = tmp_path / "covariates.csv"
    df_first = load_site_month_data(path, builder=builder)
    df_second = load_site_month_data(path, builder=builder)

    assert len(calls) == 1
    assert path.exists()
    assert len(df_first) == len(df_second) == 5
    assert df_second["year_month"].iloc[0] == "2017-01"
    assert np.isnan(df_second["ratio"].iloc[1])
    print("✓ builder runs once and result is persisted")


def test_builder_failure_propagates(tmp_path):
    """Errors from the external data construction step are not swallowed."""
    def builder():
        raise RuntimeError("download failed")

    with pytest.raises(RuntimeError, match="download failed"):
        load_site_month_data(tmp_path / "covariates.parquet", builder=builder)


def test_missing_columns_raise(tmp_path):
    path = tmp_path / "bad.csv"
    make_site_month_frame().drop(columns=["ph"]).to_csv(path, index=False)
    with pytest.raises(ValueError, match="ph"):
        load_site_month_data(path)


def test_unsupported_suffix_raises(tmp_path):
    path = tmp_path / "covariates.txt"
    path.write_text("site_id\n")
    with pytest.raises(ValueError, match="Unsupported"):
        load_site_month_data(path)


def test_site_dataset_orders_by_month_without_mutating():
    df = make_site_month_frame()
    original = df.copy()

    df_site = site_dataset(df, "SITE_B")

    assert list(df_site["year_month"]) == ["2017-03", "2017-04", "2017-05"]
    assert list(df_site["ratio"]) == [1.2, 1.3, 1.5]
    pd.testing.assert_frame_equal(df, original)
    print("✓ site_dataset returns chronological copy")


def test_site_dataset_unknown_site():
    with pytest.raises(ValueError, match="Unknown site"):
        site_dataset(make_site_month_frame(), "NOPE")


def test_list_sites_in_file_order():
    assert list_sites(make_site_month_frame()) == ["SITE_A", "SITE_B"]


def test_aggregate_site_months():
    """Samples and daily climate collapse to one row per sampled site-month."""
    df_samples = pd.DataFrame({
        "site_id": ["S1", "S1", "S1", "S2"],
        "collect_date": ["2018-06-03", "2018-06-20", "2018-08-01", "2018-06-10"],
        "bacteria": [900.0, 1100.0, 500.0, 300.0],
        "archaea": [100.0, 100.0, 0.0, 0.0],
        "fungi": [500.0, 400.0, 0.0, 100.0],
        "ph": [5.0, 6.0, 5.5, 7.0],
        "litter_depth": [1.0, 3.0, 2.0, 0.5],
    })
    days = pd.date_range("2018-06-01", "2018-08-31", freq="D")
    df_climate = pd.concat([
        pd.DataFrame({"site_id": site, "date": days,
                      "tmin": np.where(days.month == 6, 10.0, 15.0),
                      "prcp": np.where(days.month == 6, 2.0, 4.0)})
        for site in ["S1", "S2"]
    ])

    df = aggregate_site_months(df_samples, df_climate)

    assert list(df.columns[:len(REQUIRED_COLUMNS)]) == REQUIRED_COLUMNS
    # July has climate but no samples, so no row
    assert list(df["year_month"][df["site_id"] == "S1"]) == ["2018-06", "2018-08"]

    june = df[(df["site_id"] == "S1") & (df["year_month"] == "2018-06")].iloc[0]
    assert june["ratio"] == pytest.approx((1000 / 500 + 1200 / 400) / 2)
    assert june["ph"] == pytest.approx(5.5)
    assert june["litter_depth"] == pytest.approx(2.0)
    assert june["min_temp"] == pytest.approx(10.0)
    assert june["precip"] == pytest.approx(2.0)
    assert june["n_samples"] == 2

    # Zero fungi leaves the ratio undefined
    august = df[(df["site_id"] == "S1") & (df["year_month"] == "2018-08")].iloc[0]
    assert np.isnan(august["ratio"])
    assert august["min_temp"] == pytest.approx(15.0)
    print("✓ aggregate_site_months builds site-month records")


def test_build_site_month_table_needs_raw_files(tmp_path):
    with pytest.raises(FileNotFoundError, match="samples.csv"):
        build_site_month_table(tmp_path / "samples.csv", tmp_path / "climate.csv")


if __name__ == "__main__":
    import tempfile

    with tempfile.TemporaryDirectory() as tmpdir:
        test_missing_file_without_builder_raises(Path(tmpdir))
        test_builder_runs_once_and_persists(Path(tmpdir))
    test_site_dataset_orders_by_month_without_mutating()
    test_aggregate_site_months()
