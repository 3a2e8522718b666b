"""Load and aggregate site x year-month covariate data."""
from pathlib import Path
from typing import Callable, Optional

import pandas as pd

REQUIRED_COLUMNS = [
    "site_id",
    "year_month",
    "ratio",
    "min_temp",
    "precip",
    "ph",
    "litter_depth",
]


def _read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".parquet":
        return pd.read_parquet(path)
    if suffix == ".csv":
        return pd.read_csv(path, dtype={"site_id": str, "year_month": str})
    if suffix in (".pkl", ".pickle"):
        return pd.read_pickle(path)
    raise ValueError(f"Unsupported data file format: {path.suffix}. "
                     f"Must be one of '.parquet', '.csv', '.pkl'.")


def _write_table(df: pd.DataFrame, path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()
    if suffix == ".parquet":
        df.to_parquet(path)
    elif suffix == ".csv":
        df.to_csv(path, index=False)
    elif suffix in (".pkl", ".pickle"):
        df.to_pickle(path)
    else:
        raise ValueError(f"Unsupported data file format: {path.suffix}. "
                         f"Must be one of '.parquet', '.csv', '.pkl'.")


def load_site_month_data(
    path: Path | str = "data/site_month_covariates.parquet",
    builder: Optional[Callable[[], pd.DataFrame]] = None,
) -> pd.DataFrame:
    """Load the precomputed site x year-month table.

    Args:
        path: Path to the serialized table (.parquet, .csv or .pkl).
        builder: Optional callable that constructs the table when ``path`` does
            not exist. Its result is written to ``path`` before being returned.
            Exceptions raised by the builder propagate unchanged.

    Returns:
        DataFrame with columns site_id, year_month, ratio, min_temp, precip,
        ph, litter_depth (plus any extra columns present in the file).
    """
    path = Path(path)

    if path.exists():
        df = _read_table(path)
    elif builder is not None:
        print(f"Data file {path} not found, building it...")
        df = builder()
        _write_table(df, path)
        print(f"  Saved {len(df)} site-month records to {path}")
    else:
        raise FileNotFoundError(
            f"Site-month data not found at {path}. "
            "Provide a builder (e.g. aggregate_site_months) to construct it."
        )

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Site-month data is missing required columns: {missing}")

    df = df.copy()
    df["site_id"] = df["site_id"].astype(str)
    df["year_month"] = df["year_month"].astype(str)
    for col in REQUIRED_COLUMNS[2:]:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    return df


def list_sites(df: pd.DataFrame) -> list[str]:
    """Site identifiers in order of first appearance."""
    return list(pd.unique(df["site_id"]))


def site_dataset(df: pd.DataFrame, site_id: str) -> pd.DataFrame:
    """Return the records of one site ordered by year-month.

    The input frame is left untouched; a fresh copy is returned on every call.
    """
    df_site = df[df["site_id"] == site_id]
    if df_site.empty:
        raise ValueError(f"Unknown site: {site_id}. Available sites: {list_sites(df)}")

    # Stable sort keeps duplicate months in file order
    return df_site.sort_values("year_month", kind="mergesort").reset_index(drop=True)


def aggregate_site_months(
    df_samples: pd.DataFrame,
    df_climate: pd.DataFrame,
    sample_time_col: str = "collect_date",
    climate_time_col: str = "date",
) -> pd.DataFrame:
    """Aggregate sample-level soil records and daily climate to site-months.

    Args:
        df_samples: One row per soil sample with columns site_id,
            ``sample_time_col``, bacteria, archaea, fungi (abundances),
            ph and litter_depth.
        df_climate: One row per site-day with columns site_id,
            ``climate_time_col``, tmin and prcp.
        sample_time_col: Name of the sample collection date column.
        climate_time_col: Name of the climate date column.

    Returns:
        DataFrame with one row per site per sampled month and columns
        site_id, year_month, ratio, min_temp, precip, ph, litter_depth.
        Months without samples produce no row; months whose fungal abundance
        is zero or missing keep an undefined (NaN) ratio.
    """
    samples = df_samples.copy()
    samples[sample_time_col] = pd.to_datetime(samples[sample_time_col])
    samples["year_month"] = samples[sample_time_col].dt.strftime("%Y-%m")

    # Per-sample ratio of bacteria+archaea to fungi
    fungi = samples["fungi"].where(samples["fungi"] > 0)
    samples["ratio"] = (samples["bacteria"] + samples["archaea"].fillna(0.0)) / fungi

    soil = samples.groupby(["site_id", "year_month"]).agg(
        ratio=("ratio", "mean"),
        ph=("ph", "mean"),
        litter_depth=("litter_depth", "mean"),
        n_samples=("ratio", "size"),
    ).reset_index()

    climate = df_climate.copy()
    climate[climate_time_col] = pd.to_datetime(climate[climate_time_col])
    climate["year_month"] = climate[climate_time_col].dt.strftime("%Y-%m")
    monthly_climate = climate.groupby(["site_id", "year_month"]).agg(
        min_temp=("tmin", "mean"),
        precip=("prcp", "mean"),
    ).reset_index()

    merged = pd.merge(soil, monthly_climate, on=["site_id", "year_month"], how="left")
    merged = merged.sort_values(["site_id", "year_month"]).reset_index(drop=True)

    return merged[REQUIRED_COLUMNS + ["n_samples"]]


def build_site_month_table(samples_path: Path | str, climate_path: Path | str) -> pd.DataFrame:
    """Read raw sample and daily climate tables and aggregate them to site-months.

    Both files are read by suffix (.parquet, .csv or .pkl). Used as the
    ``builder`` of load_site_month_data() when the site-month table is absent.
    """
    samples_path = Path(samples_path)
    climate_path = Path(climate_path)
    for path in (samples_path, climate_path):
        if not path.exists():
            raise FileNotFoundError(f"Raw data file not found: {path}")

    print(f"Aggregating {samples_path} and {climate_path} to site-months...")
    df_samples = _read_table(samples_path)
    df_climate = _read_table(climate_path)
    return aggregate_site_months(df_samples, df_climate)
