from __future__ import annotations

import os
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

COUNT_UNITS = ("flower", "inflorescence", "bract", "tree")

UNIT_ALIASES = {
    "flower": "flower",
    "flowers": "flower",
    "fl": "flower",
    "inflorescence": "inflorescence",
    "inflorescences": "inflorescence",
    "infl": "inflorescence",
    "inflo": "inflorescence",
    "bract": "bract",
    "bracts": "bract",
    "tree": "tree",
    "trees": "tree",
}

RAW_COLUMNS = ["species_code", "scientific_name", "site", "year", "count", "count_unit"]

def require_columns(df: pd.DataFrame, needed: Iterable[str], name: str) -> None:
    missing = set(needed) - set(df.columns)
    if missing:
        raise KeyError(f"{name} missing columns: {sorted(missing)}")

def normalize_count_unit(units: pd.Series) -> pd.Series:
    """
    Maps free-text unit spellings onto COUNT_UNITS. Blank cells become NaN.
    Anything else that is not a known spelling raises.
    """
    cleaned = units.astype("string").str.strip().str.lower()
    cleaned = cleaned.mask(cleaned.isin(["", "na", "nan", "unknown"]))

    mapped = cleaned.map(UNIT_ALIASES)
    bad = cleaned[cleaned.notna() & mapped.isna()].unique()
    if len(bad):
        raise ValueError(f"Unrecognised count_unit values: {sorted(bad)}")

    return mapped.astype(object).where(mapped.notna(), np.nan)

def apply_species_for_calories(
    df: pd.DataFrame,
    species_for_calories: Optional[Dict[str, str]],
) -> pd.DataFrame:
    out = df.copy()
    mapping = species_for_calories or {}
    out["species_for_calories"] = out["species_code"].map(mapping).fillna(out["species_code"])
    return out

def clean_observations(
    df: pd.DataFrame,
    *,
    species_for_calories: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    require_columns(df, RAW_COLUMNS, "raw observations")

    df = df.copy()
    df["species_code"] = df["species_code"].astype(str).str.strip()
    df["year"] = pd.to_numeric(df["year"], errors="coerce").astype("Int64")
    df["count"] = pd.to_numeric(df["count"], errors="coerce")
    df["count_unit"] = normalize_count_unit(df["count_unit"])

    for c in ["bract_count", "flower_count"]:
        if c in df.columns:
            df[c] = pd.to_numeric(df[c], errors="coerce")
        else:
            df[c] = np.nan

    # Identical rows can be separate plants, so repeats are flagged and kept.
    df["duplicate_record"] = df.duplicated(subset=RAW_COLUMNS + ["bract_count", "flower_count"], keep="first")
    df = df.reset_index(drop=True)

    if "observation_id" not in df.columns:
        df.insert(0, "observation_id", np.arange(1, len(df) + 1, dtype=int))
    elif df["observation_id"].duplicated().any():
        dupes = df.loc[df["observation_id"].duplicated(), "observation_id"].unique()
        raise ValueError(f"observation_id must be unique. Duplicated: {sorted(dupes)[:10]}")

    return apply_species_for_calories(df, species_for_calories)

def read_data(
    data_path: str,
    *,
    save_path: str,
    species_for_calories: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    df = pd.read_csv(data_path)
    df = clean_observations(df, species_for_calories=species_for_calories)

    os.makedirs(os.path.dirname(save_path) or ".", exist_ok=True)
    df.to_csv(save_path, index=False)
    return df
