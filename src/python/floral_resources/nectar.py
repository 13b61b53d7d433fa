from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from .read import require_columns

ArrayLike = Union[float, np.ndarray, pd.Series]

KCAL_PER_GRAM_SUGAR = 3.94

# Kearns & Inouye (1993), Table 5-2: sucrose % w/w (Brix) -> grams of sugar per litre.
SUGAR_G_PER_L = {
    0.0: 0.0,
    0.5: 5.0, 1.0: 10.0, 1.5: 15.0, 2.0: 20.1, 2.5: 25.1,
    3.0: 30.2, 3.5: 35.3, 4.0: 40.4, 4.5: 45.5, 5.0: 50.6,
    5.5: 55.7, 6.0: 60.8, 6.5: 66.0, 7.0: 71.2, 7.5: 76.4,
    8.0: 81.6, 8.5: 86.8, 9.0: 92.0, 9.5: 97.3, 10.0: 102.5,
    11.0: 113.1, 12.0: 123.8, 13.0: 134.5, 14.0: 145.3, 15.0: 156.3,
    16.0: 167.3, 17.0: 178.4, 18.0: 189.6, 19.0: 200.8, 20.0: 212.2,
    22.0: 235.2, 24.0: 258.7, 26.0: 282.5, 28.0: 306.8, 30.0: 331.5,
    32.0: 356.6, 34.0: 382.2, 36.0: 408.2, 38.0: 434.6, 40.0: 461.6,
    42.0: 489.0, 44.0: 516.9, 46.0: 545.3, 48.0: 574.3, 50.0: 603.7,
    52.0: 633.7, 54.0: 664.3, 56.0: 695.4, 58.0: 727.2, 60.0: 759.5,
    62.0: 792.4, 64.0: 825.9, 66.0: 860.1, 68.0: 894.8, 70.0: 930.2,
}

CALORIE_COLUMNS = [
    "species_code",
    "calories_per_flower",
    "data_source",
    "substitute_species",
    "substituted_fields",
    "mean_volume_ul",
    "mean_concentration_brix",
    "n_flowers_measured",
]

# Field summary column -> literature config key
MEAN_COLUMNS = {"mean_volume_ul": "volume_ul", "mean_concentration_brix": "concentration_brix"}

def _as_output(values: np.ndarray, like: ArrayLike) -> ArrayLike:
    if isinstance(like, pd.Series):
        return pd.Series(values, index=like.index)
    if np.ndim(like) == 0:
        return float(values)
    return values

def round_concentration(brix: ArrayLike) -> ArrayLike:
    """Nearest 0.5 up to 10 Brix, nearest 1 up to 20, nearest 2 above that."""
    b = np.atleast_1d(np.asarray(brix, dtype=float))
    rounded = np.select(
        [b <= 10, b <= 20],
        [np.round(b * 2.0) / 2.0, np.round(b)],
        default=np.round(b / 2.0) * 2.0,
    )
    return _as_output(rounded.reshape(np.shape(brix)), brix)

def sugar_g_per_l(brix: ArrayLike) -> ArrayLike:
    rounded = np.atleast_1d(np.asarray(round_concentration(brix), dtype=float))
    sugar = np.array([SUGAR_G_PER_L.get(float(r), np.nan) for r in rounded], dtype=float)
    return _as_output(sugar.reshape(np.shape(brix)), brix)

def calories_per_flower(volume_ul: ArrayLike, brix: ArrayLike) -> ArrayLike:
    sugar = np.asarray(sugar_g_per_l(brix), dtype=float)
    volume_l = np.asarray(volume_ul, dtype=float) / 1e6
    calories = sugar * volume_l * KCAL_PER_GRAM_SUGAR * 1000.0
    return _as_output(calories, brix if np.ndim(brix) else volume_ul)

def summarize_nectar(measurements: pd.DataFrame) -> pd.DataFrame:
    """Mean volume and concentration per species. A species with only one of the two keeps the row."""
    out_cols = ["species_code", "mean_volume_ul", "mean_concentration_brix", "n_flowers_measured"]
    if measurements.empty:
        return pd.DataFrame(columns=out_cols)
    require_columns(measurements, ["species_code", "volume_ul", "concentration_brix"], "nectar measurements")

    m = measurements.copy()
    m["volume_ul"] = pd.to_numeric(m["volume_ul"], errors="coerce")
    m["concentration_brix"] = pd.to_numeric(m["concentration_brix"], errors="coerce")

    return (
        m.groupby("species_code", as_index=False)
        .agg(
            mean_volume_ul=("volume_ul", "mean"),
            mean_concentration_brix=("concentration_brix", "mean"),
            n_flowers_measured=("volume_ul", "count"),
        )
        .dropna(subset=["mean_volume_ul", "mean_concentration_brix"], how="all")
        .reset_index(drop=True)[out_cols]
    )

def _mean_value(rec: Optional[Mapping[str, Any]], column: str) -> float:
    if rec is None:
        return np.nan
    key = column if column in rec else MEAN_COLUMNS[column]
    if key not in rec or pd.isna(rec[key]):
        return np.nan
    return float(rec[key])

def build_calories_per_flower(
    field: pd.DataFrame,
    *,
    species: Iterable[str] = (),
    substitutes: Optional[Mapping[str, str]] = None,
    literature: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> pd.DataFrame:
    """
    One row per species. Volume and concentration are filled separately: the
    species' own field mean, then the field mean of its congeneric substitute,
    then the literature value. data_source names the last tier used and
    substituted_fields lists the means borrowed from the substitute. Species
    left without both means keep NaN calories and a NaN data_source.
    """
    substitutes = substitutes or {}
    literature = literature or {}
    by_species = field.set_index("species_code")

    rows: List[Dict[str, Any]] = []
    for sp in sorted(set(species) | set(by_species.index)):
        row: Dict[str, Any] = {
            "species_code": sp,
            "data_source": np.nan,
            "substitute_species": np.nan,
            "substituted_fields": np.nan,
            "mean_volume_ul": np.nan,
            "mean_concentration_brix": np.nan,
            "n_flowers_measured": 0,
        }
        sub = substitutes.get(sp)
        tiers = [
            ("field", by_species.loc[sp] if sp in by_species.index else None),
            ("field_substituted", by_species.loc[sub] if sub is not None and sub in by_species.index else None),
            ("literature", literature.get(sp)),
        ]

        used: List[int] = []
        borrowed: List[str] = []
        for column in MEAN_COLUMNS:
            for i, (source, rec) in enumerate(tiers):
                value = _mean_value(rec, column)
                if np.isnan(value):
                    continue
                row[column] = value
                used.append(i)
                if source == "field_substituted":
                    borrowed.append(column)
                break

        if len(used) == len(MEAN_COLUMNS):
            row["data_source"] = tiers[max(used)][0]
        if borrowed:
            row["substitute_species"] = sub
            row["substituted_fields"] = ";".join(borrowed)
        if tiers[0][1] is not None:
            row["n_flowers_measured"] = int(tiers[0][1]["n_flowers_measured"])
        elif borrowed:
            row["n_flowers_measured"] = int(tiers[1][1]["n_flowers_measured"])
        rows.append(row)

    out = pd.DataFrame(rows, columns=[c for c in CALORIE_COLUMNS if c != "calories_per_flower"])
    out["calories_per_flower"] = calories_per_flower(
        out["mean_volume_ul"].astype(float), out["mean_concentration_brix"].astype(float)
    )
    return out[CALORIE_COLUMNS]

def convert_nectar_to_calories(
    *,
    observations_path: str,
    nectar_path: str,
    substitutes: Optional[Mapping[str, str]],
    literature: Optional[Mapping[str, Mapping[str, float]]],
    output_path: str,
    missing_output_path: str,
) -> pd.DataFrame:
    observations = pd.read_csv(observations_path)
    require_columns(observations, ["species_for_calories"], observations_path)

    measurements = pd.read_csv(nectar_path) if Path(nectar_path).exists() else pd.DataFrame()
    field = summarize_nectar(measurements)

    table = build_calories_per_flower(
        field,
        species=observations["species_for_calories"].dropna().unique(),
        substitutes=substitutes,
        literature=literature,
    )

    missing = table[table["calories_per_flower"].isna()]
    if not missing.empty:
        print(f"  no nectar data for {len(missing)} species: {', '.join(missing['species_code'])}")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    Path(missing_output_path).parent.mkdir(parents=True, exist_ok=True)

    table.dropna(subset=["calories_per_flower"]).to_csv(output_path, index=False)
    missing.to_csv(missing_output_path, index=False)
    return table
