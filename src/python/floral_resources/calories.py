from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from .count_units import OBSERVATION_COLUMNS
from .flowers_per_unit import bract_key_flowers
from .read import require_columns

DERIVED_COLUMNS = ["flowers_per_inflorescence", "flowers_per_tree", "calories_per_flower"]

def _scale(count: pd.Series, factor: pd.Series) -> pd.Series:
    # Zero stays zero even when the factor is unknown.
    return pd.Series(np.where(count == 0, 0.0, count * factor), index=count.index)

def _per_unit(flowers_per_unit: pd.DataFrame, unit: str, name: str) -> pd.DataFrame:
    t = flowers_per_unit.loc[flowers_per_unit["count_unit"] == unit, ["species_code", "flowers_per_unit"]]
    return t.rename(columns={"species_code": "species_for_calories", "flowers_per_unit": name})

def estimate_plant_calories(
    observations: pd.DataFrame,
    flowers_per_unit: pd.DataFrame,
    calories_per_flower: pd.DataFrame,
    bract_key: pd.DataFrame,
    *,
    focal_species: Optional[str],
    bract_threshold: int = 9,
    bract_forced_flowers: float = 2,
) -> pd.DataFrame:
    """
    Flower and calorie estimates for every resolved observation row.

    Order of precedence for num_flowers_estimate:
      1. focal species with a bract count: bract key (ignores any recorded flower count)
      2. recorded flower count
      3. inflorescence count x flowers per inflorescence
      4. tree count x flowers per tree
    Rows where none applies keep NaN.
    """
    require_columns(
        observations,
        ["observation_id", "species_for_calories", "count_unit"] + [f"{u}_count" for u in ("bract", "flower", "inflorescence", "tree")],
        "observations",
    )

    o = observations.drop(columns=[c for c in DERIVED_COLUMNS if c in observations.columns]).copy()
    cal = calories_per_flower[["species_code", "calories_per_flower"]].rename(
        columns={"species_code": "species_for_calories"}
    )

    o = (
        o.merge(_per_unit(flowers_per_unit, "inflorescence", "flowers_per_inflorescence"),
                on="species_for_calories", how="left", validate="many_to_one")
        .merge(_per_unit(flowers_per_unit, "tree", "flowers_per_tree"),
               on="species_for_calories", how="left", validate="many_to_one")
        .merge(cal, on="species_for_calories", how="left", validate="many_to_one")
    )

    for c in ["bract_count", "flower_count", "inflorescence_count", "tree_count"]:
        o[c] = pd.to_numeric(o[c], errors="coerce")

    use_bract_key = (o["species_for_calories"] == focal_species) & o["bract_count"].notna()
    use_flowers = o["flower_count"].notna()
    use_infl = (o["count_unit"] == "inflorescence") & o["inflorescence_count"].notna()
    use_tree = (o["count_unit"] == "tree") & o["tree_count"].notna()

    conditions = [use_bract_key, use_flowers, use_infl, use_tree]
    estimates = [
        bract_key_flowers(o["bract_count"], bract_key, threshold=bract_threshold, forced_flowers=bract_forced_flowers),
        o["flower_count"],
        _scale(o["inflorescence_count"], o["flowers_per_inflorescence"]),
        _scale(o["tree_count"], o["flowers_per_tree"]),
    ]

    o["flower_estimate_method"] = np.select(
        conditions, ["bract_key", "direct_count", "flowers_per_inflorescence", "flowers_per_tree"], default="none"
    )
    o["num_flowers_estimate"] = np.select(conditions, [e.to_numpy(dtype=float) for e in estimates], default=np.nan)
    o["calories_per_plant"] = _scale(o["num_flowers_estimate"], o["calories_per_flower"])

    extra = [c for c in o.columns if c not in OBSERVATION_COLUMNS and c not in ("num_flowers_estimate", "calories_per_plant")]
    ordered = [c for c in OBSERVATION_COLUMNS if c in o.columns] + extra + ["num_flowers_estimate", "calories_per_plant"]
    return o[ordered]

def missing_estimates(plant_calories: pd.DataFrame) -> pd.DataFrame:
    mask = plant_calories["num_flowers_estimate"].isna() | plant_calories["calories_per_plant"].isna()
    return plant_calories.loc[mask].reset_index(drop=True)

def summarize_site_calories(plant_calories: pd.DataFrame) -> pd.DataFrame:
    """
    Calories per site and year, once with bracketed rows at their low bound and once
    at their high bound. Rows without a calorie estimate are counted, not summed.
    """
    out_cols = ["site", "year", "estimate", "n_observations", "n_missing", "calories"]
    parts: List[pd.DataFrame] = []
    bracket = plant_calories["count_estimate_high_low"]

    for bound in ("low", "high"):
        keep = plant_calories[bracket.isna() | (bracket == bound)]
        if keep.empty:
            continue
        g = (
            keep.groupby(["site", "year"], as_index=False, dropna=False)
            .agg(
                n_observations=("observation_id", "nunique"),
                n_missing=("calories_per_plant", lambda s: int(s.isna().sum())),
                calories=("calories_per_plant", "sum"),
            )
        )
        g["estimate"] = bound
        parts.append(g)

    if not parts:
        return pd.DataFrame(columns=out_cols)
    return pd.concat(parts, ignore_index=True).sort_values(["site", "year", "estimate"]).reset_index(drop=True)[out_cols]

def _read_table(path: str, needed: List[str]) -> pd.DataFrame:
    df = pd.read_csv(path) if Path(path).exists() else pd.DataFrame(columns=needed)
    require_columns(df, needed, path)
    return df

def calculate_plant_calories(
    *,
    observations_path: str,
    flowers_per_unit_path: str,
    calories_per_flower_path: str,
    bract_key_path: str,
    focal_species: Optional[str],
    bract_threshold: int,
    bract_forced_flowers: float,
    output_path: str,
    missing_output_path: str,
    site_summary_output_path: str,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    observations = pd.read_csv(observations_path)
    flowers_per_unit = _read_table(flowers_per_unit_path, ["species_code", "count_unit", "flowers_per_unit"])
    calories_per_flower = _read_table(calories_per_flower_path, ["species_code", "calories_per_flower"])
    bract_key = _read_table(bract_key_path, ["bract_count", "flowers_estimate"])

    plant_calories = estimate_plant_calories(
        observations,
        flowers_per_unit,
        calories_per_flower,
        bract_key,
        focal_species=focal_species,
        bract_threshold=bract_threshold,
        bract_forced_flowers=bract_forced_flowers,
    )
    missing = missing_estimates(plant_calories)
    if not missing.empty:
        print(f"  {len(missing)} of {len(plant_calories)} rows without a calorie estimate")

    for p in [output_path, missing_output_path, site_summary_output_path]:
        Path(p).parent.mkdir(parents=True, exist_ok=True)

    plant_calories.to_csv(output_path, index=False)
    missing.to_csv(missing_output_path, index=False)
    summarize_site_calories(plant_calories).to_csv(site_summary_output_path, index=False)
    return plant_calories, missing
