from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .read import require_columns

ESTIMATE_COLUMNS = [
    "species_code",
    "count_unit",
    "flowers_per_unit",
    "source",
    "sampling_amount",
    "median",
    "mean",
    "sd",
    "min",
    "max",
    "n",
    "n_plants",
    "dates_per_plant",
]

# Declaration order doubles as the tie-break when sampling amounts are equal.
COMPETING_SOURCES = ("thesis", "survey_notes", "nectar_bags", "camera")
SOURCE_PRIORITY = COMPETING_SOURCES + ("tree_backfill", "expert")

NOT_FLOWERING = ("no_longer_flowering", "not_flowering", "finished")

def _empty_estimates() -> pd.DataFrame:
    return pd.DataFrame(columns=ESTIMATE_COLUMNS)

def _describe(df: pd.DataFrame, value_col: str, by: List[str]) -> pd.DataFrame:
    return (
        df.groupby(by, as_index=False)
        .agg(
            median=(value_col, "median"),
            mean=(value_col, "mean"),
            sd=(value_col, "std"),
            min=(value_col, "min"),
            max=(value_col, "max"),
            n=(value_col, "size"),
        )
    )

def summarize_thesis_counts(thesis: pd.DataFrame) -> pd.DataFrame:
    """
    Flowers per inflorescence from dedicated per-inflorescence tallies.

    Zero-flower records and inflorescences that were no longer flowering are dropped.
    Sampling dates were not tracked, so dates_per_plant is reported as unknown.
    """
    if thesis.empty:
        return _empty_estimates()
    require_columns(thesis, ["species_code", "flowers"], "thesis counts")

    t = thesis.copy()
    t["flowers"] = pd.to_numeric(t["flowers"], errors="coerce")
    t = t[t["flowers"].notna() & (t["flowers"] > 0)]
    if "flowering_status" in t.columns:
        status = t["flowering_status"].astype(str).str.strip().str.lower().str.replace(" ", "_")
        t = t[~status.isin(NOT_FLOWERING)]
    if t.empty:
        return _empty_estimates()

    out = _describe(t, "flowers", ["species_code"])
    out["count_unit"] = "inflorescence"
    out["flowers_per_unit"] = out["median"]
    out["n_plants"] = np.nan
    out["dates_per_plant"] = "unknown"
    out["sampling_amount"] = out["n"].astype(float)
    out["source"] = "thesis"
    return out[ESTIMATE_COLUMNS]

def summarize_survey_notes(notes: pd.DataFrame) -> pd.DataFrame:
    """Ratio of flowers to inflorescences (or to trees) recorded on each surveyed plant."""
    if notes.empty:
        return _empty_estimates()
    require_columns(notes, ["species_code", "total_flowers"], "survey notes")

    n = notes.copy()
    for c in ["total_flowers", "total_inflorescences", "total_trees"]:
        n[c] = pd.to_numeric(n[c], errors="coerce") if c in n.columns else np.nan
    n = n[n["total_flowers"].notna() & (n["total_flowers"] > 0)].copy()

    per_infl = n["total_inflorescences"] > 0
    per_tree = ~per_infl & (n["total_trees"] > 0)

    n["count_unit"] = np.select([per_infl, per_tree], ["inflorescence", "tree"], default="")
    n["ratio"] = np.where(
        per_infl,
        n["total_flowers"] / n["total_inflorescences"],
        n["total_flowers"] / n["total_trees"],
    )
    n = n[n["count_unit"] != ""]
    if n.empty:
        return _empty_estimates()

    out = _describe(n, "ratio", ["species_code", "count_unit"])
    out["flowers_per_unit"] = out["median"]
    out["n_plants"] = out["n"]
    out["dates_per_plant"] = 1.0
    out["sampling_amount"] = out["n_plants"].astype(float) * out["dates_per_plant"]
    out["source"] = "survey_notes"
    return out[ESTIMATE_COLUMNS]

def flowers_per_day(daily: pd.DataFrame, plant_col: str, source: str) -> pd.DataFrame:
    """
    Per plant: total flowers / number of distinct dates. Per species: mean of the
    per-plant rates, with sampling amount = plants x mean dates per plant.
    """
    if daily.empty:
        return _empty_estimates()

    per_plant = (
        daily.groupby(["species_code", plant_col], as_index=False)
        .agg(total_flowers=("flowers", "sum"), n_dates=("date", "nunique"))
    )
    per_plant = per_plant[per_plant["n_dates"] > 0].copy()
    per_plant["flowers_per_day"] = per_plant["total_flowers"] / per_plant["n_dates"]

    out = _describe(per_plant, "flowers_per_day", ["species_code"])
    dates = per_plant.groupby("species_code", as_index=False).agg(dates_per_plant=("n_dates", "mean"))
    out = out.merge(dates, on="species_code", how="left", validate="one_to_one")

    out["count_unit"] = "inflorescence"
    out["flowers_per_unit"] = out["mean"]
    out["n_plants"] = out["n"]
    out["sampling_amount"] = out["n_plants"].astype(float) * out["dates_per_plant"]
    out["source"] = source
    return out[ESTIMATE_COLUMNS]

def summarize_nectar_bags(bags: pd.DataFrame, *, single_inflorescence_species: Iterable[str]) -> pd.DataFrame:
    if bags.empty:
        return _empty_estimates()
    require_columns(bags, ["species_code", "plant_id", "date", "flowers"], "nectar bag counts")

    b = bags.copy()
    b["flowers"] = pd.to_numeric(b["flowers"], errors="coerce")
    b = b[b["species_code"].isin(set(single_inflorescence_species)) & b["flowers"].notna()]
    return flowers_per_day(b, "plant_id", "nectar_bags")

def summarize_camera_counts(camera: pd.DataFrame) -> pd.DataFrame:
    if camera.empty:
        return _empty_estimates()
    require_columns(
        camera,
        ["species_code", "camera_id", "date", "flowers", "inflorescences_in_view"],
        "camera flower counts",
    )

    c = camera.copy()
    c["flowers"] = pd.to_numeric(c["flowers"], errors="coerce")
    c["inflorescences_in_view"] = pd.to_numeric(c["inflorescences_in_view"], errors="coerce")
    c = c[(c["inflorescences_in_view"] == 1) & c["flowers"].notna() & (c["flowers"] > 0)]

    # One flower count per camera-day.
    c = c.groupby(["species_code", "camera_id", "date"], as_index=False).agg(flowers=("flowers", "mean"))
    return flowers_per_day(c, "camera_id", "camera")

def summarize_expert_estimates(expert: pd.DataFrame) -> pd.DataFrame:
    if expert.empty:
        return _empty_estimates()
    require_columns(expert, ["species_code", "count_unit", "flowers_per_unit"], "expert estimates")

    e = expert.copy()
    e["flowers_per_unit"] = pd.to_numeric(e["flowers_per_unit"], errors="coerce")
    e = e[e["flowers_per_unit"].notna()].drop_duplicates(["species_code", "count_unit"], keep="first")

    out = e[["species_code", "count_unit", "flowers_per_unit"]].copy()
    out["median"] = out["flowers_per_unit"]
    for c in ["mean", "sd", "min", "max", "n", "n_plants", "dates_per_plant", "sampling_amount"]:
        out[c] = np.nan
    out["source"] = "expert"
    return out[ESTIMATE_COLUMNS]

def select_estimates(candidates: pd.DataFrame, *, exclude_species: Iterable[str] = ()) -> pd.DataFrame:
    """
    One estimate per (species, count_unit): the largest sampling amount wins,
    equal amounts fall back to SOURCE_PRIORITY order.
    """
    if candidates.empty:
        return _empty_estimates()

    c = candidates[~candidates["species_code"].isin(set(exclude_species))].copy()
    c["sampling_amount"] = pd.to_numeric(c["sampling_amount"], errors="coerce")
    c["_priority"] = c["source"].map({s: i for i, s in enumerate(SOURCE_PRIORITY)}).fillna(len(SOURCE_PRIORITY))

    c = c.sort_values(
        ["species_code", "count_unit", "sampling_amount", "_priority"],
        ascending=[True, True, False, True],
        na_position="last",
        kind="mergesort",
    )
    return c.drop_duplicates(["species_code", "count_unit"], keep="first").drop(columns="_priority").reset_index(drop=True)

def backfill_tree_estimates(
    selected: pd.DataFrame,
    candidates: pd.DataFrame,
    tree_counts: pd.DataFrame,
    *,
    species: Iterable[str],
) -> pd.DataFrame:
    """
    flowers per tree = median inflorescences per tree x flowers per inflorescence,
    the latter taken from survey notes or camera counts.
    """
    if tree_counts.empty:
        return selected
    require_columns(tree_counts, ["species_code", "inflorescences"], "tree inflorescence counts")

    trees = tree_counts.copy()
    trees["inflorescences"] = pd.to_numeric(trees["inflorescences"], errors="coerce")

    have_tree = set(selected.loc[selected["count_unit"] == "tree", "species_code"])
    per_infl = select_estimates(
        candidates[
            (candidates["count_unit"] == "inflorescence")
            & candidates["source"].isin(["survey_notes", "camera"])
        ]
    ).set_index("species_code")

    rows: List[Dict[str, Any]] = []
    for sp in species:
        if sp in have_tree or sp not in per_infl.index:
            continue
        ipt = trees.loc[trees["species_code"] == sp, "inflorescences"].dropna()
        if ipt.empty:
            continue
        fpi = float(per_infl.loc[sp, "flowers_per_unit"])
        value = float(ipt.median()) * fpi
        rows.append(
            {
                "species_code": sp,
                "count_unit": "tree",
                "flowers_per_unit": value,
                "source": "tree_backfill",
                "sampling_amount": float(len(ipt)),
                "median": value,
                "mean": float(ipt.mean()) * fpi,
                "sd": np.nan,
                "min": float(ipt.min()) * fpi,
                "max": float(ipt.max()) * fpi,
                "n": int(len(ipt)),
                "n_plants": int(len(ipt)),
                "dates_per_plant": np.nan,
            }
        )

    if not rows:
        return selected
    return pd.concat([selected, pd.DataFrame(rows, columns=ESTIMATE_COLUMNS)], ignore_index=True)

def fill_from_expert(selected: pd.DataFrame, expert: pd.DataFrame, *, exclude_species: Iterable[str] = ()) -> pd.DataFrame:
    if expert.empty:
        return selected
    covered = set(selected["species_code"]) | set(exclude_species)
    fill = expert[~expert["species_code"].isin(covered)]
    if fill.empty:
        return selected
    return pd.concat([selected, fill], ignore_index=True)

def build_bract_key(
    observations: pd.DataFrame,
    *,
    focal_species: str,
    threshold: int = 9,
    forced_flowers: float = 2,
) -> pd.DataFrame:
    """
    Median flower count for each bract count of the focal species.

    Above `threshold` bracts the samples get thin and the median stops rising with
    bract count, so those rows carry `forced_flowers` instead.
    """
    out_cols = ["species_code", "bract_count", "flowers_estimate", "median_flowers", "n", "forced"]
    require_columns(observations, ["observation_id", "species_for_calories", "bract_count", "flower_count"], "observations")

    f = observations[
        (observations["species_for_calories"] == focal_species)
        & observations["bract_count"].notna()
        & observations["flower_count"].notna()
    ].drop_duplicates("observation_id")
    if f.empty:
        return pd.DataFrame(columns=out_cols)

    key = (
        f.groupby("bract_count", as_index=False)
        .agg(median_flowers=("flower_count", "median"), n=("flower_count", "size"))
        .sort_values("bract_count")
        .reset_index(drop=True)
    )
    key["forced"] = key["bract_count"] > threshold
    key["flowers_estimate"] = np.where(key["forced"], float(forced_flowers), key["median_flowers"])
    key["species_code"] = focal_species
    return key[out_cols]

def bract_key_flowers(
    bract_counts: pd.Series,
    key: pd.DataFrame,
    *,
    threshold: int = 9,
    forced_flowers: float = 2,
) -> pd.Series:
    lookup = dict(zip(key["bract_count"].astype(float), key["flowers_estimate"].astype(float)))
    bracts = pd.to_numeric(bract_counts, errors="coerce")
    flowers = bracts.map(lookup).astype(float)
    flowers = flowers.mask(bracts > threshold, float(forced_flowers))
    return flowers.mask(bracts == 0, 0.0)

def required_estimates(observations: pd.DataFrame, *, bract_key_species: Iterable[str] = ()) -> pd.DataFrame:
    """
    (species, unit) pairs that need a flowers-per-unit estimate. Rows of
    bract_key_species that carry a bract count are covered by the bract key;
    the rest of their inflorescence or tree rows are still required.
    """
    bract_keyed = observations["species_for_calories"].isin(set(bract_key_species))
    if "bract_count" in observations.columns:
        bract_keyed &= observations["bract_count"].notna()
    o = observations[
        observations["count_unit"].isin(["inflorescence", "tree"])
        & observations["flower_count"].isna()
        & ~bract_keyed
    ]
    return (
        o[["species_for_calories", "count_unit"]]
        .drop_duplicates()
        .rename(columns={"species_for_calories": "species_code"})
        .sort_values(["species_code", "count_unit"])
        .reset_index(drop=True)
    )

def combine_estimates(
    candidates: pd.DataFrame,
    expert: pd.DataFrame,
    tree_counts: pd.DataFrame,
    *,
    focal_species: Optional[str],
    tree_backfill_species: Iterable[str] = (),
) -> pd.DataFrame:
    exclude = [focal_species] if focal_species else []
    competing = candidates[candidates["source"].isin(COMPETING_SOURCES)] if not candidates.empty else candidates

    selected = select_estimates(competing, exclude_species=exclude)
    selected = backfill_tree_estimates(selected, competing, tree_counts, species=tree_backfill_species)
    selected = fill_from_expert(selected, expert, exclude_species=exclude)
    return selected.sort_values(["species_code", "count_unit"]).reset_index(drop=True)[ESTIMATE_COLUMNS]

def _read_optional(path: Optional[str]) -> pd.DataFrame:
    if not path or not Path(path).exists():
        return pd.DataFrame()
    return pd.read_csv(path)

def estimate_flowers_per_unit(
    *,
    observations_path: str,
    thesis_counts_path: Optional[str],
    survey_notes_path: Optional[str],
    nectar_bags_path: Optional[str],
    camera_counts_path: Optional[str],
    expert_estimates_path: Optional[str],
    tree_counts_path: Optional[str],
    single_inflorescence_bag_species: Sequence[str],
    focal_species: Optional[str],
    bract_threshold: int,
    bract_forced_flowers: float,
    tree_backfill_species: Sequence[str],
    output_path: str,
    candidates_output_path: str,
    bract_key_output_path: str,
    missing_output_path: str,
) -> pd.DataFrame:
    observations = pd.read_csv(observations_path)

    parts = [
        summarize_thesis_counts(_read_optional(thesis_counts_path)),
        summarize_survey_notes(_read_optional(survey_notes_path)),
        summarize_nectar_bags(
            _read_optional(nectar_bags_path),
            single_inflorescence_species=single_inflorescence_bag_species or (),
        ),
        summarize_camera_counts(_read_optional(camera_counts_path)),
    ]
    parts = [p for p in parts if not p.empty]
    candidates = pd.concat(parts, ignore_index=True) if parts else _empty_estimates()
    expert = summarize_expert_estimates(_read_optional(expert_estimates_path))

    selected = combine_estimates(
        candidates,
        expert,
        _read_optional(tree_counts_path),
        focal_species=focal_species,
        tree_backfill_species=tree_backfill_species or (),
    )

    if focal_species:
        bract_key = build_bract_key(
            observations,
            focal_species=focal_species,
            threshold=bract_threshold,
            forced_flowers=bract_forced_flowers,
        )
    else:
        bract_key = pd.DataFrame(columns=["species_code", "bract_count", "flowers_estimate", "median_flowers", "n", "forced"])

    needed = required_estimates(observations, bract_key_species=[focal_species] if focal_species else [])
    missing = needed.merge(
        selected[["species_code", "count_unit"]], on=["species_code", "count_unit"], how="left", indicator=True
    )
    missing = missing[missing["_merge"] == "left_only"].drop(columns="_merge")
    if not missing.empty:
        print(f"  no flowers-per-unit estimate for {len(missing)} species/unit pairs: "
              f"{', '.join(missing['species_code'] + '/' + missing['count_unit'])}")

    for p in [output_path, candidates_output_path, bract_key_output_path, missing_output_path]:
        Path(p).parent.mkdir(parents=True, exist_ok=True)

    selected.to_csv(output_path, index=False)
    pd.concat([candidates, expert], ignore_index=True).to_csv(candidates_output_path, index=False)
    bract_key.to_csv(bract_key_output_path, index=False)
    missing.to_csv(missing_output_path, index=False)
    return selected
