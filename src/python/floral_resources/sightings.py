from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Mapping, Sequence, Union

import pandas as pd

from .read import require_columns

BirdLevel = Union[str, Mapping[str, Sequence[str]]]

ORG_LEVELS = {
    "patch": ["year", "patch", "control_treatment"],
    "plant_species": ["year", "patch", "control_treatment", "plant_species"],
    "plant_species_across_sites": ["plant_species"],
    "camera_num": ["year", "patch", "control_treatment", "plant_species", "camera_num", "camera_id"],
}

TIME_LEVELS = {
    "all": [],
    "exp_phase": ["exp_phase"],
    "date_video": ["exp_phase", "date_video"],
}

BIRD_LEVELS = ("camera_spp_combined", "camera_spp_separate", "camera_spp_separate_sex", "individual_marked")
SIGHTING_FILTERS = ("all", "with_visit", "honest_visit")
MARK_FILTERS = ("all", "marked", "unmarked")

# Effort is counted once per video file, flowers once per camera-day.
EFFORT_COLUMNS = [
    "year", "patch", "control_treatment", "plant_species", "camera_num", "camera_id",
    "date_video", "exp_phase", "file_id", "video_length",
]
FLOWER_COLUMNS = [
    "year", "patch", "control_treatment", "plant_species", "camera_num", "camera_id",
    "date_video", "exp_phase", "flowers_camera_video",
]

UNMARKED_COLORS = ("None", "M", "U")

def _validate_options(level_org: str, level_time: str, level_bird: BirdLevel, sightings: str, marked: str) -> None:
    if level_org not in ORG_LEVELS:
        raise ValueError(f"level_org must be one of {sorted(ORG_LEVELS)}. Got: {level_org!r}")
    if level_time not in TIME_LEVELS:
        raise ValueError(f"level_time must be one of {sorted(TIME_LEVELS)}. Got: {level_time!r}")
    if sightings not in SIGHTING_FILTERS:
        raise ValueError(f"sightings must be one of {SIGHTING_FILTERS}. Got: {sightings!r}")
    if marked not in MARK_FILTERS:
        raise ValueError(f"marked must be one of {MARK_FILTERS}. Got: {marked!r}")
    if isinstance(level_bird, Mapping):
        if len(level_bird) != 1:
            raise ValueError("A bird group must be a single {name: [species codes]} entry.")
    elif level_bird not in BIRD_LEVELS:
        raise ValueError(f"level_bird must be one of {BIRD_LEVELS} or a bird group mapping. Got: {level_bird!r}")

def filter_sightings(
    data: pd.DataFrame,
    *,
    sightings: str = "with_visit",
    marked: str = "all",
) -> pd.DataFrame:
    # Videos without a sighting only contribute effort.
    s = data[data["sightings_yes_or_no"].notna() & (data["sightings_yes_or_no"] != "N")]

    if sightings == "with_visit":
        s = s[s["visit_type"].notna() & (s["visit_type"] != "none")]
    elif sightings == "honest_visit":
        s = s[s["visit_type"].isin(["honest", "honest_and_rob"])]

    if marked == "marked":
        s = s[s["mark_status"] == "Marked"]
    elif marked == "unmarked":
        s = s[s["mark_status"] == "Unmarked"]

    return s.copy()

def summarize_effort(data: pd.DataFrame, by: List[str]) -> pd.DataFrame:
    hours = (
        data[EFFORT_COLUMNS].drop_duplicates()
        .groupby(by, as_index=False, dropna=False)
        .agg(hours=("video_length", "sum"))
    )
    flowers = (
        data[FLOWER_COLUMNS].drop_duplicates()
        .groupby(by, as_index=False, dropna=False)
        .agg(flowers=("flowers_camera_video", "mean"))
    )
    return hours.merge(flowers, on=by, how="left", validate="one_to_one")

def _complete_marked_phases(sum_sightings: pd.DataFrame) -> pd.DataFrame:
    # Individuals seen on a plant in only one phase get explicit zero rows for the other phases.
    nest = ["bird_species", "color_id", "plant_species"]
    parts: List[pd.DataFrame] = []

    for key, g in sum_sightings.groupby(["year", "patch", "control_treatment"], sort=False, dropna=False):
        phases = pd.DataFrame({"exp_phase": g["exp_phase"].drop_duplicates().to_numpy()})
        grid = g[nest].drop_duplicates().merge(phases, how="cross")
        grid["year"], grid["patch"], grid["control_treatment"] = key
        grid = grid.merge(g, on=["year", "patch", "control_treatment", "exp_phase"] + nest, how="left")
        grid["sightings"] = grid["sightings"].fillna(0).astype(int)
        parts.append(grid)

    if not parts:
        return sum_sightings
    return pd.concat(parts, ignore_index=True)

def calculate_sighting_rates(
    data: pd.DataFrame,
    level_org: str = "plant_species_across_sites",
    level_time: str = "all",
    level_bird: BirdLevel = "individual_marked",
    sightings: str = "with_visit",
    marked: str = "all",
    include_unknown_spp: bool = False,
    excluded_color_ids: Iterable[str] = ("2018_29_STRH_B",),
) -> pd.DataFrame:
    """
    Hummingbird sightings per hour of camera effort.

    level_org / level_time choose the grouping (patch, plant species within a patch,
    plant species across sites, or individual camera; optionally split by
    experimental phase or by video date). level_bird chooses how birds are pooled:
    all species together, each species (optionally by sex), individually
    colour-marked birds, or a named group {"greh_visa": ["GREH", "VISA"]}.

    Unknown bird species ("U") are dropped unless include_unknown_spp is set.
    """
    _validate_options(level_org, level_time, level_bird, sightings, marked)
    require_columns(data, set(EFFORT_COLUMNS) | set(FLOWER_COLUMNS) | {
        "sightings_yes_or_no", "visit_type", "mark_status", "bird_species", "sighting_length",
    }, "camera data")

    by = ORG_LEVELS[level_org] + TIME_LEVELS[level_time]
    s = filter_sightings(data, sightings=sightings, marked=marked)

    bird_by = list(by)
    group_label = level_bird

    if level_bird == "camera_spp_separate":
        bird_by = by + ["bird_species"]
    elif level_bird == "camera_spp_separate_sex":
        bird_by = by + ["bird_species", "bird_sex"]
    elif level_bird == "individual_marked":
        bird_by = by + ["bird_species", "color_id"]
        s = s[s["colors"].notna() & ~s["colors"].isin(UNMARKED_COLORS)]
        s = s[~s["color_id"].isin(set(excluded_color_ids))]

    if not include_unknown_spp:
        s = s[s["bird_species"].notna() & (s["bird_species"] != "U")]

    if isinstance(level_bird, Mapping):
        group_label, codes = next(iter(level_bird.items()))
        s = s[s["bird_species"].isin(set(codes))].copy()
        s["bird_group"] = group_label

    sum_sightings = s.groupby(bird_by, as_index=False, dropna=False).size().rename(columns={"size": "sightings"})
    sum_time = (
        s.groupby(bird_by, as_index=False, dropna=False)
        .agg(sightings_time=("sighting_length", "sum"))
    )
    effort = summarize_effort(data, by)

    if level_bird == "camera_spp_separate":
        species = pd.DataFrame({"bird_species": sorted(sum_sightings["bird_species"].dropna().unique())})
        rates = (
            effort.merge(species, how="cross")
            .merge(sum_sightings, on=bird_by, how="left")
            .merge(sum_time, on=bird_by, how="left")
        )
        rates["sightings"] = rates["sightings"].fillna(0).astype(int)
    elif level_bird == "individual_marked" and level_org == "plant_species" and level_time == "exp_phase":
        rates = effort.merge(_complete_marked_phases(sum_sightings), on=by, how="left")
        rates = rates[rates["color_id"].notna()].sort_values(["color_id", "plant_species"], kind="mergesort")
    else:
        rates = (
            effort.merge(sum_sightings, on=by, how="left")
            .merge(sum_time, on=bird_by, how="left")
        )
        rates["sightings"] = rates["sightings"].fillna(0).astype(int)

    rates["sightings_per_hour"] = rates["sightings"] / rates["hours"]
    rates["bird_group"] = group_label
    return rates.reset_index(drop=True)

def rates_to_weights(rates: pd.DataFrame, level_bird: BirdLevel) -> pd.DataFrame:
    """Rates scaled to 0..1 by the maximum rate (per bird species when species are kept separate)."""
    w = rates.sort_values("sightings_per_hour", ascending=False, kind="mergesort").copy()

    if level_bird == "camera_spp_separate":
        grouped = w.groupby("bird_species", sort=False)["sightings_per_hour"]
        w["max_rate"] = grouped.transform("max")
        w["rank"] = w.groupby("bird_species", sort=False).cumcount() + 1
    else:
        w["max_rate"] = w["sightings_per_hour"].max()
        w["rank"] = range(1, len(w) + 1)

    w["weight"] = w["sightings_per_hour"] / w["max_rate"]
    return w.reset_index(drop=True)

def summarize_sightings(
    *,
    camera_data_path: str,
    rates_output_path: str,
    weights_output_path: str,
    level_org: str,
    level_time: str,
    level_bird: BirdLevel,
    sightings: str,
    marked: str,
    include_unknown_spp: bool,
) -> pd.DataFrame:
    data = pd.read_csv(camera_data_path)

    rates = calculate_sighting_rates(
        data,
        level_org=level_org,
        level_time=level_time,
        level_bird=level_bird,
        sightings=sightings,
        marked=marked,
        include_unknown_spp=include_unknown_spp,
    )
    weights = rates_to_weights(rates, level_bird)

    Path(rates_output_path).parent.mkdir(parents=True, exist_ok=True)
    Path(weights_output_path).parent.mkdir(parents=True, exist_ok=True)

    rates.to_csv(rates_output_path, index=False)
    weights.to_csv(weights_output_path, index=False)
    return weights
