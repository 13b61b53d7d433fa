from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import ks_2samp

from .read import COUNT_UNITS, require_columns

OBSERVATION_COLUMNS = [
    "observation_id",
    "species_code",
    "scientific_name",
    "site",
    "year",
    "count_unit",
    "count_unit_status",
    "count_estimate_high_low",
    "bract_count",
    "flower_count",
    "inflorescence_count",
    "tree_count",
]

BRACKET_UNITS = (("flower", "low"), ("inflorescence", "high"))

@dataclass(frozen=True)
class ResolvedUnit:
    unit: str
    status: str
    source: str

@dataclass(frozen=True)
class ResolverContext:
    flower_only_species: FrozenSet[str] = frozenset()
    inflorescence_only_species: FrozenSet[str] = frozenset()
    bract_species: FrozenSet[str] = frozenset()
    distribution_matches: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for sp, unit in self.distribution_matches.items():
            if unit not in COUNT_UNITS:
                raise ValueError(f"distribution match for {sp} has invalid unit {unit!r}")

Rule = Callable[[Mapping[str, Any], ResolverContext], Optional[ResolvedUnit]]

def known_unit(row: Mapping[str, Any], context: ResolverContext) -> Optional[ResolvedUnit]:
    unit = row.get("count_unit")
    if isinstance(unit, str) and unit in COUNT_UNITS:
        return ResolvedUnit(unit, "known", "recorded in raw data")
    return None

def morphology_unit(row: Mapping[str, Any], context: ResolverContext) -> Optional[ResolvedUnit]:
    sp = row.get("species_code")
    if sp in context.bract_species:
        return ResolvedUnit("bract", "assumed", "counted by bract under field protocol")
    if sp in context.flower_only_species:
        return ResolvedUnit("flower", "assumed", "no discrete inflorescence, flowers counted")
    if sp in context.inflorescence_only_species:
        return ResolvedUnit("inflorescence", "assumed", "inflorescence is the only practical count target")
    return None

def distribution_unit(row: Mapping[str, Any], context: ResolverContext) -> Optional[ResolvedUnit]:
    unit = context.distribution_matches.get(row.get("species_code"))
    if unit is None:
        return None
    return ResolvedUnit(unit, "assumed", f"log(count) distribution matches rows recorded as {unit}")

RESOLVER_RULES: Tuple[Rule, ...] = (known_unit, morphology_unit, distribution_unit)

def resolve_unit(
    row: Mapping[str, Any],
    context: ResolverContext,
    rules: Sequence[Rule] = RESOLVER_RULES,
) -> Optional[ResolvedUnit]:
    for rule in rules:
        resolved = rule(row, context)
        if resolved is not None:
            return resolved
    return None

def _log_counts(values: pd.Series) -> np.ndarray:
    v = pd.to_numeric(values, errors="coerce").to_numpy(dtype=float)
    v = v[np.isfinite(v) & (v > 0)]
    return np.log10(v)

def compare_count_distributions(
    df: pd.DataFrame,
    *,
    min_rows: int = 3,
    value_column: str = "count",
    skip_species: Iterable[str] = (),
) -> pd.DataFrame:
    """
    Two-sample KS test of log10(count) for rows without a recorded unit against
    the rows recorded under each unit, per species.

    Only species with at least `min_rows` known and `min_rows` unknown rows are tested.
    """
    out_cols = ["species_code", "count_unit", "n_known", "n_unknown", "ks_statistic", "p_value"]
    skip = set(skip_species)
    rows: List[Dict[str, Any]] = []

    for sp, g in df.groupby("species_code", sort=True):
        if sp in skip:
            continue
        known = g[g["count_unit"].notna()]
        unknown = g[g["count_unit"].isna()]
        if len(known) < min_rows or len(unknown) < min_rows:
            continue

        unknown_log = _log_counts(unknown[value_column])
        if unknown_log.size == 0:
            continue

        for unit, kg in known.groupby("count_unit", sort=True):
            known_log = _log_counts(kg[value_column])
            if known_log.size == 0:
                continue
            res = ks_2samp(known_log, unknown_log)
            rows.append(
                {
                    "species_code": sp,
                    "count_unit": unit,
                    "n_known": int(known_log.size),
                    "n_unknown": int(unknown_log.size),
                    "ks_statistic": float(res.statistic),
                    "p_value": float(res.pvalue),
                }
            )

    return pd.DataFrame(rows, columns=out_cols)

def select_distribution_matches(tests: pd.DataFrame, *, alpha: float = 0.05) -> Dict[str, str]:
    if tests.empty:
        return {}

    best = (
        tests.sort_values(["species_code", "p_value", "count_unit"], ascending=[True, False, True])
        .drop_duplicates(subset=["species_code"], keep="first")
    )
    best = best[best["p_value"] >= alpha]
    return dict(zip(best["species_code"], best["count_unit"]))

def redistribute_counts(df: pd.DataFrame) -> pd.DataFrame:
    # Raw sub-counts already on the row (focal species) are kept as recorded.
    out = df.copy()
    for unit in COUNT_UNITS:
        col = f"{unit}_count"
        from_count = out["count"].where(out["count_unit"] == unit)
        if col in out.columns:
            out[col] = pd.to_numeric(out[col], errors="coerce").fillna(from_count)
        else:
            out[col] = from_count
    return out

def assign_count_units(
    df: pd.DataFrame,
    context: ResolverContext,
    rules: Sequence[Rule] = RESOLVER_RULES,
) -> pd.DataFrame:
    require_columns(df, ["observation_id", "species_code", "count", "count_unit"], "observations")

    out: List[Dict[str, Any]] = []
    for row in df.to_dict("records"):
        recorded = row.get("count_unit")
        base = {**row, "count_unit_recorded": recorded if isinstance(recorded, str) else np.nan}

        resolved = resolve_unit(row, context, rules)
        if resolved is None:
            for unit, bound in BRACKET_UNITS:
                out.append(
                    {
                        **base,
                        "count_unit": unit,
                        "count_unit_status": "unknown",
                        "count_unit_source": f"unresolved, {bound} bound assumes {unit}",
                        "count_estimate_high_low": bound,
                    }
                )
        else:
            out.append(
                {
                    **base,
                    "count_unit": resolved.unit,
                    "count_unit_status": resolved.status,
                    "count_unit_source": resolved.source,
                    "count_estimate_high_low": np.nan,
                }
            )

    columns = list(dict.fromkeys(list(df.columns) + [
        "count_unit_recorded",
        "count_unit_status",
        "count_unit_source",
        "count_estimate_high_low",
    ]))
    resolved_df = redistribute_counts(pd.DataFrame(out, columns=columns))

    extra = [c for c in resolved_df.columns if c not in OBSERVATION_COLUMNS]
    return resolved_df[[c for c in OBSERVATION_COLUMNS if c in resolved_df.columns] + extra]

def build_resolver_context(
    df: pd.DataFrame,
    *,
    flower_only_species: Iterable[str] = (),
    inflorescence_only_species: Iterable[str] = (),
    bract_species: Iterable[str] = (),
    distribution_matches: Optional[Mapping[str, str]] = None,
    min_rows_for_distribution: int = 3,
    distribution_alpha: float = 0.05,
) -> Tuple[ResolverContext, pd.DataFrame]:
    morphology = set(flower_only_species) | set(inflorescence_only_species) | set(bract_species)
    tests = compare_count_distributions(df, min_rows=min_rows_for_distribution, skip_species=morphology)

    matches = select_distribution_matches(tests, alpha=distribution_alpha)
    matches.update(distribution_matches or {})

    context = ResolverContext(
        flower_only_species=frozenset(flower_only_species),
        inflorescence_only_species=frozenset(inflorescence_only_species),
        bract_species=frozenset(bract_species),
        distribution_matches=matches,
    )
    return context, tests

def resolve_count_units(
    *,
    data_path: str,
    output_path: str,
    distribution_tests_path: str,
    flower_only_species: Iterable[str],
    inflorescence_only_species: Iterable[str],
    bract_species: Iterable[str],
    distribution_matches: Optional[Mapping[str, str]],
    min_rows_for_distribution: int,
    distribution_alpha: float,
) -> pd.DataFrame:
    df = pd.read_csv(data_path)
    require_columns(df, ["observation_id", "species_code", "count", "count_unit"], data_path)

    context, tests = build_resolver_context(
        df,
        flower_only_species=flower_only_species or (),
        inflorescence_only_species=inflorescence_only_species or (),
        bract_species=bract_species or (),
        distribution_matches=distribution_matches,
        min_rows_for_distribution=min_rows_for_distribution,
        distribution_alpha=distribution_alpha,
    )
    resolved = assign_count_units(df, context)

    counts = resolved.drop_duplicates("observation_id")["count_unit_status"].value_counts()
    for status, n in counts.items():
        print(f"  count unit {status}: {n} observations")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    Path(distribution_tests_path).parent.mkdir(parents=True, exist_ok=True)

    resolved.to_csv(output_path, index=False)
    tests.to_csv(distribution_tests_path, index=False)
    return resolved
