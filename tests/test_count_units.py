import numpy as np
import pandas as pd
import pytest

from floral_resources.count_units import (
    ResolverContext,
    assign_count_units,
    build_resolver_context,
    compare_count_distributions,
    known_unit,
    morphology_unit,
    redistribute_counts,
    resolve_unit,
    select_distribution_matches,
)


def _obs(rows):
    df = pd.DataFrame(rows, columns=["species_code", "count", "count_unit"])
    df.insert(0, "observation_id", np.arange(1, len(df) + 1))
    df["site"] = "P1"
    df["year"] = 2018
    return df


def test_known_unit_wins_over_protocol_unit():
    context = ResolverContext(bract_species=frozenset({"HETO"}))
    row = {"species_code": "HETO", "count_unit": "inflorescence"}

    resolved = resolve_unit(row, context)

    assert resolved.unit == "inflorescence"
    assert resolved.status == "known"


def test_morphology_rules_assume_units():
    context = ResolverContext(
        flower_only_species=frozenset({"GOLI"}),
        inflorescence_only_species=frozenset({"CEPO"}),
        bract_species=frozenset({"HETO"}),
    )
    assert morphology_unit({"species_code": "GOLI"}, context).unit == "flower"
    assert morphology_unit({"species_code": "CEPO"}, context).unit == "inflorescence"
    assert morphology_unit({"species_code": "HETO"}, context).unit == "bract"
    assert morphology_unit({"species_code": "XXXX"}, context) is None
    assert known_unit({"species_code": "XXXX", "count_unit": np.nan}, context) is None


def test_distribution_match_is_used_after_morphology():
    context = ResolverContext(distribution_matches={"DRPA": "inflorescence"})
    resolved = resolve_unit({"species_code": "DRPA", "count_unit": np.nan}, context)
    assert resolved.unit == "inflorescence"
    assert resolved.status == "assumed"


def test_invalid_distribution_match_unit_raises():
    with pytest.raises(ValueError):
        ResolverContext(distribution_matches={"DRPA": "leaf"})


def test_unresolved_rows_become_low_high_pair():
    df = _obs([("XXXX", 3, np.nan), ("CEPO", 8, "inflorescence")])

    out = assign_count_units(df, ResolverContext())

    pair = out[out["observation_id"] == 1].set_index("count_estimate_high_low")
    assert sorted(pair.index) == ["high", "low"]
    assert pair.loc["low", "count_unit"] == "flower"
    assert pair.loc["high", "count_unit"] == "inflorescence"
    assert (pair["count_unit_status"] == "unknown").all()
    assert (pair["count"] == 3).all()
    assert pair.loc["low", "flower_count"] == 3
    assert pair.loc["high", "inflorescence_count"] == 3
    assert pd.isna(pair.loc["low", "inflorescence_count"])

    single = out[out["observation_id"] == 2]
    assert len(single) == 1
    assert pd.isna(single["count_estimate_high_low"].iloc[0])


def test_known_status_always_keeps_recorded_unit():
    df = _obs([
        ("HETO", 5, "inflorescence"),
        ("HETO", 6, np.nan),
        ("GOLI", 12, "tree"),
        ("GOLI", 4, np.nan),
        ("XXXX", 2, "flower"),
    ])
    context = ResolverContext(flower_only_species=frozenset({"GOLI"}), bract_species=frozenset({"HETO"}))

    out = assign_count_units(df, context)

    known = out[out["count_unit_status"] == "known"]
    assert len(known) == 3
    assert (known["count_unit"] == known["count_unit_recorded"]).all()
    assumed = out[out["count_unit_status"] == "assumed"].set_index("species_code")
    assert assumed.loc["HETO", "count_unit"] == "bract"
    assert assumed.loc["GOLI", "count_unit"] == "flower"


def test_exactly_one_unit_column_populated():
    df = _obs([("A", 5, "flower"), ("B", 6, "inflorescence"), ("C", 7, "tree"), ("D", 8, "bract")])
    out = assign_count_units(df, ResolverContext())
    unit_cols = ["bract_count", "flower_count", "inflorescence_count", "tree_count"]
    assert (out[unit_cols].notna().sum(axis=1) == 1).all()
    assert out.set_index("species_code").loc["C", "tree_count"] == 7


def test_redistribute_keeps_recorded_sub_counts():
    df = pd.DataFrame({
        "count": [5.0],
        "count_unit": ["bract"],
        "bract_count": [4.0],
        "flower_count": [7.0],
    })
    out = redistribute_counts(df)
    assert out.loc[0, "bract_count"] == 4.0
    assert out.loc[0, "flower_count"] == 7.0
    assert pd.isna(out.loc[0, "tree_count"])


def test_count_distribution_picks_matching_unit():
    rows = (
        [("DRPA", c, "inflorescence") for c in [2, 3, 4, 3, 2]]
        + [("DRPA", c, "flower") for c in [50, 60, 80, 70, 55]]
        + [("DRPA", c, np.nan) for c in [3, 2, 4, 3]]
    )
    tests = compare_count_distributions(_obs(rows))

    assert set(tests["count_unit"]) == {"flower", "inflorescence"}
    flower_p = tests.loc[tests["count_unit"] == "flower", "p_value"].iloc[0]
    infl_p = tests.loc[tests["count_unit"] == "inflorescence", "p_value"].iloc[0]
    assert infl_p > flower_p
    assert select_distribution_matches(tests, alpha=0.05) == {"DRPA": "inflorescence"}


def test_count_distribution_needs_more_than_two_rows_each():
    rows = [("DRPA", c, "inflorescence") for c in [2, 3, 4]] + [("DRPA", c, np.nan) for c in [3, 2]]
    assert compare_count_distributions(_obs(rows)).empty


def test_configured_match_overrides_computed_one():
    rows = (
        [("DRPA", c, "inflorescence") for c in [2, 3, 4, 3, 2]]
        + [("DRPA", c, np.nan) for c in [3, 2, 4, 3]]
    )
    context, tests = build_resolver_context(_obs(rows), distribution_matches={"DRPA": "tree"})
    assert not tests.empty
    assert context.distribution_matches["DRPA"] == "tree"


def test_morphology_species_skip_distribution_test():
    rows = (
        [("GOLI", c, "flower") for c in [2, 3, 4, 3, 2]]
        + [("GOLI", c, np.nan) for c in [3, 2, 4, 3]]
    )
    context, tests = build_resolver_context(_obs(rows), flower_only_species=["GOLI"])
    assert tests.empty
    assert "GOLI" not in context.distribution_matches
