from pathlib import Path

import pandas as pd
import pytest
import yaml

from floral_resources.run_all import load_config, run_pipeline


def _write(path, rows, columns):
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)
    return str(path)


@pytest.fixture
def project(tmp_path):
    raw = tmp_path / "raw"
    out = tmp_path / "processed"
    raw.mkdir()

    _write(raw / "resource_counts.csv", [
        (1, "HETO", "Heliconia tortuosa", "P1", 2018, 5, None, 5, 7),
        (2, "HETO", "Heliconia tortuosa", "P1", 2018, 6, None, 6, 4),
        (3, "CEPO", "Centropogon sp.", "P1", 2018, 8, "inflorescences", None, None),
        (4, "GOLI", None, "P2", 2018, 12, "flowers", None, None),
        (5, "XXXX", None, "P2", 2018, 3, None, None, None),
    ], ["observation_id", "species_code", "scientific_name", "site", "year", "count", "count_unit",
        "bract_count", "flower_count"])

    _write(raw / "thesis.csv", [("CEPO", 4), ("CEPO", 6), ("CEPO", 0)], ["species_code", "flowers"])
    _write(raw / "nectar.csv", [("HETO", 20, 5), ("HETO", 20, 5), ("CEPO", 10, 20)],
           ["species_code", "volume_ul", "concentration_brix"])

    config = {
        "species": {
            "focal_bract_species": "HETO",
            "species_for_calories": {},
            "flower_only": ["GOLI"],
            "inflorescence_only": [],
            "bract_counted": ["HETO"],
            "nectar_substitutes": {},
        },
        "stage_read": {
            "raw_data_path": str(raw / "resource_counts.csv"),
            "stage_0_output_path": str(out / "stage_0.csv"),
        },
        "stage_count_units": {
            "stage_1_output_path": str(out / "stage_1.csv"),
            "stage_1_distribution_tests_path": str(out / "stage_1_tests.csv"),
            "min_rows_for_distribution": 3,
            "distribution_alpha": 0.05,
        },
        "stage_flowers_per_unit": {
            "thesis_counts_path": str(raw / "thesis.csv"),
            "survey_notes_path": str(raw / "missing_notes.csv"),
            "bract_threshold": 9,
            "bract_forced_flowers": 2,
            "stage_2_output_path": str(out / "stage_2.csv"),
            "stage_2_candidates_output_path": str(out / "stage_2_candidates.csv"),
            "stage_2_bract_key_output_path": str(out / "stage_2_bract_key.csv"),
            "stage_2_missing_output_path": str(out / "stage_2_missing.csv"),
        },
        "stage_nectar": {
            "nectar_data_path": str(raw / "nectar.csv"),
            "literature": {"GOLI": {"volume_ul": 10.0, "concentration_brix": 20.0}},
            "stage_3_output_path": str(out / "stage_3.csv"),
            "stage_3_missing_output_path": str(out / "stage_3_missing.csv"),
        },
        "stage_calories": {
            "stage_4_output_path": str(out / "stage_4.csv"),
            "stage_4_missing_output_path": str(out / "stage_4_missing.csv"),
            "stage_4_site_summary_output_path": str(out / "stage_4_sites.csv"),
        },
    }
    config_path = tmp_path / "project.yaml"
    config_path.write_text(yaml.safe_dump(config))
    return config_path, out


def test_pipeline_produces_calories_per_plant(project):
    config_path, out = project

    run_pipeline(str(config_path))

    calories = pd.read_csv(out / "stage_4.csv")
    by_id = calories.groupby("observation_id")

    assert by_id.size().to_dict() == {1: 1, 2: 1, 3: 1, 4: 1, 5: 2}

    cepo = calories[calories["observation_id"] == 3].iloc[0]
    assert cepo["count_unit_status"] == "known"
    assert cepo["num_flowers_estimate"] == pytest.approx(40)
    assert cepo["calories_per_plant"] == pytest.approx(40 * 212.2 * 10e-6 * 3.94 * 1000)

    heto = calories[calories["observation_id"] == 1].iloc[0]
    assert heto["count_unit"] == "bract"
    assert heto["num_flowers_estimate"] == 7
    assert heto["calories_per_plant"] == pytest.approx(7 * 50.6 * 20e-6 * 3.94 * 1000)

    goli = calories[calories["observation_id"] == 4].iloc[0]
    assert goli["num_flowers_estimate"] == 12

    missing = pd.read_csv(out / "stage_4_missing.csv")
    assert set(missing["observation_id"]) == {5}
    assert set(missing["count_estimate_high_low"]) == {"low", "high"}

    estimates = pd.read_csv(out / "stage_2.csv")
    assert estimates[["species_code", "count_unit", "source"]].values.tolist() == [["CEPO", "inflorescence", "thesis"]]
    assert pd.read_csv(out / "stage_2_missing.csv")["species_code"].tolist() == ["XXXX"]

    nectar_missing = pd.read_csv(out / "stage_3_missing.csv")
    assert nectar_missing["species_code"].tolist() == ["XXXX"]


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_project_config_counts_focal_variants_by_bract():
    config = load_config(str(Path(__file__).resolve().parents[1] / "configs" / "project.yaml"))
    species = config["species"]
    focal = species["focal_bract_species"]

    variants = {code for code, target in species["species_for_calories"].items() if target == focal}
    assert variants | {focal} <= set(species["bract_counted"])
