import numpy as np
import pandas as pd
import pytest

from floral_resources.sightings import calculate_sighting_rates, rates_to_weights

COLUMNS = [
    "year", "patch", "control_treatment", "plant_species", "camera_num", "camera_id",
    "date_video", "exp_phase", "file_id", "video_length", "flowers_camera_video",
    "sightings_yes_or_no", "visit_type", "mark_status", "bird_species", "bird_sex",
    "colors", "color_id", "sighting_length",
]


def _camera_data():
    base = [2018, "P1", "control"]
    rows = [
        # plant A, camera 1: two sightings in one file, one empty file
        base + ["A", 1, "c1", "2018-03-01", "pre", "f1", 2.0, 10, "Y", "honest", "Unmarked", "GREH", "M", "None", None, 5],
        base + ["A", 1, "c1", "2018-03-01", "pre", "f1", 2.0, 10, "Y", "honest", "Marked", "VISA", "F", "RB", "2018_1_VISA_F", 3],
        base + ["A", 1, "c1", "2018-03-01", "pre", "f2", 3.0, 10, "N", "none", None, None, None, None, None, np.nan],
        # plant B, camera 2: one sighting without a visit, one of an unknown bird
        base + ["B", 2, "c2", "2018-03-01", "pre", "f3", 4.0, 6, "Y", "none", "Unmarked", "GREH", "M", "None", None, 2],
        base + ["B", 2, "c2", "2018-03-02", "post", "f4", 3.0, 8, "Y", "honest", "Unmarked", "U", None, "None", None, 1],
    ]
    return pd.DataFrame(rows, columns=COLUMNS)


def test_combined_rates_per_plant_species():
    rates = calculate_sighting_rates(_camera_data(), level_bird="camera_spp_combined").set_index("plant_species")

    assert rates.loc["A", "hours"] == 5.0
    assert rates.loc["A", "flowers"] == 10
    assert rates.loc["A", "sightings"] == 2
    assert rates.loc["A", "sightings_time"] == 8
    assert rates.loc["A", "sightings_per_hour"] == pytest.approx(0.4)

    assert rates.loc["B", "hours"] == 7.0
    assert rates.loc["B", "flowers"] == 7
    assert rates.loc["B", "sightings"] == 0
    assert rates.loc["B", "sightings_per_hour"] == 0
    assert (rates["bird_group"] == "camera_spp_combined").all()


def test_unknown_species_kept_on_request():
    rates = calculate_sighting_rates(
        _camera_data(), level_bird="camera_spp_combined", include_unknown_spp=True
    ).set_index("plant_species")
    assert rates.loc["B", "sightings"] == 1


def test_separate_species_filled_with_zero_rows():
    rates = calculate_sighting_rates(_camera_data(), level_bird="camera_spp_separate", sightings="all")

    assert len(rates) == 4
    b = rates[rates["plant_species"] == "B"].set_index("bird_species")
    assert b.loc["GREH", "sightings"] == 1
    assert b.loc["VISA", "sightings"] == 0


def test_bird_group_mapping():
    rates = calculate_sighting_rates(_camera_data(), level_bird={"greh_visa": ["VISA"]}).set_index("plant_species")
    assert rates.loc["A", "sightings"] == 1
    assert (rates["bird_group"] == "greh_visa").all()


def test_individual_marked_only_counts_marked_birds():
    rates = calculate_sighting_rates(_camera_data(), level_bird="individual_marked")
    seen = rates[rates["sightings"] > 0]
    assert seen["color_id"].tolist() == ["2018_1_VISA_F"]


def test_honest_visit_and_marked_filters():
    rates = calculate_sighting_rates(
        _camera_data(), level_bird="camera_spp_combined", sightings="honest_visit", marked="marked"
    ).set_index("plant_species")
    assert rates.loc["A", "sightings"] == 1
    assert rates.loc["B", "sightings"] == 0


def test_invalid_options_raise():
    with pytest.raises(ValueError, match="level_org"):
        calculate_sighting_rates(_camera_data(), level_org="site")
    with pytest.raises(ValueError, match="level_bird"):
        calculate_sighting_rates(_camera_data(), level_bird="everything")


def test_weights_scale_to_max_rate():
    rates = calculate_sighting_rates(_camera_data(), level_bird="camera_spp_combined")
    weights = rates_to_weights(rates, "camera_spp_combined")

    assert weights["plant_species"].tolist() == ["A", "B"]
    assert weights["rank"].tolist() == [1, 2]
    assert weights["weight"].tolist() == [1.0, 0.0]


def test_weights_per_bird_species():
    rates = calculate_sighting_rates(_camera_data(), level_bird="camera_spp_separate", sightings="all")
    weights = rates_to_weights(rates, "camera_spp_separate")

    greh = weights[weights["bird_species"] == "GREH"].set_index("plant_species")
    assert greh.loc["A", "weight"] == 1.0
    assert greh.loc["B", "weight"] == pytest.approx(5 / 7)
    assert set(weights.groupby("bird_species")["rank"].max()) == {2}
