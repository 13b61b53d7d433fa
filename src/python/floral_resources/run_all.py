from .read import read_data
from .count_units import resolve_count_units
from .flowers_per_unit import estimate_flowers_per_unit
from .nectar import convert_nectar_to_calories
from .calories import calculate_plant_calories
from .sightings import summarize_sightings

import yaml

def load_config(config_path: str) -> dict:
    with open(config_path, "r") as f:
        config = yaml.safe_load(f)
    if not isinstance(config, dict):
        raise ValueError(f"{config_path} does not contain a mapping of stage sections")
    return config

def run_pipeline(config_path: str = "configs/project.yaml"):
    config = load_config(config_path)
    species_config = config.get('species', {})
    focal_species = species_config.get('focal_bract_species')

    # 0. Read raw resource counts
    print('Reading raw resource counts...')
    read_config = config['stage_read']
    read_data(
        read_config['raw_data_path'],
        save_path=read_config['stage_0_output_path'],
        species_for_calories=species_config.get('species_for_calories', {}),
    )

    # 1. Count units
    print('Resolving count units...')
    unit_config = config['stage_count_units']
    resolve_count_units(
        data_path=read_config['stage_0_output_path'],
        output_path=unit_config['stage_1_output_path'],
        distribution_tests_path=unit_config['stage_1_distribution_tests_path'],
        flower_only_species=species_config.get('flower_only', []),
        inflorescence_only_species=species_config.get('inflorescence_only', []),
        bract_species=species_config.get('bract_counted', []),
        distribution_matches=unit_config.get('distribution_matches', {}),
        min_rows_for_distribution=unit_config['min_rows_for_distribution'],
        distribution_alpha=unit_config['distribution_alpha'],
    )

    # 2. Flowers per unit
    print('Estimating flowers per unit...')
    fpu_config = config['stage_flowers_per_unit']
    estimate_flowers_per_unit(
        observations_path=unit_config['stage_1_output_path'],
        thesis_counts_path=fpu_config.get('thesis_counts_path'),
        survey_notes_path=fpu_config.get('survey_notes_path'),
        nectar_bags_path=fpu_config.get('nectar_bags_path'),
        camera_counts_path=fpu_config.get('camera_counts_path'),
        expert_estimates_path=fpu_config.get('expert_estimates_path'),
        tree_counts_path=fpu_config.get('tree_counts_path'),
        single_inflorescence_bag_species=fpu_config.get('single_inflorescence_bag_species', []),
        focal_species=focal_species,
        bract_threshold=fpu_config['bract_threshold'],
        bract_forced_flowers=fpu_config['bract_forced_flowers'],
        tree_backfill_species=fpu_config.get('tree_backfill_species', []),
        output_path=fpu_config['stage_2_output_path'],
        candidates_output_path=fpu_config['stage_2_candidates_output_path'],
        bract_key_output_path=fpu_config['stage_2_bract_key_output_path'],
        missing_output_path=fpu_config['stage_2_missing_output_path'],
    )

    # 3. Nectar to calories
    print('Converting nectar to calories per flower...')
    nectar_config = config['stage_nectar']
    convert_nectar_to_calories(
        observations_path=unit_config['stage_1_output_path'],
        nectar_path=nectar_config['nectar_data_path'],
        substitutes=species_config.get('nectar_substitutes', {}),
        literature=nectar_config.get('literature', {}),
        output_path=nectar_config['stage_3_output_path'],
        missing_output_path=nectar_config['stage_3_missing_output_path'],
    )

    # 4. Calories per plant
    print('Calculating calories per plant...')
    calorie_config = config['stage_calories']
    calculate_plant_calories(
        observations_path=unit_config['stage_1_output_path'],
        flowers_per_unit_path=fpu_config['stage_2_output_path'],
        calories_per_flower_path=nectar_config['stage_3_output_path'],
        bract_key_path=fpu_config['stage_2_bract_key_output_path'],
        focal_species=focal_species,
        bract_threshold=fpu_config['bract_threshold'],
        bract_forced_flowers=fpu_config['bract_forced_flowers'],
        output_path=calorie_config['stage_4_output_path'],
        missing_output_path=calorie_config['stage_4_missing_output_path'],
        site_summary_output_path=calorie_config['stage_4_site_summary_output_path'],
    )

    # 5. Sighting rates (optional)
    sightings_config = config.get('stage_sightings')
    if sightings_config and sightings_config.get('enabled', True):
        print('Summarizing camera sighting rates...')
        summarize_sightings(
            camera_data_path=sightings_config['camera_data_path'],
            rates_output_path=sightings_config['stage_5_rates_output_path'],
            weights_output_path=sightings_config['stage_5_weights_output_path'],
            level_org=sightings_config.get('level_org', 'plant_species_across_sites'),
            level_time=sightings_config.get('level_time', 'all'),
            level_bird=sightings_config.get('level_bird', 'individual_marked'),
            sightings=sightings_config.get('sightings', 'with_visit'),
            marked=sightings_config.get('marked', 'all'),
            include_unknown_spp=sightings_config.get('include_unknown_spp', False),
        )

    print('Done.')

if __name__ == "__main__":
    run_pipeline()
