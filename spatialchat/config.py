import yaml
import copy
import json
import logging
from pathlib import Path

logger = logging.getLogger('spatialchat.config')

def read_config(config_path):
    """
    Read a configuration file in YAML or JSON format

    Parameters
    ----------
    config_path : str or Path
        Path to the configuration file

    Returns
    -------
    dict
        Configuration dictionary
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix == '.yaml' or suffix == '.yml':
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    elif suffix == '.json':
        with open(config_path, 'r') as f:
            config = json.load(f)
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")

    if config is None:
        config = {}
    logger.debug(f"Read configuration from {config_path}")

    return config

def validate_config(config):
    """
    Validate a configuration dictionary

    Parameters
    ----------
    config : dict
        Configuration dictionary

    Returns
    -------
    bool
        True if configuration is valid

    Raises
    ------
    ValueError
        If configuration is invalid
    """
    required_sections = ['data', 'database', 'inference']

    for section in required_sections:
        if section not in config:
            raise ValueError(f"Missing required configuration section: {section}")

    samples = config['data'].get('samples')
    if not samples:
        raise ValueError("Missing required parameter 'samples' in data section")
    sample_ids = []
    for sample in samples:
        if 'id' not in sample or 'path' not in sample:
            raise ValueError("Each sample needs an 'id' and a 'path'")
        sample_ids.append(str(sample['id']))
    if len(set(sample_ids)) != len(sample_ids):
        raise ValueError(f"Sample ids must be unique, got {sample_ids}")

    spot_size = config['data'].get('spot_size', 65)
    if spot_size is None or spot_size <= 0:
        raise ValueError(f"spot_size must be positive, got {spot_size}")

    inference = config['inference']
    mean_type = inference.get('type', 'truncatedMean')
    if mean_type not in ('truncatedMean', 'triMean', 'mean', 'median'):
        raise ValueError(f"Unsupported mean type: {mean_type}")
    trim = inference.get('trim', 0.1)
    if not 0 <= trim < 0.5:
        raise ValueError(f"trim must be in [0, 0.5), got {trim}")
    if inference.get('nboot', 100) < 1:
        raise ValueError("nboot must be at least 1")

    return True

def update_config(config, overrides):
    """
    Update a configuration dictionary with override values

    Parameters
    ----------
    config : dict
        Original configuration dictionary
    overrides : dict
        Dictionary with override values

    Returns
    -------
    dict
        Updated configuration dictionary
    """
    updated_config = copy.deepcopy(config)
    def _update_dict(d, u):
        for k, v in u.items():
            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                d[k] = _update_dict(d[k], v)
            else:
                d[k] = v
        return d

    updated_config = _update_dict(updated_config, overrides)

    return updated_config

def write_config(config, output_path):
    """
    Write a configuration dictionary to a file

    Parameters
    ----------
    config : dict
        Configuration dictionary
    output_path : str or Path
        Path to write the configuration file

    Returns
    -------
    Path
        Path to the written configuration file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    suffix = output_path.suffix.lower()

    if suffix == '.yaml' or suffix == '.yml':
        with open(output_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    elif suffix == '.json':
        with open(output_path, 'w') as f:
            json.dump(config, f, indent=2)
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")

    return output_path

def load_config(config_path=None):
    """Read a configuration file, fill in defaults and validate it"""
    config = get_parameter_defaults()
    if config_path is not None:
        config = update_config(config, read_config(config_path))
    validate_config(config)
    return config

def get_parameter_defaults():
    """
    Get default parameter values for all pipeline components

    The defaults reproduce a two-replicate 10x Visium analysis: samples
    ``A1`` and ``A2``, a theoretical spot diameter of 65 um, the mouse
    database without non-protein signaling and a 4-worker pool.

    Returns
    -------
    dict
        Dictionary with default parameter values
    """
    defaults = {
        'data': {
            'samples': [
                {'id': 'A1', 'path': 'data/visium_mouse_cortex_A1.h5ad', 'scalefactors': None},
                {'id': 'A2', 'path': 'data/visium_mouse_cortex_A2.h5ad', 'scalefactors': None},
            ],
            'prediction_key': 'predictions',
            'drop_last_prediction': True,
            'label_levels': None,
            'spot_size': 65,
            'normalize': False,
        },
        'database': {
            'species': 'mouse',
            'path': None,
            'search': None,
            'key': 'annotation',
            'non_protein': False,
        },
        'inference': {
            'group_by': 'labels',
            'n_workers': 4,
            'thresh_p': 0.05,
            'thresh_pct': 0.0,
            'thresh_fc': 0.0,
            'do_de': True,
            'variable_both': False,
            'type': 'truncatedMean',
            'trim': 0.1,
            'population_size': False,
            'distance_use': True,
            'interaction_range': 250,
            'scale_distance': 0.01,
            'contact_dependent': True,
            'contact_range': 100,
            'k_min': 10,
            'nboot': 100,
            'seed': 1,
            'min_cells': 10,
            'thresh': 0.05,
        },
        'output': {
            'output_dir': 'spatialchat_results',
            'save_adata': True,
            'save_tables': True,
            'compress': True,
        }
    }

    return defaults

def get_parameter_descriptions():
    """
    Get descriptions of all configurable parameters

    Returns
    -------
    dict
        Dictionary with parameter descriptions
    """
    descriptions = {
        'data': {
            'samples': 'List of replicates, each with id, path (.h5ad) and optional scalefactors JSON',
            'prediction_key': 'Key in adata.obsm holding label-transfer prediction scores',
            'drop_last_prediction': 'Ignore the trailing summary row (max score) of the predictions',
            'label_levels': 'Explicit order of the label categories',
            'spot_size': 'Theoretical spot diameter in micrometers (65 for 10x Visium)',
            'normalize': 'Normalize and log-transform counts before the analysis',
        },
        'database': {
            'species': 'Built-in ligand-receptor database species (human, mouse)',
            'path': 'Directory with interaction.csv, complex.csv, cofactor.csv, geneInfo.csv',
            'search': 'Values of the key column to keep, e.g. ["Secreted Signaling"]',
            'key': 'Column of the interaction table used by search',
            'non_protein': 'Keep non-protein signaling when search is empty',
        },
        'inference': {
            'group_by': 'Metadata column holding the cell groups',
            'n_workers': 'Size of the worker pool used for permutations',
            'thresh_p': 'P-value cutoff for over-expressed genes',
            'thresh_pct': 'Minimum fraction of expressing spots for over-expressed genes',
            'thresh_fc': 'Minimum log fold change for over-expressed genes',
            'do_de': 'Use differential expression to select signaling genes',
            'variable_both': 'Require both ligand and receptor to be over-expressed',
            'type': 'Group average: truncatedMean, triMean, mean or median',
            'trim': 'Fraction trimmed from each end for truncatedMean',
            'population_size': 'Weight probabilities by group abundance',
            'distance_use': 'Gate communication by spatial distance between groups',
            'interaction_range': 'Maximum interaction distance in micrometers',
            'scale_distance': 'Scale applied to distances before inversion',
            'contact_dependent': 'Restrict contact interactions to touching groups',
            'contact_range': 'Contact distance in micrometers',
            'k_min': 'Minimum number of close spots for two groups to interact',
            'nboot': 'Number of permutations for the significance test',
            'seed': 'Random seed of the permutations',
            'min_cells': 'Minimum group size kept by filter_communication',
            'thresh': 'P-value cutoff for significant interactions',
        },
        'output': {
            'output_dir': 'Directory for results',
            'save_adata': 'Whether to save the result object',
            'save_tables': 'Whether to save significant communications as CSV',
            'compress': 'Whether to gzip-compress the h5ad file',
        }
    }

    return descriptions
