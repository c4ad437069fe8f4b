import click
import pandas as pd
import logging
from pathlib import Path
from datetime import datetime

from spatialchat.config import load_config, write_config, get_parameter_defaults
from spatialchat.core.data_loader import (load_sample, prediction_matrix, assign_labels,
                                          merge_samples, build_metadata, read_scalefactors,
                                          scalefactors_from_uns, compute_spatial_factors)
from spatialchat.core.preprocessing import create_cellchat, normalize_data, subset_data
from spatialchat.analysis.database import load_database, subset_db
from spatialchat.analysis.overexpression import identify_overexpressed_genes, identify_overexpressed_interactions
from spatialchat.analysis.communication import (compute_commun_prob, filter_communication,
                                                compute_commun_prob_pathway, aggregate_net)
from spatialchat.analysis.centrality import compute_centrality
from spatialchat.utils.io import save_results
from spatialchat.utils.logging import setup_logging, log_run_info, log_execution_time, log_stage, capture_warnings

def setup_output_dir(output_dir):
    """Create output directory structure"""
    output_path = Path(output_dir)
    if not output_path.exists():
        output_path.mkdir(parents=True)
    (output_path / "data").mkdir(exist_ok=True)

    return output_path

def load_replicates(data_cfg):
    """
    Load the replicates listed in the data section

    Returns
    -------
    adata : AnnData
        Merged replicates
    meta : pandas.DataFrame
        Labels and samples per spot
    spatial_factors : pandas.DataFrame
        Per-sample ratio and tol
    """
    logger = logging.getLogger('spatialchat.cli')
    adatas, sample_ids, labels, diameters = [], [], [], {}
    first_predictions = None
    for sample in data_cfg['samples']:
        sample_id = str(sample['id'])
        adata = load_sample(sample['path'], sample_id, prediction_key=data_cfg['prediction_key'])
        predictions = prediction_matrix(adata, data_cfg['prediction_key'])
        sample_labels = assign_labels(predictions, drop_last=data_cfg['drop_last_prediction'])
        sample_labels.index = [f"{barcode}_{sample_id}" for barcode in sample_labels.index]
        labels.append(sample_labels)
        if first_predictions is None:
            first_predictions = predictions

        if sample.get('scalefactors'):
            scalefactors = read_scalefactors(sample['scalefactors'])
        else:
            logger.info(f"No scale factor file for sample {sample_id}, reading adata.uns['spatial']")
            scalefactors = scalefactors_from_uns(adata)
        diameters[sample_id] = scalefactors['spot_diameter_fullres']

        adatas.append(adata)
        sample_ids.append(sample_id)

    merged = merge_samples(adatas, sample_ids, batch_key='samples')
    labels = pd.concat(labels).loc[merged.obs_names]
    meta = build_metadata(labels, merged.obs['samples'], label_levels=data_cfg.get('label_levels'),
                          sample_levels=sample_ids, predictions=first_predictions,
                          drop_last=data_cfg['drop_last_prediction'])
    spatial_factors = compute_spatial_factors(diameters, spot_size=data_cfg['spot_size'])

    return merged, meta, spatial_factors

def run_pipeline(cfg, output_dir):
    """
    Run the full spatial communication analysis described by a configuration

    Parameters
    ----------
    cfg : dict
        Validated configuration, see ``spatialchat.config.load_config``
    output_dir : str or Path
        Directory for results

    Returns
    -------
    adata : AnnData
        Result object with everything under ``uns['cellchat']``
    """
    logger = logging.getLogger('spatialchat')
    output_path = Path(output_dir)
    data_cfg, db_cfg, inf = cfg['data'], cfg['database'], cfg['inference']

    log_end = log_execution_time(logger)
    with log_stage(logger, "Loading data"):
        adata, meta, spatial_factors = load_replicates(data_cfg)
        if data_cfg.get('normalize'):
            adata = normalize_data(adata)

    with log_stage(logger, "Preparing ligand-receptor database"):
        db = load_database(db_cfg.get('path'), species=db_cfg['species'])
        db = subset_db(db, search=db_cfg.get('search'), key=db_cfg['key'], non_protein=db_cfg['non_protein'])
        adata = create_cellchat(adata, meta, spatial_factors, group_by=inf['group_by'], sample_key='samples')
        adata = subset_data(adata, db)

    with log_stage(logger, "Identifying over-expressed signaling genes"):
        adata = identify_overexpressed_genes(adata, thresh_pct=inf['thresh_pct'], thresh_fc=inf['thresh_fc'],
                                             thresh_p=inf['thresh_p'], do_de=inf['do_de'],
                                             min_cells=inf['min_cells'], n_workers=inf['n_workers'])
        adata = identify_overexpressed_interactions(adata, db, variable_both=inf['variable_both'])

    with log_stage(logger, "Computing communication probabilities"):
        adata = compute_commun_prob(
            adata, db,
            type=inf['type'],
            trim=inf['trim'],
            population_size=inf['population_size'],
            distance_use=inf['distance_use'],
            interaction_range=inf['interaction_range'],
            scale_distance=inf['scale_distance'],
            contact_dependent=inf['contact_dependent'],
            contact_range=inf['contact_range'],
            k_min=inf['k_min'],
            nboot=inf['nboot'],
            seed=inf['seed'],
            n_workers=inf['n_workers'],
        )
        adata = filter_communication(adata, min_cells=inf['min_cells'])

    with log_stage(logger, "Summarizing networks"):
        adata = compute_commun_prob_pathway(adata, thresh=inf['thresh'])
        adata = aggregate_net(adata, thresh=inf['thresh'])
        adata = compute_centrality(adata, slot='netP')

    out_cfg = cfg.get('output', {})
    save_formats = []
    if out_cfg.get('save_adata', True):
        save_formats.append('h5ad')
    if out_cfg.get('save_tables', True):
        save_formats.append('csv')
    if save_formats:
        with log_stage(logger, "Saving analysis results"):
            save_results(adata, output_path / "data", save_formats=save_formats,
                         compress=out_cfg.get('compress', True), thresh=inf['thresh'])
    log_end("Analysis completed")

    return adata

@click.group()
def cli():
    """spatialchat: cell-cell communication inference for spatial transcriptomics"""
    pass

@cli.command()
@click.argument('output_path', type=click.Path())
def init_config(output_path):
    """Initialize a default configuration file"""
    config_path = Path(output_path)
    if config_path.exists() and not click.confirm(f"The file {output_path} already exists. Overwrite?"):
        click.echo("Aborted.")
        return

    write_config(get_parameter_defaults(), config_path)
    click.echo(f"Default configuration created at {output_path}")

@cli.command()
@click.argument('config', type=click.Path(exists=True))
@click.option('--output-dir', '-o', type=click.Path(), default=None, help='Output directory')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), default='INFO', help='Logging level')
def run(config, output_dir, log_level):
    """Run the communication analysis described by a configuration file"""
    cfg = load_config(config)
    output_dir = output_dir or cfg.get('output', {}).get('output_dir', 'spatialchat_results')
    output_path = setup_output_dir(output_dir)
    log_file = output_path / f"spatialchat_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    setup_logging(log_level, log_file)
    capture_warnings()
    logger = logging.getLogger('spatialchat')
    logger.info(f"spatialchat analysis started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Using configuration from {config}")
    log_run_info(logger, cfg['inference'])
    write_config(cfg, output_path / "config_used.yaml")
    try:
        adata = run_pipeline(cfg, output_path)
        n_pathways = len(adata.uns['cellchat']['netP']['pathways'])
        logger.info(f"Analysis completed successfully at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        click.echo(f"Analysis completed successfully: {n_pathways} signaling pathways. Results saved to {output_dir}")

    except Exception as e:
        logger.error(f"Analysis failed: {str(e)}", exc_info=True)
        click.echo(f"Analysis failed: {str(e)}")
        raise

@cli.command()
@click.argument('json_files', nargs=-1, required=True, type=click.Path(exists=True))
@click.option('--spot-size', type=float, default=65, show_default=True, help='Theoretical spot diameter in micrometers')
def scale_factors(json_files, spot_size):
    """Print micrometer conversion factors for scale factor JSON files"""
    diameters = {}
    for path in json_files:
        diameters[str(path)] = read_scalefactors(path)['spot_diameter_fullres']
    factors = compute_spatial_factors(diameters, spot_size=spot_size)
    click.echo(factors.to_string())

def main():
    cli()

if __name__ == "__main__":
    main()
