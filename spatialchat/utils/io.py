import scanpy as sc
import pandas as pd
import json
import logging
import datetime
from pathlib import Path

from spatialchat.analysis.communication import subset_communication

logger = logging.getLogger('spatialchat.utils.io')

def _write_tables(adata, csv_dir, thresh):
    info = adata.uns.get('cellchat', {})
    written = {}
    if 'net' in info:
        path = csv_dir / "communications.csv"
        subset_communication(adata, slot='net', thresh=thresh).to_csv(path, index=False)
        written['communications'] = path
        for key in ['count', 'weight']:
            if key in info['net']:
                path = csv_dir / f"aggregated_{key}.csv"
                info['net'][key].to_csv(path)
                written[f"aggregated_{key}"] = path
    if 'netP' in info:
        path = csv_dir / "pathway_communications.csv"
        subset_communication(adata, slot='netP').to_csv(path, index=False)
        written['pathway_communications'] = path
    for slot, table in info.get('centrality', {}).items():
        path = csv_dir / f"centrality_{slot}.csv"
        table.to_csv(path, index=False)
        written[f"centrality_{slot}"] = path
    if 'lr_sig' in info:
        path = csv_dir / "overexpressed_interactions.csv"
        info['lr_sig'].to_csv(path)
        written['overexpressed_interactions'] = path
    return written

def save_results(adata, output_dir, save_formats=None, compress=True, thresh=0.05):
    """
    Save analysis results

    Parameters
    ----------
    adata : AnnData
        AnnData object with results in ``uns['cellchat']``
    output_dir : str or Path
        Directory to save results
    save_formats : list, optional
        Options: 'h5ad' (the whole object) and 'csv' (communication
        tables). If None, saves both
    compress : bool, optional
        Whether to gzip-compress the h5ad file
    thresh : float, optional
        P-value cutoff of the communication tables

    Returns
    -------
    dict
        Dictionary with paths to saved files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    if save_formats is None:
        save_formats = ['h5ad', 'csv']
    valid_formats = ['h5ad', 'csv']
    unsupported = [fmt for fmt in save_formats if fmt not in valid_formats]
    for fmt in unsupported:
        logger.warning(f"Unsupported save format: {fmt}. Skipping.")
    save_formats = [fmt for fmt in save_formats if fmt in valid_formats]

    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    saved_paths = {}
    for fmt in save_formats:
        try:
            if fmt == 'h5ad':
                file_path = output_dir / f"spatialchat_results_{timestamp}.h5ad"
                adata.write(file_path, compression='gzip' if compress else None)
                saved_paths['h5ad'] = file_path
                logger.info(f"Saved AnnData object to {file_path}")

            elif fmt == 'csv':
                csv_dir = output_dir / f"spatialchat_csv_{timestamp}"
                csv_dir.mkdir(exist_ok=True)
                tables = _write_tables(adata, csv_dir, thresh)
                saved_paths['csv'] = csv_dir
                logger.info(f"Saved {len(tables)} CSV tables to {csv_dir}")
        except Exception as e:
            logger.error(f"Error saving in {fmt} format: {str(e)}")
            raise

    info = adata.uns.get('cellchat', {})
    manifest_path = output_dir / f"spatialchat_manifest_{timestamp}.json"
    manifest = {
        'timestamp': timestamp,
        'formats': {fmt: str(path) for fmt, path in saved_paths.items()},
        'dataset_shape': list(adata.shape),
        'obs_columns': list(adata.obs.columns),
        'groups': [str(g) for g in info.get('groups', [])],
        'n_interactions': int(len(info['lr_sig'])) if 'lr_sig' in info else 0,
        'pathways': [str(p) for p in info['netP']['pathways']] if 'netP' in info else [],
        'parameters': info.get('commun_prob_params', {}),
        'uns_keys': list(adata.uns.keys()),
    }

    with open(manifest_path, 'w') as f:
        json.dump(manifest, f, indent=2)

    logger.info(f"Created manifest file at {manifest_path}")
    saved_paths['manifest'] = manifest_path

    return saved_paths

def read_results(input_path):
    """
    Read a result object written by ``save_results``

    Parameters
    ----------
    input_path : str or Path
        Path to the .h5ad file

    Returns
    -------
    adata : AnnData
        AnnData object with loaded results
    """
    input_path = Path(input_path)

    if not input_path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")
    if input_path.suffix.lower() != '.h5ad':
        raise ValueError(f"Expected an .h5ad file, got {input_path}")

    logger.info(f"Reading results from {input_path}")
    adata = sc.read_h5ad(input_path)
    info = adata.uns.get('cellchat', {})
    if 'lr_sig' in info:
        info['lr_sig'] = info['lr_sig'].fillna('')
    logger.info(f"Successfully loaded AnnData object with shape {adata.shape}")

    return adata
