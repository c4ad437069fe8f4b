import scanpy as sc
import numpy as np
import pandas as pd
import logging

from spatialchat.analysis.database import extract_genes

logger = logging.getLogger('spatialchat.core.preprocessing')

def create_cellchat(adata, meta, spatial_factors, group_by='labels', sample_key='samples'):
    """
    Prepare a merged AnnData object for communication analysis

    Parameters
    ----------
    adata : AnnData
        Merged replicates with pixel coordinates in ``obsm['spatial']``
    meta : pandas.DataFrame
        Per-spot metadata indexed like ``adata.obs_names``, holding the
        ``group_by`` and ``sample_key`` columns
    spatial_factors : pandas.DataFrame
        Per-sample ``ratio`` and ``tol``, see
        :func:`spatialchat.core.data_loader.compute_spatial_factors`
    group_by : str
        Metadata column with the cell groups
    sample_key : str
        Metadata column with the sample identifiers

    Returns
    -------
    adata : AnnData
        Copy with metadata in ``obs``, micrometer coordinates in
        ``obsm['spatial_um']`` and ``uns['spatial_factors']``
    """
    for col in [group_by, sample_key]:
        if col not in meta.columns:
            logger.error(f"Column {col} not found in metadata")
            raise ValueError(f"Column {col} not found in metadata")
    missing = adata.obs_names.difference(meta.index)
    if len(missing) > 0:
        raise ValueError(f"{len(missing)} spots have no metadata, e.g. {list(missing[:3])}")
    if 'spatial' not in adata.obsm:
        raise ValueError("No spatial coordinates found in adata.obsm['spatial']")
    for col in ['ratio', 'tol']:
        if col not in spatial_factors.columns:
            raise ValueError(f"Spatial factors lack the '{col}' column")

    adata = adata.copy()
    meta = meta.loc[adata.obs_names]
    adata.obs[group_by] = meta[group_by]
    adata.obs[sample_key] = meta[sample_key]
    if not isinstance(adata.obs[group_by].dtype, pd.CategoricalDtype):
        adata.obs[group_by] = pd.Categorical(adata.obs[group_by].astype(str))

    bad_labels = [g for g in adata.obs[group_by].cat.categories if str(g)[:1].isdigit()]
    if bad_labels:
        logger.error(f"Group labels must not start with a digit: {bad_labels}")
        raise ValueError(f"Group labels must not start with a digit: {bad_labels}. Add a prefix such as 'cluster_'")

    samples = adata.obs[sample_key].astype(str)
    spatial_factors = spatial_factors.copy()
    spatial_factors.index = spatial_factors.index.astype(str)
    absent = sorted(set(samples) - set(spatial_factors.index))
    if absent:
        raise ValueError(f"No spatial factors for samples: {absent}")

    coords = np.asarray(adata.obsm['spatial'], dtype=float)[:, :2]
    ratio = spatial_factors.loc[samples, 'ratio'].to_numpy(dtype=float)
    adata.obsm['spatial_um'] = coords * ratio[:, None]
    adata.uns['spatial_factors'] = spatial_factors
    adata.uns['cellchat'] = {'group_by': group_by, 'sample_key': sample_key}

    counts = adata.obs[group_by].value_counts()
    logger.info(f"Created communication object with {adata.n_obs} spots in {len(counts)} groups")
    for group, n in counts.items():
        logger.debug(f"Group {group}: {n} spots")

    return adata

def normalize_data(adata, target_sum=1e4):
    """
    Library-size normalize and log-transform raw counts

    Raw counts are kept in ``layers['counts']``.
    """
    logger.info(f"Normalizing total counts per spot to {target_sum}")
    adata.layers['counts'] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    logger.info("Log-transforming the data")
    sc.pp.log1p(adata)
    return adata

def subset_data(adata, db):
    """
    Record the measured genes used by the ligand-receptor database

    The expression matrix itself is untouched; downstream steps read
    ``uns['cellchat']['genes_use']``.
    """
    if 'cellchat' not in adata.uns:
        raise ValueError("Run create_cellchat first")
    db_genes = set(extract_genes(db))
    genes_use = [g for g in adata.var_names if g in db_genes]
    if not genes_use:
        logger.error("None of the database genes are measured")
        raise ValueError("None of the database genes are measured")

    adata.uns['cellchat']['genes_use'] = np.asarray(genes_use, dtype=str)
    logger.info(f"Using {len(genes_use)} of {len(db_genes)} signaling genes")

    return adata
