import scanpy as sc
import anndata as ad
import pandas as pd
import numpy as np
import json
import logging
from pathlib import Path

logger = logging.getLogger('spatialchat.core.data_loader')

def load_data(input_path, format="anndata", **kwargs):
    """
    Load data from various formats into an AnnData object

    Parameters
    ----------
    input_path : str
        Path to the input data file
    format : str
        Format of the input data
        Supported formats: anndata, csv
    **kwargs : dict
        Additional arguments to pass to the reader function

    Returns
    -------
    adata : AnnData
        AnnData object containing the loaded data
    """
    logger.info(f"Loading data from {input_path} (format: {format})")

    if format in ("anndata", "h5ad"):
        adata = sc.read_h5ad(input_path)
    elif format == "csv":
        adata = read_csv_to_anndata(input_path, **kwargs)
    else:
        raise ValueError(f"Unsupported data format: {format}")

    return adata

def load_sample(path, sample_id=None, prediction_key='predictions'):
    """
    Load one serialized replicate and check it carries what the pipeline needs

    Parameters
    ----------
    path : str or Path
        Path to an .h5ad file with normalized expression, spatial
        coordinates in ``obsm['spatial']`` (full-resolution pixels) and
        label-transfer scores in ``obsm[prediction_key]``
    sample_id : str, optional
        Identifier used in log messages
    prediction_key : str
        Key of the prediction scores in ``adata.obsm``

    Returns
    -------
    adata : AnnData
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sample file not found: {path}")

    adata = load_data(path, format="h5ad")
    sample_id = sample_id or path.stem
    if 'spatial' not in adata.obsm:
        logger.error(f"Sample {sample_id} has no spatial coordinates")
        raise ValueError(f"No spatial coordinates found in adata.obsm['spatial'] for sample {sample_id}")
    if prediction_key not in adata.obsm:
        logger.error(f"Sample {sample_id} has no prediction scores")
        raise ValueError(f"No prediction scores found in adata.obsm['{prediction_key}'] for sample {sample_id}")

    logger.info(f"Loaded sample {sample_id} with {adata.n_obs} spots and {adata.n_vars} genes")

    return adata

def prediction_matrix(adata, key='predictions'):
    """
    Return label-transfer scores as a categories x spots DataFrame

    ``adata.obsm[key]`` is either a DataFrame (spots x categories) or an
    array whose column names are stored in ``adata.uns[f'{key}_categories']``.
    """
    if key not in adata.obsm:
        raise ValueError(f"No prediction scores found in adata.obsm['{key}']")
    scores = adata.obsm[key]
    if isinstance(scores, pd.DataFrame):
        df = scores
    else:
        categories_key = f"{key}_categories"
        if categories_key not in adata.uns:
            raise ValueError(f"Prediction array given without category names in adata.uns['{categories_key}']")
        categories = [str(c) for c in adata.uns[categories_key]]
        values = np.asarray(scores)
        if values.ndim != 2 or values.shape[1] != len(categories):
            raise ValueError(f"Prediction array of shape {values.shape} does not match {len(categories)} categories")
        df = pd.DataFrame(values, index=adata.obs_names, columns=categories)

    return df.T

def assign_labels(predictions, drop_last=True):
    """
    Assign each spot the category with the highest predicted probability

    Parameters
    ----------
    predictions : pandas.DataFrame
        Categories (rows) x spots (columns) score matrix
    drop_last : bool
        Ignore the trailing row, which holds the per-spot maximum score in
        label-transfer output rather than a category

    Returns
    -------
    pandas.Series
        Label per spot, indexed by spot. Ties go to the first category
    """
    if predictions.shape[0] == 0 or predictions.shape[1] == 0:
        raise ValueError("Prediction matrix is empty")
    scores = predictions.iloc[:-1] if drop_last else predictions
    if scores.shape[0] == 0:
        raise ValueError("Prediction matrix has no category rows")

    values = scores.to_numpy(dtype=float)
    if np.isnan(values).any():
        raise ValueError("Prediction matrix contains missing values")

    best = values.argmax(axis=0)
    categories = np.asarray([str(c) for c in scores.index])
    labels = pd.Series(categories[best], index=scores.columns, name='labels')

    counts = labels.value_counts()
    logger.info(f"Assigned {len(labels)} spots to {len(counts)} labels")
    logger.debug(f"Label counts: {counts.to_dict()}")

    return labels

def prediction_categories(predictions, drop_last=True):
    """Category names of a prediction matrix, in row order"""
    index = predictions.index[:-1] if drop_last else predictions.index
    return [str(c) for c in index]

def merge_samples(adatas, sample_ids, batch_key='samples'):
    """
    Concatenate replicates into one AnnData object

    Genes are inner-joined, barcodes are suffixed with the sample id and
    ``obs[batch_key]`` records the sample as a categorical with the levels
    in the given order.

    Parameters
    ----------
    adatas : list of AnnData
        Replicates to merge
    sample_ids : list of str
        One identifier per replicate
    batch_key : str, optional
        Name of the sample annotation to add

    Returns
    -------
    adata : AnnData
        Merged AnnData object
    """
    if len(adatas) == 0:
        raise ValueError("No datasets provided to merge")
    if len(sample_ids) != len(adatas):
        raise ValueError("Number of sample ids must match number of datasets")
    sample_ids = [str(s) for s in sample_ids]
    if len(set(sample_ids)) != len(sample_ids):
        raise ValueError(f"Sample ids must be unique, got {sample_ids}")

    common = set(adatas[0].var_names)
    for adata in adatas[1:]:
        common &= set(adata.var_names)
    if not common:
        raise ValueError("Samples share no genes")
    for sample_id, adata in zip(sample_ids, adatas):
        n_dropped = adata.n_vars - len(common)
        if n_dropped > 0:
            logger.warning(f"Dropping {n_dropped} genes of sample {sample_id} absent from other samples")

    parts = []
    for adata in adatas:
        part = adata.copy()
        for key in list(part.obsm.keys()):
            if key != 'spatial':
                del part.obsm[key]
        parts.append(part)

    merged = ad.concat(
        parts,
        join='inner',
        label=batch_key,
        keys=sample_ids,
        index_unique='_',
    )
    merged.obs[batch_key] = pd.Categorical(merged.obs[batch_key].astype(str), categories=sample_ids)

    logger.info(f"Merged {len(adatas)} datasets into one with shape {merged.shape}")

    return merged

def build_metadata(labels, samples, label_levels=None, sample_levels=None, predictions=None, drop_last=True):
    """
    Build the per-spot metadata table

    Parameters
    ----------
    labels : pandas.Series
        Label per spot
    samples : pandas.Series
        Sample identifier per spot, aligned with labels
    label_levels : list, optional
        Order of the label categories. Defaults to the category order of
        ``predictions``, or to the sorted labels without one. Levels without
        any spot are dropped
    sample_levels : list, optional
        Order of the sample categories. Defaults to order of appearance
    predictions : pandas.DataFrame, optional
        Prediction matrix the labels were assigned from
    drop_last : bool, optional
        Whether the last row of ``predictions`` is a summary row

    Returns
    -------
    pandas.DataFrame
        Columns ``labels`` and ``samples``, both categorical
    """
    labels = pd.Series(labels)
    samples = pd.Series(samples)
    if len(labels) != len(samples):
        raise ValueError(f"Got {len(labels)} labels for {len(samples)} sample annotations")
    if not labels.index.equals(samples.index):
        samples = pd.Series(samples.to_numpy(), index=labels.index)

    label_values = labels.astype(str)
    sample_values = samples.astype(str)

    if label_levels is None and predictions is not None:
        label_levels = prediction_categories(predictions, drop_last=drop_last)
    elif label_levels is None:
        label_levels = sorted(label_values.unique())
    label_levels = [str(l) for l in label_levels]
    unknown = sorted(set(label_values) - set(label_levels))
    if unknown:
        raise ValueError(f"Labels not in the declared levels: {unknown}")
    unused = [l for l in label_levels if l not in set(label_values)]
    if unused:
        logger.warning(f"Dropping labels without any spot: {unused}")
        label_levels = [l for l in label_levels if l not in unused]

    if sample_levels is None:
        sample_levels = list(pd.unique(sample_values))
    sample_levels = [str(s) for s in sample_levels]
    unknown = sorted(set(sample_values) - set(sample_levels))
    if unknown:
        raise ValueError(f"Samples not in the declared levels: {unknown}")

    meta = pd.DataFrame({
        'labels': pd.Categorical(label_values, categories=label_levels),
        'samples': pd.Categorical(sample_values, categories=sample_levels),
    }, index=labels.index)

    logger.info(f"Built metadata for {len(meta)} spots: {len(label_levels)} labels, {len(sample_levels)} samples")

    return meta

def read_scalefactors(path):
    """
    Read a scale factor JSON sidecar

    Returns
    -------
    dict
        The parsed JSON. ``spot_diameter_fullres`` is guaranteed present
        and positive
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scale factor file not found: {path}")
    with open(path, 'r') as f:
        scalefactors = json.load(f)
    _check_spot_diameter(scalefactors, path)
    return scalefactors

def scalefactors_from_uns(adata, library_id=None):
    """
    Scale factors stored by scanpy's Visium reader under
    ``adata.uns['spatial'][library_id]['scalefactors']``
    """
    if 'spatial' not in adata.uns or len(adata.uns['spatial']) == 0:
        raise ValueError("No spatial image information found in adata.uns['spatial']")
    if library_id is None:
        library_id = list(adata.uns['spatial'].keys())[0]
        logger.info(f"Using library ID: {library_id}")
    if library_id not in adata.uns['spatial']:
        raise ValueError(f"Library ID {library_id} not found in adata.uns['spatial']")
    scalefactors = dict(adata.uns['spatial'][library_id].get('scalefactors', {}))
    _check_spot_diameter(scalefactors, library_id)
    return scalefactors

def _check_spot_diameter(scalefactors, source):
    diameter = scalefactors.get('spot_diameter_fullres')
    if diameter is None:
        raise ValueError(f"'spot_diameter_fullres' missing from scale factors of {source}")
    if float(diameter) <= 0:
        raise ValueError(f"'spot_diameter_fullres' must be positive in {source}, got {diameter}")

def compute_spatial_factors(spot_diameters, spot_size=65):
    """
    Pixel-to-micrometer conversion per sample

    Parameters
    ----------
    spot_diameters : dict
        Sample id -> spot diameter in full-resolution pixels
    spot_size : float
        Theoretical spot diameter in micrometers (65 for 10x Visium)

    Returns
    -------
    pandas.DataFrame
        Indexed by sample with ``ratio`` (micrometers per pixel) and
        ``tol`` (half the spot size, in micrometers)
    """
    if spot_size <= 0:
        raise ValueError(f"spot_size must be positive, got {spot_size}")
    rows = {}
    for sample_id, diameter in spot_diameters.items():
        diameter = float(diameter)
        if diameter <= 0:
            raise ValueError(f"Spot diameter of sample {sample_id} must be positive, got {diameter}")
        rows[str(sample_id)] = {'ratio': spot_size / diameter, 'tol': spot_size / 2}
        logger.info(f"Sample {sample_id}: {spot_size / diameter:.4f} um per pixel")

    return pd.DataFrame.from_dict(rows, orient='index', columns=['ratio', 'tol'])

def read_csv_to_anndata(path, sep=',', gene_columns=None, spatial_columns=None, **kwargs):
    """
    Read a CSV file into an AnnData object

    Parameters
    ----------
    path : str or Path
        Path to the CSV file
    sep : str
        Separator in the CSV file
    gene_columns : list or None
        Columns to use as gene expression data. If None, all columns except
        the spatial ones are used
    spatial_columns : list or None
        Columns to use as spatial coordinates. If None, looks for columns
        named 'x', 'y', 'X', 'Y', 'x_coord', 'y_coord'

    Returns
    -------
    adata : AnnData
    """
    df = pd.read_csv(path, sep=sep, index_col=0, **kwargs)
    if spatial_columns is None:
        potential_coords = ['x', 'y', 'X', 'Y', 'x_coord', 'y_coord']
        spatial_columns = [col for col in potential_coords if col in df.columns]

        if len(spatial_columns) >= 2:
            logger.info(f"Using columns {spatial_columns[:2]} as spatial coordinates")
            spatial_columns = spatial_columns[:2]
        else:
            logger.warning("No spatial coordinate columns detected")
            spatial_columns = []
    if gene_columns is None:
        gene_columns = [col for col in df.columns if col not in spatial_columns]
        logger.info(f"Using {len(gene_columns)} columns as gene expression data")
    X = df[gene_columns].to_numpy(dtype=float)
    var = pd.DataFrame(index=pd.Index(gene_columns, dtype=str))
    obs = pd.DataFrame(index=df.index.astype(str))

    adata = ad.AnnData(X=X, obs=obs, var=var)
    if len(spatial_columns) >= 2:
        adata.obsm['spatial'] = df[spatial_columns[:2]].to_numpy(dtype=float)

    return adata
