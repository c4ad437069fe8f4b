import squidpy as sq
import logging
import numpy as np
import pandas as pd
from anndata import AnnData
from scipy.spatial import cKDTree
from scipy.stats import trim_mean

logger = logging.getLogger('spatialchat.spatial.neighbors')

def _check_inputs(adata, group_by, sample_key):
    if 'spatial_um' not in adata.obsm:
        logger.error("No micrometer coordinates found. Run create_cellchat first.")
        raise ValueError("No micrometer coordinates found. Run create_cellchat first.")
    if 'spatial_factors' not in adata.uns:
        logger.error("No spatial factors found. Run create_cellchat first.")
        raise ValueError("No spatial factors found. Run create_cellchat first.")
    for key in [group_by, sample_key]:
        if key not in adata.obs:
            logger.error(f"Key {key} not found in adata.obs")
            raise ValueError(f"Key {key} not found in adata.obs")

def _defaults(adata, group_by, sample_key):
    info = adata.uns.get('cellchat', {})
    return group_by or info.get('group_by', 'labels'), sample_key or info.get('sample_key', 'samples')

def _group_categories(adata, group_by):
    groups = adata.obs[group_by]
    if isinstance(groups.dtype, pd.CategoricalDtype):
        return list(groups.cat.categories)
    return sorted(groups.astype(str).unique())

def _sample_distance(coords, labels, groups, trim, max_range, k_min):
    """Trimmed mean nearest-neighbour distance from group j spots to group i spots"""
    n = len(groups)
    distance = np.full((n, n), np.nan)
    members = {g: np.flatnonzero(labels == g) for g in groups}
    for i, gi in enumerate(groups):
        idx_i = members[gi]
        if len(idx_i) == 0:
            continue
        tree = cKDTree(coords[idx_i])
        for j, gj in enumerate(groups):
            idx_j = members[gj]
            if len(idx_j) == 0:
                continue
            if i == j:
                if len(idx_i) < 2:
                    continue
                # nearest spot other than itself
                d, _ = tree.query(coords[idx_j], k=2)
                d = d[:, 1]
            else:
                d, _ = tree.query(coords[idx_j], k=1)
            if np.sum(d <= max_range) < k_min:
                continue
            distance[i, j] = trim_mean(d, trim)
    return distance

def compute_region_distance(adata, group_by=None, sample_key=None, trim=0.1,
                            interaction_range=250, k_min=10):
    """
    Compute the distance between cell groups on each tissue section

    For every ordered pair of groups (i, j) the distance is the trimmed mean,
    over the spots of group j, of the distance to the nearest spot of group i.
    Pairs with fewer than ``k_min`` spots of j within ``interaction_range``
    plus the sample tolerance of group i are out of range and left as NaN.
    Samples are combined with a NaN-aware mean.

    Parameters
    ----------
    adata : AnnData
        Object prepared by ``create_cellchat``
    group_by : str, optional
        Column in adata.obs with the cell groups
    sample_key : str, optional
        Column in adata.obs with the sample identifiers
    trim : float, optional
        Fraction trimmed from each end of the distance distribution
    interaction_range : float, optional
        Maximum interaction distance in micrometers
    k_min : int, optional
        Minimum number of spots within range

    Returns
    -------
    adata : AnnData
        With the group x group DataFrame in ``uns['cellchat']['region_distance']``
    """
    group_by, sample_key = _defaults(adata, group_by, sample_key)
    _check_inputs(adata, group_by, sample_key)
    logger.info(f"Computing distances between {group_by} groups within {interaction_range} um")

    groups = _group_categories(adata, group_by)
    labels = adata.obs[group_by].astype(str).to_numpy()
    samples = adata.obs[sample_key].astype(str).to_numpy()
    coords = np.asarray(adata.obsm['spatial_um'], dtype=float)
    factors = adata.uns['spatial_factors']

    per_sample = []
    for sample in pd.unique(samples):
        mask = samples == sample
        tol = float(factors.loc[sample, 'tol'])
        logger.debug(f"Sample {sample}: {mask.sum()} spots, tolerance {tol} um")
        per_sample.append(_sample_distance(coords[mask], labels[mask], [str(g) for g in groups],
                                           trim, interaction_range + tol, k_min))

    stacked = np.stack(per_sample)
    with np.errstate(invalid='ignore'):
        counts = np.sum(~np.isnan(stacked), axis=0)
        distance = np.where(counts > 0, np.nansum(stacked, axis=0) / np.maximum(counts, 1), np.nan)

    distance = pd.DataFrame(distance, index=groups, columns=groups)
    n_out = int(np.isnan(distance.to_numpy()).sum())
    logger.info(f"{n_out} of {distance.size} group pairs are out of interaction range")

    adata.uns.setdefault('cellchat', {})
    adata.uns['cellchat']['region_distance'] = distance
    adata.uns['cellchat']['interaction_range'] = float(interaction_range)

    return adata

def compute_contact_adjacency(adata, group_by=None, sample_key=None, contact_range=100, k_min=10):
    """
    Find the cell groups in physical contact

    A radius graph with ``radius = contact_range + tol`` is built on each
    sample. Two groups are in contact when at least ``k_min`` spot pairs
    connect them in one of the samples. Each group is in contact with itself.

    Returns
    -------
    adata : AnnData
        With the boolean group x group DataFrame in
        ``uns['cellchat']['contact_adjacency']``
    """
    group_by, sample_key = _defaults(adata, group_by, sample_key)
    _check_inputs(adata, group_by, sample_key)
    logger.info(f"Building contact graph with range {contact_range} um")

    groups = [str(g) for g in _group_categories(adata, group_by)]
    labels = pd.Categorical(adata.obs[group_by].astype(str), categories=groups)
    samples = adata.obs[sample_key].astype(str).to_numpy()
    coords = np.asarray(adata.obsm['spatial_um'], dtype=float)
    factors = adata.uns['spatial_factors']

    contact = np.zeros((len(groups), len(groups)), dtype=bool)
    for sample in pd.unique(samples):
        mask = samples == sample
        tol = float(factors.loc[sample, 'tol'])
        graph = AnnData(
            obs=pd.DataFrame({sample_key: pd.Categorical(samples[mask])}, index=adata.obs_names[mask]),
            obsm={'spatial_um': coords[mask]},
        )
        sq.gr.spatial_neighbors(graph, coord_type='generic', radius=contact_range + tol,
                                spatial_key='spatial_um', library_key=sample_key)
        conn = graph.obsp['spatial_connectivities'].tocsr()
        conn.data = np.ones_like(conn.data)

        codes = labels.codes[mask]
        onehot = np.zeros((mask.sum(), len(groups)))
        onehot[np.arange(mask.sum()), codes] = 1
        edges = onehot.T @ (conn @ onehot)
        logger.debug(f"Sample {sample}: {int(conn.nnz)} contact edges")
        contact |= edges >= k_min

    np.fill_diagonal(contact, True)
    contact = pd.DataFrame(contact, index=groups, columns=groups)
    logger.info(f"{int(contact.to_numpy().sum())} group pairs are in contact")

    adata.uns.setdefault('cellchat', {})
    adata.uns['cellchat']['contact_adjacency'] = contact

    return adata
