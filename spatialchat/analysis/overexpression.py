import scanpy as sc
import numpy as np
import pandas as pd
import logging

logger = logging.getLogger('spatialchat.analysis.overexpression')

def identify_overexpressed_genes(adata, group_by=None, thresh_pct=0.0, thresh_fc=0.0, thresh_p=0.05,
                                 only_pos=True, do_de=True, min_cells=10, features=None, n_workers=None):
    """
    Identify signaling genes over-expressed in at least one cell group

    Parameters
    ----------
    adata : AnnData
        Object prepared by ``create_cellchat``
    group_by : str, optional
        Column in adata.obs with the cell groups. Defaults to the one given
        to ``create_cellchat``
    thresh_pct : float, optional
        Minimum fraction of spots expressing the gene, in the group or
        in the rest
    thresh_fc : float, optional
        Minimum log fold change
    thresh_p : float, optional
        P-value cutoff of the one-vs-rest Wilcoxon test
    only_pos : bool, optional
        Keep only genes higher in the group than in the rest
    do_de : bool, optional
        If False, keep every gene detected in at least ``min_cells`` spots
        instead of testing
    min_cells : int, optional
        Used when ``do_de`` is False
    features : list, optional
        Genes to test. Defaults to ``uns['cellchat']['genes_use']``
    n_workers : int, optional
        Passed to scanpy as ``settings.n_jobs``

    Returns
    -------
    adata : AnnData
        With ``uns['cellchat']['var_features']`` and, when testing,
        ``uns['cellchat']['markers']``
    """
    if 'cellchat' not in adata.uns:
        raise ValueError("Run create_cellchat first")
    info = adata.uns['cellchat']
    group_by = group_by or info['group_by']
    if group_by not in adata.obs:
        logger.error(f"Group key {group_by} not found in adata.obs")
        raise ValueError(f"Group key {group_by} not found in adata.obs")

    if features is None:
        features = list(info['genes_use']) if 'genes_use' in info else adata.var_names.tolist()
    features = [g for g in features if g in adata.var_names]
    if not features:
        raise ValueError("No features to test")

    data = adata[:, features].copy()

    if do_de:
        # the Wilcoxon test needs at least two spots per group
        sizes = data.obs[group_by].value_counts()
        testable = [g for g in data.obs[group_by].cat.categories if sizes[g] >= 2]
        skipped = [str(g) for g in data.obs[group_by].cat.categories if sizes[g] < 2]
        if skipped:
            logger.warning(f"Groups {skipped} have fewer than 2 spots and get no marker genes")
        if not testable:
            logger.error("No group has enough spots for the over-expression test")
            raise ValueError("No group has enough spots for the over-expression test")

        logger.info(f"Testing {len(features)} genes for over-expression across {len(testable)} groups")
        n_jobs = sc.settings.n_jobs
        if n_workers is not None:
            sc.settings.n_jobs = n_workers
        try:
            sc.tl.rank_genes_groups(
                data,
                groupby=group_by,
                groups=testable,
                method='wilcoxon',
                pts=True,
                use_raw=False,
                key_added='cellchat_markers',
            )
        finally:
            sc.settings.n_jobs = n_jobs
        markers = sc.get.rank_genes_groups_df(data, group=None, key='cellchat_markers')
        if 'group' not in markers.columns:
            markers.insert(0, 'group', testable[0])
        markers = markers.rename(columns={'names': 'features', 'logfoldchanges': 'logFC',
                                          'pvals': 'pvalues', 'pvals_adj': 'pvalues_adj',
                                          'pct_nz_group': 'pct_1', 'pct_nz_reference': 'pct_2'})
        markers['pct_max'] = markers[['pct_1', 'pct_2']].max(axis=1)

        keep = markers['pvalues'] < thresh_p
        if only_pos:
            keep &= (markers['logFC'] > 0) & (markers['logFC'] >= thresh_fc)
        else:
            keep &= markers['logFC'].abs() >= thresh_fc
        keep &= markers['pct_max'] > thresh_pct

        markers = markers[keep].sort_values('pvalues').reset_index(drop=True)
        markers['group'] = markers['group'].astype(str)
        markers['features'] = markers['features'].astype(str)
        features_sig = list(pd.unique(markers['features']))
        info['markers'] = markers
    else:
        X = data.X
        n_expressing = np.asarray((X > 0).sum(axis=0)).ravel()
        features_sig = [g for g, n in zip(features, n_expressing) if n >= min_cells]

    info['var_features'] = np.asarray(features_sig, dtype=str)
    logger.info(f"{len(features_sig)} genes passed filtering")

    return adata

def _partner_status(db, name, features_sig, measured):
    members = db.member_genes(name)
    is_measured = all(g in measured for g in members)
    is_over = is_measured and any(g in features_sig for g in members)
    return is_over, is_measured

def identify_overexpressed_interactions(adata, db, variable_both=True):
    """
    Keep the interactions whose partners are over-expressed

    A complex counts as over-expressed when one of its subunits is and all
    of them are measured.

    Parameters
    ----------
    adata : AnnData
        Output of ``identify_overexpressed_genes``
    db : LRDatabase
        Ligand-receptor database
    variable_both : bool, optional
        If True, both ligand and receptor must be over-expressed. If False,
        one of them must be over-expressed and the other measured

    Returns
    -------
    adata : AnnData
        With ``uns['cellchat']['lr_sig']``
    """
    info = adata.uns.get('cellchat', {})
    if 'var_features' not in info:
        raise ValueError("Run identify_overexpressed_genes first")
    features_sig = set(info['var_features'])
    measured = set(info['genes_use']) if 'genes_use' in info else set(adata.var_names)

    kept = []
    for name, row in db.interaction.iterrows():
        ligand_over, ligand_measured = _partner_status(db, row['ligand'], features_sig, measured)
        receptor_over, receptor_measured = _partner_status(db, row['receptor'], features_sig, measured)
        if variable_both:
            ok = ligand_over and receptor_over
        else:
            ok = (ligand_over or receptor_over) and ligand_measured and receptor_measured
        if ok:
            kept.append(name)

    if not kept:
        logger.error("No over-expressed ligand-receptor pairs found")
        raise ValueError("No over-expressed ligand-receptor pairs found")

    lr_sig = db.interaction.loc[kept].copy()
    lr_sig.index.name = 'interaction_name'
    info['lr_sig'] = lr_sig
    logger.info(f"Found {len(lr_sig)} over-expressed ligand-receptor pairs in {lr_sig['pathway_name'].nunique()} pathways")

    return adata
