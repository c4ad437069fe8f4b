import logging
import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import trim_mean

from spatialchat.spatial.neighbors import compute_region_distance, compute_contact_adjacency
from spatialchat.utils.parallel import parallelize, chunk_indices, resolve_n_jobs

logger = logging.getLogger('spatialchat.analysis.communication')

MEAN_TYPES = ('truncatedMean', 'triMean', 'mean', 'median')
CONTACT_ANNOTATION = 'Cell-Cell Contact'

def _group_means(X, codes, n_groups, mean_type='truncatedMean', trim=0.1):
    """Average expression per group, genes x groups"""
    avg = np.zeros((X.shape[1], n_groups))
    for g in range(n_groups):
        Xg = X[codes == g]
        if Xg.shape[0] == 0:
            continue
        if mean_type == 'truncatedMean':
            avg[:, g] = trim_mean(Xg, trim, axis=0)
        elif mean_type == 'triMean':
            q = np.quantile(Xg, [0.25, 0.5, 0.75], axis=0)
            avg[:, g] = 0.25 * q[0] + 0.5 * q[1] + 0.25 * q[2]
        elif mean_type == 'mean':
            avg[:, g] = Xg.mean(axis=0)
        elif mean_type == 'median':
            avg[:, g] = np.median(Xg, axis=0)
        else:
            raise ValueError(f"Unsupported mean type: {mean_type}")
    return avg

def _permuted_group_means(codes_batch, X, n_groups, mean_type, trim):
    return [_group_means(X, codes, n_groups, mean_type, trim) for codes in codes_batch]

def _complex_level(avg, idx):
    # geometric mean of the subunits, 0 as soon as one subunit is 0
    vals = avg[idx]
    return np.prod(vals, axis=0) ** (1.0 / len(idx))

def _cofactor_product(avg, idx_list, transform):
    n_groups = avg.shape[1]
    out = np.ones((len(idx_list), n_groups))
    for k, idx in enumerate(idx_list):
        if idx:
            out[k] = np.prod(transform(avg[idx]), axis=0)
    return out

def hill(x, Kh=0.5, n=1):
    """Hill function ``x^n / (Kh^n + x^n)``"""
    x = np.asarray(x, dtype=float)
    return x ** n / (Kh ** n + x ** n)

def _interaction_scores(avg, plan, Kh=0.5, n=1):
    """
    Expression-driven part of the communication probability

    Returns an interactions x groups x groups array holding P1 * P2 * P3.
    """
    ligand = np.vstack([_complex_level(avg, idx) for idx in plan['ligand']])
    receptor = np.vstack([_complex_level(avg, idx) for idx in plan['receptor']])

    co_a = _cofactor_product(avg, plan['co_A_receptor'], lambda x: 1 + x)
    co_i = _cofactor_product(avg, plan['co_I_receptor'], lambda x: 1 + x)
    receptor = receptor * co_a / co_i

    lr = ligand[:, :, None] * receptor[:, None, :]
    p1 = hill(lr, Kh, n)

    agonist = _cofactor_product(avg, plan['agonist'], lambda x: 1 + hill(x, Kh, n))
    p2 = agonist[:, :, None] * agonist[:, None, :]
    antagonist = _cofactor_product(avg, plan['antagonist'], lambda x: Kh ** n / (Kh ** n + x ** n))
    p3 = antagonist[:, :, None] * antagonist[:, None, :]

    return p1 * p2 * p3

def _interaction_plan(lr_sig, db, gene_pos):
    """Positions of the genes behind every ligand, receptor and cofactor"""
    plan = {key: [] for key in ['ligand', 'receptor', 'agonist', 'antagonist', 'co_A_receptor', 'co_I_receptor']}
    for name, row in lr_sig.iterrows():
        for key in ['ligand', 'receptor']:
            genes = db.member_genes(row[key])
            missing = [g for g in genes if g not in gene_pos]
            if missing:
                logger.error(f"Interaction {name}: genes {missing} are not measured")
                raise ValueError(f"Interaction {name}: genes {missing} are not measured")
            plan[key].append([gene_pos[g] for g in genes])
        for key in ['agonist', 'antagonist', 'co_A_receptor', 'co_I_receptor']:
            # unmeasured cofactor genes are ignored
            plan[key].append([gene_pos[g] for g in db.cofactor_genes(row[key]) if g in gene_pos])
    return plan

def spatial_factor(region_distance, scale_distance=0.01):
    """
    Turn group distances into a communication weight

    Distances are scaled by ``scale_distance`` and, when the smallest
    off-diagonal distance is below 1, rescaled so that it becomes 1. The
    weight is the inverse distance, 0 for pairs out of range, and the
    largest weight on the diagonal.

    Parameters
    ----------
    region_distance : pandas.DataFrame
        Group x group distances, NaN when out of range
    scale_distance : float
        Scale applied before inversion

    Returns
    -------
    numpy.ndarray
        Group x group weights
    """
    d = np.asarray(region_distance, dtype=float) * scale_distance
    np.fill_diagonal(d, np.nan)
    if np.all(np.isnan(d)):
        logger.warning("No pair of groups is within interaction range")
        weight = np.zeros_like(d)
        np.fill_diagonal(weight, 1.0)
        return weight
    d_min = np.nanmin(d)
    if d_min < 1:
        logger.debug(f"Rescaling distances by the minimum distance {d_min}")
        d = d / d_min
    with np.errstate(divide='ignore', invalid='ignore'):
        weight = 1.0 / d
    weight[np.isnan(weight)] = 0
    np.fill_diagonal(weight, weight.max())
    return weight

def _signaling_matrix(adata, genes, raw_use):
    if raw_use:
        X = adata[:, genes].X
    else:
        if 'projected' not in adata.layers:
            logger.error("raw_use=False needs projected data in adata.layers['projected']")
            raise ValueError("raw_use=False needs projected data in adata.layers['projected']")
        X = adata[:, genes].layers['projected']
    if sparse.issparse(X):
        X = X.toarray()
    X = np.asarray(X, dtype=float)
    x_max = X.max()
    if x_max <= 0:
        logger.error("Signaling genes have no expression")
        raise ValueError("Signaling genes have no expression")
    return X / x_max

def compute_commun_prob(adata, db, type='truncatedMean', trim=0.1, raw_use=True, population_size=False,
                        distance_use=True, interaction_range=250, scale_distance=0.01,
                        contact_dependent=True, contact_range=100, k_min=10, nboot=100, seed=1,
                        Kh=0.5, n=1, n_workers=4, show_progress=True):
    """
    Compute communication probabilities between cell groups

    For every over-expressed ligand-receptor pair and every ordered pair of
    groups, the probability combines a Hill function of the ligand and
    receptor levels, agonist and antagonist factors, an optional population
    size factor and a spatial factor. Significance comes from a permutation
    test on the group labels.

    Parameters
    ----------
    adata : AnnData
        Output of ``identify_overexpressed_interactions``
    db : LRDatabase
        Database the interactions come from, used for complexes and cofactors
    type : str, optional
        Group average: 'truncatedMean', 'triMean', 'mean' or 'median'
    trim : float, optional
        Fraction trimmed from each end for 'truncatedMean'
    raw_use : bool, optional
        Use adata.X. If False, use ``layers['projected']``
    population_size : bool, optional
        Weight by the relative abundance of both groups
    distance_use : bool, optional
        Weight by the inverse distance between groups
    interaction_range : float, optional
        Maximum interaction distance in micrometers
    scale_distance : float, optional
        Scale applied to distances
    contact_dependent : bool, optional
        Restrict 'Cell-Cell Contact' interactions to groups in contact
    contact_range : float, optional
        Contact distance in micrometers
    k_min : int, optional
        Minimum number of close spots for two groups to interact
    nboot : int, optional
        Number of permutations
    seed : int, optional
        Seed of the permutations
    Kh, n : float, optional
        Hill function parameters
    n_workers : int, optional
        Size of the worker pool for permutations
    show_progress : bool, optional
        Show a progress bar

    Returns
    -------
    adata : AnnData
        With ``uns['cellchat']['net']`` holding ``prob`` and ``pval``
        arrays of shape groups x groups x interactions
    """
    info = adata.uns.get('cellchat', {})
    if 'lr_sig' not in info:
        logger.error("No over-expressed interactions found. Run identify_overexpressed_interactions first.")
        raise ValueError("No over-expressed interactions found. Run identify_overexpressed_interactions first.")
    if type not in MEAN_TYPES:
        logger.error(f"Unsupported mean type: {type}")
        raise ValueError(f"Unsupported mean type: {type}. Options: {MEAN_TYPES}")
    if nboot < 1:
        raise ValueError("nboot must be at least 1")

    group_by = info['group_by']
    sample_key = info['sample_key']
    lr_sig = info['lr_sig']
    groups_cat = adata.obs[group_by].astype('category')
    groups = [str(g) for g in groups_cat.cat.categories]
    codes = groups_cat.cat.codes.to_numpy()
    n_groups = len(groups)
    n_spots = adata.n_obs

    genes = list(info['genes_use']) if 'genes_use' in info else adata.var_names.tolist()
    gene_pos = {g: k for k, g in enumerate(genes)}
    plan = _interaction_plan(lr_sig, db, gene_pos)
    X = _signaling_matrix(adata, genes, raw_use)

    logger.info(f"Computing communication probabilities for {len(lr_sig)} interactions "
                f"between {n_groups} groups using '{type}'")

    avg = _group_means(X, codes, n_groups, type, trim)
    scores = _interaction_scores(avg, plan, Kh, n)

    if population_size:
        fraction = np.bincount(codes, minlength=n_groups) / n_spots
        p4 = np.outer(fraction, fraction)
    else:
        p4 = np.ones((n_groups, n_groups))

    if distance_use:
        compute_region_distance(adata, group_by, sample_key, trim=trim,
                                interaction_range=interaction_range, k_min=k_min)
        p_spatial = spatial_factor(info['region_distance'].loc[groups, groups], scale_distance)
    else:
        p_spatial = np.ones((n_groups, n_groups))

    is_contact = (lr_sig['annotation'] == CONTACT_ANNOTATION).to_numpy()
    factor = np.repeat((p4 * p_spatial)[None, :, :], len(lr_sig), axis=0)
    if contact_dependent and is_contact.any():
        compute_contact_adjacency(adata, group_by, sample_key, contact_range=contact_range, k_min=k_min)
        contact = info['contact_adjacency'].loc[groups, groups].to_numpy(dtype=float)
        factor[is_contact] = p4 * contact
        logger.info(f"{int(is_contact.sum())} contact-dependent interactions gated by contact")

    prob = scores * factor

    # permutation test on the group labels
    rng = np.random.default_rng(seed)
    permuted_codes = np.stack([codes[rng.permutation(n_spots)] for _ in range(nboot)])
    n_jobs = resolve_n_jobs(n_workers, nboot)
    batch_size = int(np.ceil(nboot / n_jobs))
    batches = [permuted_codes[idx] for idx in chunk_indices(nboot, batch_size)]
    logger.info(f"Running {nboot} permutations in {len(batches)} batches")
    batch_means = parallelize(
        _permuted_group_means,
        batches,
        n_jobs=n_jobs,
        backend='processes',
        show_progress=show_progress,
        desc="Permutations",
        X=X,
        n_groups=n_groups,
        mean_type=type,
        trim=trim,
    )

    n_reject = np.zeros_like(prob)
    for means in batch_means:
        for avg_boot in means:
            prob_boot = _interaction_scores(avg_boot, plan, Kh, n) * factor
            n_reject += prob_boot > prob
    pval = n_reject / nboot
    pval[prob == 0] = 1

    info['net'] = {
        'prob': np.moveaxis(prob, 0, -1),
        'pval': np.moveaxis(pval, 0, -1),
    }
    info['groups'] = np.asarray(groups, dtype=str)
    info['spatial_weight'] = pd.DataFrame(p_spatial, index=groups, columns=groups)
    info['commun_prob_params'] = {
        'type': type, 'trim': float(trim), 'raw_use': bool(raw_use),
        'population_size': bool(population_size), 'distance_use': bool(distance_use),
        'interaction_range': float(interaction_range), 'scale_distance': float(scale_distance),
        'contact_dependent': bool(contact_dependent), 'contact_range': float(contact_range),
        'k_min': int(k_min), 'nboot': int(nboot), 'seed': int(seed), 'Kh': float(Kh), 'n': float(n),
    }

    n_sig = int(((pval < 0.05) & (prob > 0)).sum())
    logger.info(f"Found {n_sig} significant communications (p < 0.05)")

    return adata

def _net(adata):
    info = adata.uns.get('cellchat', {})
    if 'net' not in info:
        logger.error("No communication probabilities found. Run compute_commun_prob first.")
        raise ValueError("No communication probabilities found. Run compute_commun_prob first.")
    return info

def filter_communication(adata, min_cells=10):
    """
    Remove communications involving small cell groups

    Probabilities of every interaction sent or received by a group with
    fewer than ``min_cells`` spots are set to 0 and their p-values to 1.
    """
    info = _net(adata)
    groups = list(info['groups'])
    sizes = adata.obs[info['group_by']].astype(str).value_counts().reindex(groups, fill_value=0)
    small = [k for k, g in enumerate(groups) if sizes[g] < min_cells]
    if small:
        logger.info(f"Removing communications of groups with fewer than {min_cells} spots: "
                    f"{[groups[k] for k in small]}")
        prob = info['net']['prob']
        pval = info['net']['pval']
        for k in small:
            prob[k, :, :] = 0
            prob[:, k, :] = 0
            pval[k, :, :] = 1
            pval[:, k, :] = 1
    else:
        logger.info(f"All groups have at least {min_cells} spots")
    return adata

def _significant_prob(info, thresh):
    prob = info['net']['prob'].copy()
    prob[info['net']['pval'] >= thresh] = 0
    return prob

def compute_commun_prob_pathway(adata, thresh=0.05):
    """
    Summarize communication probabilities per signaling pathway

    Significant probabilities of the interactions of each pathway are
    summed. Pathways without any significant communication are dropped and
    the rest ordered by total probability, largest first.

    Returns
    -------
    adata : AnnData
        With ``uns['cellchat']['netP']`` holding ``pathways`` and ``prob``
        (groups x groups x pathways)
    """
    info = _net(adata)
    prob = _significant_prob(info, thresh)
    pathway_of = info['lr_sig']['pathway_name'].to_numpy()
    pathways = list(pd.unique(pathway_of))

    prob_pathway = np.stack([prob[:, :, pathway_of == p].sum(axis=2) for p in pathways], axis=2)
    totals = prob_pathway.sum(axis=(0, 1))
    order = [k for k in np.argsort(-totals, kind='stable') if totals[k] > 0]

    info['netP'] = {
        'pathways': np.asarray([pathways[k] for k in order], dtype=str),
        'prob': prob_pathway[:, :, order],
    }
    logger.info(f"{len(order)} of {len(pathways)} pathways have significant communications")
    if order:
        logger.info(f"Top pathways: {', '.join(pathways[k] for k in order[:5])}")

    return adata

def _interaction_mask(info, signaling):
    lr_sig = info['lr_sig']
    if signaling is None:
        return np.ones(len(lr_sig), dtype=bool)
    if isinstance(signaling, str):
        signaling = [signaling]
    mask = lr_sig['pathway_name'].isin(signaling).to_numpy()
    if not mask.any():
        logger.error(f"No interactions found for signaling {signaling}")
        raise ValueError(f"No interactions found for signaling {signaling}")
    return mask

def _group_mask(groups, selected, label):
    if selected is None:
        return np.ones(len(groups), dtype=bool)
    if isinstance(selected, str):
        selected = [selected]
    unknown = [g for g in selected if g not in groups]
    if unknown:
        logger.error(f"Unknown {label} groups: {unknown}")
        raise ValueError(f"Unknown {label} groups: {unknown}")
    return np.isin(groups, selected)

def aggregate_net(adata, thresh=0.05, sources_use=None, targets_use=None, signaling=None):
    """
    Aggregate the network over interactions

    Parameters
    ----------
    adata : AnnData
        Output of ``compute_commun_prob``
    thresh : float, optional
        P-value cutoff
    sources_use, targets_use : list, optional
        Restrict to these sender / receiver groups
    signaling : list, optional
        Restrict to interactions of these pathways

    Returns
    -------
    adata : AnnData
        With group x group DataFrames ``count`` (number of significant
        interactions) and ``weight`` (summed probability) in
        ``uns['cellchat']['net']``
    """
    info = _net(adata)
    groups = [str(g) for g in info['groups']]
    prob = _significant_prob(info, thresh)[:, :, _interaction_mask(info, signaling)]
    significant = prob > 0

    keep = np.outer(_group_mask(groups, sources_use, 'source'), _group_mask(groups, targets_use, 'target'))
    count = significant.sum(axis=2) * keep
    weight = prob.sum(axis=2) * keep

    info['net']['count'] = pd.DataFrame(count, index=groups, columns=groups)
    info['net']['weight'] = pd.DataFrame(weight, index=groups, columns=groups)
    logger.info(f"Aggregated network: {int(count.sum())} significant communications, "
                f"total weight {weight.sum():.4f}")

    return adata

def subset_communication(adata, slot='net', thresh=0.05, sources_use=None, targets_use=None, signaling=None):
    """
    Long table of significant communications

    Parameters
    ----------
    adata : AnnData
        Output of ``compute_commun_prob`` (``slot='net'``) or
        ``compute_commun_prob_pathway`` (``slot='netP'``)
    slot : str, optional
        'net' for ligand-receptor pairs, 'netP' for pathways
    thresh : float, optional
        P-value cutoff, only used for 'net'
    sources_use, targets_use : list, optional
        Restrict to these sender / receiver groups
    signaling : list, optional
        Restrict to these pathways

    Returns
    -------
    pandas.DataFrame
        For 'net': source, target, ligand, receptor, prob, pval,
        interaction_name, pathway_name, annotation. For 'netP': source,
        target, pathway_name, prob
    """
    info = _net(adata)
    groups = np.asarray([str(g) for g in info['groups']])
    source_mask = _group_mask(list(groups), sources_use, 'source')
    target_mask = _group_mask(list(groups), targets_use, 'target')

    if slot == 'net':
        lr_sig = info['lr_sig']
        prob = info['net']['prob']
        pval = info['net']['pval']
        selected = (pval < thresh) & (prob > 0)
        selected &= _interaction_mask(info, signaling)[None, None, :]
        selected &= source_mask[:, None, None] & target_mask[None, :, None]
        src, tgt, k = np.nonzero(selected)
        table = pd.DataFrame({
            'source': groups[src],
            'target': groups[tgt],
            'ligand': lr_sig['ligand'].to_numpy()[k],
            'receptor': lr_sig['receptor'].to_numpy()[k],
            'prob': prob[src, tgt, k],
            'pval': pval[src, tgt, k],
            'interaction_name': lr_sig.index.to_numpy()[k],
            'pathway_name': lr_sig['pathway_name'].to_numpy()[k],
            'annotation': lr_sig['annotation'].to_numpy()[k],
        })
    elif slot == 'netP':
        if 'netP' not in info:
            logger.error("No pathway probabilities found. Run compute_commun_prob_pathway first.")
            raise ValueError("No pathway probabilities found. Run compute_commun_prob_pathway first.")
        pathways = np.asarray(info['netP']['pathways'])
        prob = info['netP']['prob']
        selected = prob > 0
        if signaling is not None:
            selected &= np.isin(pathways, [signaling] if isinstance(signaling, str) else signaling)[None, None, :]
        selected &= source_mask[:, None, None] & target_mask[None, :, None]
        src, tgt, k = np.nonzero(selected)
        table = pd.DataFrame({
            'source': groups[src],
            'target': groups[tgt],
            'pathway_name': pathways[k],
            'prob': prob[src, tgt, k],
        })
    else:
        raise ValueError(f"Unsupported slot: {slot}. Options: 'net', 'netP'")

    logger.debug(f"Selected {len(table)} communications from slot {slot}")
    return table
