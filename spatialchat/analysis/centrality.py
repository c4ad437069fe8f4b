import logging
import numpy as np
import pandas as pd
import networkx as nx

logger = logging.getLogger('spatialchat.analysis.centrality')

CENTRALITY_MEASURES = ['outdeg', 'indeg', 'outdeg_unweighted', 'indeg_unweighted', 'hub', 'authority',
                       'eigen', 'page_rank', 'betweenness', 'flowbet', 'info']

SIGNALING_ROLES = {
    'sender': 'outdeg',
    'receiver': 'indeg',
    'mediator': 'flowbet',
    'influencer': 'info',
}

def _zeros(nodes):
    return {node: 0.0 for node in nodes}

def _hits(G, nodes):
    if G.size(weight='weight') == 0:
        return _zeros(nodes), _zeros(nodes)
    try:
        return nx.hits(G, max_iter=1000, normalized=True)
    except nx.PowerIterationFailedConvergence:
        logger.warning("HITS did not converge, hub and authority set to 0")
        return _zeros(nodes), _zeros(nodes)

def _eigen(G, nodes):
    if G.size(weight='weight') == 0:
        return _zeros(nodes)
    try:
        return nx.eigenvector_centrality(G, max_iter=1000, weight='weight')
    except (nx.PowerIterationFailedConvergence, nx.NetworkXException):
        logger.warning("Eigenvector centrality did not converge, set to 0")
        return _zeros(nodes)

def _symmetrized(weights, nodes):
    sym = weights + weights.T
    np.fill_diagonal(sym, 0)
    U = nx.from_numpy_array(sym)
    return nx.relabel_nodes(U, dict(enumerate(nodes)))

def network_centrality(weights, nodes):
    """
    Centrality measures of a weighted directed communication network

    Parameters
    ----------
    weights : array-like
        Sender x receiver communication probabilities
    nodes : list
        Group names

    Returns
    -------
    pandas.DataFrame
        Indexed by group, one column per measure in ``CENTRALITY_MEASURES``.
        ``flowbet`` and ``info`` are computed on the symmetrized network and
        are 0 when it is not connected
    """
    weights = np.asarray(weights, dtype=float)
    G = nx.relabel_nodes(nx.from_numpy_array(weights, create_using=nx.DiGraph), dict(enumerate(nodes)))

    result = pd.DataFrame(index=pd.Index(nodes, name='group'), columns=CENTRALITY_MEASURES, dtype=float)
    result['outdeg'] = weights.sum(axis=1)
    result['indeg'] = weights.sum(axis=0)
    result['outdeg_unweighted'] = (weights > 0).sum(axis=1)
    result['indeg_unweighted'] = (weights > 0).sum(axis=0)

    hub, authority = _hits(G, nodes)
    result['hub'] = pd.Series(hub)
    result['authority'] = pd.Series(authority)
    result['eigen'] = pd.Series(_eigen(G, nodes))
    result['page_rank'] = pd.Series(nx.pagerank(G, weight='weight')) if G.number_of_edges() else 0.0

    # shortest paths run on inverse probabilities
    for u, v, data in G.edges(data=True):
        data['distance'] = 1.0 / data['weight']
    result['betweenness'] = pd.Series(nx.betweenness_centrality(G, weight='distance', normalized=False))

    U = _symmetrized(weights, nodes)
    if len(nodes) > 1 and nx.is_connected(U):
        result['flowbet'] = pd.Series(nx.current_flow_betweenness_centrality(U, weight='weight'))
        result['info'] = pd.Series(nx.information_centrality(U, weight='weight'))
    else:
        logger.debug("Symmetrized network is not connected, flowbet and info set to 0")
        result['flowbet'] = 0.0
        result['info'] = 0.0

    return result.fillna(0.0)

def compute_centrality(adata, slot='netP', thresh=0.05):
    """
    Compute network centrality for each signaling network

    Parameters
    ----------
    adata : AnnData
        Output of ``compute_commun_prob_pathway`` (``slot='netP'``, one
        network per pathway) or ``compute_commun_prob`` (``slot='net'``, one
        network per ligand-receptor pair)
    slot : str, optional
        'netP' or 'net'
    thresh : float, optional
        P-value cutoff used for 'net'

    Returns
    -------
    adata : AnnData
        With a long DataFrame in ``uns['cellchat']['centrality'][slot]``
        holding ``network``, ``group`` and the measures. The network named
        'aggregate' sums all the others
    """
    info = adata.uns.get('cellchat', {})
    groups = [str(g) for g in info.get('groups', [])]
    if slot == 'netP':
        if 'netP' not in info:
            logger.error("No pathway probabilities found. Run compute_commun_prob_pathway first.")
            raise ValueError("No pathway probabilities found. Run compute_commun_prob_pathway first.")
        names = [str(p) for p in info['netP']['pathways']]
        prob = info['netP']['prob']
    elif slot == 'net':
        if 'net' not in info:
            logger.error("No communication probabilities found. Run compute_commun_prob first.")
            raise ValueError("No communication probabilities found. Run compute_commun_prob first.")
        names = [str(p) for p in info['lr_sig'].index]
        prob = info['net']['prob'].copy()
        prob[info['net']['pval'] >= thresh] = 0
    else:
        raise ValueError(f"Unsupported slot: {slot}. Options: 'net', 'netP'")

    logger.info(f"Computing centrality of {len(names)} networks in slot {slot}")
    tables = []
    for k, name in enumerate(names):
        table = network_centrality(prob[:, :, k], groups)
        table.insert(0, 'network', name)
        tables.append(table.reset_index())
    aggregate = network_centrality(prob.sum(axis=2), groups)
    aggregate.insert(0, 'network', 'aggregate')
    tables.append(aggregate.reset_index())

    centrality = pd.concat(tables, ignore_index=True)
    info.setdefault('centrality', {})
    info['centrality'][slot] = centrality

    return adata

def signaling_roles(adata, network='aggregate', slot='netP'):
    """
    Dominant sender, receiver, mediator and influencer scores per group

    Scores are the centrality measures named in ``SIGNALING_ROLES``.

    Returns
    -------
    pandas.DataFrame
        Indexed by group with columns sender, receiver, mediator, influencer
    """
    centrality = adata.uns.get('cellchat', {}).get('centrality', {})
    if slot not in centrality:
        logger.error(f"No centrality found for slot {slot}. Run compute_centrality first.")
        raise ValueError(f"No centrality found for slot {slot}. Run compute_centrality first.")
    table = centrality[slot]
    table = table[table['network'] == network]
    if table.empty:
        logger.error(f"Network {network} not found")
        raise ValueError(f"Network {network} not found")
    roles = table.set_index('group')[list(SIGNALING_ROLES.values())]
    roles.columns = list(SIGNALING_ROLES.keys())
    return roles
