"""
Multi-sample Spatial Communication Workflow

This workflow infers cell-cell communication from two replicate 10x Visium
sections of the mouse cortex using the spatialchat package. Each replicate
is an .h5ad file with label-transfer prediction scores in
``obsm['predictions']`` and a scalefactors_json.json sidecar.
"""

import logging
import pandas as pd
from pathlib import Path

from spatialchat.utils.logging import setup_logging, log_execution_time
from spatialchat.core.data_loader import (load_sample, prediction_matrix, assign_labels, prediction_categories,
                                          merge_samples, build_metadata, read_scalefactors,
                                          compute_spatial_factors)
from spatialchat.core.preprocessing import create_cellchat, subset_data
from spatialchat.analysis.database import load_database, subset_db
from spatialchat.analysis.overexpression import identify_overexpressed_genes, identify_overexpressed_interactions
from spatialchat.analysis.communication import (compute_commun_prob, filter_communication,
                                                compute_commun_prob_pathway, aggregate_net,
                                                subset_communication)
from spatialchat.analysis.centrality import compute_centrality, signaling_roles
from spatialchat.utils.io import save_results

SAMPLES = {
    'A1': ('data/visium_mouse_cortex_A1.h5ad', 'data/A1/scalefactors_json.json'),
    'A2': ('data/visium_mouse_cortex_A2.h5ad', 'data/A2/scalefactors_json.json'),
}

def main():
    # Set up logging
    logger = setup_logging(level="INFO", log_file="spatialchat_workflow.log")
    logger.info("Starting multi-sample spatial communication workflow")
    log_end = log_execution_time(logger)

    output_dir = Path("spatialchat_output")
    output_dir.mkdir(exist_ok=True)

    # Step 1: Load replicates and assign a label to every spot
    logger.info("Step 1: Loading replicates")
    adatas, labels, diameters = [], [], {}
    levels = None
    for sample_id, (path, scalefactors) in SAMPLES.items():
        adata = load_sample(path, sample_id)
        predictions = prediction_matrix(adata, 'predictions')
        sample_labels = assign_labels(predictions)
        sample_labels.index = [f"{barcode}_{sample_id}" for barcode in sample_labels.index]
        labels.append(sample_labels)
        levels = levels or prediction_categories(predictions)
        diameters[sample_id] = read_scalefactors(scalefactors)['spot_diameter_fullres']
        adatas.append(adata)

    # Step 2: Merge and build metadata
    logger.info("Step 2: Merging replicates")
    adata = merge_samples(adatas, list(SAMPLES))
    meta = build_metadata(pd.concat(labels).loc[adata.obs_names], adata.obs['samples'],
                          label_levels=levels, sample_levels=list(SAMPLES))
    spatial_factors = compute_spatial_factors(diameters, spot_size=65)
    print(spatial_factors)

    # Step 3: Database and communication object
    logger.info("Step 3: Preparing the ligand-receptor database")
    db = subset_db(load_database(species='mouse'), non_protein=False)
    adata = create_cellchat(adata, meta, spatial_factors, group_by='labels')
    adata = subset_data(adata, db)

    # Step 4: Over-expressed genes and interactions
    logger.info("Step 4: Identifying over-expressed signaling")
    adata = identify_overexpressed_genes(adata, n_workers=4)
    adata = identify_overexpressed_interactions(adata, db, variable_both=False)

    # Step 5: Communication probabilities
    logger.info("Step 5: Inferring communication")
    adata = compute_commun_prob(
        adata, db,
        type='truncatedMean',
        trim=0.1,
        distance_use=True,
        interaction_range=250,
        scale_distance=0.01,
        contact_dependent=True,
        contact_range=100,
        n_workers=4,
    )
    adata = filter_communication(adata, min_cells=10)
    adata = compute_commun_prob_pathway(adata)
    adata = aggregate_net(adata)

    # Step 6: Network analysis
    logger.info("Step 6: Network centrality")
    adata = compute_centrality(adata, slot='netP')
    print(signaling_roles(adata))

    communications = subset_communication(adata)
    logger.info(f"{len(communications)} significant communications")
    print(communications.head(20))
    print(adata.uns['cellchat']['net']['count'])

    # Step 7: Save results
    logger.info("Step 7: Saving results")
    save_results(adata, output_dir / "data")

    log_end("Workflow completed")

if __name__ == "__main__":
    main()
