import json

import numpy as np
import pandas as pd
import anndata as ad
import pytest

from spatialchat.analysis.database import load_database, subset_db
from spatialchat.core.data_loader import build_metadata, compute_spatial_factors, merge_samples
from spatialchat.core.preprocessing import create_cellchat, subset_data

GROUPS = ["Astro", "Neuron", "Micro"]
GENES = ["Cxcl12", "Cxcr4", "Ptn", "Ptprz1", "Cdh2", "Actb", "Gapdh"]

# genes high in each group, everything else is background
HIGH = {
    "Cxcl12": ["Astro"],
    "Cxcr4": ["Neuron"],
    "Ptn": ["Astro"],
    "Ptprz1": ["Astro"],
    "Cdh2": ["Neuron", "Micro"],
    "Actb": GROUPS,
    "Gapdh": GROUPS,
}

N_ROWS = 12
N_COLS = 12
SPACING = 100.0  # pixels, 1 pixel = 1 um with a 65 px spot diameter


def group_of_column(col):
    return GROUPS[col // 4]


def make_sample(sample_id, seed):
    """
    One synthetic Visium section: a 12 x 12 grid split into three vertical
    bands (Astro, Neuron, Micro) of four columns each
    """
    rng = np.random.default_rng(seed)
    barcodes, coords, labels = [], [], []
    for row in range(N_ROWS):
        for col in range(N_COLS):
            barcodes.append(f"r{row}c{col}")
            coords.append([col * SPACING, row * SPACING])
            labels.append(group_of_column(col))
    labels = np.asarray(labels)

    X = np.zeros((len(barcodes), len(GENES)))
    for k, gene in enumerate(GENES):
        high = np.isin(labels, HIGH[gene])
        X[:, k] = np.where(high, 3.0, 0.2) + rng.uniform(0, 0.3, size=len(barcodes))

    scores = pd.DataFrame(
        {g: np.where(labels == g, 0.8, 0.1) + rng.uniform(0, 0.05, size=len(barcodes)) for g in GROUPS},
        index=barcodes,
    )
    scores["max"] = scores.max(axis=1)

    adata = ad.AnnData(
        X=X,
        obs=pd.DataFrame(index=barcodes),
        var=pd.DataFrame(index=GENES),
    )
    adata.obsm["spatial"] = np.asarray(coords)
    adata.obsm["predictions"] = scores
    adata.uns["spatial"] = {sample_id: {"scalefactors": {"spot_diameter_fullres": 65.0}}}
    return adata, pd.Series(labels, index=barcodes)


@pytest.fixture
def samples():
    return {sid: make_sample(sid, seed) for sid, seed in [("A1", 0), ("A2", 1)]}


@pytest.fixture
def merged(samples):
    adatas = [samples[sid][0] for sid in ["A1", "A2"]]
    merged = merge_samples(adatas, ["A1", "A2"])
    labels = pd.concat(
        [pd.Series(samples[sid][1].to_numpy(), index=[f"{b}_{sid}" for b in samples[sid][1].index])
         for sid in ["A1", "A2"]]
    )
    meta = build_metadata(labels.loc[merged.obs_names], merged.obs["samples"],
                          label_levels=GROUPS, sample_levels=["A1", "A2"])
    factors = compute_spatial_factors({"A1": 65.0, "A2": 65.0}, spot_size=65)
    return merged, meta, factors


@pytest.fixture
def db():
    return subset_db(load_database(species="mouse"))


@pytest.fixture
def cellchat(merged, db):
    adata, meta, factors = merged
    adata = create_cellchat(adata, meta, factors, group_by="labels")
    return subset_data(adata, db)


@pytest.fixture
def sample_files(tmp_path, samples):
    """Both samples written as .h5ad files with scale factor sidecars"""
    paths = {}
    for sid, (adata, _) in samples.items():
        h5ad_path = tmp_path / f"{sid}.h5ad"
        adata.write_h5ad(h5ad_path)
        json_path = tmp_path / f"{sid}_scalefactors_json.json"
        json_path.write_text(json.dumps({"spot_diameter_fullres": 65.0, "tissue_hires_scalef": 0.17}))
        paths[sid] = (h5ad_path, json_path)
    return paths


@pytest.fixture
def overexpressed(cellchat, db):
    from spatialchat.analysis.overexpression import (identify_overexpressed_genes,
                                                     identify_overexpressed_interactions)
    adata = identify_overexpressed_genes(cellchat)
    return identify_overexpressed_interactions(adata, db, variable_both=True)


@pytest.fixture
def inferred(overexpressed, db):
    from spatialchat.analysis.communication import compute_commun_prob
    return compute_commun_prob(overexpressed, db, nboot=20, seed=1, n_workers=1, show_progress=False)
