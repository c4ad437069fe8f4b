import numpy as np
import pandas as pd
import pytest

from spatialchat.core.preprocessing import create_cellchat, normalize_data, subset_data


def test_create_cellchat_converts_coordinates(merged):
    adata, meta, factors = merged
    factors = factors.copy()
    factors.loc["A2", "ratio"] = 0.5
    result = create_cellchat(adata, meta, factors)

    a1 = result.obs["samples"] == "A1"
    np.testing.assert_allclose(result.obsm["spatial_um"][a1.to_numpy()], adata.obsm["spatial"][a1.to_numpy()])
    np.testing.assert_allclose(result.obsm["spatial_um"][~a1.to_numpy()],
                               adata.obsm["spatial"][~a1.to_numpy()] * 0.5)
    assert list(result.obs["labels"].cat.categories) == ["Astro", "Neuron", "Micro"]
    assert result.uns["cellchat"]["group_by"] == "labels"
    # input untouched
    assert "spatial_um" not in adata.obsm


def test_create_cellchat_rejects_numeric_labels(merged):
    adata, meta, factors = merged
    meta = meta.copy()
    meta["labels"] = pd.Categorical(meta["labels"].astype(str).replace({"Astro": "1"}))
    with pytest.raises(ValueError):
        create_cellchat(adata, meta, factors)


def test_create_cellchat_needs_factors_for_every_sample(merged):
    adata, meta, factors = merged
    with pytest.raises(ValueError):
        create_cellchat(adata, meta, factors.loc[["A1"]])


def test_create_cellchat_needs_metadata_columns(merged):
    adata, meta, factors = merged
    with pytest.raises(ValueError):
        create_cellchat(adata, meta.drop(columns="samples"), factors)


def test_subset_data_records_database_genes(cellchat):
    genes = set(cellchat.uns["cellchat"]["genes_use"])
    assert genes == {"Cxcl12", "Cxcr4", "Ptn", "Ptprz1", "Cdh2"}
    assert cellchat.n_vars == 7


def test_subset_data_fails_without_overlap(merged, db):
    adata, meta, factors = merged
    adata = create_cellchat(adata[:, ["Actb", "Gapdh"]].copy(), meta, factors)
    with pytest.raises(ValueError):
        subset_data(adata, db)


def test_normalize_data_keeps_counts(merged):
    adata = merged[0].copy()
    raw = adata.X.copy()
    adata = normalize_data(adata)
    np.testing.assert_allclose(adata.layers["counts"], raw)
    np.testing.assert_allclose(np.expm1(adata.X).sum(axis=1), 1e4, rtol=1e-5)
