import json

import numpy as np
import pandas as pd
import pytest

from spatialchat.analysis.centrality import compute_centrality
from spatialchat.analysis.communication import aggregate_net, compute_commun_prob_pathway
from spatialchat.utils.io import read_results, save_results


@pytest.fixture
def results(inferred):
    adata = compute_commun_prob_pathway(inferred)
    adata = aggregate_net(adata)
    return compute_centrality(adata)


def test_save_and_read_results(tmp_path, results):
    paths = save_results(results, tmp_path / "out")
    assert paths["h5ad"].exists()
    assert paths["manifest"].exists()

    tables = {p.name for p in paths["csv"].iterdir()}
    assert {"communications.csv", "pathway_communications.csv", "aggregated_count.csv",
            "aggregated_weight.csv", "centrality_netP.csv", "overexpressed_interactions.csv"} <= tables

    manifest = json.loads(paths["manifest"].read_text())
    assert manifest["groups"] == ["Astro", "Neuron", "Micro"]
    assert manifest["pathways"] == list(results.uns["cellchat"]["netP"]["pathways"])
    assert manifest["parameters"]["nboot"] == 20

    loaded = read_results(paths["h5ad"])
    info = loaded.uns["cellchat"]
    np.testing.assert_allclose(info["net"]["prob"], results.uns["cellchat"]["net"]["prob"])
    np.testing.assert_allclose(info["net"]["pval"], results.uns["cellchat"]["net"]["pval"])
    assert list(info["lr_sig"].index) == list(results.uns["cellchat"]["lr_sig"].index)
    assert (info["lr_sig"]["agonist"] == "").all()

    communications = pd.read_csv(paths["csv"] / "communications.csv")
    assert len(communications) == int(results.uns["cellchat"]["net"]["count"].to_numpy().sum())


def test_save_results_skips_unknown_formats(tmp_path, results):
    paths = save_results(results, tmp_path, save_formats=["csv", "loom"])
    assert "csv" in paths
    assert "h5ad" not in paths


def test_read_results_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_results(tmp_path / "missing.h5ad")
    path = tmp_path / "results.csv"
    path.write_text("a,b\n1,2\n")
    with pytest.raises(ValueError):
        read_results(path)
