import logging

import pytest
import scanpy as sc

from spatialchat.analysis.communication import compute_commun_prob, filter_communication
from spatialchat.analysis.overexpression import identify_overexpressed_genes, identify_overexpressed_interactions


def test_overexpressed_genes_found_by_wilcoxon(cellchat):
    adata = identify_overexpressed_genes(cellchat)
    info = adata.uns["cellchat"]
    assert {"Cxcl12", "Cxcr4", "Ptn", "Ptprz1", "Cdh2"} == set(info["var_features"])

    markers = info["markers"]
    assert (markers["pvalues"] < 0.05).all()
    assert (markers["logFC"] > 0).all()
    top_astro = markers[markers["group"] == "Astro"]["features"]
    assert "Cxcl12" in set(top_astro)
    assert "Cxcr4" not in set(top_astro)


def test_overexpressed_genes_without_testing(cellchat):
    adata = identify_overexpressed_genes(cellchat, do_de=False, min_cells=10)
    assert len(adata.uns["cellchat"]["var_features"]) == 5
    assert "markers" not in adata.uns["cellchat"]


def test_overexpressed_genes_requires_object(merged):
    with pytest.raises(ValueError):
        identify_overexpressed_genes(merged[0])


def test_overexpressed_interactions(cellchat, db):
    adata = identify_overexpressed_genes(cellchat)
    adata = identify_overexpressed_interactions(adata, db, variable_both=True)
    lr_sig = adata.uns["cellchat"]["lr_sig"]
    assert set(lr_sig.index) == {"CXCL12_CXCR4", "PTN_PTPRZ1", "CDH2_CDH2"}


def test_one_sided_interactions_need_measured_partner(cellchat, db):
    adata = identify_overexpressed_genes(cellchat, features=["Cxcl12", "Ptn", "Cdh2"])
    both = identify_overexpressed_interactions(adata.copy(), db, variable_both=True)
    assert set(both.uns["cellchat"]["lr_sig"].index) == {"CDH2_CDH2"}

    # Cxcr4 and Ptprz1 are measured, Ackr3 and Sdc3 are not
    one = identify_overexpressed_interactions(adata, db, variable_both=False)
    assert set(one.uns["cellchat"]["lr_sig"].index) == {"CXCL12_CXCR4", "PTN_PTPRZ1", "CDH2_CDH2"}


def test_no_interactions_raises(cellchat, db):
    adata = identify_overexpressed_genes(cellchat, features=["Cxcl12"])
    with pytest.raises(ValueError):
        identify_overexpressed_interactions(adata, db, variable_both=True)


def _with_single_spot_group(adata):
    adata = adata.copy()
    labels = adata.obs["labels"].cat.add_categories("Oligo")
    labels.iloc[0] = "Oligo"
    adata.obs["labels"] = labels
    return adata


def test_single_spot_group_is_skipped(cellchat, caplog):
    adata = _with_single_spot_group(cellchat)
    with caplog.at_level(logging.WARNING, logger="spatialchat.analysis.overexpression"):
        adata = identify_overexpressed_genes(adata)
    assert "Oligo" in caplog.text
    info = adata.uns["cellchat"]
    assert "Oligo" not in set(info["markers"]["group"])
    assert {"Cxcl12", "Cxcr4", "Ptn", "Ptprz1", "Cdh2"} == set(info["var_features"])


def test_single_spot_group_is_zeroed_by_filter(cellchat, db):
    adata = identify_overexpressed_genes(_with_single_spot_group(cellchat))
    adata = identify_overexpressed_interactions(adata, db)
    adata = compute_commun_prob(adata, db, nboot=5, n_workers=1, show_progress=False)
    adata = filter_communication(adata, min_cells=10)
    net = adata.uns["cellchat"]["net"]
    oligo = list(adata.uns["cellchat"]["groups"]).index("Oligo")
    assert (net["prob"][oligo] == 0).all()
    assert (net["prob"][:, oligo] == 0).all()
    assert (net["pval"][oligo] == 1).all()


def test_worker_count_does_not_leak_into_scanpy(cellchat):
    before = sc.settings.n_jobs
    identify_overexpressed_genes(cellchat, n_workers=before + 3)
    assert sc.settings.n_jobs == before
