import json

import numpy as np
import pandas as pd
import pytest

from spatialchat.core.data_loader import (
    assign_labels,
    build_metadata,
    compute_spatial_factors,
    load_data,
    load_sample,
    merge_samples,
    prediction_categories,
    prediction_matrix,
    read_scalefactors,
    scalefactors_from_uns,
)


def _predictions():
    # categories x spots, trailing row is the per-spot maximum
    return pd.DataFrame(
        [[0.7, 0.1, 0.4], [0.2, 0.8, 0.4], [0.1, 0.1, 0.2], [0.7, 0.8, 0.4]],
        index=["Astro", "Neuron", "Micro", "max"],
        columns=["s1", "s2", "s3"],
    )


def test_assign_labels_ignores_trailing_row_and_takes_max():
    labels = assign_labels(_predictions())
    assert labels.name == "labels"
    assert labels.to_dict() == {"s1": "Astro", "s2": "Neuron", "s3": "Astro"}


def test_assign_labels_tie_goes_to_first_category():
    labels = assign_labels(_predictions())
    # s3 ties Astro and Neuron at 0.4
    assert labels["s3"] == "Astro"


def test_assign_labels_keeps_last_row_when_asked():
    preds = _predictions().iloc[:-1]
    labels = assign_labels(preds, drop_last=False)
    assert list(labels) == ["Astro", "Neuron", "Astro"]


def test_assign_labels_rejects_bad_input():
    with pytest.raises(ValueError):
        assign_labels(pd.DataFrame())
    with pytest.raises(ValueError):
        assign_labels(_predictions().iloc[:1])
    preds = _predictions()
    preds.iloc[0, 0] = np.nan
    with pytest.raises(ValueError):
        assign_labels(preds)


def test_prediction_categories_in_row_order():
    assert prediction_categories(_predictions()) == ["Astro", "Neuron", "Micro"]


def test_prediction_matrix_from_dataframe_and_array(samples):
    adata, _ = samples["A1"]
    preds = prediction_matrix(adata)
    assert list(preds.index) == ["Astro", "Neuron", "Micro", "max"]
    assert list(preds.columns) == list(adata.obs_names)

    adata = adata.copy()
    adata.obsm["predictions"] = preds.T.to_numpy()
    adata.uns["predictions_categories"] = list(preds.index)
    from_array = prediction_matrix(adata)
    np.testing.assert_allclose(from_array.to_numpy(), preds.to_numpy())


def test_prediction_matrix_array_needs_categories(samples):
    adata, _ = samples["A1"]
    adata = adata.copy()
    adata.obsm["predictions"] = np.zeros((adata.n_obs, 4))
    with pytest.raises(ValueError):
        prediction_matrix(adata)


def test_load_sample(sample_files):
    adata = load_sample(sample_files["A1"][0], "A1")
    assert adata.n_obs == 144
    with pytest.raises(FileNotFoundError):
        load_sample(sample_files["A1"][0].parent / "missing.h5ad")


def test_load_sample_requires_predictions(tmp_path, samples):
    adata, _ = samples["A1"]
    adata = adata.copy()
    del adata.obsm["predictions"]
    path = tmp_path / "no_predictions.h5ad"
    adata.write_h5ad(path)
    with pytest.raises(ValueError):
        load_sample(path)


def test_merge_samples_suffixes_barcodes(samples):
    merged = merge_samples([samples["A1"][0], samples["A2"][0]], ["A1", "A2"])
    assert merged.n_obs == 288
    assert "r0c0_A1" in merged.obs_names
    assert "r0c0_A2" in merged.obs_names
    assert list(merged.obs["samples"].cat.categories) == ["A1", "A2"]
    assert list(merged.obsm.keys()) == ["spatial"]


def test_merge_samples_rejects_duplicate_ids(samples):
    with pytest.raises(ValueError):
        merge_samples([samples["A1"][0], samples["A2"][0]], ["A1", "A1"])


def test_build_metadata_categories():
    labels = pd.Series(["Neuron", "Astro", "Neuron"], index=["a", "b", "c"])
    samples = pd.Series(["A1", "A1", "A2"], index=["a", "b", "c"])
    meta = build_metadata(labels, samples, label_levels=["Astro", "Neuron", "Micro"])
    assert list(meta["labels"].cat.categories) == ["Astro", "Neuron"]
    assert list(meta["samples"].cat.categories) == ["A1", "A2"]

    with pytest.raises(ValueError):
        build_metadata(labels, samples, label_levels=["Astro"])


def test_compute_spatial_factors():
    factors = compute_spatial_factors({"A1": 130.0, "A2": 65.0}, spot_size=65)
    assert factors.loc["A1", "ratio"] == pytest.approx(0.5)
    assert factors.loc["A2", "ratio"] == pytest.approx(1.0)
    assert (factors["tol"] == 32.5).all()
    with pytest.raises(ValueError):
        compute_spatial_factors({"A1": 0})


def test_read_scalefactors(tmp_path):
    path = tmp_path / "scalefactors_json.json"
    path.write_text(json.dumps({"spot_diameter_fullres": 89.4}))
    assert read_scalefactors(path)["spot_diameter_fullres"] == 89.4

    path.write_text(json.dumps({"tissue_hires_scalef": 0.1}))
    with pytest.raises(ValueError):
        read_scalefactors(path)
    with pytest.raises(FileNotFoundError):
        read_scalefactors(tmp_path / "missing.json")


def test_scalefactors_from_uns(samples):
    adata, _ = samples["A2"]
    assert scalefactors_from_uns(adata)["spot_diameter_fullres"] == 65.0
    with pytest.raises(ValueError):
        scalefactors_from_uns(adata, library_id="B1")


def test_load_data_from_csv(tmp_path):
    path = tmp_path / "spots.csv"
    pd.DataFrame(
        {"x": [0.0, 100.0], "y": [0.0, 0.0], "Cxcl12": [1.0, 0.0], "Cxcr4": [0.0, 2.0]},
        index=["s1", "s2"],
    ).to_csv(path)
    adata = load_data(path, format="csv")
    assert list(adata.var_names) == ["Cxcl12", "Cxcr4"]
    np.testing.assert_allclose(adata.obsm["spatial"], [[0.0, 0.0], [100.0, 0.0]])
    with pytest.raises(ValueError):
        load_data(path, format="loom")


def test_build_metadata_levels_follow_predictions():
    labels = pd.Series(["Neuron", "Astro", "Micro"], index=["s1", "s2", "s3"])
    samples = pd.Series(["A1", "A1", "A1"], index=["s1", "s2", "s3"])
    meta = build_metadata(labels, samples, predictions=_predictions())
    assert list(meta["labels"].cat.categories) == ["Astro", "Neuron", "Micro"]

    # explicit levels win over the prediction order
    meta = build_metadata(labels, samples, label_levels=["Micro", "Neuron", "Astro"],
                          predictions=_predictions())
    assert list(meta["labels"].cat.categories) == ["Micro", "Neuron", "Astro"]

    # without predictions the labels are sorted
    meta = build_metadata(labels, samples)
    assert list(meta["labels"].cat.categories) == ["Astro", "Micro", "Neuron"]
