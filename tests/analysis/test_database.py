import pandas as pd
import pytest

from spatialchat.analysis.database import (
    ANNOTATIONS,
    INTERACTION_COLUMNS,
    LRDatabase,
    extract_genes,
    load_database,
    subset_db,
)


def test_builtin_mouse_database():
    db = load_database(species="mouse")
    assert "CXCL12_CXCR4" in db.interaction.index
    assert "TGFB1_TGFBR1_TGFBR2" in db.interaction.index
    assert set(INTERACTION_COLUMNS) <= set(db.interaction.columns)
    assert set(db.interaction["annotation"]) <= set(ANNOTATIONS)
    assert db.complex_subunits("TGFbR1_R2") == ["Tgfbr1", "Tgfbr2"]
    assert db.member_genes("Cxcr4") == ["Cxcr4"]
    assert db.cofactor_genes("TGFb antagonist") == ["Ltbp1", "Dcn"]
    assert db.cofactor_genes("") == []


def test_builtin_human_database_uses_upper_case_symbols():
    db = load_database(species="human")
    assert db.interaction.loc["CXCL12_CXCR4", "ligand"] == "CXCL12"
    assert db.complex_subunits("TGFbR1_R2") == ["TGFBR1", "TGFBR2"]
    with pytest.raises(ValueError):
        load_database(species="zebrafish")


def test_subset_db_drops_non_protein_by_default():
    db = load_database(species="mouse")
    assert (subset_db(db).interaction["annotation"] != "Non-protein Signaling").all()
    assert len(subset_db(db, non_protein=True).interaction) == len(db.interaction)


def test_subset_db_search():
    db = load_database(species="mouse")
    contact = subset_db(db, search="Cell-Cell Contact")
    assert set(contact.interaction["annotation"]) == {"Cell-Cell Contact"}
    cxcl = subset_db(db, search=["CXCL"], key="pathway_name")
    assert set(cxcl.interaction.index) == {"CXCL12_CXCR4", "CXCL12_ACKR3"}
    with pytest.raises(ValueError):
        subset_db(db, search=["nothing"])
    with pytest.raises(ValueError):
        subset_db(db, search=["CXCL"], key="no_such_column")


def test_subset_db_copies_complex_and_cofactor_tables():
    db = load_database(species="mouse")
    subset = subset_db(db, search=["TGFb"], key="pathway_name")
    subset.complex.loc["TGFbR1_R2", "subunit_1"] = "Other"
    subset.cofactor.loc["TGFb agonist", "cofactor1"] = "Other"
    assert db.complex_subunits("TGFbR1_R2") == ["Tgfbr1", "Tgfbr2"]
    assert db.cofactor_genes("TGFb agonist") == ["Thbs1"]


def test_extract_genes_expands_complexes_and_cofactors():
    db = subset_db(load_database(species="mouse"), search=["TGFb"], key="pathway_name")
    genes = extract_genes(db)
    assert genes == sorted(genes)
    assert {"Tgfb1", "Tgfbr1", "Tgfbr2", "Thbs1", "Ltbp1", "Dcn", "Bambi"} <= set(genes)
    assert "TGFbR1_R2" not in genes


def test_load_database_from_csv(tmp_path):
    interaction = pd.DataFrame(
        {
            "pathway_name": ["P1", "P2"],
            "ligand": ["LigA", "LigB"],
            "receptor": ["RecA", "RC"],
            "annotation": ["Secreted Signaling", "Cell-Cell Contact"],
            "co_A_receptor": ["", "CoA"],
        },
        index=["LIGA_RECA", "LIGB_RECB1_RECB2"],
    )
    interaction.to_csv(tmp_path / "interaction.csv")
    pd.DataFrame({"subunit_1": ["RecB1"], "subunit_2": ["RecB2"]}, index=["RC"]).to_csv(tmp_path / "complex.csv")
    pd.DataFrame({"cofactor1": ["CoGene"]}, index=["CoA"]).to_csv(tmp_path / "cofactor.csv")

    db = load_database(tmp_path)
    assert isinstance(db, LRDatabase)
    assert db.interaction.loc["LIGA_RECA", "agonist"] == ""
    assert db.member_genes("RC") == ["RecB1", "RecB2"]
    assert extract_genes(db) == ["CoGene", "LigA", "LigB", "RecA", "RecB1", "RecB2"]

    with pytest.raises(FileNotFoundError):
        load_database(tmp_path / "missing")


def test_database_requires_ligand_and_receptor():
    with pytest.raises(ValueError):
        LRDatabase(pd.DataFrame({"ligand": ["A"]}))
