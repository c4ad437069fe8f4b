import logging
from pathlib import Path

import pandas as pd

logger = logging.getLogger('spatialchat.analysis.database')

INTERACTION_COLUMNS = ['pathway_name', 'ligand', 'receptor', 'agonist', 'antagonist',
                       'co_A_receptor', 'co_I_receptor', 'annotation']
ANNOTATIONS = ['Secreted Signaling', 'ECM-Receptor', 'Cell-Cell Contact', 'Non-protein Signaling']

# (ligand, receptor, pathway, annotation, agonist, antagonist, co_A_receptor, co_I_receptor)
_MOUSE_INTERACTIONS = [
    ('Tgfb1', 'TGFbR1_R2', 'TGFb', 'Secreted Signaling', 'TGFb agonist', 'TGFb antagonist', '', 'TGFb inhibition receptor'),
    ('Tgfb2', 'TGFbR1_R2', 'TGFb', 'Secreted Signaling', 'TGFb agonist', 'TGFb antagonist', '', 'TGFb inhibition receptor'),
    ('Tgfb3', 'TGFbR1_R2', 'TGFb', 'Secreted Signaling', 'TGFb agonist', 'TGFb antagonist', '', 'TGFb inhibition receptor'),
    ('Bmp4', 'BMPR1A_BMPR2', 'BMP', 'Secreted Signaling', '', 'BMP antagonist', 'BMP coreceptor', ''),
    ('Bmp7', 'ACVR1_BMPR2', 'BMP', 'Secreted Signaling', '', 'BMP antagonist', 'BMP coreceptor', ''),
    ('Wnt7b', 'FZD1_LRP6', 'WNT', 'Secreted Signaling', '', '', '', ''),
    ('Wnt5a', 'Fzd3', 'ncWNT', 'Secreted Signaling', '', '', '', ''),
    ('Cxcl12', 'Cxcr4', 'CXCL', 'Secreted Signaling', '', '', '', ''),
    ('Cxcl12', 'Ackr3', 'CXCL', 'Secreted Signaling', '', '', '', ''),
    ('Vegfa', 'Flt1', 'VEGF', 'Secreted Signaling', '', '', '', ''),
    ('Vegfa', 'Kdr', 'VEGF', 'Secreted Signaling', '', '', '', ''),
    ('Ptn', 'Ptprz1', 'PTN', 'Secreted Signaling', '', '', '', ''),
    ('Ptn', 'Sdc3', 'PTN', 'Secreted Signaling', '', '', '', ''),
    ('Ptn', 'Ncl', 'PTN', 'Secreted Signaling', '', '', '', ''),
    ('Mdk', 'Ptprz1', 'MK', 'Secreted Signaling', '', '', '', ''),
    ('Mdk', 'Sdc2', 'MK', 'Secreted Signaling', '', '', '', ''),
    ('Mdk', 'Ncl', 'MK', 'Secreted Signaling', '', '', '', ''),
    ('Mdk', 'Lrp1', 'MK', 'Secreted Signaling', '', '', '', ''),
    ('Psap', 'Gpr37l1', 'PSAP', 'Secreted Signaling', '', '', '', ''),
    ('Psap', 'Gpr37', 'PSAP', 'Secreted Signaling', '', '', '', ''),
    ('Spp1', 'Cd44', 'SPP1', 'Secreted Signaling', '', '', '', ''),
    ('Spp1', 'ITGAV_ITGB3', 'SPP1', 'Secreted Signaling', '', '', '', ''),
    ('Mif', 'CD74_CXCR4', 'MIF', 'Secreted Signaling', '', '', '', ''),
    ('Sema3a', 'NRP1_PLXNA4', 'SEMA3', 'Secreted Signaling', '', '', '', ''),
    ('Bdnf', 'Ntrk2', 'NT', 'Secreted Signaling', '', '', '', ''),
    ('Sst', 'Sstr2', 'SOMATOSTATIN', 'Secreted Signaling', '', '', '', ''),
    ('Cck', 'Cckbr', 'CCK', 'Secreted Signaling', '', '', '', ''),
    ('Col4a1', 'ITGA1_ITGB1', 'COLLAGEN', 'ECM-Receptor', '', '', '', ''),
    ('Col4a2', 'ITGA1_ITGB1', 'COLLAGEN', 'ECM-Receptor', '', '', '', ''),
    ('Lama2', 'Dag1', 'LAMININ', 'ECM-Receptor', '', '', '', ''),
    ('Fn1', 'ITGA4_ITGB1', 'FN1', 'ECM-Receptor', '', '', '', ''),
    ('Fn1', 'Cd44', 'FN1', 'ECM-Receptor', '', '', '', ''),
    ('Nrxn1', 'Nlgn1', 'NRXN', 'Cell-Cell Contact', '', '', '', ''),
    ('Nrxn3', 'Nlgn1', 'NRXN', 'Cell-Cell Contact', '', '', '', ''),
    ('Cadm1', 'Cadm1', 'CADM', 'Cell-Cell Contact', '', '', '', ''),
    ('Ncam1', 'Ncam1', 'NCAM', 'Cell-Cell Contact', '', '', '', ''),
    ('Cdh2', 'Cdh2', 'CDH', 'Cell-Cell Contact', '', '', '', ''),
    ('Jag1', 'Notch1', 'NOTCH', 'Cell-Cell Contact', '', '', '', ''),
    ('Dll1', 'Notch1', 'NOTCH', 'Cell-Cell Contact', '', '', '', ''),
    ('Efnb2', 'Ephb2', 'EPHB', 'Cell-Cell Contact', '', '', '', ''),
    ('Ptprm', 'Ptprm', 'PTPRM', 'Cell-Cell Contact', '', '', '', ''),
    ('Glu_Gls', 'Grm5', 'Glutamate', 'Non-protein Signaling', '', '', '', ''),
    ('GABA_Gad1', 'GABBR1_GABBR2', 'GABA-B', 'Non-protein Signaling', '', '', '', ''),
]

_MOUSE_COMPLEXES = {
    'TGFbR1_R2': ['Tgfbr1', 'Tgfbr2'],
    'BMPR1A_BMPR2': ['Bmpr1a', 'Bmpr2'],
    'ACVR1_BMPR2': ['Acvr1', 'Bmpr2'],
    'FZD1_LRP6': ['Fzd1', 'Lrp6'],
    'ITGAV_ITGB3': ['Itgav', 'Itgb3'],
    'CD74_CXCR4': ['Cd74', 'Cxcr4'],
    'NRP1_PLXNA4': ['Nrp1', 'Plxna4'],
    'ITGA1_ITGB1': ['Itga1', 'Itgb1'],
    'ITGA4_ITGB1': ['Itga4', 'Itgb1'],
    'Glu_Gls': ['Gls', 'Slc17a7'],
    'GABA_Gad1': ['Gad1', 'Slc32a1'],
    'GABBR1_GABBR2': ['Gabbr1', 'Gabbr2'],
}

_MOUSE_COFACTORS = {
    'TGFb agonist': ['Thbs1'],
    'TGFb antagonist': ['Ltbp1', 'Dcn'],
    'TGFb inhibition receptor': ['Bambi'],
    'BMP antagonist': ['Nog', 'Chrd'],
    'BMP coreceptor': ['Rgmb'],
}

class LRDatabase:
    """
    Ligand-receptor database in the layout of CellChatDB

    Attributes
    ----------
    interaction : pandas.DataFrame
        Indexed by interaction name, columns ``INTERACTION_COLUMNS``.
        Missing cofactor references are empty strings
    complex : pandas.DataFrame
        Indexed by complex name, ``subunit_*`` columns
    cofactor : pandas.DataFrame
        Indexed by cofactor name, ``cofactor*`` columns
    gene_info : pandas.DataFrame
        ``Symbol`` column with the official gene symbols
    """

    def __init__(self, interaction, complex=None, cofactor=None, gene_info=None, species=None):
        missing = [col for col in ['ligand', 'receptor'] if col not in interaction.columns]
        if missing:
            raise ValueError(f"Interaction table lacks required columns: {missing}")
        interaction = interaction.copy()
        for col in INTERACTION_COLUMNS:
            if col not in interaction.columns:
                interaction[col] = ''
        interaction[INTERACTION_COLUMNS] = interaction[INTERACTION_COLUMNS].fillna('').astype(str)
        interaction.index = interaction.index.astype(str)
        self.interaction = interaction
        self.complex = complex if complex is not None else pd.DataFrame()
        self.cofactor = cofactor if cofactor is not None else pd.DataFrame()
        self.gene_info = gene_info if gene_info is not None else pd.DataFrame(columns=['Symbol'])
        self.species = species

    def __repr__(self):
        return (f"LRDatabase(species={self.species!r}, interactions={len(self.interaction)}, "
                f"complexes={len(self.complex)}, cofactors={len(self.cofactor)})")

    def copy(self):
        return LRDatabase(self.interaction.copy(), self.complex.copy(), self.cofactor.copy(),
                          self.gene_info.copy(), self.species)

    def complex_subunits(self, name):
        """Subunit genes of a complex, empty list if ``name`` is not a complex"""
        if self.complex.empty or name not in self.complex.index:
            return []
        cols = [col for col in self.complex.columns if 'subunit' in col]
        return _non_empty(self.complex.loc[name, cols])

    def cofactor_genes(self, name):
        """Genes of a cofactor entry, empty list if unknown"""
        if not name or self.cofactor.empty or name not in self.cofactor.index:
            return []
        cols = [col for col in self.cofactor.columns if col.startswith('cofactor')]
        return _non_empty(self.cofactor.loc[name, cols])

    def member_genes(self, name):
        """Genes making up a ligand or receptor entry"""
        subunits = self.complex_subunits(name)
        return subunits if subunits else [name]

def _non_empty(values):
    return [str(v).strip() for v in values if pd.notna(v) and str(v).strip() != '']

def _builtin_tables(species):
    if species == 'mouse':
        convert = str
    elif species == 'human':
        convert = str.upper
    else:
        raise ValueError(f"Unknown species {species}. Options: 'human', 'mouse'")

    def gene(name):
        return name if name in _MOUSE_COMPLEXES else convert(name)

    rows = []
    for ligand, receptor, pathway, annotation, agonist, antagonist, co_a, co_i in _MOUSE_INTERACTIONS:
        name_parts = [convert(g) for g in _MOUSE_COMPLEXES.get(ligand, [ligand])]
        name_parts += [convert(g) for g in _MOUSE_COMPLEXES.get(receptor, [receptor])]
        rows.append({
            'interaction_name': '_'.join(name_parts).upper(),
            'pathway_name': pathway,
            'ligand': gene(ligand),
            'receptor': gene(receptor),
            'agonist': agonist,
            'antagonist': antagonist,
            'co_A_receptor': co_a,
            'co_I_receptor': co_i,
            'annotation': annotation,
        })
    interaction = pd.DataFrame(rows).drop_duplicates('interaction_name').set_index('interaction_name')

    width = max(len(v) for v in _MOUSE_COMPLEXES.values())
    complex_table = pd.DataFrame(
        [[convert(g) for g in genes] + [''] * (width - len(genes)) for genes in _MOUSE_COMPLEXES.values()],
        index=list(_MOUSE_COMPLEXES.keys()),
        columns=[f'subunit_{i + 1}' for i in range(width)],
    )

    width = max(len(v) for v in _MOUSE_COFACTORS.values())
    cofactor_table = pd.DataFrame(
        [[convert(g) for g in genes] + [''] * (width - len(genes)) for genes in _MOUSE_COFACTORS.values()],
        index=list(_MOUSE_COFACTORS.keys()),
        columns=[f'cofactor{i + 1}' for i in range(width)],
    )

    return interaction, complex_table, cofactor_table

def load_database(path=None, species='mouse'):
    """
    Load a ligand-receptor database

    Parameters
    ----------
    path : str or Path, optional
        Directory holding ``interaction.csv``, and optionally
        ``complex.csv``, ``cofactor.csv`` and ``geneInfo.csv`` (first column
        is the row name). If None, the built-in table for ``species`` is used
    species : str, optional
        Species of the built-in table. Options: 'human', 'mouse'

    Returns
    -------
    LRDatabase
    """
    if path is None:
        interaction, complex_table, cofactor_table = _builtin_tables(species)
        db = LRDatabase(interaction, complex_table, cofactor_table, species=species)
        db.gene_info = pd.DataFrame({'Symbol': extract_genes(db)})
        logger.info(f"Using built-in {species} database with {len(db.interaction)} interactions")
        return db

    path = Path(path)
    interaction_path = path / 'interaction.csv'
    if not interaction_path.exists():
        raise FileNotFoundError(f"Interaction table not found: {interaction_path}")
    interaction = pd.read_csv(interaction_path, index_col=0, dtype=str)

    tables = {}
    for name in ['complex', 'cofactor', 'geneInfo']:
        table_path = path / f'{name}.csv'
        if table_path.exists():
            tables[name] = pd.read_csv(table_path, index_col=0, dtype=str).fillna('')
        else:
            logger.warning(f"No {name} table found in {path}")
            tables[name] = None

    db = LRDatabase(interaction, tables['complex'], tables['cofactor'], tables['geneInfo'], species=species)
    logger.info(f"Loaded database from {path}: {db}")

    return db

def subset_db(db, search=None, key='annotation', non_protein=False):
    """
    Keep a subset of the interactions

    Parameters
    ----------
    db : LRDatabase
        Database to subset
    search : str or list, optional
        Values of ``key`` to keep. If None, every protein interaction is kept
    key : str, optional
        Column of the interaction table matched against ``search``
    non_protein : bool, optional
        Keep 'Non-protein Signaling' when ``search`` is None

    Returns
    -------
    LRDatabase
        A new database with copies of the complex and cofactor tables
    """
    interaction = db.interaction
    if search is None:
        if non_protein:
            kept = interaction
        else:
            kept = interaction[interaction['annotation'] != 'Non-protein Signaling']
    else:
        if isinstance(search, str):
            search = [search]
        if key not in interaction.columns:
            logger.error(f"Column {key} not found in the interaction table")
            raise ValueError(f"Column {key} not found in the interaction table")
        kept = interaction[interaction[key].isin(search)]

    if kept.empty:
        logger.error(f"No interactions left after subsetting with {key}={search}")
        raise ValueError(f"No interactions left after subsetting with {key}={search}")

    logger.info(f"Kept {len(kept)} of {len(interaction)} interactions")
    subset = db.copy()
    subset.interaction = kept.copy()
    return subset

def extract_genes(db):
    """
    All gene symbols used by a database

    Ligands and receptors are expanded through complexes, and genes of the
    cofactors referenced by the interactions are added.

    Returns
    -------
    list
        Sorted unique gene symbols
    """
    genes = set()
    interaction = db.interaction
    for name in pd.unique(pd.concat([interaction['ligand'], interaction['receptor']])):
        if name:
            genes.update(db.member_genes(name))
    for col in ['agonist', 'antagonist', 'co_A_receptor', 'co_I_receptor']:
        for name in interaction[col].unique():
            genes.update(db.cofactor_genes(name))
    return sorted(genes)
