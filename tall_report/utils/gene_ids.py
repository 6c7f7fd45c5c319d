"""
Gene identifier helpers.

Count tables from GEO arrive with Ensembl ids (often versioned), Entrez ids
or symbols. Enrichr and the gene set libraries expect HGNC symbols, so DEG
results are annotated before enrichment.
"""

import logging
import re
from typing import Dict, Iterable, List

import pandas as pd

logger = logging.getLogger(__name__)

ENSEMBL_PATTERN = re.compile(r'^ENS[A-Z]*G\d+')
VERSION_SUFFIX = re.compile(r'^(ENS[A-Z]*G\d+)\.\d+(_PAR_Y)?$')


def strip_version(gene_id: str) -> str:
    """ENSG00000141510.17 -> ENSG00000141510"""
    match = VERSION_SUFFIX.match(str(gene_id))
    if match is None:
        return str(gene_id)
    # PAR_Y copies are distinct rows in GENCODE; keep them apart
    return match.group(1) + (match.group(2) or '')


def detect_id_type(gene_ids: Iterable) -> str:
    """Return 'ensembl', 'entrez' or 'symbol' for a list of gene ids."""
    ids = [str(g) for g in gene_ids]
    if not ids:
        return "symbol"

    n_ensembl = sum(1 for g in ids if ENSEMBL_PATTERN.match(g))
    n_entrez = sum(1 for g in ids if g.isdigit())

    if n_ensembl / len(ids) > 0.5:
        return "ensembl"
    if n_entrez / len(ids) > 0.5:
        return "entrez"
    return "symbol"


def map_to_symbols(gene_ids: List[str], species: str = "human") -> Dict[str, str]:
    """Query MyGene.info for gene symbols. Unmapped ids are left out."""
    id_type = detect_id_type(gene_ids)
    if id_type == "symbol":
        return {g: g for g in gene_ids}

    import mygene

    scopes = "ensembl.gene" if id_type == "ensembl" else "entrezgene"
    query_ids = [strip_version(g) for g in gene_ids]

    logger.info(f"Querying MyGene.info for {len(query_ids)} {id_type} ids...")
    mg = mygene.MyGeneInfo()
    hits = mg.querymany(query_ids, scopes=scopes, fields='symbol',
                        species=species, verbose=False)

    # querymany returns one dict per hit; duplicates keep the first symbol
    mapping: Dict[str, str] = {}
    for hit in hits:
        query = str(hit.get('query'))
        if 'symbol' in hit and query not in mapping:
            mapping[query] = hit['symbol']

    logger.info(f"Mapped {len(mapping)}/{len(query_ids)} ids to symbols")
    return {g: mapping[strip_version(g)] for g in gene_ids if strip_version(g) in mapping}


def add_symbol_column(df: pd.DataFrame, species: str = "human",
                      id_column: str = "gene_id") -> pd.DataFrame:
    """Insert a gene_symbol column next to id_column, falling back to the id."""
    df = df.copy()
    mapping = map_to_symbols(df[id_column].astype(str).tolist(), species=species)
    symbols = df[id_column].astype(str).map(mapping).fillna(df[id_column].astype(str))
    df.insert(df.columns.get_loc(id_column) + 1, 'gene_symbol', symbols)
    return df
