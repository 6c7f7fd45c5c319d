"""
Agent 3: Pathway Enrichment Analysis

Over-representation analysis (Enrichr) on the up- and down-regulated DEG
lists, GSEA prerank on the full ranked gene list, and shareable Enrichr
links for each list.

Input:
- deg_significant.csv: From Agent 2
- ranked_genes.csv: From Agent 2

Output:
- pathway_ora.csv: All significant ORA terms (both directions, all libraries)
- pathway_summary.csv: Top terms per library and direction
- gsea_results.csv: GSEA prerank results
- gene_to_pathway.csv: Gene to pathway mapping
- enrichr_links.json: Shareable Enrichr links per direction
- meta_agent3_pathway.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import gseapy as gp

from ..external_apis.enrichr_client import EnrichrClient
from ..utils.base_agent import BaseAgent

ORA_COLUMNS = [
    'term_name', 'pvalue', 'padj', 'odds_ratio', 'combined_score',
    'overlap', 'genes', 'gene_count', 'database', 'direction'
]
GSEA_COLUMNS = [
    'term_name', 'gene_set', 'es', 'nes', 'pvalue', 'fdr',
    'gene_pct', 'tag_pct', 'lead_genes'
]


def standardize_gsea(res2d: pd.DataFrame) -> pd.DataFrame:
    """Rename gseapy prerank output columns and split the library prefix."""
    results = res2d.rename(columns={
        'Term': 'term_name',
        'ES': 'es',
        'NES': 'nes',
        'NOM p-val': 'pvalue',
        'FDR q-val': 'fdr',
        'Gene %': 'gene_pct',
        'Tag %': 'tag_pct',
        'Lead_genes': 'lead_genes',
    }).copy()

    for col in ('es', 'nes', 'pvalue', 'fdr'):
        results[col] = pd.to_numeric(results[col], errors='coerce')

    # With several libraries gseapy prefixes terms as "Library__Term"
    split = results['term_name'].astype(str).str.split('__', n=1, expand=True)
    if split.shape[1] == 2:
        has_prefix = split[1].notna()
        results['gene_set'] = split[0].where(has_prefix, '')
        results['term_name'] = split[1].where(has_prefix, split[0])
    else:
        results['gene_set'] = ''

    for col in GSEA_COLUMNS:
        if col not in results.columns:
            results[col] = ''

    return results[GSEA_COLUMNS].sort_values(['fdr', 'pvalue']).reset_index(drop=True)


class PathwayAgent(BaseAgent):
    """Agent for Enrichr ORA, GSEA prerank and shareable Enrichr links."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "organism": "human",
            "ora_libraries": ["GO_Biological_Process_2023", "KEGG_2021_Human",
                              "Reactome_2022", "MSigDB_Hallmark_2020"],
            "gsea_libraries": ["MSigDB_Hallmark_2020", "KEGG_2021_Human"],
            "pvalue_cutoff": 0.05,
            "min_genes": 3,
            "top_terms": 20,  # Top terms to report per library
            "summary_terms": 5,  # Per library and direction in the summary
            "gsea_min_size": 15,
            "gsea_max_size": 500,
            "gsea_permutations": 1000,
            "gsea_fdr_cutoff": 0.25,
            "seed": 42,
            "threads": 1,
            "create_share_links": True,
            "cell_line": "T-ALL cell line",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_pathway", input_dir, output_dir, merged_config)

        self.deg_significant: Optional[pd.DataFrame] = None
        self.ranked_genes: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate DEG input."""
        self.deg_significant = self.load_csv("deg_significant.csv")
        self.ranked_genes = self.load_csv("ranked_genes.csv", required=False)

        if 'direction' not in self.deg_significant.columns:
            self.logger.error("deg_significant.csv has no direction column")
            return False

        if self.ranked_genes is None:
            self.logger.warning("ranked_genes.csv missing - GSEA will be skipped")

        self.logger.info(f"DEGs for pathway analysis: {len(self.deg_significant)}")

        return True

    def _gene_lists(self) -> Dict[str, List[str]]:
        """Up/down gene lists, preferring symbols over raw ids."""
        id_col = 'gene_symbol' if 'gene_symbol' in self.deg_significant.columns else 'gene_id'
        lists = {}
        for direction in ('up', 'down'):
            genes = self.deg_significant.loc[
                self.deg_significant['direction'] == direction, id_col
            ].dropna().astype(str)
            lists[direction] = list(dict.fromkeys(genes))
        return lists

    def _run_enrichr(self, gene_list: List[str], database: str, direction: str) -> Optional[pd.DataFrame]:
        """Run Enrichr enrichment analysis for a single database."""
        self.logger.info(f"Running enrichment for {database} ({direction}, {len(gene_list)} genes)...")

        try:
            enr = gp.enrichr(
                gene_list=gene_list,
                gene_sets=database,
                organism=self.config["organism"],
                outdir=None,  # Don't save files
                cutoff=self.config["pvalue_cutoff"],
                no_plot=True
            )
        except Exception as e:
            self.logger.error(f"Enrichr failed for {database}: {e}")
            return None

        results = enr.results

        if results is None or len(results) == 0:
            self.logger.warning(f"No results for {database}")
            return None

        # Filter by adjusted p-value
        results = results[results['Adjusted P-value'] < self.config["pvalue_cutoff"]]

        # Filter by minimum genes
        results = results[results['Overlap'].apply(
            lambda x: int(str(x).split('/')[0]) >= self.config["min_genes"]
        )]

        if len(results) == 0:
            self.logger.warning(f"No significant results for {database} ({direction})")
            return None

        # Standardize column names
        results = results.rename(columns={
            'Term': 'term_name',
            'Adjusted P-value': 'padj',
            'P-value': 'pvalue',
            'Odds Ratio': 'odds_ratio',
            'Combined Score': 'combined_score',
            'Overlap': 'overlap',
            'Genes': 'genes'
        })

        # Extract gene count
        results['gene_count'] = results['overlap'].apply(
            lambda x: int(str(x).split('/')[0])
        )

        results['database'] = database
        results['direction'] = direction

        return results[ORA_COLUMNS].sort_values('padj')

    def _run_ora(self, gene_lists: Dict[str, List[str]]) -> pd.DataFrame:
        frames = []
        for direction, genes in gene_lists.items():
            if len(genes) < self.config["min_genes"]:
                self.logger.warning(
                    f"Only {len(genes)} {direction}-regulated genes; "
                    f"need {self.config['min_genes']} for ORA - skipping"
                )
                continue
            for db in self.config["ora_libraries"]:
                results = self._run_enrichr(genes, db, direction)
                if results is not None:
                    frames.append(results.head(self.config["top_terms"]))

        if not frames:
            return pd.DataFrame(columns=ORA_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    def _run_gsea(self) -> pd.DataFrame:
        """GSEA prerank on the full ranking."""
        if self.ranked_genes is None or len(self.ranked_genes) == 0:
            return pd.DataFrame(columns=GSEA_COLUMNS)

        rnk = self.ranked_genes.dropna().set_index('gene_id')['rank_metric']
        rnk.index = rnk.index.astype(str)
        rnk = rnk[~rnk.index.duplicated()]

        self.logger.info(f"Running GSEA prerank on {len(rnk)} ranked genes "
                         f"({self.config['gsea_permutations']} permutations)...")
        try:
            pre_res = gp.prerank(
                rnk=rnk,
                gene_sets=self.config["gsea_libraries"],
                min_size=self.config["gsea_min_size"],
                max_size=self.config["gsea_max_size"],
                permutation_num=self.config["gsea_permutations"],
                seed=self.config["seed"],
                threads=self.config["threads"],
                outdir=None,
                no_plot=True,
                verbose=False,
            )
        except Exception as e:
            self.logger.error(f"GSEA prerank failed: {e}")
            return pd.DataFrame(columns=GSEA_COLUMNS)

        if pre_res.res2d is None or len(pre_res.res2d) == 0:
            self.logger.warning("GSEA returned no gene sets (check min/max size)")
            return pd.DataFrame(columns=GSEA_COLUMNS)

        return standardize_gsea(pre_res.res2d)

    def _create_share_links(self, gene_lists: Dict[str, List[str]]) -> Dict[str, Any]:
        """Upload each direction list to Enrichr and collect shareable links."""
        links: Dict[str, Any] = {}
        if not self.config.get("create_share_links", True):
            self.logger.info("Shareable Enrichr links disabled")
            return links

        with EnrichrClient(enable_cache=False) as client:
            for direction, genes in gene_lists.items():
                if not genes:
                    continue
                description = f"{self.config['cell_line']} {direction}-regulated genes"
                try:
                    link = client.create_share_link(genes, description)
                except Exception as e:
                    self.logger.warning(f"Enrichr link for {direction} genes failed: {e}")
                    link = None
                links[direction] = {
                    "url": link,
                    "n_genes": len(genes),
                    "description": description,
                }
                if link:
                    self.logger.info(f"Enrichr link ({direction}): {link}")

        return links

    def _create_gene_to_pathway_mapping(self, all_results: pd.DataFrame) -> pd.DataFrame:
        """Create reverse mapping from genes to pathways."""
        gene_pathways = {}

        for _, row in all_results.iterrows():
            genes = str(row['genes']).split(';')
            term = row['term_name']
            db = row['database']

            for gene in genes:
                gene = gene.strip()
                if not gene:
                    continue
                if gene not in gene_pathways:
                    gene_pathways[gene] = {
                        'pathway_ids': [],
                        'pathway_names': [],
                        'databases': []
                    }
                gene_pathways[gene]['pathway_ids'].append(f"{db}:{term}")
                gene_pathways[gene]['pathway_names'].append(term)
                gene_pathways[gene]['databases'].append(db)

        rows = []
        for gene, info in gene_pathways.items():
            rows.append({
                'gene_id': gene,
                'pathway_count': len(info['pathway_names']),
                'pathway_ids': ';'.join(info['pathway_ids']),
                'pathway_names': ';'.join(info['pathway_names']),
                'databases': ';'.join(sorted(set(info['databases'])))
            })

        columns = ['gene_id', 'pathway_count', 'pathway_ids', 'pathway_names', 'databases']
        if not rows:
            return pd.DataFrame(columns=columns)
        return pd.DataFrame(rows, columns=columns).sort_values('pathway_count', ascending=False)

    def _summarize(self, ora: pd.DataFrame) -> pd.DataFrame:
        """Top terms from each library and direction."""
        columns = ['direction', 'database', 'term_name', 'padj', 'gene_count', 'genes']
        if len(ora) == 0:
            return pd.DataFrame(columns=columns)
        summary = (
            ora.sort_values('padj')
               .groupby(['direction', 'database'], sort=False)
               .head(self.config["summary_terms"])
        )
        return summary[columns].sort_values(['direction', 'padj'], ascending=[False, True])

    def run(self) -> Dict[str, Any]:
        """Execute pathway enrichment analysis."""
        gene_lists = self._gene_lists()
        self.logger.info(f"Gene lists: up={len(gene_lists['up'])}, down={len(gene_lists['down'])}")

        # Over-representation analysis
        ora = self._run_ora(gene_lists)
        self.save_csv(ora, "pathway_ora.csv")
        self.save_csv(self._summarize(ora), "pathway_summary.csv")
        self.save_csv(self._create_gene_to_pathway_mapping(ora), "gene_to_pathway.csv")

        # GSEA
        gsea = self._run_gsea()
        self.save_csv(gsea, "gsea_results.csv")
        n_gsea_sig = int((pd.to_numeric(gsea['fdr'], errors='coerce') < self.config["gsea_fdr_cutoff"]).sum())

        # Shareable links
        links = self._create_share_links(gene_lists)
        self.save_json(links, "enrichr_links.json")

        db_counts = {}
        for db in self.config["ora_libraries"]:
            for direction in ('up', 'down'):
                n = int(((ora['database'] == db) & (ora['direction'] == direction)).sum())
                db_counts[f"{db}:{direction}"] = n

        self.logger.info("Pathway Analysis Complete:")
        for key, count in db_counts.items():
            self.logger.info(f"    {key}: {count} significant terms")
        self.logger.info(f"  GSEA gene sets tested: {len(gsea)}, FDR < {self.config['gsea_fdr_cutoff']}: {n_gsea_sig}")

        return {
            "libraries_analyzed": self.config["ora_libraries"],
            "significant_terms_per_library": db_counts,
            "total_significant_terms": int(len(ora)),
            "gsea_sets_tested": int(len(gsea)),
            "gsea_significant": n_gsea_sig,
            "share_links": {k: v.get("url") for k, v in links.items()},
            "pvalue_cutoff": self.config["pvalue_cutoff"],
            "min_genes": self.config["min_genes"]
        }

    def validate_outputs(self) -> bool:
        """Validate pathway outputs."""
        if self.missing_outputs(["pathway_ora.csv", "pathway_summary.csv", "gsea_results.csv",
                                 "gene_to_pathway.csv", "enrichr_links.json"]):
            return False

        summary = pd.read_csv(self.output_dir / "pathway_summary.csv")
        if len(summary) == 0:
            self.logger.warning("No significant pathways found - this may be expected for some datasets")

        return True
