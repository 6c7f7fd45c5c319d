"""
Agent 2: Differential Expression Gene (DEG) Analysis

Uses PyDESeq2 to perform differential expression analysis.

Input:
- count_matrix.csv: Gene expression count matrix (genes × samples)
- metadata.csv: Sample metadata with condition column

Output:
- deg_all_results.csv: Full DESeq2 results (shrunk LFCs when enabled)
- deg_significant.csv: Filtered significant DEGs
- normalized_counts.csv: Median-of-ratios normalized counts
- vst_counts.csv: Variance-stabilized counts (for PCA/heatmaps)
- size_factors.csv: Per-sample size factors
- dispersions.csv: Gene-wise, trended and final dispersions
- ranked_genes.csv: Signed -log10(pvalue) ranking for GSEA
- meta_agent2_deg.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from ..utils.base_agent import BaseAgent
from ..utils.gene_ids import add_symbol_column

RESULT_COLUMNS = ['gene_id', 'baseMean', 'log2FC', 'lfcSE', 'stat', 'pvalue', 'padj']


def rank_genes(results_df: pd.DataFrame, id_column: str = 'gene_id') -> pd.DataFrame:
    """GSEA ranking metric: -log10(pvalue) * sign(log2FC), highest first."""
    ranked = results_df.dropna(subset=['pvalue', 'log2FC']).copy()
    pval = ranked['pvalue'].clip(lower=1e-300)
    ranked['rank_metric'] = -np.log10(pval) * np.sign(ranked['log2FC'])
    ranked = ranked[[id_column, 'rank_metric']].rename(columns={id_column: 'gene_id'})
    # Symbols can repeat after annotation; keep the strongest signal
    ranked = ranked.reindex(ranked['rank_metric'].abs().sort_values(ascending=False).index)
    ranked = ranked.drop_duplicates(subset='gene_id')
    return ranked.sort_values('rank_metric', ascending=False).reset_index(drop=True)


class DEGAgent(BaseAgent):
    """Agent for PyDESeq2-based differential expression analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "contrast": ["treated", "control"],  # [treatment, control]
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "condition_column": "condition",
            "min_count_filter": 10,
            "min_replicates": 2,
            "use_lfc_shrinkage": True,
            "annotate_symbols": True,
            "species": "human",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_deg", input_dir, output_dir, merged_config)

        self.count_matrix: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.shrinkage_applied: bool = False

    def validate_inputs(self) -> bool:
        """Validate count matrix and metadata; drop samples outside the contrast."""
        self.count_matrix = self.load_csv("count_matrix.csv", index_col=0)  # genes × samples
        self.metadata = self.load_csv("metadata.csv", index_col=0)  # indexed by sample_id

        condition_col = self.config["condition_column"]
        if condition_col not in self.metadata.columns:
            self.logger.error(f"Condition column '{condition_col}' not in metadata")
            return False

        missing = set(self.count_matrix.columns) - set(self.metadata.index)
        if missing:
            self.logger.error(f"Samples missing from metadata: {sorted(missing)}")
            return False

        contrast = list(self.config["contrast"])
        conditions = self.metadata.loc[self.count_matrix.columns, condition_col].astype(str)
        outside = conditions[~conditions.isin(contrast)]
        if len(outside) > 0:
            self.logger.warning(
                f"Dropping {len(outside)} samples outside contrast {contrast}: {list(outside.index)}"
            )
            self.count_matrix = self.count_matrix.drop(columns=outside.index)
            conditions = conditions.drop(outside.index)

        group_sizes = conditions.value_counts()
        for level in contrast:
            n = int(group_sizes.get(level, 0))
            if n < self.config["min_replicates"]:
                self.logger.error(
                    f"Condition '{level}' has {n} samples; "
                    f"need at least {self.config['min_replicates']} replicates"
                )
                return False

        self.logger.info(f"Count matrix: {self.count_matrix.shape[0]} genes, {self.count_matrix.shape[1]} samples")
        self.logger.info(f"Conditions: {group_sizes.to_dict()}")

        return True

    def _prepare_inputs(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Filter low-count genes and align samples (samples × genes for PyDESeq2)."""
        count_df = self.count_matrix

        # Filter low counts
        min_count = self.config["min_count_filter"]
        count_df = count_df[count_df.sum(axis=1) >= min_count]
        self.logger.info(f"After filtering (min_count={min_count}): {len(count_df)} genes")

        if len(count_df) == 0:
            raise ValueError("No genes pass the minimum count filter")

        condition_col = self.config["condition_column"]
        meta_df = self.metadata.loc[count_df.columns, [condition_col]].astype(str)

        counts = count_df.T.astype(int)
        counts.index.name = None
        return counts, meta_df

    def _find_shrinkage_coeff(self, dds: DeseqDataSet) -> Optional[str]:
        """LFC coefficient name for the contrast (naming differs across PyDESeq2 releases)."""
        treated, control = self.config["contrast"]
        for coeff in dds.varm["LFC"].columns:
            if treated in coeff and ("Intercept" not in coeff):
                return coeff
        return None

    def _run_deseq2(self) -> Tuple[pd.DataFrame, Dict[str, pd.DataFrame]]:
        """Run the PyDESeq2 workflow. Returns results and auxiliary tables."""
        counts, meta_df = self._prepare_inputs()
        condition_col = self.config["condition_column"]
        treated, control = self.config["contrast"]

        # Reference level first so the model coefficient is treated vs control
        meta_df[condition_col] = pd.Categorical(
            meta_df[condition_col], categories=[control, treated]
        )

        self.logger.info(f"Creating DeseqDataSet with design ~ {condition_col}...")
        dds = DeseqDataSet(
            counts=counts,
            metadata=meta_df,
            design=f"~{condition_col}",
            refit_cooks=True,
            quiet=True,
        )

        self.logger.info("Running DESeq2 (size factors, dispersions, LFCs)...")
        dds.deseq2()

        self.logger.info(f"Extracting results for contrast: {treated} vs {control}")
        stat_res = DeseqStats(
            dds,
            contrast=[condition_col, treated, control],
            alpha=self.config["padj_cutoff"],
            cooks_filter=True,
            independent_filter=True,
            quiet=True,
        )
        stat_res.summary()
        unshrunk = stat_res.results_df.copy()

        # Apply apeGLM-style LFC shrinkage if enabled
        if self.config.get("use_lfc_shrinkage", True):
            coeff = self._find_shrinkage_coeff(dds)
            if coeff is None:
                self.logger.warning(f"Could not find matching coefficient for {self.config['contrast']}, using unshrunk LFC")
            else:
                try:
                    self.logger.info(f"Applying LFC shrinkage on coefficient: {coeff}")
                    stat_res.lfc_shrink(coeff=coeff)
                    self.shrinkage_applied = True
                except (ValueError, KeyError, RuntimeError) as e:
                    self.logger.warning(f"LFC shrinkage failed: {e}. Using unshrunk LFC.")

        results_df = stat_res.results_df.copy()
        results_df = results_df.rename(columns={'log2FoldChange': 'log2FC'})

        # Shrinkage leaves stat/pvalue from the Wald test; keep them explicit
        if 'stat' not in results_df.columns:
            results_df['stat'] = unshrunk['stat']

        results_df.insert(0, 'gene_id', results_df.index.astype(str))
        results_df = results_df[RESULT_COLUMNS].reset_index(drop=True)

        if self.shrinkage_applied:
            results_df['log2FC_unshrunk'] = unshrunk['log2FoldChange'].values

        # Normalized and variance-stabilized counts (genes × samples)
        norm_counts = pd.DataFrame(
            dds.layers['normed_counts'], index=dds.obs_names, columns=dds.var_names
        ).T
        dds.vst()
        vst_counts = pd.DataFrame(
            dds.layers['vst_counts'], index=dds.obs_names, columns=dds.var_names
        ).T

        size_factors = pd.DataFrame({
            'sample_id': list(dds.obs_names),
            'size_factor': np.asarray(dds.obs['size_factors'], dtype=float),
        })

        disp_cols = [c for c in ('genewise_dispersions', 'fitted_dispersions', 'MAP_dispersions', 'dispersions')
                     if c in dds.var.columns]
        dispersions = dds.var[disp_cols].copy()
        dispersions.insert(0, 'baseMean', unshrunk['baseMean'].reindex(dispersions.index).values)
        dispersions.insert(0, 'gene_id', dispersions.index.astype(str))

        return results_df, {
            "normalized_counts": norm_counts,
            "vst_counts": vst_counts,
            "size_factors": size_factors,
            "dispersions": dispersions.reset_index(drop=True),
        }

    @staticmethod
    def _with_gene_column(df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        df.insert(0, 'gene_id', df.index.astype(str))
        return df.reset_index(drop=True)

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis."""
        results_df, extras = self._run_deseq2()

        # Annotate gene symbols for enrichment and display
        id_column = 'gene_id'
        if self.config.get("annotate_symbols", True):
            try:
                results_df = add_symbol_column(results_df, species=self.config["species"])
                id_column = 'gene_symbol'
            except Exception as e:
                self.logger.warning(f"Gene symbol annotation failed: {e}. Using original ids.")

        # Debug: Log results before dropna
        self.logger.info(f"Results before dropna: {len(results_df)} rows")
        na_count = results_df['padj'].isna().sum()
        self.logger.info(f"NA padj values (independent filtering / outliers): {na_count}")

        # Ranking uses every gene with a p-value, including those padj leaves NA
        ranked = rank_genes(results_df, id_column=id_column)
        self.save_csv(ranked, "ranked_genes.csv")

        # Save all results
        self.save_csv(results_df, "deg_all_results.csv")

        # Filter significant DEGs
        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]

        tested = results_df.dropna(subset=['padj'])
        significant = tested[
            (tested['padj'] < padj_cutoff) &
            (np.abs(tested['log2FC']) > log2fc_cutoff)
        ].copy()

        # Add direction column
        significant['direction'] = np.where(significant['log2FC'] > 0, 'up', 'down')

        # Sort by padj
        significant = significant.sort_values('padj')

        sig_columns = ['gene_id'] + (['gene_symbol'] if 'gene_symbol' in significant.columns else []) + \
            ['baseMean', 'log2FC', 'padj', 'direction']
        self.save_csv(significant[sig_columns], "deg_significant.csv")

        # Save normalized counts and QC tables
        self.save_csv(self._with_gene_column(extras["normalized_counts"]), "normalized_counts.csv")
        self.save_csv(self._with_gene_column(extras["vst_counts"]), "vst_counts.csv")
        self.save_csv(extras["size_factors"], "size_factors.csv")
        self.save_csv(extras["dispersions"], "dispersions.csv")

        # Calculate statistics
        up_count = (significant['direction'] == 'up').sum()
        down_count = (significant['direction'] == 'down').sum()

        self.logger.info("DEG Analysis Complete:")
        self.logger.info(f"  Total genes analyzed: {len(results_df)}")
        self.logger.info(f"  Genes with adjusted p-value: {len(tested)}")
        self.logger.info(f"  Significant DEGs: {len(significant)}")
        self.logger.info(f"  Upregulated: {up_count}")
        self.logger.info(f"  Downregulated: {down_count}")

        return {
            "method_used": "PyDESeq2",
            "lfc_shrinkage": self.shrinkage_applied,
            "total_genes": len(results_df),
            "tested_genes": len(tested),
            "deg_count": len(significant),
            "up_count": int(up_count),
            "down_count": int(down_count),
            "padj_cutoff": padj_cutoff,
            "log2fc_cutoff": log2fc_cutoff,
            "id_column": id_column,
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        required_files = [
            "deg_all_results.csv",
            "deg_significant.csv",
            "normalized_counts.csv",
            "vst_counts.csv",
            "ranked_genes.csv",
        ]

        if self.missing_outputs(required_files):
            return False

        sig_df = pd.read_csv(self.output_dir / "deg_significant.csv")

        if len(sig_df) == 0:
            self.logger.warning("No significant DEGs found (this may be expected)")

        # Check no NA in padj
        if sig_df['padj'].isna().any():
            self.logger.error("NA values found in padj column")
            return False

        return True
