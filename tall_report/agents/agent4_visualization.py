"""
Agent 4: Visualization

Generates report figures from the DGE and enrichment results.

Input:
- deg_all_results.csv, deg_significant.csv: From Agent 2
- vst_counts.csv, dispersions.csv: From Agent 2
- metadata.csv: From Agent 1
- pathway_summary.csv, gsea_results.csv: From Agent 3

Output:
- figures/volcano_plot.png
- figures/ma_plot.png
- figures/pca_plot.png
- figures/sample_distance_heatmap.png
- figures/heatmap_top_degs.png
- figures/dispersion_plot.png
- figures/pathway_barplot.png
- figures/gsea_nes_barplot.png
- meta_agent4_visualization.json
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from ..utils.base_agent import BaseAgent

DIRECTION_COLORS = {'Not Significant': 'lightgray', 'Up': '#E74C3C', 'Down': '#3498DB'}


def truncate_label(text: str, width: int = 45) -> str:
    text = str(text)
    return text[:width] + '...' if len(text) > width else text


class VisualizationAgent(BaseAgent):
    """Agent for generating report figures."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "figure_format": ["png"],
            "dpi": 150,
            "style": "whitegrid",
            "color_palette": "RdBu_r",
            "figsize": {
                "volcano": (10, 8),
                "ma": (10, 7),
                "heatmap": (12, 10),
                "pca": (9, 7),
                "distance": (9, 8),
                "dispersion": (9, 7),
                "pathway": (11, 8),
                "gsea": (11, 8)
            },
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "condition_column": "condition",
            "top_genes_heatmap": 50,
            "top_pathways": 15,
            "label_top_genes": 10
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent4_visualization", input_dir, output_dir, merged_config)

        # Create figures subdirectory
        self.figures_dir = self.output_dir / "figures"
        self.figures_dir.mkdir(exist_ok=True)

        # Set style
        sns.set_style(self.config["style"])
        plt.rcParams['font.size'] = 11
        plt.rcParams['axes.labelsize'] = 12
        plt.rcParams['axes.titlesize'] = 14

    def validate_inputs(self) -> bool:
        """Validate input files."""
        self.deg_all = self.load_csv("deg_all_results.csv", required=False)
        self.deg_sig = self.load_csv("deg_significant.csv", required=False)
        self.vst_counts = self.load_csv("vst_counts.csv", required=False, index_col=0)
        self.dispersions = self.load_csv("dispersions.csv", required=False)
        self.metadata = self.load_csv("metadata.csv", required=False, index_col=0)
        self.pathway_summary = self.load_csv("pathway_summary.csv", required=False)
        self.gsea_results = self.load_csv("gsea_results.csv", required=False)

        # Need at least DEG results
        if self.deg_all is None and self.deg_sig is None:
            self.logger.error("No DEG results found")
            return False

        return True

    def _save_figure(self, fig: plt.Figure, name: str) -> List[str]:
        """Save figure in every configured format."""
        saved_files = []
        for fmt in self.config["figure_format"]:
            filepath = self.figures_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.logger.info(f"Saved {filepath.name}")
        plt.close(fig)
        return saved_files

    def _label_column(self, df: pd.DataFrame) -> str:
        return 'gene_symbol' if 'gene_symbol' in df.columns else 'gene_id'

    def _classify(self, df: pd.DataFrame) -> pd.Series:
        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        significance = pd.Series('Not Significant', index=df.index)
        significant = df['padj'] < padj_cutoff
        significance[significant & (df['log2FC'] > log2fc_cutoff)] = 'Up'
        significance[significant & (df['log2FC'] < -log2fc_cutoff)] = 'Down'
        return significance

    def _sample_conditions(self, samples: List[str]) -> pd.Series:
        """Condition per sample, 'unknown' where metadata is missing."""
        condition_col = self.config["condition_column"]
        if self.metadata is None or condition_col not in self.metadata.columns:
            return pd.Series('unknown', index=samples)
        return self.metadata[condition_col].reindex(samples).fillna('unknown').astype(str)

    def _plot_volcano(self) -> Optional[List[str]]:
        """Generate volcano plot."""
        if self.deg_all is None:
            self.logger.warning("Skipping volcano plot - no DEG results")
            return None

        self.logger.info("Generating volcano plot...")

        df = self.deg_all.dropna(subset=['padj', 'log2FC']).copy()
        df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))
        df['significance'] = self._classify(df)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["volcano"])

        for sig, color in DIRECTION_COLORS.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['log2FC'], subset['neg_log10_padj'],
                       c=color, alpha=0.6, s=14, label=sig, edgecolors='none')

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        ax.axhline(y=-np.log10(padj_cutoff), color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)

        # Label top genes
        label_col = self._label_column(df)
        top = df[df['significance'] != 'Not Significant'].nsmallest(
            self.config["label_top_genes"], 'padj'
        )
        for _, row in top.iterrows():
            ax.annotate(str(row[label_col]), (row['log2FC'], row['neg_log10_padj']),
                        fontsize=8, ha='center', va='bottom')

        ax.set_xlabel('log2 Fold Change')
        ax.set_ylabel('-log10 Adjusted P-value')
        ax.set_title('Volcano Plot: Differential Expression')
        ax.legend(loc='upper right')

        n_up = (df['significance'] == 'Up').sum()
        n_down = (df['significance'] == 'Down').sum()
        ax.text(0.02, 0.98, f'Up: {n_up}\nDown: {n_down}',
                transform=ax.transAxes, verticalalignment='top',
                fontsize=10, bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        return self._save_figure(fig, "volcano_plot")

    def _plot_ma(self) -> Optional[List[str]]:
        """MA plot: log2FC against mean normalized expression."""
        if self.deg_all is None:
            self.logger.warning("Skipping MA plot - no DEG results")
            return None

        self.logger.info("Generating MA plot...")

        df = self.deg_all.dropna(subset=['log2FC']).copy()
        df = df[df['baseMean'] > 0]
        df['significance'] = self._classify(df.fillna({'padj': 1.0}))

        fig, ax = plt.subplots(figsize=self.config["figsize"]["ma"])

        for sig, color in DIRECTION_COLORS.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['baseMean'], subset['log2FC'],
                       c=color, alpha=0.6, s=12, label=sig, edgecolors='none')

        ax.set_xscale('log')
        ax.axhline(y=0, color='black', linewidth=0.8)
        ax.set_xlabel('Mean of Normalized Counts')
        ax.set_ylabel('log2 Fold Change')
        ax.set_title('MA Plot')
        ax.legend(loc='upper right')

        return self._save_figure(fig, "ma_plot")

    def _plot_pca(self) -> Optional[List[str]]:
        """PCA of variance-stabilized counts, colored by condition."""
        if self.vst_counts is None:
            self.logger.warning("Skipping PCA - no VST counts")
            return None

        self.logger.info("Generating PCA plot...")

        expr_df = self.vst_counts

        # Most variable genes, as in DESeq2's plotPCA
        top_var = expr_df.var(axis=1).sort_values(ascending=False).index[:500]
        expr_t = expr_df.loc[top_var].T

        if expr_t.shape[0] < 3:
            self.logger.warning("Skipping PCA - fewer than 3 samples")
            return None

        pca = PCA(n_components=2)
        pca_result = pca.fit_transform(expr_t - expr_t.mean())

        plot_df = pd.DataFrame({
            'PC1': pca_result[:, 0],
            'PC2': pca_result[:, 1],
            'condition': self._sample_conditions(list(expr_t.index)).values,
        }, index=expr_t.index)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pca"])

        sns.scatterplot(data=plot_df, x='PC1', y='PC2', hue='condition',
                        s=120, alpha=0.85, ax=ax)

        for sample, row in plot_df.iterrows():
            ax.annotate(sample, (row['PC1'], row['PC2']),
                        fontsize=8, ha='center', va='bottom')

        ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)')
        ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)')
        ax.set_title('PCA: Variance-Stabilized Counts')

        ax.axhline(y=0, color='gray', linestyle='--', alpha=0.3)
        ax.axvline(x=0, color='gray', linestyle='--', alpha=0.3)

        return self._save_figure(fig, "pca_plot")

    def _plot_sample_distances(self) -> Optional[List[str]]:
        """Euclidean sample-to-sample distances on VST counts."""
        if self.vst_counts is None:
            self.logger.warning("Skipping sample distance heatmap - no VST counts")
            return None

        self.logger.info("Generating sample distance heatmap...")

        expr_t = self.vst_counts.T
        distances = pd.DataFrame(
            squareform(pdist(expr_t.values, metric='euclidean')),
            index=expr_t.index, columns=expr_t.index
        )

        conditions = self._sample_conditions(list(expr_t.index))
        labels = [f"{s} ({c})" for s, c in zip(expr_t.index, conditions)]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["distance"])
        sns.heatmap(distances, cmap='Blues_r', ax=ax, square=True,
                    xticklabels=labels, yticklabels=labels,
                    cbar_kws={'label': 'Euclidean distance'})
        ax.set_title('Sample-to-Sample Distances')
        plt.tight_layout()

        return self._save_figure(fig, "sample_distance_heatmap")

    def _plot_heatmap(self) -> Optional[List[str]]:
        """Generate heatmap of top DEGs."""
        if self.vst_counts is None or self.deg_sig is None or len(self.deg_sig) == 0:
            self.logger.warning("Skipping heatmap - missing data")
            return None

        self.logger.info("Generating heatmap...")

        n_genes = min(self.config["top_genes_heatmap"], len(self.deg_sig))
        top = self.deg_sig.head(n_genes)
        top_genes = top['gene_id'].astype(str).tolist()

        expr_df = self.vst_counts.loc[self.vst_counts.index.intersection(top_genes, sort=False)]

        if len(expr_df) == 0:
            self.logger.warning("No matching genes for heatmap")
            return None

        # Z-score normalize
        expr_zscore = expr_df.apply(lambda x: (x - x.mean()) / x.std(), axis=1).fillna(0)

        label_col = self._label_column(top)
        labels = top.set_index('gene_id')[label_col]
        labels.index = labels.index.astype(str)
        expr_zscore.index = [str(labels.get(g, g)) for g in expr_zscore.index]

        # Group columns by condition
        conditions = self._sample_conditions(list(expr_zscore.columns))
        expr_zscore = expr_zscore[conditions.sort_values(kind='stable').index]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["heatmap"])

        sns.heatmap(expr_zscore, cmap=self.config["color_palette"],
                    center=0, ax=ax, xticklabels=True,
                    yticklabels=True if len(expr_zscore) <= 50 else False,
                    cbar_kws={'label': 'Z-score'})

        ax.set_title(f'Heatmap: Top {len(expr_zscore)} DEGs (VST, row z-score)')
        ax.set_xlabel('Samples')
        ax.set_ylabel('Genes')

        plt.tight_layout()

        return self._save_figure(fig, "heatmap_top_degs")

    def _plot_dispersion(self) -> Optional[List[str]]:
        """Gene-wise, fitted and final dispersion estimates against mean expression."""
        if self.dispersions is None or len(self.dispersions) == 0:
            self.logger.warning("Skipping dispersion plot - no dispersion estimates")
            return None

        self.logger.info("Generating dispersion plot...")

        df = self.dispersions[self.dispersions['baseMean'] > 0].sort_values('baseMean')

        fig, ax = plt.subplots(figsize=self.config["figsize"]["dispersion"])

        if 'genewise_dispersions' in df.columns:
            ax.scatter(df['baseMean'], df['genewise_dispersions'], s=6,
                       c='black', alpha=0.4, label='gene-wise')
        if 'dispersions' in df.columns:
            ax.scatter(df['baseMean'], df['dispersions'], s=6,
                       c='#3498DB', alpha=0.5, label='final')
        if 'fitted_dispersions' in df.columns:
            ax.plot(df['baseMean'], df['fitted_dispersions'], c='#E74C3C',
                    linewidth=2, label='fitted')

        ax.set_xscale('log')
        ax.set_yscale('log')
        ax.set_xlabel('Mean of Normalized Counts')
        ax.set_ylabel('Dispersion')
        ax.set_title('Dispersion Estimates')
        ax.legend(loc='upper right')

        return self._save_figure(fig, "dispersion_plot")

    def _plot_pathway_barplot(self) -> Optional[List[str]]:
        """Generate ORA barplot, colored by direction."""
        if self.pathway_summary is None or len(self.pathway_summary) == 0:
            self.logger.warning("Skipping pathway plot - no pathway data")
            return None

        self.logger.info("Generating pathway barplot...")

        top_pathways = self.pathway_summary.nsmallest(self.config["top_pathways"], 'padj').copy()
        n_pathways = len(top_pathways)

        top_pathways['neg_log10_padj'] = -np.log10(top_pathways['padj'].clip(lower=1e-300))
        top_pathways['term_short'] = top_pathways['term_name'].apply(truncate_label)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pathway"])

        colors = [DIRECTION_COLORS['Up'] if d == 'up' else DIRECTION_COLORS['Down']
                  for d in top_pathways['direction']]
        ax.barh(range(n_pathways), top_pathways['neg_log10_padj'], color=colors, alpha=0.8)

        ax.set_yticks(range(n_pathways))
        ax.set_yticklabels(top_pathways['term_short'])
        ax.set_xlabel('-log10 Adjusted P-value')
        ax.set_title('Top Enriched Terms (Enrichr ORA)')

        for i, (_, row) in enumerate(top_pathways.iterrows()):
            ax.text(row['neg_log10_padj'] + 0.05, i, f"({row['gene_count']})",
                    va='center', fontsize=8)

        from matplotlib.patches import Patch
        ax.legend(handles=[
            Patch(facecolor=DIRECTION_COLORS['Up'], label='Up-regulated genes'),
            Patch(facecolor=DIRECTION_COLORS['Down'], label='Down-regulated genes')
        ], loc='lower right')

        ax.invert_yaxis()
        plt.tight_layout()

        return self._save_figure(fig, "pathway_barplot")

    def _plot_gsea_nes(self) -> Optional[List[str]]:
        """Bar plot of normalized enrichment scores for the top GSEA gene sets."""
        if self.gsea_results is None or len(self.gsea_results) == 0:
            self.logger.warning("Skipping GSEA plot - no GSEA results")
            return None

        self.logger.info("Generating GSEA NES barplot...")

        df = self.gsea_results.dropna(subset=['nes']).copy()
        df = df.sort_values(['fdr', 'pvalue']).head(self.config["top_pathways"])
        df = df.sort_values('nes')
        if len(df) == 0:
            self.logger.warning("Skipping GSEA plot - no NES values")
            return None

        df['term_short'] = df['term_name'].apply(truncate_label)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["gsea"])

        colors = [DIRECTION_COLORS['Up'] if nes > 0 else DIRECTION_COLORS['Down'] for nes in df['nes']]
        ax.barh(range(len(df)), df['nes'], color=colors, alpha=0.8)
        ax.set_yticks(range(len(df)))
        ax.set_yticklabels(df['term_short'])
        ax.axvline(x=0, color='black', linewidth=0.8)
        ax.set_xlabel('Normalized Enrichment Score (NES)')
        ax.set_title('GSEA Prerank: Top Gene Sets')

        for i, (_, row) in enumerate(df.iterrows()):
            ax.text(row['nes'], i, f" FDR={row['fdr']:.2g} ",
                    va='center', ha='left' if row['nes'] > 0 else 'right', fontsize=8)

        plt.tight_layout()

        return self._save_figure(fig, "gsea_nes_barplot")

    def run(self) -> Dict[str, Any]:
        """Generate all visualizations."""
        generated_figures = []
        failed_figures = []

        figure_functions = [
            ("volcano_plot", self._plot_volcano),
            ("ma_plot", self._plot_ma),
            ("pca_plot", self._plot_pca),
            ("sample_distance_heatmap", self._plot_sample_distances),
            ("heatmap_top_degs", self._plot_heatmap),
            ("dispersion_plot", self._plot_dispersion),
            ("pathway_barplot", self._plot_pathway_barplot),
            ("gsea_nes_barplot", self._plot_gsea_nes)
        ]

        for name, func in figure_functions:
            try:
                result = func()
                if result:
                    generated_figures.extend(result)
                else:
                    failed_figures.append(name)
            except Exception as e:
                self.logger.error(f"Error generating {name}: {e}")
                plt.close('all')
                failed_figures.append(name)

        self.logger.info("Visualization Complete:")
        self.logger.info(f"  Generated: {len(generated_figures)} files")
        self.logger.info(f"  Failed/Skipped: {len(failed_figures)}")

        return {
            "figures_generated": generated_figures,
            "failed_figures": failed_figures,
            "total_generated": len(generated_figures)
        }

    def validate_outputs(self) -> bool:
        """Validate visualization outputs."""
        if not self.figures_dir.exists():
            self.logger.error("Figures directory not created")
            return False

        png_files = list(self.figures_dir.glob("*.png"))
        if len(png_files) == 0:
            self.logger.warning("No PNG figures generated")

        return True
