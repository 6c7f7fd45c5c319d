"""
Agent 5: HTML Report Generation

Renders a single self-contained HTML report:
1. Study Overview
2. Dataset & Quality Control
3. Differential Expression
4. Pathway Enrichment (ORA + GSEA)
5. Interpretation (generated from the numbers)
6. Methods

Input: every table, figure and meta file produced by Agents 1-4.

Output:
- report.html
- report_data.json: Numbers the narrative was built from
- meta_agent5_report.json
"""

import base64
import html
import json
import re
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..utils.base_agent import BaseAgent

METHOD_PACKAGES = [
    "pydeseq2", "gseapy", "pandas", "numpy", "scipy", "scikit-learn",
    "matplotlib", "seaborn", "GEOparse", "mygene", "requests",
]

FIGURE_CAPTIONS = {
    "pca_plot": "PCA of variance-stabilized counts (500 most variable genes).",
    "sample_distance_heatmap": "Euclidean distances between samples on VST counts.",
    "dispersion_plot": "Gene-wise (black), fitted (red) and final (blue) dispersion estimates.",
    "volcano_plot": "Volcano plot. Colored points pass both the padj and |log2FC| cutoffs.",
    "ma_plot": "MA plot: log2 fold change against mean normalized expression.",
    "heatmap_top_degs": "Row z-scored VST expression of the top DEGs by adjusted p-value.",
    "pathway_barplot": "Top Enrichr terms for up- (red) and down-regulated (blue) genes.",
    "gsea_nes_barplot": "Normalized enrichment scores of the top GSEA gene sets.",
}


def package_versions(packages: List[str] = METHOD_PACKAGES) -> Dict[str, str]:
    """Installed version of each package, or 'not installed'."""
    versions = {}
    for name in packages:
        try:
            versions[name] = version(name)
        except PackageNotFoundError:
            versions[name] = "not installed"
    return versions


def _gene_label(row: pd.Series) -> str:
    symbol = row.get('gene_symbol')
    if isinstance(symbol, str) and symbol:
        return symbol
    return str(row['gene_id'])


def summarize_results(
    deg_sig: Optional[pd.DataFrame],
    deg_all: Optional[pd.DataFrame],
    ora: Optional[pd.DataFrame],
    gsea: Optional[pd.DataFrame],
    top_n: int = 5,
    gsea_fdr_cutoff: float = 0.25
) -> Dict[str, Any]:
    """Collect the numbers behind the interpretation section."""
    summary: Dict[str, Any] = {}

    if deg_all is not None:
        summary["genes_tested"] = int(deg_all['padj'].notna().sum())
        summary["genes_total"] = int(len(deg_all))

    sig = deg_sig if deg_sig is not None else pd.DataFrame(columns=['direction', 'log2FC', 'padj'])
    up = sig[sig['direction'] == 'up']
    down = sig[sig['direction'] == 'down']
    summary["n_up"] = int(len(up))
    summary["n_down"] = int(len(down))
    summary["n_deg"] = int(len(sig))
    summary["up_fraction"] = round(len(up) / len(sig), 3) if len(sig) else None

    summary["top_up"] = [
        {"gene": _gene_label(r), "log2FC": round(float(r['log2FC']), 2), "padj": float(r['padj'])}
        for _, r in up.sort_values('padj').head(top_n).iterrows()
    ]
    summary["top_down"] = [
        {"gene": _gene_label(r), "log2FC": round(float(r['log2FC']), 2), "padj": float(r['padj'])}
        for _, r in down.sort_values('padj').head(top_n).iterrows()
    ]
    if len(sig):
        summary["max_abs_log2FC"] = round(float(sig['log2FC'].abs().max()), 2)

    for direction in ('up', 'down'):
        terms = []
        if ora is not None and len(ora):
            subset = ora[ora['direction'] == direction].sort_values('padj').head(top_n)
            terms = [
                {"term": str(r['term_name']), "database": str(r['database']),
                 "padj": float(r['padj']), "gene_count": int(r['gene_count'])}
                for _, r in subset.iterrows()
            ]
        summary[f"top_terms_{direction}"] = terms

    gsea_terms = []
    if gsea is not None and len(gsea):
        significant = gsea[pd.to_numeric(gsea['fdr'], errors='coerce') < gsea_fdr_cutoff]
        summary["gsea_significant"] = int(len(significant))
        summary["gsea_positive"] = int((significant['nes'] > 0).sum())
        summary["gsea_negative"] = int((significant['nes'] < 0).sum())
        for _, r in significant.sort_values(['fdr', 'pvalue']).head(top_n).iterrows():
            gsea_terms.append({
                "term": str(r['term_name']), "nes": round(float(r['nes']), 2),
                "fdr": float(r['fdr']),
            })
    summary["top_gsea"] = gsea_terms

    return summary


def build_narrative(summary: Dict[str, Any], contrast: List[str],
                    padj_cutoff: float, log2fc_cutoff: float) -> List[str]:
    """Interpretation paragraphs written from the summary numbers."""
    treated, control = contrast
    paragraphs = []

    n_deg = summary.get("n_deg", 0)
    tested = summary.get("genes_tested")
    tested_text = f" of {tested:,} genes with an adjusted p-value" if tested else ""
    if n_deg == 0:
        paragraphs.append(
            f"No genes passed padj < {padj_cutoff} and |log2FC| > {log2fc_cutoff}"
            f"{tested_text} when comparing {treated} with {control}. "
            "The treatment effect is weak at this depth and replication, or the cutoffs are too strict."
        )
    else:
        n_up, n_down = summary["n_up"], summary["n_down"]
        if summary["up_fraction"] >= 0.6:
            balance = "The response is dominated by induced genes"
        elif summary["up_fraction"] <= 0.4:
            balance = "The response is dominated by repressed genes"
        else:
            balance = "Induction and repression are roughly balanced"
        paragraphs.append(
            f"{n_deg:,} genes{tested_text} were differentially expressed in "
            f"{treated} versus {control} "
            f"(padj < {padj_cutoff}, |log2FC| > {log2fc_cutoff}): "
            f"{n_up:,} up and {n_down:,} down. {balance} "
            f"(largest |log2FC| = {summary.get('max_abs_log2FC')})."
        )

    for direction, word in (("up", "up-regulated"), ("down", "down-regulated")):
        genes = summary.get(f"top_{direction}", [])
        if genes:
            listed = ", ".join(
                f"{g['gene']} (log2FC {g['log2FC']:+.2f})" for g in genes
            )
            paragraphs.append(f"The most significantly {word} genes are {listed}.")

    for direction, word in (("up", "induced"), ("down", "repressed")):
        terms = summary.get(f"top_terms_{direction}", [])
        if terms:
            lead = terms[0]
            others = "; ".join(t['term'] for t in terms[1:3])
            text = (
                f"Among {word} genes the leading over-represented term is "
                f"{lead['term']} ({lead['database']}, "
                f"{lead['gene_count']} genes, padj = {lead['padj']:.2e})"
            )
            if others:
                text += f", followed by {others}"
            paragraphs.append(text + ".")
        elif summary.get(f"n_{direction}", 0) > 0:
            paragraphs.append(f"No over-represented term reached significance for the {word} genes.")

    gsea_terms = summary.get("top_gsea", [])
    if gsea_terms:
        described = []
        for t in gsea_terms[:3]:
            side = f"enriched in {treated}" if t['nes'] > 0 else f"enriched in {control}"
            described.append(f"{t['term']} (NES {t['nes']:+.2f}, {side})")
        paragraphs.append(
            f"GSEA on the full ranking found {summary['gsea_significant']} gene sets at the FDR cutoff, "
            f"{summary['gsea_positive']} with positive and {summary['gsea_negative']} with negative NES. "
            f"Top sets: {'; '.join(described)}."
        )
    elif "gsea_significant" in summary:
        paragraphs.append("No gene set reached the GSEA FDR cutoff on the full ranking.")

    return paragraphs


def render_narrative(paragraphs: List[str], summary: Dict[str, Any]) -> str:
    """Escape narrative paragraphs; lead terms in bold, top genes in italics."""
    marks = {}
    for direction in ('up', 'down'):
        terms = summary.get(f"top_terms_{direction}", [])
        if terms:
            marks.setdefault(html.escape(terms[0]['term'], quote=False), 'strong')
    for direction in ('up', 'down'):
        for g in summary.get(f"top_{direction}", []):
            marks.setdefault(html.escape(g['gene'], quote=False), 'em')

    blocks = []
    for paragraph in paragraphs:
        text = html.escape(paragraph, quote=False)
        for token, tag in marks.items():
            # Skip tokens already inside a tag or part of a longer name
            pattern = rf"(?<![\w>-]){re.escape(token)}(?![\w<-])"
            text = re.sub(pattern, lambda m, tag=tag: f"<{tag}>{m.group(0)}</{tag}>", text)
        blocks.append(f"<p>{text}</p>")
    return "\n".join(blocks)


def dataframe_to_html(df: pd.DataFrame, max_rows: int = 25, float_format: str = "{:.3g}") -> str:
    """Escaped HTML table for the first max_rows rows."""
    if df is None or len(df) == 0:
        return '<p class="empty">No rows.</p>'

    shown = df.head(max_rows)
    header = "".join(f"<th>{html.escape(str(c))}</th>" for c in shown.columns)
    rows = []
    for _, row in shown.iterrows():
        cells = []
        for value in row:
            if isinstance(value, (float, np.floating)):
                text = "" if pd.isna(value) else float_format.format(value)
            else:
                text = html.escape(str(value))
            cells.append(f"<td>{text}</td>")
        rows.append(f"<tr>{''.join(cells)}</tr>")

    note = ""
    if len(df) > max_rows:
        note = f'<p class="note">Showing {max_rows} of {len(df)} rows.</p>'
    return f'<table><thead><tr>{header}</tr></thead><tbody>{"".join(rows)}</tbody></table>{note}'


class ReportAgent(BaseAgent):
    """Agent for generating the self-contained HTML report."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "report_title": "T-ALL Cell Line RNA-seq Report",
            "author": "tall-report pipeline",
            "gse": None,
            "cell_line": "T-ALL cell line",
            "contrast": ["treated", "control"],
            "condition_column": "condition",
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "gsea_fdr_cutoff": 0.25,
            "max_table_rows": 25,
            "narrative_top_n": 5,
            "embed_figures": True,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent5_report", input_dir, output_dir, merged_config)

    def validate_inputs(self) -> bool:
        """Report generation is allowed with partial data."""
        return True

    def _load_all_data(self) -> Dict[str, Any]:
        """Load all available data from previous agents."""
        data: Dict[str, Any] = {}

        csv_files = [
            "metadata.csv",
            "deg_significant.csv",
            "deg_all_results.csv",
            "size_factors.csv",
            "pathway_ora.csv",
            "pathway_summary.csv",
            "gsea_results.csv",
        ]
        json_files = [
            "dataset_summary.json",
            "enrichr_links.json",
            "meta_agent1_dataset.json",
            "meta_agent2_deg.json",
            "meta_agent3_pathway.json",
            "meta_agent4_visualization.json",
        ]

        for filename in csv_files:
            filepath = self.input_dir / filename
            if filepath.exists():
                try:
                    data[filename.replace(".csv", "")] = pd.read_csv(filepath)
                    self.logger.info(f"Loaded {filename}")
                except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
                    self.logger.warning(f"Error loading {filename}: {e}")

        for filename in json_files:
            filepath = self.input_dir / filename
            if filepath.exists():
                try:
                    with open(filepath, 'r', encoding='utf-8') as f:
                        data[filename.replace(".json", "")] = json.load(f)
                    self.logger.info(f"Loaded {filename}")
                except json.JSONDecodeError as e:
                    self.logger.warning(f"Error loading {filename}: {e}")

        data['figures'] = {}
        figures_dir = self.input_dir / "figures"
        if figures_dir.exists():
            for img_path in sorted(figures_dir.glob("*.png")):
                if self.config["embed_figures"]:
                    with open(img_path, 'rb') as f:
                        img_data = base64.b64encode(f.read()).decode('utf-8')
                    data['figures'][img_path.stem] = f"data:image/png;base64,{img_data}"
                else:
                    data['figures'][img_path.stem] = str(img_path)
                self.logger.info(f"Loaded figure: {img_path.name}")

        return data

    def _figure_html(self, data: Dict, name: str) -> str:
        src = data['figures'].get(name)
        if not src:
            return ""
        caption = FIGURE_CAPTIONS.get(name, name)
        return (f'<figure><img src="{src}" alt="{html.escape(name)}">'
                f'<figcaption>{html.escape(caption)}</figcaption></figure>')

    def _overview_html(self, data: Dict) -> str:
        dataset = data.get('dataset_summary', {})
        treated, control = self.config["contrast"]
        gse = dataset.get('gse') or self.config.get("gse")
        gse_html = "local count matrix"
        if gse:
            url = f"https://www.ncbi.nlm.nih.gov/geo/query/acc.cgi?acc={gse}"
            gse_html = f'<a href="{html.escape(url)}">{html.escape(str(gse))}</a>'

        return f'''
        <section id="overview">
            <h2>1. Study Overview</h2>
            <table class="kv">
                <tr><th>Cell line</th><td>{html.escape(str(dataset.get('cell_line') or self.config['cell_line']))}</td></tr>
                <tr><th>Data source</th><td>{gse_html}</td></tr>
                <tr><th>Comparison</th><td>{html.escape(treated)} vs {html.escape(control)}</td></tr>
                <tr><th>Samples</th><td>{dataset.get('n_samples', 'n/a')}</td></tr>
                <tr><th>Genes quantified</th><td>{dataset.get('n_genes', 'n/a')}</td></tr>
            </table>
        </section>'''

    def _qc_html(self, data: Dict) -> str:
        dataset = data.get('dataset_summary', {})
        rows = []
        library_sizes = dataset.get('library_sizes', {})
        detected = dataset.get('genes_detected', {})
        size_factors = {}
        if 'size_factors' in data:
            size_factors = dict(zip(data['size_factors']['sample_id'].astype(str),
                                    data['size_factors']['size_factor']))
        metadata = data.get('metadata')
        condition_col = self.config["condition_column"]
        conditions = {}
        if metadata is not None and condition_col in metadata.columns:
            conditions = dict(zip(metadata.iloc[:, 0].astype(str), metadata[condition_col].astype(str)))

        for sample in library_sizes:
            sf = size_factors.get(sample)
            sf_text = f"{sf:.3f}" if sf is not None else ""
            rows.append(
                f"<tr><td>{html.escape(sample)}</td><td>{html.escape(conditions.get(sample, ''))}</td>"
                f"<td>{library_sizes[sample]:,}</td><td>{detected.get(sample, '')}</td><td>{sf_text}</td></tr>"
            )

        table = ""
        if rows:
            table = ("<table><thead><tr><th>Sample</th><th>Condition</th><th>Library size</th>"
                     "<th>Genes detected</th><th>Size factor</th></tr></thead>"
                     f"<tbody>{''.join(rows)}</tbody></table>")

        return f'''
        <section id="qc">
            <h2>2. Dataset &amp; Quality Control</h2>
            {table}
            {self._figure_html(data, "pca_plot")}
            {self._figure_html(data, "sample_distance_heatmap")}
            {self._figure_html(data, "dispersion_plot")}
        </section>'''

    def _deg_html(self, data: Dict, summary: Dict) -> str:
        deg_sig = data.get('deg_significant')
        meta = data.get('meta_agent2_deg', {})
        shrink = "with" if meta.get('lfc_shrinkage') else "without"

        return f'''
        <section id="deg">
            <h2>3. Differential Expression</h2>
            <p>{summary['n_deg']:,} significant genes ({summary['n_up']:,} up, {summary['n_down']:,} down)
               at padj &lt; {self.config['padj_cutoff']} and |log2FC| &gt; {self.config['log2fc_cutoff']},
               {shrink} LFC shrinkage.</p>
            {self._figure_html(data, "volcano_plot")}
            {self._figure_html(data, "ma_plot")}
            {self._figure_html(data, "heatmap_top_degs")}
            <h3>Top genes</h3>
            {dataframe_to_html(deg_sig, self.config['max_table_rows'])}
        </section>'''

    def _pathway_html(self, data: Dict) -> str:
        links = data.get('enrichr_links', {})
        ora = data.get('pathway_ora')
        gsea = data.get('gsea_results')

        blocks = []
        for direction, label in (("up", "Up-regulated genes"), ("down", "Down-regulated genes")):
            link = links.get(direction, {}).get('url')
            link_html = (f' <a class="enrichr" href="{html.escape(link)}">Open in Enrichr</a>'
                         if link else "")
            subset = None
            if ora is not None and len(ora):
                subset = ora[ora['direction'] == direction][
                    ['database', 'term_name', 'padj', 'combined_score', 'overlap']
                ]
            blocks.append(f"<h3>{label}{link_html}</h3>"
                          f"{dataframe_to_html(subset, self.config['max_table_rows'])}")

        gsea_table = None
        if gsea is not None and len(gsea):
            gsea_table = gsea[['gene_set', 'term_name', 'nes', 'pvalue', 'fdr']]

        return f'''
        <section id="pathways">
            <h2>4. Pathway Enrichment</h2>
            {self._figure_html(data, "pathway_barplot")}
            {''.join(blocks)}
            <h3>GSEA prerank</h3>
            {self._figure_html(data, "gsea_nes_barplot")}
            {dataframe_to_html(gsea_table, self.config['max_table_rows'])}
        </section>'''

    def _interpretation_html(self, narrative: List[str], summary: Dict) -> str:
        paragraphs = render_narrative(narrative, summary)
        return f'''
        <section id="interpretation">
            <h2>5. Interpretation</h2>
            {paragraphs}
            <p class="note">Enrichment reflects association with the gene lists and ranking,
               not causal pathway activity.</p>
        </section>'''

    def _methods_html(self, data: Dict, versions: Dict[str, str]) -> str:
        pathway_meta = data.get('meta_agent3_pathway', {}).get('config_used', {})
        ora_libs = ", ".join(pathway_meta.get('ora_libraries', [])) or "n/a"
        gsea_libs = ", ".join(pathway_meta.get('gsea_libraries', [])) or "n/a"
        version_rows = "".join(
            f"<tr><td>{html.escape(name)}</td><td>{html.escape(v)}</td></tr>" for name, v in versions.items()
        )

        return f'''
        <section id="methods">
            <h2>6. Methods</h2>
            <ul>
                <li>Counts: per-sample gene counts from the GEO supplementary archive,
                    Ensembl version suffixes stripped and duplicates summed.</li>
                <li>Differential expression: PyDESeq2 (median-of-ratios normalization,
                    Wald test, Benjamini-Hochberg correction, Cook's outlier refitting).</li>
                <li>ORA: Enrichr via gseapy on up- and down-regulated genes separately
                    ({html.escape(ora_libs)}).</li>
                <li>GSEA: gseapy prerank on -log10(p) &times; sign(log2FC)
                    ({html.escape(gsea_libs)}).</li>
                <li>PCA and sample distances use variance-stabilized counts.</li>
            </ul>
            <table><thead><tr><th>Package</th><th>Version</th></tr></thead>
            <tbody>{version_rows}</tbody></table>
        </section>'''

    def _generate_css(self) -> str:
        return '''<style>
        body { font-family: Helvetica, Arial, sans-serif; max-width: 1100px; margin: 0 auto;
               padding: 24px; color: #222; line-height: 1.5; }
        h1 { border-bottom: 3px solid #2c3e50; padding-bottom: 8px; }
        h2 { color: #2c3e50; margin-top: 40px; border-bottom: 1px solid #ddd; }
        table { border-collapse: collapse; margin: 12px 0; font-size: 13px; }
        th, td { border: 1px solid #ddd; padding: 4px 8px; text-align: left; }
        th { background: #f4f6f8; }
        figure { margin: 20px 0; text-align: center; }
        figure img { max-width: 100%; }
        figcaption { font-size: 13px; color: #555; }
        .note, .empty { color: #777; font-size: 13px; }
        a.enrichr { font-size: 13px; margin-left: 12px; }
        nav a { margin-right: 14px; }
        </style>'''

    def _generate_html(self, data: Dict, summary: Dict, narrative: List[str],
                       versions: Dict[str, str]) -> str:
        title = html.escape(self.config["report_title"])
        generated = datetime.now().strftime('%Y-%m-%d %H:%M')

        return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    {self._generate_css()}
</head>
<body>
    <h1>{title}</h1>
    <p class="note">Generated {generated} by {html.escape(self.config["author"])}</p>
    <nav>
        <a href="#overview">Overview</a>
        <a href="#qc">QC</a>
        <a href="#deg">DEG</a>
        <a href="#pathways">Pathways</a>
        <a href="#interpretation">Interpretation</a>
        <a href="#methods">Methods</a>
    </nav>
    {self._overview_html(data)}
    {self._qc_html(data)}
    {self._deg_html(data, summary)}
    {self._pathway_html(data)}
    {self._interpretation_html(narrative, summary)}
    {self._methods_html(data, versions)}
</body>
</html>
'''

    def run(self) -> Dict[str, Any]:
        """Generate the HTML report."""
        data = self._load_all_data()

        summary = summarize_results(
            data.get('deg_significant'),
            data.get('deg_all_results'),
            data.get('pathway_ora'),
            data.get('gsea_results'),
            top_n=self.config["narrative_top_n"],
            gsea_fdr_cutoff=self.config["gsea_fdr_cutoff"],
        )
        narrative = build_narrative(
            summary, self.config["contrast"],
            self.config["padj_cutoff"], self.config["log2fc_cutoff"]
        )
        versions = package_versions()

        self.save_json({
            "summary": summary,
            "narrative": narrative,
            "enrichr_links": data.get('enrichr_links', {}),
            "dataset": data.get('dataset_summary', {}),
            "package_versions": versions,
            "figures": sorted(data['figures']),
        }, "report_data.json")

        html_content = self._generate_html(data, summary, narrative, versions)

        report_path = self.output_dir / "report.html"
        with open(report_path, 'w', encoding='utf-8') as f:
            f.write(html_content)

        self.logger.info(f"Report generated: {report_path}")

        return {
            "report_path": str(report_path),
            "data_sources_loaded": [k for k in data if k != 'figures'],
            "figures_embedded": len(data['figures'])
        }

    def validate_outputs(self) -> bool:
        """Validate report outputs."""
        report_path = self.output_dir / "report.html"
        if not report_path.exists():
            self.logger.error("Report HTML not generated")
            return False

        if report_path.stat().st_size < 1000:
            self.logger.error("Report HTML seems too small")
            return False

        return True
