"""
Agent 1: Dataset Preparation

Downloads the public GEO dataset once and assembles the inputs every
later agent works from.

Input (either):
- count_matrix.csv + metadata.csv already present in the input directory
- config["gse"]: GEO series accession (RAW archive or named supplementary file)
- config["archive_path"]: a local copy of the archive

Output:
- count_matrix.csv: Integer counts (gene_id + one column per sample)
- metadata.csv: sample_id, condition, title (+ GEO characteristics)
- dataset_summary.json: Library sizes and group sizes
- meta_agent1_dataset.json: Execution metadata
"""

import gzip
import io
import logging
import re
import tarfile
from pathlib import Path
from typing import Any, Dict, IO, List, Optional

import numpy as np
import pandas as pd

from ..external_apis.geo_client import GEOClient
from ..utils.base_agent import BaseAgent
from ..utils.gene_ids import strip_version

logger = logging.getLogger(__name__)

COUNT_FILE_SUFFIXES = ('.txt', '.tsv', '.tab', '.csv', '.counts', '.count')
GSM_PATTERN = re.compile(r'(GSM\d+)')


def parse_sample_id(member_name: str) -> str:
    """GSM accession embedded in an archive member name, else its bare stem."""
    name = Path(member_name).name
    match = GSM_PATTERN.search(name)
    if match:
        return match.group(1)
    stem = name[:-3] if name.endswith('.gz') else name
    for suffix in COUNT_FILE_SUFFIXES:
        if stem.endswith(suffix):
            return stem[:-len(suffix)]
    return stem


def read_count_table(handle: IO[bytes], name: str) -> pd.Series:
    """
    Read one per-sample count file into a gene_id -> count Series.

    Handles HTSeq-count output (two columns, "__" summary rows at the end)
    and featureCounts output (comment line, Geneid header, six annotation
    columns before the count column).
    """
    if name.endswith('.gz'):
        handle = gzip.GzipFile(fileobj=handle)
    text = io.TextIOWrapper(handle, encoding='utf-8')
    sep = ',' if name.replace('.gz', '').endswith('.csv') else '\t'

    df = pd.read_csv(text, sep=sep, comment='#', header=None, dtype=str)
    if df.empty:
        raise ValueError(f"Empty count file: {name}")

    # Header row, if any: featureCounts "Geneid", or a non-numeric last cell
    first_count = pd.to_numeric(df.iloc[0, -1], errors='coerce')
    if df.iloc[0, 0] == 'Geneid' or pd.isna(first_count):
        df = df.iloc[1:]

    genes = df.iloc[:, 0].astype(str)
    counts = pd.to_numeric(df.iloc[:, -1], errors='coerce')

    series = pd.Series(counts.values, index=genes.values, name=parse_sample_id(name))
    series = series[~series.index.str.startswith('__')]
    return series.dropna()


def counts_from_archive(archive_path: Path) -> pd.DataFrame:
    """Build a genes x samples matrix from a tar of per-sample count files."""
    columns: List[pd.Series] = []
    with tarfile.open(archive_path, 'r:*') as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            bare = member.name[:-3] if member.name.endswith('.gz') else member.name
            if not bare.lower().endswith(COUNT_FILE_SUFFIXES):
                continue
            extracted = tar.extractfile(member)
            if extracted is None:
                continue
            with extracted:
                columns.append(read_count_table(extracted, member.name))

    if not columns:
        raise ValueError(f"No per-sample count files found in {archive_path}")

    return pd.concat(columns, axis=1)


def counts_from_table(table_path: Path) -> pd.DataFrame:
    """Read a combined count table (gene ids in the first column)."""
    opener = gzip.open if str(table_path).endswith('.gz') else open
    with opener(table_path, 'rt', encoding='utf-8') as f:
        first_line = f.readline()
    sep = '\t' if '\t' in first_line else ','

    df = pd.read_csv(table_path, sep=sep, index_col=0)
    # Gene name/biotype/length columns ride along in many GEO tables
    numeric = df.select_dtypes(include=[np.number])
    skipped = [c for c in df.columns if c not in numeric.columns]
    if skipped:
        logger.info(f"Ignoring non-count columns: {skipped}")
    return numeric.drop(columns=[c for c in numeric.columns
                                 if str(c).lower() in ('length', 'gene_length')])


def clean_count_matrix(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize ids and values: strip Ensembl versions, sum duplicate ids,
    fill missing genes with zero, require non-negative integers.
    """
    counts = counts.copy()
    counts.index = [strip_version(g) for g in counts.index.astype(str)]
    counts = counts.groupby(level=0).sum(min_count=1)
    counts = counts.fillna(0)

    if (counts < 0).any().any():
        raise ValueError("Count matrix contains negative values")

    rounded = counts.round()
    if not np.allclose(counts.values, rounded.values):
        logger.warning("Non-integer counts found; rounding to the nearest integer")
    counts = rounded.astype(np.int64)
    counts.index.name = 'gene_id'
    return counts


def assign_conditions(
    samples: List[str],
    annotations: Optional[pd.DataFrame],
    sample_conditions: Optional[Dict[str, str]] = None,
    condition_field: Optional[str] = None,
    condition_patterns: Optional[Dict[str, str]] = None
) -> pd.Series:
    """
    Condition label per sample (NaN where none applies), resolved from the
    explicit mapping, then a GEO characteristics field, then title patterns.
    """
    result = pd.Series(np.nan, index=samples, dtype=object)

    if sample_conditions:
        return result.index.to_series().map(sample_conditions).astype(object)

    if annotations is None or annotations.empty:
        raise ValueError("No sample annotations available to derive conditions from")
    annot = annotations.set_index('sample_id').reindex(samples)

    if condition_field:
        field = condition_field.lower()
        if field not in annot.columns:
            raise ValueError(f"Characteristics field '{condition_field}' not found; "
                             f"available: {sorted(annot.columns)}")
        return annot[field].str.strip()

    if condition_patterns:
        titles = annot['title'].fillna('').astype(str)
        titles = titles.where(titles != '', pd.Series(samples, index=samples))
        for condition, pattern in condition_patterns.items():
            regex = re.compile(pattern, flags=re.IGNORECASE)
            hit = titles.apply(lambda t: bool(regex.search(t))) & result.isna()
            result[hit] = condition
        return result

    raise ValueError("Set one of sample_conditions, condition_field or condition_patterns")


class DatasetAgent(BaseAgent):
    """Agent that downloads the GEO dataset and builds the count matrix."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "gse": None,
            "archive_file": None,
            "archive_path": None,
            "condition_column": "condition",
            "contrast": ["treated", "control"],
            "sample_conditions": None,
            "condition_field": None,
            "condition_patterns": None,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_dataset", input_dir, output_dir, merged_config)

        self.mode: Optional[str] = None
        self.counts: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Decide where the data comes from."""
        if (self.input_dir / "count_matrix.csv").exists() and \
                (self.input_dir / "metadata.csv").exists():
            self.mode = "local"
        elif self.config.get("archive_path"):
            if not Path(self.config["archive_path"]).exists():
                self.logger.error(f"Archive not found: {self.config['archive_path']}")
                return False
            self.mode = "archive"
        elif self.config.get("gse"):
            self.mode = "geo"
        else:
            self.logger.error("No count_matrix.csv in input and no GEO accession or archive configured")
            return False

        self.logger.info(f"Dataset source: {self.mode}")
        return True

    def _load_local(self) -> None:
        self.counts = clean_count_matrix(self.load_csv("count_matrix.csv", index_col=0))

        metadata = self.load_csv("metadata.csv")
        metadata = metadata.rename(columns={metadata.columns[0]: 'sample_id'})
        if self.config["condition_column"] not in metadata.columns:
            raise ValueError(f"Condition column '{self.config['condition_column']}' not in metadata.csv")
        self.metadata = metadata

    def _fetch_archive(self) -> Path:
        if self.mode == "archive":
            return Path(self.config["archive_path"])
        with GEOClient() as client:
            return client.download(self.config["gse"], self.output_dir / "raw",
                                   self.config.get("archive_file"))

    def _fetch_annotations(self) -> Optional[pd.DataFrame]:
        gse = self.config.get("gse")
        if not gse:
            return None
        try:
            with GEOClient() as client:
                return client.fetch_sample_annotations(gse, self.output_dir / "raw")
        except Exception as e:
            if self.config.get("sample_conditions"):
                self.logger.warning(f"GEO annotations unavailable ({e}); using configured conditions")
                return None
            raise

    def _load_remote(self) -> None:
        archive = self._fetch_archive()
        self.logger.info(f"Building count matrix from {archive.name}...")

        if tarfile.is_tarfile(archive):
            raw_counts = counts_from_archive(archive)
        else:
            raw_counts = counts_from_table(archive)
        self.counts = clean_count_matrix(raw_counts)

        samples = [str(s) for s in self.counts.columns]
        annotations = self._fetch_annotations()
        if annotations is None:
            # Local archives without an accession: conditions come from ids only
            annotations = pd.DataFrame({'sample_id': samples, 'title': samples})

        conditions = assign_conditions(
            samples, annotations,
            sample_conditions=self.config.get("sample_conditions"),
            condition_field=self.config.get("condition_field"),
            condition_patterns=self.config.get("condition_patterns"),
        )

        condition_col = self.config["condition_column"]
        metadata = annotations.set_index('sample_id').reindex(samples)
        metadata = metadata.drop(columns=[condition_col], errors='ignore')
        metadata.insert(0, condition_col, conditions.values)
        metadata.index.name = 'sample_id'
        self.metadata = metadata.reset_index()

    def _restrict_to_contrast(self) -> None:
        """Keep only samples in the two contrast groups, in metadata order."""
        condition_col = self.config["condition_column"]
        contrast = self.config["contrast"]

        meta = self.metadata.copy()
        meta['sample_id'] = meta['sample_id'].astype(str)
        keep = meta[condition_col].isin(contrast)
        dropped = meta.loc[~keep, 'sample_id'].tolist()
        if dropped:
            self.logger.warning(f"Dropping {len(dropped)} samples outside contrast {contrast}: {dropped}")
        meta = meta[keep]

        self.counts.columns = self.counts.columns.astype(str)
        missing = set(meta['sample_id']) - set(self.counts.columns)
        if missing:
            self.logger.warning(f"Samples in metadata without counts: {sorted(missing)}")
            meta = meta[~meta['sample_id'].isin(missing)]

        self.metadata = meta.reset_index(drop=True)
        self.counts = self.counts[self.metadata['sample_id'].tolist()]

    def run(self) -> Dict[str, Any]:
        """Load or download the dataset and write the standardized inputs."""
        if self.mode == "local":
            self._load_local()
        else:
            self._load_remote()

        self._restrict_to_contrast()

        count_df = self.counts.reset_index()
        self.save_csv(count_df, "count_matrix.csv")
        self.save_csv(self.metadata, "metadata.csv")

        condition_col = self.config["condition_column"]
        group_sizes = self.metadata[condition_col].value_counts().to_dict()
        library_sizes = self.counts.sum(axis=0)

        summary = {
            "source": self.mode,
            "gse": self.config.get("gse"),
            "cell_line": self.config.get("cell_line"),
            "n_genes": int(self.counts.shape[0]),
            "n_samples": int(self.counts.shape[1]),
            "group_sizes": {str(k): int(v) for k, v in group_sizes.items()},
            "library_sizes": {str(k): int(v) for k, v in library_sizes.items()},
            "genes_detected": {str(k): int(v) for k, v in (self.counts > 0).sum(axis=0).items()},
        }
        self.save_json(summary, "dataset_summary.json")

        self.logger.info("Dataset ready:")
        self.logger.info(f"  Genes: {summary['n_genes']}")
        self.logger.info(f"  Samples: {summary['n_samples']} {summary['group_sizes']}")

        return {
            "source": self.mode,
            "n_genes": summary["n_genes"],
            "n_samples": summary["n_samples"],
            "group_sizes": summary["group_sizes"],
        }

    def validate_outputs(self) -> bool:
        """Both contrast groups must survive with at least one sample."""
        if self.missing_outputs(["count_matrix.csv", "metadata.csv", "dataset_summary.json"]):
            return False

        present = set(self.metadata[self.config["condition_column"]])
        absent = [c for c in self.config["contrast"] if c not in present]
        if absent:
            self.logger.error(f"No samples for contrast level(s): {absent}")
            return False

        return True
