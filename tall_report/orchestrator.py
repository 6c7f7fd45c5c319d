"""
T-ALL Report Pipeline Orchestrator

Runs the five agents in order, accumulating each agent's outputs for the
next one.

Usage:
    from tall_report import ReportPipeline

    pipeline = ReportPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"gse": "GSE12345", "contrast": ["GSI", "DMSO"]}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent2_deg")
    pipeline.run_from("agent3_pathway")  # Resume from agent 3

Agents:
    Dataset -> DEG -> Pathway -> Visualization -> Report
"""

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .agents import (
    DatasetAgent,
    DEGAgent,
    PathwayAgent,
    VisualizationAgent,
    ReportAgent,
)
from .config import load_config
from .utils.base_agent import AgentResult, configure_logger


class ReportPipeline:
    """Orchestrates the T-ALL RNA-seq report pipeline."""

    AGENT_ORDER = [
        "agent1_dataset",
        "agent2_deg",
        "agent3_pathway",
        "agent4_visualization",
        "agent5_report"
    ]

    AGENT_CLASSES = {
        "agent1_dataset": DatasetAgent,
        "agent2_deg": DEGAgent,
        "agent3_pathway": PathwayAgent,
        "agent4_visualization": VisualizationAgent,
        "agent5_report": ReportAgent
    }

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = config or {}

        # Create output directory with timestamp
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = self.output_dir / f"run_{timestamp}"
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.accumulated_dir = self.run_dir / "accumulated"

        self.logger = configure_logger("tall_report.pipeline", self.run_dir / "pipeline.log")

        self.agent_records: Dict[str, AgentResult] = {}

        # Track execution state
        self.execution_state = {
            "run_id": timestamp,
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "errors": {},
            "agent_results": {}
        }

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        # First agent reads the user's input
        if agent_name == self.AGENT_ORDER[0]:
            return self.input_dir

        # Subsequent agents use accumulated outputs
        return self.accumulated_dir

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Copy agent outputs to the accumulated directory for next agents."""
        self.accumulated_dir.mkdir(exist_ok=True)

        agent_output_dir = self.run_dir / agent_name
        if not agent_output_dir.exists():
            return

        # Later outputs replace earlier copies (e.g. the cleaned count matrix)
        for pattern in ["*.csv", "*.json"]:
            for f in agent_output_dir.glob(pattern):
                shutil.copy2(f, self.accumulated_dir / f.name)

        figures_dir = agent_output_dir / "figures"
        if figures_dir.exists():
            dest_figures = self.accumulated_dir / "figures"
            if dest_figures.exists():
                shutil.rmtree(dest_figures)
            shutil.copytree(figures_dir, dest_figures)

    def _copy_initial_inputs(self) -> None:
        """Copy initial input files to the accumulated directory."""
        self.accumulated_dir.mkdir(exist_ok=True)

        if not self.input_dir.exists():
            self.logger.info(f"Input directory {self.input_dir} does not exist; starting empty")
            return

        for pattern in ["*.csv", "*.json"]:
            for f in self.input_dir.glob(pattern):
                shutil.copy2(f, self.accumulated_dir / f.name)

        figures_dir = self.input_dir / "figures"
        if figures_dir.exists():
            shutil.copytree(figures_dir, self.accumulated_dir / "figures", dirs_exist_ok=True)

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        agent_config = {**self.config, **(config_override or {})}

        # A standalone downstream agent reads the input directory through accumulated/
        if agent_name != self.AGENT_ORDER[0] and not self.accumulated_dir.exists():
            self._copy_initial_inputs()

        input_dir = self._get_agent_input_dir(agent_name)
        output_dir = self.run_dir / agent_name

        AgentClass = self.AGENT_CLASSES[agent_name]
        agent = AgentClass(
            input_dir=input_dir,
            output_dir=output_dir,
            config=agent_config
        )

        try:
            results = agent.execute()
        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.execution_state["errors"][agent_name] = str(e)
            self.agent_records[agent_name] = AgentResult(
                agent_name, False, output_dir, errors=agent.errors
            )
            raise

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = results
        self.agent_records[agent_name] = AgentResult(agent_name, True, output_dir)
        self.logger.info(f"{self.agent_records[agent_name]}")

        # Accumulate outputs for next agents
        self._accumulate_outputs(agent_name)

        return results

    def _run_agents(self, agents_to_run: List[str]) -> None:
        self.logger.info(f"Agents to run: {agents_to_run}")

        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                break

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        if stop_after is not None and stop_after not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {stop_after}")

        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting T-ALL RNA-seq Report Pipeline")
        self.logger.info(f"Run directory: {self.run_dir}")

        self._copy_initial_inputs()

        if stop_after:
            stop_idx = self.AGENT_ORDER.index(stop_after) + 1
            agents_to_run = self.AGENT_ORDER[:stop_idx]
        else:
            agents_to_run = self.AGENT_ORDER

        self._run_agents(agents_to_run)

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run_from(self, agent_name: str, previous_run: Optional[Path] = None) -> Dict[str, Any]:
        """
        Resume the pipeline from a specific agent.

        Upstream outputs are taken from previous_run/accumulated when given,
        otherwise from the input directory.
        """
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.execution_state["start_time"] = datetime.now().isoformat()
        self.logger.info(f"Resuming from {agent_name}")

        if previous_run is not None:
            source = Path(previous_run) / "accumulated"
            if not source.exists():
                raise FileNotFoundError(f"No accumulated outputs in {previous_run}")
            shutil.copytree(source, self.accumulated_dir, dirs_exist_ok=True)
        else:
            self._copy_initial_inputs()

        start_idx = self.AGENT_ORDER.index(agent_name)
        self._run_agents(self.AGENT_ORDER[start_idx:])

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()
        return self.execution_state

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state = {
            **self.execution_state,
            "agents": {
                name: record.to_dict()
                for name, record in self.agent_records.items()
            }
        }
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(state, f, indent=2, default=str)


def create_sample_data(output_dir: Path, n_genes: int = 1000, n_samples: int = 6) -> None:
    """
    Create a synthetic T-ALL cell line experiment for demos and tests.

    Models gamma-secretase inhibitor treatment: NOTCH1 targets drop in the
    treated arm, a handful of stress-response genes rise.
    """
    import numpy as np
    import pandas as pd

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    np.random.seed(42)

    notch_targets = ['HES1', 'HES4', 'HES5', 'DTX1', 'NOTCH3', 'NRARP', 'MYC',
                     'IL7R', 'CR2', 'PTCRA', 'GIMAP5', 'CD1E', 'IGF1R', 'HEY1']
    induced_genes = ['DDIT3', 'ATF3', 'TRIB3', 'CHAC1', 'SESN2', 'CDKN1A']
    housekeeping = ['ACTB', 'GAPDH', 'B2M', 'RPLP0', 'CD3E', 'CD7', 'NOTCH1', 'TAL1', 'LMO2']
    known_genes = notch_targets + induced_genes + housekeeping
    random_genes = [f'GENE{i}' for i in range(n_genes - len(known_genes))]
    genes = known_genes + random_genes

    n_treated = n_samples // 2
    n_control = n_samples - n_treated
    treated_samples = [f'GSI_{i+1}' for i in range(n_treated)]
    control_samples = [f'DMSO_{i+1}' for i in range(n_control)]
    samples = treated_samples + control_samples

    base_counts = np.random.negative_binomial(20, 0.05, size=(len(genes), len(samples)))

    fold_changes = {g: 0.15 for g in notch_targets}
    fold_changes.update({g: 5.0 for g in induced_genes})
    for i, gene in enumerate(genes):
        if gene in fold_changes:
            base_counts[i, :n_treated] = (base_counts[i, :n_treated] * fold_changes[gene]).astype(int)

    # Moderately changed background genes
    offset = len(known_genes)
    for i in range(offset + 10, offset + 60):
        fold_change = np.random.choice([2.5, 3, 0.33, 0.4])
        base_counts[i, :n_treated] = (base_counts[i, :n_treated] * fold_change).astype(int)

    count_df = pd.DataFrame(base_counts, columns=samples)
    count_df.insert(0, 'gene_id', genes)

    meta_df = pd.DataFrame({
        'sample_id': samples,
        'condition': ['treated'] * n_treated + ['control'] * n_control,
        'title': [f'CUTLL1 {"GSI" if s.startswith("GSI") else "DMSO"} rep{s.split("_")[1]}'
                  for s in samples]
    })

    count_df.to_csv(output_dir / 'count_matrix.csv', index=False)
    meta_df.to_csv(output_dir / 'metadata.csv', index=False)

    config = {
        "cell_line": "CUTLL1 (synthetic)",
        "contrast": ["treated", "control"],
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0
    }
    with open(output_dir / 'config.json', 'w', encoding='utf-8') as f:
        json.dump(config, f, indent=2)

    print(f"Sample data created in {output_dir}")
    print(f"  - count_matrix.csv: {len(genes)} genes x {len(samples)} samples")
    print(f"  - metadata.csv: {len(samples)} samples")
    print(f"  - config.json: analysis configuration")


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="T-ALL RNA-seq Report Pipeline")
    parser.add_argument("--input", "-i", required=True, help="Input directory")
    parser.add_argument("--output", "-o", help="Output directory")
    parser.add_argument("--config", "-c", help="JSON config file")
    parser.add_argument("--gse", help="GEO series accession to download")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data")
    parser.add_argument("--agent", choices=ReportPipeline.AGENT_ORDER, help="Run specific agent only")
    parser.add_argument("--from-agent", choices=ReportPipeline.AGENT_ORDER, help="Resume from specific agent")
    parser.add_argument("--previous-run", help="Run directory whose outputs feed --from-agent")
    parser.add_argument("--skip-share-links", action="store_true",
                        help="Do not upload gene lists to Enrichr for shareable links")

    args = parser.parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input))
        return 0

    if not args.output:
        parser.error("--output is required unless --create-sample is given")

    config_path = args.config
    if config_path is None and (Path(args.input) / "config.json").exists():
        config_path = Path(args.input) / "config.json"

    overrides = {"gse": args.gse}
    if args.skip_share_links:
        overrides["create_share_links"] = False
    config = load_config(config_path, overrides)

    pipeline = ReportPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=config
    )

    if args.agent:
        try:
            pipeline.run_agent(args.agent)
        except Exception as e:
            pipeline.logger.error(f"{args.agent} failed: {e}")
        finally:
            pipeline._save_execution_state()
        state = pipeline.execution_state
    elif args.from_agent:
        previous = Path(args.previous_run) if args.previous_run else None
        state = pipeline.run_from(args.from_agent, previous_run=previous)
    else:
        state = pipeline.run()

    return 1 if state["failed_agents"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
