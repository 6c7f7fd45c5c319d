"""
Agent scaffolding for the T-ALL report pipeline.

An agent reads tables from its input directory (the user's data for the
dataset agent, the run's accumulated/ directory for the others) and writes
into its own output directory, leaving two traces there:

- log_<agent>.txt: DEBUG-level log of the run
- meta_<agent>.json: timing, config, the agent's result dict, and the
  type and message of any failure
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logger(name: str, log_file: Path) -> logging.Logger:
    """
    DEBUG to log_file, INFO to the console.

    Handlers left by an earlier agent or pipeline with the same name are
    closed first, so each run writes only to its own file.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)
    logger.propagate = False
    return logger


class BaseAgent(ABC):
    """Base class for all pipeline agents."""

    def __init__(
        self,
        agent_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.agent_name = agent_name
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = config or {}

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = configure_logger(
            f"tall_report.{agent_name}", self.output_dir / f"log_{agent_name}.txt"
        )

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.success: bool = False
        self.errors: List[Dict[str, str]] = []

    def load_csv(
        self,
        filename: str,
        required: bool = True,
        index_col: Optional[Union[int, str]] = None
    ) -> Optional[pd.DataFrame]:
        """
        Read a table from the input directory.

        With index_col set, that column becomes a string index (gene and
        sample ids are labels even when they look numeric).
        """
        filepath = self.input_dir / filename

        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            self.logger.warning(f"Optional file not found: {filepath}")
            return None

        self.logger.info(f"Loading {filename}...")
        if index_col is None:
            df = pd.read_csv(filepath)
        else:
            df = pd.read_csv(filepath, index_col=index_col)
            df.index = df.index.astype(str)
            df.columns = df.columns.astype(str)
        self.logger.info(f"  -> {len(df)} rows, {len(df.columns)} columns")
        return df

    def save_csv(self, df: pd.DataFrame, filename: str) -> Path:
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=False)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def load_json(self, filename: str, required: bool = True) -> Optional[Dict]:
        filepath = self.input_dir / filename

        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            return None

        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)

    def save_json(self, data: Dict, filename: str) -> Path:
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        self.logger.info(f"Saved {filename}")
        return filepath

    def missing_outputs(self, filenames: Iterable[str]) -> List[str]:
        """Names from filenames absent in the output directory, each logged."""
        missing = [name for name in filenames if not (self.output_dir / name).exists()]
        for name in missing:
            self.logger.error(f"Missing output file: {name}")
        return missing

    def record_error(self, error: BaseException) -> None:
        self.errors.append({"type": type(error).__name__, "message": str(error)})

    def generate_metadata(self, results: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        elapsed = None
        if self.end_time and self.start_time:
            elapsed = (self.end_time - self.start_time).total_seconds()

        return {
            "agent_name": self.agent_name,
            "timestamp": datetime.now().isoformat(),
            "execution_time_seconds": elapsed,
            "success": self.success,
            "errors": self.errors,
            "config_used": self.config,
            **(results or {})
        }

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Load and check inputs. False stops the agent before run()."""

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Do the agent's work and return a JSON-serializable summary."""

    @abstractmethod
    def validate_outputs(self) -> bool:
        """Check the written outputs. False marks the run as failed."""

    def execute(self) -> Dict[str, Any]:
        """validate_inputs -> run -> validate_outputs, always writing meta_<agent>.json."""
        self.start_time = datetime.now()
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.agent_name}")
        self.logger.info(f"{'='*60}")

        results: Dict[str, Any] = {}
        try:
            if not self.validate_inputs():
                raise ValueError(f"{self.agent_name}: input validation failed")
            self.logger.info("Input validation passed")

            results = self.run()

            if not self.validate_outputs():
                raise ValueError(f"{self.agent_name}: output validation failed")

            self.success = True
            self.logger.info(f"{self.agent_name} completed successfully")

        except Exception as e:
            self.success = False
            self.record_error(e)
            self.logger.error(f"Error in {self.agent_name} ({type(e).__name__}): {e}")
            raise

        finally:
            self.end_time = datetime.now()
            self.save_json(
                self.generate_metadata(results if self.success else None),
                f"meta_{self.agent_name}.json"
            )

        return results


@dataclass
class AgentResult:
    """Outcome of one agent as recorded in pipeline_summary.json."""

    agent_name: str
    success: bool
    output_dir: Path
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output_dir": str(self.output_dir),
            "errors": self.errors,
        }

    def __repr__(self):
        status = "SUCCESS" if self.success else "FAILED"
        return f"AgentResult({self.agent_name}: {status})"
