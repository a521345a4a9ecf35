"""
Experiment tracking utilities using MLflow.
"""

import math
import time
import mlflow
import logging
from typing import Dict, Any, Optional, Mapping

logger = logging.getLogger(__name__)


class ExperimentTracker:
    """MLflow experiment tracking wrapper."""

    def __init__(self, config: Dict[str, Any]):
        """Point MLflow at the configured store and select the experiment."""
        mlflow_config = config.get('mlflow', {})
        self.tracking_uri = mlflow_config.get('tracking_uri', 'file:./mlruns')
        self.experiment_name = mlflow_config.get('experiment_name', 'dress')
        self.tags = {str(k): str(v) for k, v in mlflow_config.get('tags', {}).items()}

        mlflow.set_tracking_uri(self.tracking_uri)
        self.experiment_id = self._experiment_id()
        mlflow.set_experiment(experiment_id=self.experiment_id)

    def _experiment_id(self) -> str:
        """
        Id of the named experiment, created on first use.

        MLflow keeps deleted experiment names reserved, so a deleted experiment
        is replaced by a timestamped one.
        """
        experiment = mlflow.get_experiment_by_name(self.experiment_name)
        if experiment is not None:
            if experiment.lifecycle_stage != "deleted":
                return experiment.experiment_id
            self.experiment_name = f"{self.experiment_name}_{int(time.time())}"
            logger.warning(f"Experiment was deleted; logging to {self.experiment_name}")
        return mlflow.create_experiment(self.experiment_name)

    def start_run(self, run_name: Optional[str] = None, nested: bool = False):
        """Start MLflow run tagged with the configured tags."""
        return mlflow.start_run(run_name=run_name, nested=nested, tags=self.tags or None)

    def log_params(self, params: Dict[str, Any], prefix: str = ""):
        """Log parameters to MLflow."""
        flat_params = self._flatten_dict(params, prefix)
        for key, value in flat_params.items():
            try:
                mlflow.log_param(key, value)
            except Exception as e:
                logger.warning(f"Failed to log param {key}: {e}")

    def log_metrics(self, metrics: Mapping[str, float], step: Optional[int] = None, prefix: str = ""):
        """Log metrics to MLflow; undefined (NaN) values are skipped."""
        for key, value in metrics.items():
            if value is None or (isinstance(value, float) and math.isnan(value)):
                continue
            name = f"{prefix}{key}"
            try:
                mlflow.log_metric(name, value, step=step)
            except Exception as e:
                logger.warning(f"Failed to log metric {name}: {e}")

    def log_cross_validation(self, result, prefix: str = "cv_"):
        """Log per-fold metrics as steps and the mean/std summary."""
        for fold in result.folds:
            self.log_metrics(fold.performance, step=fold.index, prefix=f"{prefix}fold_")
        self.log_metrics(result.summary_metrics(prefix=prefix))

    def log_artifacts(self, artifact_path: str):
        """Log artifacts to MLflow."""
        try:
            mlflow.log_artifacts(artifact_path)
        except Exception as e:
            logger.warning(f"Failed to log artifacts: {e}")

    def log_dict(self, dictionary: Dict[str, Any], artifact_file: str):
        """Log dictionary as a JSON/YAML artifact to MLflow."""
        try:
            mlflow.log_dict(dictionary, artifact_file)
            logger.info(f"Dictionary logged as {artifact_file}")
        except Exception as e:
            logger.warning(f"Failed to log dictionary to MLflow: {e}")

    def log_model(self, model, artifact_file: str = "model.json"):
        """Log a model's exported snapshot."""
        self.log_params({"kind": model.kind, "seed": model.seed}, prefix="model")
        self.log_dict(model.export(), artifact_file)

    def _flatten_dict(self, d: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
        """Flatten nested dictionary for parameter logging."""
        items = []

        for key, value in d.items():
            new_key = f"{prefix}.{key}" if prefix else key

            if isinstance(value, dict):
                items.extend(self._flatten_dict(value, new_key).items())
            else:
                # MLflow params are strings
                items.append((new_key, str(value)))

        return dict(items)


def setup_experiment_tracking(config: Dict[str, Any]) -> Optional[ExperimentTracker]:
    """Setup experiment tracking based on configuration."""
    tracking_config = config.get('experiment_tracking', {})

    if tracking_config.get('backend', 'mlflow') == 'mlflow':
        return ExperimentTracker(tracking_config)
    logger.warning("No experiment tracking configured")
    return None
