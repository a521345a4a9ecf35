"""
Main Training Pipeline
"""

import argparse
import json
import logging
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Dict, List, Optional

import dask.bag as db
import yaml

from dress.models.base import Model, get_model_class, to_jsonable
from dress.pipeline.importance import permutation_importance
from dress.pipeline.stepwise import backward, eliminate, forward
from dress.pipeline.tuning import tune
from dress.pipeline.validation import CrossValidationResult, cross_validate
from dress.utils.config import RuntimeConfig, load_config
from dress.utils.errors import InvalidConfigurationError
from dress.utils.experiment_tracking import setup_experiment_tracking
from dress.utils.model_utils import ModelComparator, calculate_statistical_significance

logger = logging.getLogger(__name__)


class ModelingPipeline:
    """Select, tune, cross-validate, fit and explain one model over nested subjects."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.runtime = RuntimeConfig.from_dict(config).resolved()
        model_cfg = config.get("model", {})
        if "target" not in model_cfg or not model_cfg.get("features"):
            raise InvalidConfigurationError("model.target and model.features are required")

        self.kind: str = model_cfg.get("kind", "linear")
        self.target = model_cfg["target"]
        self.features: List[str] = list(model_cfg["features"])
        self.classification: Optional[bool] = model_cfg.get("classification")
        self.hyperparameters: Dict[str, Any] = dict(model_cfg.get("hyperparameters") or {})

        self.model: Optional[Model] = None
        self.cross_validation: Optional[CrossValidationResult] = None
        self.comparison = None
        self.selection = None
        self.tuning = None
        self.importance: List[Any] = []

        self.experiment_tracker = setup_experiment_tracking(config)

    # ---------- Data ----------
    def load_subjects(self, data_path: str) -> List[Dict[str, Any]]:
        """Load subjects from a JSON array file, or JSON lines (file, glob or directory) with dask."""
        p = Path(data_path)
        logger.info(f"Loading subjects from {data_path}")
        if p.suffix.lower() == ".json":
            with open(p, "r", encoding="utf-8") as f:
                subjects = json.load(f)
        else:
            pattern = str(p / "*.jsonl") if p.is_dir() else str(p)
            subjects = db.read_text(pattern).filter(lambda line: line.strip()).map(json.loads).compute()

        if not isinstance(subjects, list):
            raise ValueError(f"Expected a list of subjects in {data_path}")
        logger.info(f"Loaded {len(subjects)} subjects")
        return subjects

    @property
    def model_class(self):
        return get_model_class(self.kind)

    def _fit_kwargs(self) -> Dict[str, Any]:
        return {"classification": self.classification, "hyperparameters": self.hyperparameters or None}

    def _folds(self) -> Dict[str, Any]:
        cv_cfg = self.config.get("cross_validation", {})
        return {"folds": int(cv_cfg.get("folds", 5)), "shuffle": bool(cv_cfg.get("shuffle", True))}

    # ---------- Comparison ----------
    def compare_models(self, subjects: List[Any]) -> ModelComparator:
        """Cross-validate each candidate kind and optionally adopt the best one."""
        cmp_cfg = self.config.get("comparison", {})
        kinds = cmp_cfg.get("models", [])
        metric = cmp_cfg.get("metric", "accuracy" if self.classification else "r2")
        greater_is_better = cmp_cfg.get("greater_is_better", True)

        comparator = ModelComparator()
        fold_scores = {}
        for kind in kinds:
            result = cross_validate(get_model_class(kind), subjects, self.target, self.features,
                                    classification=self.classification, config=self.runtime, **self._folds())
            comparator.add_model(kind, {m: s.mean for m, s in result.summary.items()})
            fold_scores[kind] = result.scores(metric)
            logger.info(f"[Comparison] {kind}: {metric}={result.mean(metric):.4f}")

        best = comparator.get_best_model(metric, greater_is_better)
        if best is not None:
            for kind, scores in fold_scores.items():
                if kind == best:
                    continue
                test = calculate_statistical_significance(fold_scores[best], scores, self.runtime.significance)
                logger.info(f"[Comparison] {best} vs {kind}: p={test['p_value']:.4f}")
            if cmp_cfg.get("select_best", True) and best != self.kind:
                logger.info(f"[Comparison] Switching model kind {self.kind} -> {best}")
                self.kind = best
                self.hyperparameters = {}

        self.comparison = comparator
        return comparator

    # ---------- Selection ----------
    def _criterion(self, subjects: List[Any]):
        sel_cfg = self.config.get("selection", {})
        criterion = sel_cfg.get("criterion", "aic")
        if criterion != "cross_validation":
            return criterion
        metric = sel_cfg.get("metric", "accuracy" if self.classification else "r2")

        def cross_validated(model: Model) -> float:
            result = cross_validate(type(model), subjects, model.target, model.feature_paths,
                                    classification=model.classification, config=self.runtime, **self._folds())
            return result.mean(metric)

        return cross_validated

    def select_features(self, subjects: List[Any]):
        sel_cfg = self.config.get("selection", {})
        direction = sel_cfg.get("direction", "backward")
        if direction == "eliminate":
            result = eliminate(self.model_class, subjects, self.target, self.features,
                               config=self.runtime, **self._fit_kwargs())
        elif direction in ("backward", "forward"):
            select = backward if direction == "backward" else forward
            result = select(self.model_class, subjects, self.target, self.features,
                            criterion=self._criterion(subjects),
                            greater_is_better=sel_cfg.get("greater_is_better", False),
                            config=self.runtime, **self._fit_kwargs())
        else:
            raise InvalidConfigurationError(f"Unknown selection direction '{direction}'")

        if result.features:
            logger.info(f"[Selection] {len(self.features)} -> {len(result.features)} features: {result.features}")
            self.features = list(result.features)
        self.selection = result
        return result

    # ---------- Tuning ----------
    def tune_hyperparameters(self, subjects: List[Any]):
        tun_cfg = self.config.get("tuning", {})
        result = tune(
            tun_cfg.get("lower", {}),
            tun_cfg.get("upper", {}),
            tun_cfg.get("metric", "accuracy" if self.classification else "r2"),
            self.model_class,
            subjects,
            self.target,
            self.features,
            steps=tun_cfg.get("steps", 4),
            strategy=tun_cfg.get("strategy", "grid"),
            greater_is_better=tun_cfg.get("greater_is_better", True),
            folds=self._folds()["folds"],
            hyperparameters=self.hyperparameters or None,
            classification=self.classification,
            config=self.runtime,
            tracker=self.experiment_tracker,
        )
        self.hyperparameters = {**self.hyperparameters, **result.params}
        self.tuning = result
        return result

    # ---------- Training ----------
    def train_model(self, subjects: List[Any]) -> Dict[str, float]:
        """Cross-validate the final configuration, then fit on all subjects."""
        self.cross_validation = cross_validate(self.model_class, subjects, self.target, self.features,
                                               config=self.runtime, **self._folds(), **self._fit_kwargs())
        cv_metrics = self.cross_validation.summary_metrics(prefix="cv_")
        for metric, value in cv_metrics.items():
            if not metric.endswith("_std"):
                logger.info(f"{metric}: {value:.4f}")

        self.model = self.model_class.fit(subjects, self.target, self.features,
                                          config=self.runtime, **self._fit_kwargs())
        return cv_metrics

    def evaluate_model(self, subjects: List[Any]) -> Dict[str, float]:
        performance = self.model.performance(subjects)
        return {f"train_{metric}": value for metric, value in performance.items()}

    def explain_model(self, subjects: List[Any]):
        imp_cfg = self.config.get("importance", {})
        self.importance = permutation_importance(
            self.model, subjects,
            metric=imp_cfg.get("metric"),
            repeats=int(imp_cfg.get("repeats", 1)),
            config=self.runtime,
        )
        for item in self.importance:
            logger.info(f"[Importance] {item.feature}: {item.importance:.4f} ({item.share:.1%})")
        return self.importance

    # ---------- Artifacts ----------
    def save_artifacts(self, output_dir: str, metrics: Dict[str, float]):
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving artifacts to {out}")

        snapshot = self.model.export()
        with open(out / "model.json", "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2)

        clean_metrics = to_jsonable(metrics)
        clean_config = to_jsonable(self.config)
        importance = [vars(item).copy() for item in self.importance]

        (out / "metrics.yaml").write_text(yaml.dump(clean_metrics), encoding="utf-8")
        (out / "training_config.yaml").write_text(yaml.dump(clean_config), encoding="utf-8")
        if importance:
            (out / "importance.yaml").write_text(yaml.dump(importance, sort_keys=False), encoding="utf-8")
        if self.cross_validation is not None:
            (out / "cross_validation.yaml").write_text(
                yaml.dump(to_jsonable(self.cross_validation.to_dict()), sort_keys=False), encoding="utf-8"
            )
        if self.comparison is not None:
            self.comparison.compare_models().to_csv(out / "comparison.csv")
        if self.tuning is not None:
            self.tuning.trials.to_csv(out / "tuning_trials.csv", index=False)
            if self.tuning.steps:
                (out / "tuning_steps.yaml").write_text(
                    yaml.dump(to_jsonable(list(self.tuning.steps)), sort_keys=False), encoding="utf-8"
                )

        if self.experiment_tracker is not None:
            self.experiment_tracker.log_dict(clean_config, "config.yaml")
            self.experiment_tracker.log_dict(clean_metrics, "metrics.yaml")
            if importance:
                self.experiment_tracker.log_dict({"importance": importance}, "importance.yaml")

        logger.info("Artifacts saved successfully")

    # ---------- Orchestration ----------
    def run_pipeline(self, data_path: str, output_dir: str) -> Dict[str, float]:
        logger.info("Starting modeling pipeline...")
        tracker = self.experiment_tracker
        run_name = self.config.get("experiment_tracking", {}).get("run_name", f"{self.kind}_training")

        with (tracker.start_run(run_name) if tracker is not None else nullcontext()):
            if tracker is not None:
                tracker.log_params(self.config)

            subjects = self.load_subjects(data_path)

            if self.config.get("comparison", {}).get("enabled", False):
                self.compare_models(subjects)
            if self.config.get("selection", {}).get("enabled", False):
                self.select_features(subjects)
            if self.config.get("tuning", {}).get("enabled", False):
                self.tune_hyperparameters(subjects)

            cv_metrics = self.train_model(subjects)
            final_metrics = self.evaluate_model(subjects)
            all_metrics = {**cv_metrics, **final_metrics}

            if self.config.get("importance", {}).get("enabled", True):
                self.explain_model(subjects)

            if tracker is not None:
                tracker.log_cross_validation(self.cross_validation)
                tracker.log_metrics(final_metrics)
                tracker.log_model(self.model)

            self.save_artifacts(output_dir, all_metrics)

            if tracker is not None:
                tracker.log_artifacts(output_dir)

        logger.info(f"Pipeline completed successfully! Final model: {self.model!r}")
        return all_metrics


# =====================
# CLI entrypoint
# =====================

def main():
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Train a model on nested clinical subjects")
    parser.add_argument("--config", type=str, required=True, help="Path to training configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to subjects (JSON array, JSON lines or directory)")
    parser.add_argument("--output", type=str, default="./models", help="Output directory for artifacts")
    args = parser.parse_args()

    config = load_config(args.config)

    pipeline = ModelingPipeline(config)
    pipeline.run_pipeline(args.data, args.output)

    print("Training completed! Artifacts in:", args.output)


if __name__ == "__main__":
    main()
