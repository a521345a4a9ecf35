"""
Test suite for utilities and experiment tracking.
"""

import math

import pytest
import pandas as pd
import numpy as np
from unittest.mock import Mock, patch

from dress.utils.config import RuntimeConfig, load_config
from dress.utils.errors import DegenerateFitError, InvalidConfigurationError, ModelingError
from dress.utils.experiment_tracking import ExperimentTracker, setup_experiment_tracking
from dress.utils.model_utils import (
    ModelComparator, ModelEvaluator, Performance, calculate_statistical_significance
)
from dress.utils.parallel import run_tasks


TRACKING_CONFIG = {
    'mlflow': {
        'tracking_uri': 'file:./test_mlruns',
        'experiment_name': 'test_experiment'
    }
}


@pytest.fixture
def tracker():
    """Tracker whose MLflow setup calls are patched out."""
    with patch('mlflow.set_tracking_uri'), patch('mlflow.get_experiment_by_name', return_value=None), \
            patch('mlflow.create_experiment', return_value='1'), patch('mlflow.set_experiment'):
        yield ExperimentTracker(TRACKING_CONFIG)


class TestExperimentTracker:
    """Test experiment tracking functionality."""

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """Test ExperimentTracker initialization."""
        mock_get_exp.return_value = None
        mock_create_exp.return_value = "test_exp_id"

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.tracking_uri == 'file:./test_mlruns'
        assert tracker.experiment_name == 'test_experiment'
        mock_set_uri.assert_called_once_with('file:./test_mlruns')
        mock_create_exp.assert_called_once_with('test_experiment')
        mock_set_exp.assert_called_once_with(experiment_id="test_exp_id")

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_existing_experiment(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """An existing experiment is reused."""
        mock_get_exp.return_value = Mock(lifecycle_stage="active", experiment_id="7")

        ExperimentTracker(TRACKING_CONFIG)

        mock_create_exp.assert_not_called()
        mock_set_exp.assert_called_once_with(experiment_id="7")

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_deleted_experiment(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """A deleted experiment is replaced by a timestamped one."""
        mock_get_exp.return_value = Mock(lifecycle_stage="deleted", experiment_id="7")
        mock_create_exp.return_value = "8"

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.experiment_name.startswith('test_experiment_')
        mock_create_exp.assert_called_once_with(tracker.experiment_name)
        mock_set_exp.assert_called_once_with(experiment_id="8")

    @patch('mlflow.start_run')
    def test_start_run(self, mock_start_run, tracker):
        """Test starting MLflow run."""
        tracker.start_run("test_run")

        mock_start_run.assert_called_once_with(run_name="test_run", nested=False, tags=None)

    @patch('mlflow.start_run')
    def test_start_run_with_tags(self, mock_start_run):
        """Configured tags are attached to every run."""
        config = {'mlflow': {**TRACKING_CONFIG['mlflow'], 'tags': {'cohort': 'pbc', 'version': 2}}}
        with patch('mlflow.set_tracking_uri'), patch('mlflow.get_experiment_by_name', return_value=None), \
                patch('mlflow.create_experiment', return_value='1'), patch('mlflow.set_experiment'):
            tracker = ExperimentTracker(config)
        tracker.start_run("tagged", nested=True)

        mock_start_run.assert_called_once_with(run_name="tagged", nested=True,
                                               tags={'cohort': 'pbc', 'version': '2'})

    @patch('mlflow.log_param')
    def test_log_params(self, mock_log_param, tracker):
        """Test logging parameters."""
        tracker.log_params({'depth': 5, 'tree': 100}, prefix='model')

        assert mock_log_param.call_count == 2
        mock_log_param.assert_any_call('model.depth', '5')
        mock_log_param.assert_any_call('model.tree', '100')

    @patch('mlflow.log_metric')
    def test_log_metrics(self, mock_log_metric, tracker):
        """Undefined metrics are not sent."""
        tracker.log_metrics({'accuracy': 0.95, 'auc': float('nan'), 'count': 40}, prefix='cv_')

        assert mock_log_metric.call_count == 2
        mock_log_metric.assert_any_call('cv_accuracy', 0.95, step=None)
        mock_log_metric.assert_any_call('cv_count', 40, step=None)

    @patch('mlflow.log_metric')
    def test_log_cross_validation(self, mock_log_metric, tracker):
        """Per-fold values are logged as steps followed by the summary."""
        fold = Mock(index=1, performance=Performance({'count': 10, 'r2': 0.8}))
        result = Mock(folds=[fold])
        result.summary_metrics.return_value = {'cv_r2': 0.8, 'cv_r2_std': 0.0}

        tracker.log_cross_validation(result)

        mock_log_metric.assert_any_call('cv_fold_r2', 0.8, step=1)
        mock_log_metric.assert_any_call('cv_r2', 0.8, step=None)

    @patch('mlflow.log_dict')
    @patch('mlflow.log_param')
    def test_log_model(self, mock_log_param, mock_log_dict, tracker):
        """The exported snapshot is stored as an artifact."""
        model = Mock(kind='linear', seed=3)
        model.export.return_value = {'kind': 'linear'}

        tracker.log_model(model)

        mock_log_param.assert_any_call('model.kind', 'linear')
        mock_log_dict.assert_called_once_with({'kind': 'linear'}, 'model.json')

    def test_flatten_dict(self, tracker):
        """Test dictionary flattening."""
        nested_dict = {
            'model': {
                'kind': 'random_forest',
                'hyperparameters': {
                    'tree': 100
                }
            }
        }

        flattened = tracker._flatten_dict(nested_dict)

        assert flattened['model.kind'] == 'random_forest'
        assert flattened['model.hyperparameters.tree'] == '100'


def test_setup_experiment_tracking():
    """Test experiment tracking setup function."""
    mlflow_config = {
        'experiment_tracking': {
            'backend': 'mlflow',
            **TRACKING_CONFIG
        }
    }

    with patch('mlflow.set_tracking_uri'), patch('mlflow.get_experiment_by_name', return_value=None), \
            patch('mlflow.create_experiment', return_value='1'), patch('mlflow.set_experiment'):
        tracker = setup_experiment_tracking(mlflow_config)
        assert isinstance(tracker, ExperimentTracker)

    none_config = {
        'experiment_tracking': {
            'backend': 'none'
        }
    }
    assert setup_experiment_tracking(none_config) is None


class TestRuntimeConfig:
    """Test runtime configuration."""

    def test_resolved_seed(self):
        """A missing seed is drawn once and then fixed."""
        config = RuntimeConfig().resolved()
        assert isinstance(config.seed, int)
        assert config.resolved() is config

    def test_spawn(self):
        """Children are reproducible and distinct."""
        first = RuntimeConfig(seed=1).spawn(3)
        second = RuntimeConfig(seed=1).spawn(3)
        assert [c.seed for c in first] == [c.seed for c in second]
        assert len({c.seed for c in first}) == 3

    def test_z(self):
        assert RuntimeConfig(significance=0.05).z == pytest.approx(1.959964, abs=1e-5)

    def test_invalid(self):
        with pytest.raises(InvalidConfigurationError):
            RuntimeConfig(significance=1.5)
        with pytest.raises(InvalidConfigurationError):
            RuntimeConfig(scheduler='gpu')

    def test_from_dict(self, sample_config):
        config = RuntimeConfig.from_dict(sample_config)
        assert config.seed == 42
        assert config.scheduler == 'sync'

    def test_load_config(self, temp_directory):
        path = temp_directory / 'config.yaml'
        path.write_text('random_seed: 7\nruntime:\n  scheduler: threads\n')
        assert RuntimeConfig.from_dict(load_config(path)).seed == 7

    def test_invalid_configuration_is_value_error(self):
        """Configuration errors are also ValueErrors."""
        assert issubclass(InvalidConfigurationError, ValueError)
        assert issubclass(InvalidConfigurationError, ModelingError)


class TestRunTasks:
    """Test parallel task execution."""

    @pytest.mark.parametrize('scheduler', ['sync', 'threads'])
    def test_order_preserved(self, scheduler):
        tasks = [lambda i=i: i * i for i in range(6)]
        assert run_tasks(tasks, RuntimeConfig(scheduler=scheduler)) == [0, 1, 4, 9, 16, 25]

    def test_capture(self):
        """Captured exceptions are returned in place of results."""
        def fail():
            raise DegenerateFitError("no fit")

        results = run_tasks([lambda: 1, fail], RuntimeConfig(scheduler='threads'), capture=(ModelingError,))
        assert results[0] == 1
        assert isinstance(results[1], DegenerateFitError)

    def test_uncaptured_exception_propagates(self):
        def fail():
            raise DegenerateFitError("no fit")

        with pytest.raises(DegenerateFitError):
            run_tasks([fail], RuntimeConfig(scheduler='sync'))


class TestModelEvaluator:
    """Test metric computation."""

    def test_binary_metrics(self):
        evaluator = ModelEvaluator()
        scores = np.array([[0.9, 0.1], [0.2, 0.8], [0.6, 0.4], [0.3, 0.7]])
        performance = evaluator.calculate_metrics([0, 1, 1, 1], [0, 1, 0, 1], scores, [0, 1])

        assert performance.count == 4
        assert performance['accuracy'] == pytest.approx(0.75)
        assert performance['sensitivity'] == pytest.approx(2 / 3)
        assert performance['specificity'] == pytest.approx(1.0)
        assert performance['auc'] == pytest.approx(1.0)

    def test_single_class_auc_undefined(self):
        performance = ModelEvaluator().calculate_metrics([1, 1], [1, 0], np.array([[0.1, 0.9], [0.6, 0.4]]), [0, 1])
        assert math.isnan(performance['auc'])
        assert performance.to_dict(nan_as_none=True)['auc'] is None

    def test_truth_outside_trained_classes(self):
        """A held-out label the model never saw widens the label set instead of failing."""
        scores = np.array([[0.9, 0.1], [0.2, 0.8], [0.7, 0.3]])
        performance = ModelEvaluator().calculate_metrics(['a', 'b', 'c'], ['a', 'b', 'a'], scores, ['a', 'b'])

        assert performance.count == 3
        assert performance['accuracy'] == pytest.approx(2 / 3)
        assert performance['sensitivity'] == pytest.approx(2 / 3)
        assert math.isnan(performance['auc'])

    def test_regression_metrics(self):
        performance = ModelEvaluator().calculate_regression_metrics([1.0, 2.0, 3.0], [1.0, 2.0, 4.0], n_features=1)
        assert performance['mae'] == pytest.approx(1 / 3)
        assert performance['rmse'] == pytest.approx(math.sqrt(1 / 3))
        assert {'r2', 'adjusted_r2'} <= set(performance)

    def test_performance_requires_count(self):
        with pytest.raises(ValueError):
            Performance({'r2': 0.5})


class TestModelComparator:
    """Test model comparison."""

    def test_compare_and_best(self):
        comparator = ModelComparator()
        comparator.add_model('linear', {'r2': 0.6, 'rmse': 4.0})
        comparator.add_model('random_forest', {'r2': 0.8, 'rmse': 3.0})
        comparator.add_model('knn', {'r2': float('nan'), 'rmse': 5.0})

        table = comparator.compare_models('r2')
        assert isinstance(table, pd.DataFrame)
        assert table.index[0] == 'random_forest'
        assert comparator.get_best_model('r2') == 'random_forest'
        assert comparator.get_best_model('rmse', greater_is_better=False) == 'random_forest'

    def test_empty(self):
        assert ModelComparator().compare_models().empty
        assert ModelComparator().get_best_model('r2') is None


class TestStatisticalSignificance:
    """Test paired comparison of fold scores."""

    def test_paired_t_test(self):
        result = calculate_statistical_significance([0.8, 0.82, 0.85, 0.81], [0.6, 0.65, 0.61, 0.63])
        assert result['difference'] > 0
        assert result['significant']

    def test_constant_difference(self):
        result = calculate_statistical_significance([0.8, 0.9], [0.7, 0.8])
        assert math.isnan(result['p_value'])
        assert not result['significant']

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            calculate_statistical_significance([0.1, 0.2], [0.1])
