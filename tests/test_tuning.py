"""
Test suite for hyperparameter tuning.
"""

from unittest.mock import Mock

import pytest

from dress.models import DecisionTree
from dress.pipeline import parameter_grid, tune
from dress.utils.errors import DegenerateFitError, InvalidConfigurationError
from dress.utils.model_utils import Performance

FEATURES = ['Demographics.Age', 'Demographics.Site', 'Exams.BMI']


class TestParameterGrid:
    """Test candidate generation."""

    def test_integer_bounds(self):
        """Integer bounds give deduplicated integers."""
        assert parameter_grid({'depth': 1}, {'depth': 5}, steps=4) == {'depth': [1, 2, 3, 4, 5]}
        assert parameter_grid({'depth': 1}, {'depth': 2}, steps=4) == {'depth': [1, 2]}

    def test_float_and_bool_bounds(self):
        grid = parameter_grid({'rate': 0.1, 'weighted': False}, {'rate': 0.5, 'weighted': True},
                              steps={'rate': 2})
        assert grid['rate'] == pytest.approx([0.1, 0.3, 0.5])
        assert grid['weighted'] == [False, True]

    @pytest.mark.parametrize('lower,upper,steps', [
        ({'depth': 5}, {'depth': 1}, 4),
        ({'depth': 1}, {'size': 5}, 4),
        ({'depth': 1}, {'depth': 5}, 0),
    ])
    def test_invalid_bounds(self, lower, upper, steps):
        with pytest.raises(InvalidConfigurationError):
            parameter_grid(lower, upper, steps)


class TestTune:
    """Test grid and line search."""

    def test_grid_search(self, classification_subjects, runtime):
        """Every grid point is cross-validated and the best is returned."""
        result = tune({'depth': 1}, {'depth': 3}, 'accuracy', DecisionTree, classification_subjects,
                      'Outcome.Death', FEATURES, steps=2, folds=3, classification=True, config=runtime)
        assert result.params['depth'] in (1, 2, 3)
        assert len(result.trials) == 3
        assert result.score == pytest.approx(result.cross_validation.mean('accuracy'))
        assert result.score == pytest.approx(result.trials['value'].max())

    def test_line_search(self, classification_subjects, runtime):
        """Line search varies one parameter at a time and ends on the best point it scored."""
        result = tune({'depth': 1, 'size': 1}, {'depth': 3, 'size': 5}, 'accuracy', DecisionTree,
                      classification_subjects, 'Outcome.Death', FEATURES, steps=2, strategy='line',
                      folds=3, classification=True, config=runtime)
        assert set(result.trials['search']) == {'line:depth', 'line:size'}
        assert result.trials['value'].max() == pytest.approx(result.score)
        assert set(result.params) == {'depth', 'size'}
        assert result.steps[-1]['params'] == result.params
        assert result.steps[-1]['score'] == pytest.approx(result.score)

    def test_line_search_repeats_until_stable(self, runtime):
        """A later round can move a parameter that an earlier round settled."""
        surface = {
            0: {0: 1.0, 1: 0.0, 2: 0.0},
            1: {0: 2.0, 1: 1.0, 2: 3.0},
            2: {0: 0.0, 1: 4.0, 2: 5.0},
        }

        def factory(subjects, hyperparameters=None, **kwargs):
            score = surface[hyperparameters['a']][hyperparameters['b']]
            return Mock(performance=lambda held_out: Performance({'count': len(held_out), 'score': score}))

        result = tune({'a': 0, 'b': 0}, {'a': 2, 'b': 2}, 'score', factory, list(range(6)),
                      steps=2, strategy='line', folds=2, config=runtime)

        assert result.params == {'a': 2, 'b': 2}
        assert result.score == pytest.approx(5.0)
        assert [step['params'] for step in result.steps] == [
            {'a': 1, 'b': 0}, {'a': 1, 'b': 2}, {'a': 2, 'b': 2}
        ]
        assert len(result.trials) == 8

    def test_minimized_metric(self, regression_subjects, runtime):
        result = tune({'depth': 1}, {'depth': 4}, 'rmse', DecisionTree, regression_subjects,
                      'Labs.Score', ['Demographics.Age', 'Exams.BMI'], steps=3, folds=3,
                      greater_is_better=False, config=runtime)
        assert result.score == pytest.approx(result.trials['value'].min())

    def test_failing_point_skipped(self, classification_subjects, runtime):
        """A point whose fit fails is recorded as failed and left out of the choice."""
        def factory(subjects, target, features, hyperparameters=None, config=None, **kwargs):
            if hyperparameters['depth'] == 2:
                raise DegenerateFitError('depth 2 unavailable')
            return DecisionTree.fit(subjects, target, features, hyperparameters=hyperparameters,
                                    config=config, **kwargs)

        result = tune({'depth': 1}, {'depth': 3}, 'accuracy', factory, classification_subjects,
                      'Outcome.Death', FEATURES, steps=2, folds=3, classification=True, config=runtime)
        assert result.params['depth'] != 2
        assert (result.trials['state'] == 'FAIL').sum() == 1

    def test_all_points_failing(self, classification_subjects, runtime):
        def factory(subjects, target, features, **kwargs):
            raise DegenerateFitError('nothing fits')

        with pytest.raises(DegenerateFitError):
            tune({'depth': 1}, {'depth': 2}, 'accuracy', factory, classification_subjects,
                 'Outcome.Death', FEATURES, steps=1, folds=3, config=runtime)

    def test_fixed_hyperparameters_and_tracker(self, classification_subjects, runtime):
        """Fixed hyperparameters apply to every point; the tracker receives the best one."""
        tracker = Mock()
        result = tune({'depth': 1}, {'depth': 2}, 'accuracy', DecisionTree, classification_subjects,
                      'Outcome.Death', FEATURES, steps=1, folds=3, classification=True,
                      hyperparameters={'size': 4}, config=runtime, tracker=tracker)
        tracker.log_params.assert_called_once_with(result.params, prefix='tuning')
        tracker.log_metrics.assert_called_once_with({'best_accuracy': result.score})

    def test_unknown_strategy(self, classification_subjects, runtime):
        with pytest.raises(InvalidConfigurationError):
            tune({'depth': 1}, {'depth': 2}, 'accuracy', DecisionTree, classification_subjects,
                 'Outcome.Death', FEATURES, strategy='random', config=runtime)
