"""
Test suite for stepwise feature selection.
"""

import numpy as np
import pytest

from dress.models import DecisionTree, Linear
from dress.pipeline import backward, eliminate, forward
from dress.utils.errors import DegenerateFitError, InvalidConfigurationError

FEATURES = ['Demographics.Age', 'Exams.BMI', 'Labs.Noise']


@pytest.fixture
def noisy_subjects(regression_subjects):
    """Regression subjects with an extra feature unrelated to the outcome."""
    rng = np.random.default_rng(11)
    subjects = []
    for subject in regression_subjects:
        labs = dict(subject['Labs'], Noise=float(rng.normal()))
        subjects.append(dict(subject, Labs=labs))
    return subjects


class TestBackward:
    """Test backward elimination."""

    def test_terminates_within_feature_count(self, noisy_subjects, runtime):
        result = backward(Linear, noisy_subjects, 'Labs.Score', FEATURES, config=runtime)
        assert result.rounds <= len(FEATURES) - 1
        assert 'Demographics.Age' in result.features
        assert set(result.features) <= set(FEATURES)
        assert result.score == pytest.approx(result.model.aic)
        assert all(step.action == 'remove' for step in result.history)

    def test_callable_criterion(self, noisy_subjects, runtime):
        """Removing a feature never raises r2, so nothing is removed."""
        result = backward(Linear, noisy_subjects, 'Labs.Score', FEATURES,
                          criterion=lambda model: model.r2, greater_is_better=True, config=runtime)
        assert result.features == FEATURES
        assert result.rounds == 0

    def test_unknown_criterion(self, classification_subjects, runtime):
        """A criterion the model does not expose is a configuration error."""
        with pytest.raises(InvalidConfigurationError):
            backward(DecisionTree, classification_subjects, 'Outcome.Death', ['Demographics.Age'],
                     classification=True, config=runtime)


class TestForward:
    """Test forward selection."""

    def test_strongest_feature_first(self, noisy_subjects, runtime):
        result = forward(Linear, noisy_subjects, 'Labs.Score', FEATURES, config=runtime)
        assert result.history[0].feature == 'Demographics.Age'
        assert result.history[0].action == 'add'
        assert result.features[:2] == ['Demographics.Age', 'Exams.BMI']
        assert result.rounds <= len(FEATURES)

    def test_failing_candidates_are_skipped(self, noisy_subjects, runtime):
        """A candidate whose fit fails is left out; the run continues."""
        def factory(subjects, target, features, config=None):
            if 'Exams.BMI' in features:
                raise DegenerateFitError('BMI unavailable')
            return Linear.fit(subjects, target, features, config=config)

        result = forward(factory, noisy_subjects, 'Labs.Score', FEATURES, config=runtime)
        assert 'Exams.BMI' not in result.features
        assert result.features[0] == 'Demographics.Age'

    def test_threaded_matches_inline(self, noisy_subjects, runtime):
        from dress.utils.config import RuntimeConfig
        threaded = forward(Linear, noisy_subjects, 'Labs.Score', FEATURES,
                           config=RuntimeConfig(seed=42, scheduler='threads'))
        inline = forward(Linear, noisy_subjects, 'Labs.Score', FEATURES, config=runtime)
        assert threaded.features == inline.features


class TestEliminate:
    """Test p-value driven elimination."""

    def test_remaining_features_are_significant(self, noisy_subjects, runtime):
        result = eliminate(Linear, noisy_subjects, 'Labs.Score', FEATURES, config=runtime)
        assert {'Demographics.Age', 'Exams.BMI'} <= set(result.features)
        for feature in result.features:
            assert result.model.coefficients[feature]['p'] <= runtime.significance
        for step in result.history:
            assert step.score > runtime.significance
