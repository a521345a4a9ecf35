"""
Test suite for permutation feature importance.
"""

import copy

import pytest

from dress.models import DecisionTree, Linear
from dress.pipeline import FeatureImportance, permutation_importance
from dress.utils.errors import InvalidConfigurationError

FEATURES = ['Demographics.Age', 'Exams.BMI']


class TestPermutationImportance:
    """Test performance drop under shuffled features."""

    def test_ordering_and_shares(self, regression_subjects, runtime):
        """Results are sorted by absolute importance and shares sum to one."""
        model = Linear.fit(regression_subjects, 'Labs.Score', FEATURES, config=runtime)
        results = permutation_importance(model, regression_subjects, repeats=3, config=runtime)
        assert [r.feature for r in results] == ['Demographics.Age', 'Exams.BMI']
        assert all(isinstance(r, FeatureImportance) for r in results)
        assert results[0].importance > 0
        assert sum(abs(r.share) for r in results) == pytest.approx(1.0)
        assert results[0].repeats == 3

    def test_reproducible_with_seed(self, regression_subjects, runtime):
        model = Linear.fit(regression_subjects, 'Labs.Score', FEATURES, config=runtime)
        first = permutation_importance(model, regression_subjects, config=runtime)
        second = permutation_importance(model, regression_subjects, config=runtime)
        assert first == second

    def test_subjects_not_mutated(self, regression_subjects, runtime):
        """Permutations work on copies of the reference subjects."""
        before = copy.deepcopy(regression_subjects)
        model = Linear.fit(regression_subjects, 'Labs.Score', FEATURES, config=runtime)
        permutation_importance(model, regression_subjects, config=runtime)
        assert regression_subjects == before

    def test_classification_metric(self, classification_subjects, runtime):
        """Classification defaults to accuracy; other metrics can be named."""
        model = DecisionTree.fit(classification_subjects, 'Outcome.Death',
                                 ['Demographics.Age', 'Exams.BMI'], classification=True,
                                 hyperparameters={'depth': 3}, config=runtime)
        results = model.importance(classification_subjects, metric='auc', config=runtime)
        assert {r.feature for r in results} == {'Demographics.Age', 'Exams.BMI'}
        assert results[0].feature == 'Demographics.Age'

    def test_invalid_arguments(self, regression_subjects, runtime):
        model = Linear.fit(regression_subjects, 'Labs.Score', FEATURES, config=runtime)
        with pytest.raises(InvalidConfigurationError):
            permutation_importance(model, regression_subjects, repeats=0)
        with pytest.raises(InvalidConfigurationError):
            permutation_importance(model, regression_subjects, metric='accuracy')
