"""Test configuration and fixtures."""

import pytest
import numpy as np
import tempfile
from pathlib import Path

from dress.utils.config import RuntimeConfig


@pytest.fixture
def runtime():
    """Seeded runtime configuration running every task inline."""
    return RuntimeConfig(seed=42, scheduler="sync")


@pytest.fixture
def regression_subjects():
    """Nested subjects whose Labs.Score is linear in Age and BMI plus noise."""
    rng = np.random.default_rng(42)
    subjects = []
    for i in range(60):
        age = float(rng.integers(25, 85))
        bmi = float(rng.normal(27, 4))
        subjects.append({
            'Id': f'S{i:04d}',
            'Demographics': {'Age': age, 'Sex': 'F' if i % 2 else 'M'},
            'Exams': {'BMI': bmi},
            'Labs': {'Score': 2.0 * age - 1.5 * bmi + float(rng.normal(0, 3))},
            'Admissions': [{'Year': 2020}] * int(rng.integers(0, 4)),
        })
    return subjects


@pytest.fixture
def classification_subjects():
    """Nested subjects with a binary outcome driven by Age and a categorical site."""
    rng = np.random.default_rng(7)
    subjects = []
    for i in range(80):
        age = float(rng.integers(25, 85))
        site = ['North', 'South', 'East'][i % 3]
        risk = (age - 55) / 8 + (1.5 if site == 'North' else -0.5)
        subjects.append({
            'Id': f'C{i:04d}',
            'Demographics': {'Age': age, 'Site': site},
            'Exams': {'BMI': float(rng.normal(27, 4))},
            'History': {'Smoker': bool(rng.random() < 0.3)},
            'Outcome': {'Death': bool(rng.random() < 1 / (1 + np.exp(-risk))), 'Stage': 'late' if age > 60 else 'early'},
        })
    return subjects


@pytest.fixture
def logistic_example():
    """Four subjects, separable on Age and BMI."""
    return [
        {'Age': 50, 'BMI': 30, 'Outcome': 1},
        {'Age': 40, 'BMI': 22, 'Outcome': 0},
        {'Age': 60, 'BMI': 35, 'Outcome': 1},
        {'Age': 35, 'BMI': 20, 'Outcome': 0},
    ]


@pytest.fixture
def temp_directory():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def sample_config():
    """Sample pipeline configuration for testing."""
    return {
        'random_seed': 42,
        'runtime': {'significance': 0.05, 'scheduler': 'sync'},
        'model': {
            'kind': 'decision_tree',
            'target': 'Outcome.Death',
            'classification': True,
            'features': ['Demographics.Age', 'Demographics.Site', 'Exams.BMI'],
            'hyperparameters': {'depth': 3},
        },
        'cross_validation': {'folds': 3, 'shuffle': True},
        'importance': {'enabled': True, 'repeats': 2},
        'experiment_tracking': {
            'backend': 'mlflow',
            'mlflow': {
                'experiment_name': 'test_experiment',
                'tracking_uri': 'file:./test_mlruns'
            }
        }
    }
