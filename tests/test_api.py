"""
Test suite for the FastAPI serving endpoint.
"""

import json
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

import dress.serving.api as api
from dress.models import DecisionTree
from dress.pipeline import permutation_importance
from dress.serving.dispatch import AsyncDispatcher
from dress.utils.config import RuntimeConfig

FEATURES = ['Demographics.Age', 'Demographics.Site', 'Exams.BMI']


@pytest.fixture
def client():
    """Test client without a loaded model or dispatcher."""
    api.model = None
    api.dispatcher = None
    api.jobs.clear()
    yield TestClient(api.app)
    api.model = None
    api.dispatcher = None
    api.jobs.clear()


@pytest.fixture
def fitted_model(classification_subjects, runtime, temp_directory, client):
    """A decision tree exported to disk and loaded by the API."""
    model = DecisionTree.fit(classification_subjects, 'Outcome.Death', FEATURES, classification=True,
                             hyperparameters={'depth': 3}, config=runtime)
    path = temp_directory / 'model.json'
    path.write_text(json.dumps(model.export()))
    api.load_model(str(path))
    return model


@pytest.fixture
def mock_client(client):
    """Dask client stand-in whose futures are already finished."""
    dask_client = Mock()
    future = Mock(key='job-1', status='finished')
    future.result.return_value = {'folds': 3, 'score': float('nan')}
    dask_client.submit.return_value = future
    api.dispatcher = AsyncDispatcher(client=dask_client)
    return dask_client


class TestHealth:
    """Test service status endpoints."""

    def test_health_without_model(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'unhealthy'
        assert data['model_loaded'] is False
        assert 'timestamp' in data

    def test_health_with_model(self, client, fitted_model):
        data = client.get('/health').json()
        assert data['status'] == 'healthy'
        assert data['model_loaded'] is True

    def test_model_info(self, client, fitted_model):
        data = client.get('/model/info').json()
        assert data['kind'] == 'decision_tree'
        assert [f['path'] for f in data['features']] == FEATURES
        assert data['classes'] == [0, 1]
        assert data['hyperparameters']['depth'] == 3

    def test_missing_model_file(self, client, temp_directory):
        assert api.load_model(str(temp_directory / 'absent.json')) is None
        assert client.get('/model/info').status_code == 503


class TestPrediction:
    """Test prediction endpoints."""

    def test_single_prediction(self, client, fitted_model, classification_subjects):
        subject = classification_subjects[0]
        response = client.post('/predict', json={'subject': subject})
        assert response.status_code == 200
        data = response.json()
        assert data['prediction'] == fitted_model.predict(subject)
        assert set(data['estimate']) == {'0', '1'}
        assert data['model_kind'] == 'decision_tree'

    def test_prediction_requires_model(self, client):
        response = client.post('/predict', json={'subject': {}})
        assert response.status_code == 503

    def test_malformed_request(self, client, fitted_model):
        response = client.post('/predict', json={'record': {}})
        assert response.status_code == 422

    def test_batch_prediction(self, client, fitted_model, classification_subjects):
        response = client.post('/predict/batch', json={'subjects': classification_subjects[:5]})
        assert response.status_code == 200
        data = response.json()
        assert data['total_processed'] == 5
        assert len(data['predictions']) == 5

    def test_batch_too_large(self, client, fitted_model):
        response = client.post('/predict/batch', json={'subjects': [{}] * (api.MAX_BATCH_SIZE + 1)})
        assert response.status_code == 400

    def test_validate(self, client, fitted_model, classification_subjects):
        """Held-out metrics match the model's own performance; undefined ones are null."""
        subjects = classification_subjects[:20] + [{'Demographics': {'Age': 40}}]
        data = client.post('/validate', json={'subjects': subjects}).json()
        expected = fitted_model.performance(subjects)
        assert data['total_submitted'] == 21
        assert data['performance']['count'] == 20
        assert data['performance']['accuracy'] == pytest.approx(expected['accuracy'])


class TestJobs:
    """Test background jobs with a mocked dask client."""

    def test_submit_and_poll(self, client, mock_client, regression_subjects):
        response = client.post('/jobs', json={
            'operation': 'cross_validate',
            'kind': 'linear',
            'subjects': regression_subjects[:10],
            'args': ['Labs.Score', ['Demographics.Age']],
            'kwargs': {'folds': 3},
            'seed': 5,
        })
        assert response.status_code == 202
        job_id = response.json()['job_id']

        args, kwargs = mock_client.submit.call_args
        assert args[1].kind == 'linear'
        assert args[3:] == ('Labs.Score', ['Demographics.Age'])
        assert kwargs['config'] == RuntimeConfig(seed=5)
        assert kwargs['folds'] == 3

        data = client.get(f'/jobs/{job_id}').json()
        assert data['status'] == 'finished'
        assert data['result'] == {'folds': 3, 'score': None}

    def test_factory_operation_needs_kind(self, client, mock_client):
        response = client.post('/jobs', json={'operation': 'tune', 'subjects': []})
        assert response.status_code == 400

    def test_importance_uses_loaded_model(self, client, fitted_model, mock_client, classification_subjects):
        client.post('/jobs', json={'operation': 'permutation_importance',
                                   'subjects': classification_subjects[:10]})
        args, _ = mock_client.submit.call_args
        assert args[0] is permutation_importance
        assert args[1] is api.model

    def test_unknown_operation(self, client, mock_client):
        response = client.post('/jobs', json={'operation': 'svm', 'subjects': []})
        assert response.status_code == 422

    def test_failed_job(self, client, mock_client):
        failed = Mock(key='job-2', status='error')
        failed.exception.return_value = ValueError('boom')
        mock_client.submit.return_value = failed
        job_id = client.post('/jobs', json={'operation': 'linear', 'subjects': []}).json()['job_id']
        data = client.get(f'/jobs/{job_id}').json()
        assert data['status'] == 'error'
        assert data['error'] == 'boom'

    def test_unknown_job(self, client):
        assert client.get('/jobs/missing').status_code == 404
        assert client.delete('/jobs/missing').status_code == 404

    def test_delete_finished_job(self, client, mock_client):
        """Deleting a completed job forgets it and releases the future."""
        job_id = client.post('/jobs', json={'operation': 'linear', 'subjects': []}).json()['job_id']
        response = client.delete(f'/jobs/{job_id}')
        assert response.status_code == 200
        assert response.json()['status'] == 'deleted'
        mock_client.submit.return_value.release.assert_called_once()
        assert client.get(f'/jobs/{job_id}').status_code == 404

    def test_delete_pending_job(self, client, mock_client):
        """Running jobs cannot be deleted."""
        mock_client.submit.return_value = Mock(key='job-3', status='pending')
        job_id = client.post('/jobs', json={'operation': 'linear', 'subjects': []}).json()['job_id']
        assert client.delete(f'/jobs/{job_id}').status_code == 409
        assert client.get(f'/jobs/{job_id}').json()['status'] == 'pending'

    def test_completed_jobs_evicted(self, client, mock_client, monkeypatch):
        """Only the newest completed jobs are retained."""
        monkeypatch.setattr(api, 'MAX_RETAINED_JOBS', 1)
        first = Mock(key='job-a', status='finished')
        second = Mock(key='job-b', status='finished')
        for future in (first, second):
            mock_client.submit.return_value = future
            client.post('/jobs', json={'operation': 'linear', 'subjects': []})

        assert client.get('/jobs/job-a').status_code == 404
        assert client.get('/jobs/job-b').status_code == 200
        first.release.assert_called_once()
        second.release.assert_not_called()

    def test_operations(self, client, mock_client):
        data = client.get('/operations').json()
        assert 'random_forest' in data['models']
        assert 'tune' in data['operations']
