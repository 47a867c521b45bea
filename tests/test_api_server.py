"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST endpoints and network expiry of the API server.
"""

import pytest
import os
import sys
import sqlite3
import importlib
from functools import partial

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mnist_dnn import model_persistence
from mnist_dnn.layers import LayerDefinition
from mnist_dnn.mnist_loader import image_to_vector
from mnist_dnn.network import create_network


SMALL_ARCHITECTURE = [
    {'type': 'input', 'width': 3},
    {'type': 'fully_connected', 'activation': 'sigmoid', 'width': 4},
    {'type': 'output', 'activation': 'sigmoid', 'width': 2},
]


def age_network(db_path, network_id, modifier):
    """Move a network's created_at into the past, e.g. modifier='-3 days'."""
    conn = sqlite3.connect(db_path)
    conn.execute(
        "UPDATE networks SET created_at = datetime('now', ?) WHERE network_id = ?",
        (modifier, network_id)
    )
    conn.commit()
    conn.close()


@pytest.fixture
def model_dir(tmp_path):
    return str(tmp_path / "models")


@pytest.fixture
def server(tmp_path, model_dir, monkeypatch):
    """
    The api_server module with empty in-memory state and every persistence
    call pointed at a temporary directory.
    """
    # Import-time loading looks for data and models relative to the cwd
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('MNIST_DATA_DIR', str(tmp_path / "no_data"))
    api_server = importlib.import_module('mnist_dnn.api_server')

    monkeypatch.setattr(api_server, 'active_networks', {})
    monkeypatch.setattr(api_server, 'training_jobs', {})
    for name in ('save_network', 'load_network', 'list_saved_networks',
                 'delete_network', 'delete_old_networks'):
        monkeypatch.setattr(
            api_server, name,
            partial(getattr(model_persistence, name), model_dir=model_dir)
        )
    return api_server


@pytest.fixture
def client(server):
    server.app.config['TESTING'] = True
    return server.app.test_client()


def create(client, architecture=SMALL_ARCHITECTURE, **extra):
    body = dict(layers=architecture, seed=3, **extra)
    return client.post('/api/networks', json=body)


@pytest.mark.integration
class TestCreateNetwork:
    """Test creating networks from layer definitions."""

    def test_create(self, server, client):
        response = create(client, learning_rate=0.05)

        assert response.status_code == 201
        body = response.get_json()
        assert body['status'] == 'created'
        assert body['weight_count'] == 3 * 4 + 4 * 2

        net = server.active_networks[body['network_id']]['network']
        assert net.learning_rate == 0.05
        assert net.weight_count == body['weight_count']

    def test_same_seed_same_weights(self, server, client):
        first = create(client).get_json()['network_id']
        second = create(client).get_json()['network_id']
        weights = [server.active_networks[i]['network'].weights for i in (first, second)]
        assert np.array_equal(*weights)

    @pytest.mark.parametrize("layers", [
        [{'type': 'input', 'node_map': [2, 2]},
         {'type': 'output', 'activation': 'sigmoid', 'width': 2}],
        [{'type': 'input', 'width': '3'},
         {'type': 'output', 'activation': 'sigmoid', 'width': 2}],
        [{'type': 'pooling', 'width': 3},
         {'type': 'output', 'activation': 'sigmoid', 'width': 2}],
        [{'type': 'input', 'width': 3}],
        ['input', 'output'],
    ])
    def test_bad_definition(self, server, client, layers):
        response = create(client, layers)

        assert response.status_code == 400
        assert 'Invalid network definition' in response.get_json()['error']
        assert server.active_networks == {}

    def test_layers_must_be_a_list(self, client):
        response = create(client, {'type': 'input'})
        assert response.status_code == 400

    def test_bad_learning_rate(self, client):
        assert create(client, learning_rate=-1).status_code == 400

    def test_bad_seed(self, client):
        response = client.post('/api/networks', json={'layers': SMALL_ARCHITECTURE, 'seed': 'x'})
        assert response.status_code == 400


@pytest.mark.integration
class TestInspectNetwork:

    def test_layer_geometry(self, client):
        network_id = create(client).get_json()['network_id']

        response = client.get(f'/api/networks/{network_id}')

        assert response.status_code == 200
        body = response.get_json()
        layers = body['layers']
        assert [l['type'] for l in layers] == ['input', 'fully_connected', 'output']
        assert [l['nodes'] for l in layers] == [3, 4, 2]
        assert [l['backward_connections'] for l in layers] == [0, 3, 4]
        assert [l['forward_connections'] for l in layers] == [4, 2, 0]
        assert [l['weights'] for l in layers] == [0, 12, 8]
        assert body['weight_count'] == 20
        assert body['trained'] is False

    def test_unknown_network(self, client):
        assert client.get('/api/networks/missing').status_code == 404

    def test_listed_with_counts(self, client):
        network_id = create(client).get_json()['network_id']

        networks = client.get('/api/networks').get_json()['networks']

        assert len(networks) == 1
        entry = networks[0]
        assert entry['network_id'] == network_id
        assert entry['status'] == 'in_memory'
        assert entry['node_counts'] == [3, 4, 2]
        assert entry['weight_counts'] == [0, 12, 8]


@pytest.mark.integration
class TestClassify:
    """Test classifying a posted image."""

    def test_classify(self, server, client):
        network_id = create(client).get_json()['network_id']
        pixels = [0, 127, 255]

        response = client.post(f'/api/networks/{network_id}/classify', json={'pixels': pixels})

        assert response.status_code == 200
        body = response.get_json()
        assert len(body['network_output']) == 2

        expected = create_network(
            [LayerDefinition.from_dict(d) for d in SMALL_ARCHITECTURE], seed=3
        )
        expected.feed_input(image_to_vector(np.array(pixels)))
        expected.feed_forward()
        assert body['digit'] == expected.classify()
        assert body['network_output'] == pytest.approx(expected.outputs().tolist())

    @pytest.mark.parametrize("pixels", [[0, 0], [0] * 784, ['a', 'b', 'c'], 'abc', None])
    def test_invalid_image(self, client, pixels):
        network_id = create(client).get_json()['network_id']
        response = client.post(f'/api/networks/{network_id}/classify', json={'pixels': pixels})
        assert response.status_code == 400

    def test_unknown_network(self, client):
        response = client.post('/api/networks/missing/classify', json={'pixels': [0, 0, 0]})
        assert response.status_code == 404


@pytest.mark.integration
class TestExpireNetworks:
    """Test dropping expired networks from memory."""

    def test_drops_only_expired_networks(self, server, client, model_dir):
        old_id = create(client).get_json()['network_id']
        fresh_id = create(client).get_json()['network_id']
        unsaved_id = create(client).get_json()['network_id']
        for network_id in (old_id, fresh_id):
            net = server.active_networks[network_id]['network']
            assert server.save_network(net, network_id, trained=False)
        age_network(os.path.join(model_dir, model_persistence.DB_FILE_NAME), old_id, '-3 days')

        assert server.expire_networks(2) == 1

        assert set(server.active_networks) == {fresh_id, unsaved_id}
        saved = {n['network_id'] for n in server.list_saved_networks()}
        assert saved == {fresh_id}

    def test_nothing_to_expire(self, server, client):
        network_id = create(client).get_json()['network_id']
        assert server.expire_networks(2) == 0
        assert network_id in server.active_networks

    def test_database_error_keeps_memory(self, server, client, monkeypatch):
        network_id = create(client).get_json()['network_id']
        monkeypatch.setattr(server, 'delete_old_networks', lambda days: -1)

        assert server.expire_networks(2) == -1
        assert network_id in server.active_networks

    def test_cleanup_endpoint(self, server, client, model_dir):
        network_id = create(client).get_json()['network_id']
        server.save_network(server.active_networks[network_id]['network'], network_id)
        age_network(os.path.join(model_dir, model_persistence.DB_FILE_NAME), network_id, '-5 days')

        response = client.post('/api/networks/cleanup', json={'days': 4})

        assert response.status_code == 200
        assert response.get_json() == {'deleted_count': 1, 'days': 4}
        assert network_id not in server.active_networks

    @pytest.mark.parametrize("days", [-1, 'two', 1.5, True])
    def test_cleanup_endpoint_rejects_bad_days(self, client, days):
        response = client.post('/api/networks/cleanup', json={'days': days})
        assert response.status_code == 400
