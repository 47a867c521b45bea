"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for SQLite-based network persistence.
"""

import pytest
import os
import sys
import sqlite3

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mnist_dnn.layers import ActivationType, LayerDefinition, LayerType, Volume
from mnist_dnn.network import Network, create_network
from mnist_dnn.trainer import train_network
from mnist_dnn.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    get_network_metadata,
    delete_old_networks,
    describe_architecture,
    ModelDatabase
)


SMALL_ARCHITECTURE = [
    {'type': 'input', 'width': 3},
    {'type': 'fully_connected', 'activation': 'sigmoid', 'width': 4},
    {'type': 'output', 'activation': 'sigmoid', 'width': 2},
]


def build(architecture, learning_rate=0.1, seed=0):
    defs = [LayerDefinition.from_dict(d) for d in architecture]
    return create_network(defs, learning_rate=learning_rate, seed=seed)


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
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def db_path(temp_db_dir):
    return os.path.join(temp_db_dir, "networks.db")


@pytest.fixture
def simple_network():
    """A 3 -> 4 -> 2 dense network."""
    return build(SMALL_ARCHITECTURE)


@pytest.fixture
def trained_network(simple_network):
    """The simple network after one epoch on random data."""
    rng = np.random.default_rng(1)
    training_data = [(rng.standard_normal(3), i % 2) for i in range(10)]
    train_network(simple_network, training_data)
    return simple_network


@pytest.mark.unit
class TestModelPersistence:
    """Test basic persistence operations."""

    def test_save_network_creates_database(self, simple_network, temp_db_dir):
        assert save_network(simple_network, "net", model_dir=temp_db_dir, trained=False) is True
        assert os.path.exists(f"{temp_db_dir}/networks.db")

    def test_save_network_with_metadata(self, trained_network, temp_db_dir):
        save_network(trained_network, "trained", model_dir=temp_db_dir, accuracy=0.85)

        metadata = get_network_metadata("trained", temp_db_dir)
        assert metadata['network_id'] == "trained"
        assert metadata['trained'] is True
        assert metadata['accuracy'] == 0.85
        assert metadata['learning_rate'] == pytest.approx(0.1)
        assert metadata['architecture'] == trained_network.architecture

    def test_load_network_returns_network(self, simple_network, temp_db_dir):
        save_network(simple_network, "net", model_dir=temp_db_dir)
        loaded = load_network("net", temp_db_dir)

        assert isinstance(loaded, Network)
        assert loaded.architecture == simple_network.architecture
        assert loaded.learning_rate == simple_network.learning_rate

    def test_load_nonexistent_network(self, temp_db_dir):
        assert load_network("nonexistent", temp_db_dir) is None

    def test_load_preserves_arena(self, trained_network, temp_db_dir):
        save_network(trained_network, "net", model_dir=temp_db_dir)
        loaded = load_network("net", temp_db_dir)

        assert np.array_equal(trained_network.weights, loaded.weights)
        assert np.array_equal(trained_network.arena.buffer, loaded.arena.buffer)

    def test_loaded_network_classifies_identically(self, trained_network, temp_db_dir):
        save_network(trained_network, "net", model_dir=temp_db_dir)
        loaded = load_network("net", temp_db_dir)

        for vector in np.random.default_rng(2).standard_normal((5, 3)):
            for net in (trained_network, loaded):
                net.feed_input(vector)
                net.feed_forward()
            assert np.allclose(trained_network.outputs(), loaded.outputs())

    def test_list_saved_networks_empty(self, temp_db_dir):
        assert list_saved_networks(temp_db_dir) == []

    def test_list_saved_networks(self, simple_network, temp_db_dir):
        save_network(simple_network, "net1", model_dir=temp_db_dir, trained=True, accuracy=0.9)
        save_network(simple_network, "net2", model_dir=temp_db_dir, trained=False)

        ids = {net['network_id'] for net in list_saved_networks(temp_db_dir)}
        assert ids == {"net1", "net2"}

    def test_list_saved_networks_includes_layer_counts(self, simple_network, temp_db_dir):
        save_network(simple_network, "listed", model_dir=temp_db_dir, accuracy=0.75)

        network = list_saved_networks(temp_db_dir)[0]

        assert network['accuracy'] == 0.75
        assert 'created_at' in network
        assert 'updated_at' in network
        assert network['layer_types'] == ['input', 'fully_connected', 'output']
        assert network['node_counts'] == [3, 4, 2]
        assert network['weight_counts'] == [0, 12, 8]

    def test_delete_network_success(self, simple_network, temp_db_dir):
        save_network(simple_network, "doomed", model_dir=temp_db_dir)
        assert delete_network("doomed", temp_db_dir) is True
        assert load_network("doomed", temp_db_dir) is None

    def test_delete_nonexistent_network(self, temp_db_dir):
        ModelDatabase(db_path=f'{temp_db_dir}/networks.db')
        assert delete_network("nonexistent", temp_db_dir) is False

    def test_save_untrained_network(self, simple_network, temp_db_dir):
        save_network(simple_network, "untrained", model_dir=temp_db_dir,
                     trained=False, accuracy=None)

        metadata = get_network_metadata("untrained", temp_db_dir)
        assert metadata['trained'] is False
        assert metadata['accuracy'] is None

    @pytest.mark.parametrize("accuracy", [-0.1, 1.5])
    def test_save_rejects_invalid_accuracy(self, simple_network, temp_db_dir, accuracy):
        assert save_network(simple_network, "bad", model_dir=temp_db_dir,
                            accuracy=accuracy) is False
        assert get_network_metadata("bad", temp_db_dir) is None

    @pytest.mark.parametrize("network_id", ["", None, 42])
    def test_invalid_network_id(self, simple_network, temp_db_dir, network_id):
        assert save_network(simple_network, network_id, model_dir=temp_db_dir) is False
        assert load_network(network_id, temp_db_dir) is None
        assert delete_network(network_id, temp_db_dir) is False

    def test_update_network_keeps_created_at(self, simple_network, temp_db_dir, db_path):
        save_network(simple_network, "updated", model_dir=temp_db_dir, trained=False)
        age_network(db_path, "updated", '-1 day')
        created_at = get_network_metadata("updated", temp_db_dir)['created_at']

        save_network(simple_network, "updated", model_dir=temp_db_dir,
                     trained=True, accuracy=0.88)

        metadata = get_network_metadata("updated", temp_db_dir)
        assert metadata['trained'] is True
        assert metadata['accuracy'] == 0.88
        assert metadata['created_at'] == created_at
        assert len(list_saved_networks(temp_db_dir)) == 1


@pytest.mark.unit
class TestDescribeArchitecture:

    def test_convolutional_counts(self):
        description = describe_architecture([
            {'type': 'input', 'width': 6, 'height': 6},
            {'type': 'convolutional', 'activation': 'relu',
             'width': 2, 'height': 2, 'depth': 3, 'filter': 3},
            {'type': 'output', 'activation': 'sigmoid', 'width': 2},
        ])
        assert description['node_counts'] == [36, 12, 2]
        assert description['weight_counts'] == [0, 27, 24]


@pytest.mark.integration
class TestPersistenceIntegration:
    """Integration tests for model persistence."""

    def test_save_load_train_cycle(self, simple_network, temp_db_dir):
        save_network(simple_network, "cycle", model_dir=temp_db_dir, trained=False)
        loaded = load_network("cycle", temp_db_dir)

        before = loaded.weights.copy()
        rng = np.random.default_rng(3)
        train_network(loaded, [(rng.standard_normal(3), i % 2) for i in range(10)])
        assert not np.array_equal(before, loaded.weights)

        save_network(loaded, "cycle", model_dir=temp_db_dir, trained=True, accuracy=0.85)

        final = load_network("cycle", temp_db_dir)
        metadata = get_network_metadata("cycle", temp_db_dir)
        assert np.array_equal(final.weights, loaded.weights)
        assert metadata['trained'] is True
        assert metadata['accuracy'] == 0.85

    def test_multiple_networks_coexist(self, temp_db_dir):
        architectures = {
            "mnist_network": [
                {'type': 'input', 'width': 28, 'height': 28},
                {'type': 'fully_connected', 'activation': 'sigmoid', 'width': 30},
                {'type': 'output', 'activation': 'sigmoid', 'width': 10},
            ],
            "simple_network": SMALL_ARCHITECTURE,
            "conv_network": [
                {'type': 'input', 'width': 10, 'height': 10},
                {'type': 'convolutional', 'activation': 'tanh',
                 'width': 4, 'height': 4, 'depth': 2, 'filter': 3},
                {'type': 'output', 'activation': 'sigmoid', 'width': 10},
            ],
        }

        for network_id, architecture in architectures.items():
            save_network(build(architecture), network_id, model_dir=temp_db_dir)

        assert len(list_saved_networks(temp_db_dir)) == len(architectures)
        for network_id, architecture in architectures.items():
            loaded = load_network(network_id, temp_db_dir)
            assert loaded.architecture == build(architecture).architecture

    def test_repeated_operations(self, simple_network, temp_db_dir):
        network_ids = [f"concurrent_{i}" for i in range(5)]

        for network_id in network_ids:
            save_network(simple_network, network_id, model_dir=temp_db_dir)
        assert all(load_network(n, temp_db_dir) is not None for n in network_ids)

        for network_id in network_ids:
            assert delete_network(network_id, temp_db_dir) is True
        assert list_saved_networks(temp_db_dir) == []


class TestDeleteOldNetworks:
    """Tests for automatic cleanup of old networks."""

    def test_delete_old_networks_basic(self, simple_network, temp_db_dir, db_path):
        save_network(simple_network, "old", model_dir=temp_db_dir)
        age_network(db_path, "old", '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 1
        assert load_network("old", temp_db_dir) is None

    def test_delete_old_networks_preserves_recent(self, simple_network, temp_db_dir):
        save_network(simple_network, "recent", model_dir=temp_db_dir)

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0
        assert load_network("recent", temp_db_dir) is not None

    def test_delete_old_networks_mixed_ages(self, simple_network, temp_db_dir, db_path):
        old_ids = ["old_1", "old_2"]
        recent_ids = ["recent_1", "recent_2"]
        for network_id in old_ids + recent_ids:
            save_network(simple_network, network_id, model_dir=temp_db_dir)
        for network_id in old_ids:
            age_network(db_path, network_id, '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == len(old_ids)
        for network_id in old_ids:
            assert load_network(network_id, temp_db_dir) is None
        for network_id in recent_ids:
            assert load_network(network_id, temp_db_dir) is not None

    def test_delete_old_networks_custom_days(self, simple_network, temp_db_dir, db_path):
        save_network(simple_network, "aged", model_dir=temp_db_dir)
        age_network(db_path, "aged", '-5 days')

        assert delete_old_networks(days=7, model_dir=temp_db_dir) == 0
        assert delete_old_networks(days=3, model_dir=temp_db_dir) == 1

    def test_delete_old_networks_empty_db(self, temp_db_dir):
        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0

    def test_delete_old_networks_negative_days(self, temp_db_dir):
        with pytest.raises(ValueError, match="non-negative"):
            delete_old_networks(days=-1, model_dir=temp_db_dir)

    def test_delete_old_networks_zero_days(self, simple_network, temp_db_dir, db_path):
        save_network(simple_network, "hour_old", model_dir=temp_db_dir)
        age_network(db_path, "hour_old", '-1 hour')

        assert delete_old_networks(days=0, model_dir=temp_db_dir) == 1

    def test_model_database_method(self, simple_network, db_path):
        db = ModelDatabase(db_path=db_path)
        db.save_network_to_db(simple_network, "direct", trained=False)
        age_network(db_path, "direct", '-3 days')

        assert db.delete_old_networks_from_db(days=2) == 1
        assert db.load_network_from_db("direct") is None

    def test_model_database_rejects_negative_days(self, db_path):
        with pytest.raises(ValueError):
            ModelDatabase(db_path=db_path).delete_old_networks_from_db(days=-2)
