"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for arena networks.

Each row keeps the network's layer definitions as JSON (so listings never
have to unpickle anything) next to the pickled network, whose arena is
stored as one byte blob.
"""

import sqlite3
import pickle
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

from mnist_dnn import layers
from mnist_dnn.errors import NetworkError
from mnist_dnn.layers import LayerDefinition

logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'
DB_FILE_NAME = 'networks.db'


def describe_architecture(architecture: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Derive per-layer node and weight counts from stored layer definitions.

    Args:
        architecture: JSON list as produced by ``Network.architecture``

    Returns:
        Dictionary with ``layer_types``, ``node_counts`` and ``weight_counts``
    """
    layer_defs = layers.define_layers(
        [LayerDefinition.from_dict(d) for d in architecture]
    )
    return {
        'layer_types': [d.layer_type.value for d in layer_defs],
        'node_counts': [layers.node_count(d) for d in layer_defs],
        'weight_counts': [
            layers.weight_count(layer_defs, i) for i in range(len(layer_defs))
        ],
    }


class ModelDatabase:
    """
    Manages the SQLite database of saved networks.

    The database stores:
    - Network metadata (layer definitions, training status, accuracy)
    - Pickled network objects as binary blobs
    """

    def __init__(self, db_path: str = f'{DEFAULT_MODEL_DIR}/{DB_FILE_NAME}'):
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back on any exception.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    learning_rate REAL NOT NULL,
                    network_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_trained
                ON networks(trained)
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    def save_network_to_db(
        self,
        network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Insert or replace a network.

        A replaced network keeps its original ``created_at``.

        Raises:
            ValueError: If accuracy is outside 0.0 to 1.0
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        network_data = pickle.dumps(network)
        architecture_json = json.dumps(network.architecture)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, learning_rate, network_data,
                 trained, accuracy, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    learning_rate = excluded.learning_rate,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                network.learning_rate,
                network_data,
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' ({network.layer_count} layers, "
            f"{network.weight_count} weights), trained={trained}, "
            f"accuracy={accuracy}"
        )
        return True

    def load_network_from_db(self, network_id: str):
        """Unpickle a saved network, or return None if there is none."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = pickle.loads(row['network_data'])
        logger.info(f"Loaded network '{network_id}'")
        return network

    def _row_to_metadata(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'network_id': row['network_id'],
            'architecture': json.loads(row['architecture']),
            'learning_rate': row['learning_rate'],
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """List all networks, newest first, with per-layer counts."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, learning_rate, trained,
                       accuracy, created_at, updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            rows = cursor.fetchall()

        networks = []
        for row in rows:
            metadata = self._row_to_metadata(row)
            metadata.update(describe_architecture(metadata['architecture']))
            networks.append(metadata)

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """Delete one network. Returns False if it did not exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(f"Could not delete network '{network_id}': not found")
        return deleted

    def delete_old_networks_from_db(self, days: int) -> int:
        """
        Delete networks created more than ``days`` days ago.

        With ``days=0`` every network created before now is deleted.

        Returns:
            Number of deleted networks

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                DELETE FROM networks
                WHERE julianday('now') - julianday(created_at) > ?
            ''', (days,))
            deleted_count = cursor.rowcount

        logger.info(f"Deleted {deleted_count} network(s) older than {days} day(s)")
        return deleted_count

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Metadata of one network without unpickling it."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, learning_rate, trained,
                       accuracy, created_at, updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None

        return self._row_to_metadata(row)


# ============================================================================
# MODULE-LEVEL API
# ============================================================================

_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    """
    Return the shared database for the default directory, or a new instance
    for any other directory.
    """
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=os.path.join(model_dir, DB_FILE_NAME))
    if _db is None:
        _db = ModelDatabase()
    return _db


def _valid_id(network_id: Any) -> bool:
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False
    return True


def save_network(
    network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network to the SQLite database.

    Args:
        network: The ``Network`` to save
        network_id: A unique identifier for the network
        model_dir: Directory for the database file
        trained: Whether the network has been trained
        accuracy: Test accuracy of the network (0.0 to 1.0)

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = create_network(layer_defs)
        >>> save_network(net, "my_network", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).save_network_to_db(
            network, network_id, trained, accuracy
        )
    except ValueError as e:
        logger.error(f"Validation error saving network '{network_id}': {e}")
        return False
    except (AttributeError, pickle.PicklingError) as e:
        logger.error(f"Serialization error saving network '{network_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False


def load_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR):
    """
    Load a network from the SQLite database.

    Returns:
        The loaded ``Network`` or None if it is missing or unreadable
    """
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except (pickle.UnpicklingError, NetworkError) as e:
        logger.error(f"Deserialization error loading network '{network_id}': {e}")
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error loading network '{network_id}': {e}")
        return None


def list_saved_networks(model_dir: str = DEFAULT_MODEL_DIR) -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Example:
        >>> for net in list_saved_networks():
        ...     print(net['network_id'], net['node_counts'])
    """
    try:
        return _get_db(model_dir).list_networks_from_db()
    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except (json.JSONDecodeError, NetworkError) as e:
        logger.error(f"Corrupt architecture while listing networks: {e}")
        return []


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    """Delete a saved network. Returns True if a network was deleted."""
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False


def delete_old_networks(days: int = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Delete networks older than ``days`` days.

    Returns:
        Number of deleted networks, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting old networks: {e}")
        return -1


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """Metadata for one network without loading the network itself."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error getting metadata for '{network_id}': {e}")
        return None
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error getting metadata for '{network_id}': {e}")
        return None
