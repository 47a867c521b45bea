"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for MNIST networks.

This module provides endpoints for:
- Creating arena networks from layer definitions
- Training networks with real-time progress updates via WebSockets
- Inspecting classified test digits
- Persisting networks to/from SQLite database

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for cooperative background training tasks
- SQLite for network persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from mnist_dnn import mnist_loader
from mnist_dnn.errors import ConfigurationError, NetworkError
from mnist_dnn.layers import LayerDefinition
from mnist_dnn.network import DEFAULT_LEARNING_RATE, Network, create_network
from mnist_dnn.trainer import Progress, RunResult, test_network, train_epochs
from mnist_dnn.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks,
    describe_architecture
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: only warnings from third-party libraries, INFO for ours
    - In development: more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('mnist_dnn').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__, static_folder='static')
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# Used when a create request carries no layer definitions
DEFAULT_ARCHITECTURE: List[Dict[str, Any]] = [
    {'type': 'input', 'width': 28, 'height': 28},
    {'type': 'fully_connected', 'activation': 'sigmoid', 'width': 20},
    {'type': 'output', 'activation': 'sigmoid', 'width': 10},
]

# Send a training_update event every this many examples
PROGRESS_INTERVAL = 1000

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# MNIST dataset, loaded once at startup. Lists of (vector, label)
training_data: Optional[List[Any]] = None
test_data: Optional[List[Any]] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST dataset into global variables.

    A missing dataset is logged and leaves the globals at None, so the
    server still answers requests that need no data.
    """
    global training_data, test_data

    data_dir = os.getenv('MNIST_DATA_DIR', 'data')
    logger.info(f"Loading MNIST data from {data_dir}...")
    try:
        training_data, _, test_data = mnist_loader.load_data_wrapper(data_dir)
    except FileNotFoundError as e:
        logger.warning(f"MNIST data not available: {e}")
        return
    except mnist_loader.MNISTFormatError as e:
        logger.error(f"MNIST data is corrupt: {e}")
        return

    logger.info(
        f"Data loaded: {len(training_data)} training, {len(test_data)} test"
    )


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Keeps active_networks in sync with the database after a restart.
    """
    saved_networks = list_saved_networks()

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue

        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


load_mnist_data()
reload_saved_networks()

# Training jobs can't continue after a restart
training_jobs.clear()


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Networks are kept this many days after their first save
NETWORK_RETENTION_DAYS = 2
CLEANUP_INTERVAL = 24 * 3600
CLEANUP_RETRY_INTERVAL = 3600

_cleanup_task_started = False


def expire_networks(days: int) -> int:
    """
    Delete saved networks older than ``days`` and drop them from memory.

    Networks that were never saved stay in memory.

    Returns:
        Number of deleted networks, or -1 on a database error
    """
    saved_before = {net['network_id'] for net in list_saved_networks()}
    deleted_count = delete_old_networks(days=days)
    if deleted_count <= 0:
        return deleted_count

    saved_after = {net['network_id'] for net in list_saved_networks()}
    for network_id in saved_before - saved_after:
        if active_networks.pop(network_id, None) is not None:
            logger.info(f"Dropped expired network {network_id} from memory")
    return deleted_count


def cleanup_old_networks_task() -> None:
    """Expire old networks and forget finished jobs, once a day."""
    logger.info("Cleanup task started")

    while True:
        try:
            deleted_count = expire_networks(NETWORK_RETENTION_DAYS)
            if deleted_count < 0:
                logger.error("Cleanup failed, retrying later")
                gevent.sleep(CLEANUP_RETRY_INTERVAL)
                continue

            logger.info(f"Cleanup completed: {deleted_count} expired network(s)")
            cleanup_finished_training_jobs()
            gevent.sleep(CLEANUP_INTERVAL)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(CLEANUP_RETRY_INTERVAL)


def cleanup_finished_training_jobs() -> None:
    """Remove completed or failed training jobs from memory."""
    finished = [
        job_id for job_id, job in training_jobs.items()
        if job.get('status') in ('completed', 'failed')
    ]
    for job_id in finished:
        del training_jobs[job_id]

    if finished:
        logger.info(f"Forgot {len(finished)} finished training job(s)")


def start_cleanup_task() -> None:
    """Spawn the cleanup greenlet unless it is already running."""
    global _cleanup_task_started

    if _cleanup_task_started:
        return

    _cleanup_task_started = True
    gevent.spawn(cleanup_old_networks_task)


start_cleanup_task()


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status, network count and active training jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network_endpoint():
    """
    Create a new network.

    Request body (all optional):
        {
            'layers': [
                {'type': 'input', 'width': 28, 'height': 28},
                {'type': 'convolutional', 'activation': 'relu',
                 'width': 13, 'height': 13, 'depth': 5, 'filter': 5},
                {'type': 'output', 'activation': 'sigmoid', 'width': 10}
            ],
            'learning_rate': 0.001,
            'seed': 42
        }

    Returns:
        JSON with network_id, architecture, weight_count and status
    """
    data = request.get_json(silent=True) or {}
    architecture = data.get('layers', DEFAULT_ARCHITECTURE)
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)
    seed = data.get('seed')

    if not isinstance(architecture, list):
        return jsonify({'error': 'layers must be a list of layer definitions'}), 400
    if seed is not None and not isinstance(seed, int):
        return jsonify({'error': 'seed must be an integer'}), 400

    try:
        layer_defs = [LayerDefinition.from_dict(d) for d in architecture]
        net = create_network(layer_defs, learning_rate=learning_rate, seed=seed)
    except ConfigurationError as e:
        logger.warning(f"Invalid network definition requested: {e}")
        return jsonify({'error': f'Invalid network definition: {e}'}), 400
    except NetworkError as e:
        logger.exception(f"Error creating network: {e}")
        return jsonify({'error': f'Failed to create network: {e}'}), 500

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'architecture': net.architecture,
        'trained': False,
        'accuracy': None
    }

    logger.info(
        f"Created network {network_id}: {net.layer_count} layers, "
        f"{net.weight_count} weights"
    )

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'weight_count': net.weight_count,
        'size': net.size,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network_endpoint(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'epochs': 1,
            'learning_rate': 0.001,
            'training_limit': 60000
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if training_data is None or test_data is None:
        return jsonify({'error': 'MNIST data not available'}), 503

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 1)
    learning_rate = data.get('learning_rate')
    training_limit = data.get('training_limit')

    if not isinstance(epochs, int) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if learning_rate is not None and (
        not isinstance(learning_rate, (int, float)) or learning_rate <= 0
    ):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if training_limit is not None and (
        not isinstance(training_limit, int) or training_limit < 1
    ):
        return jsonify({'error': 'training_limit must be a positive integer'}), 400

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, lr={learning_rate}, limit={training_limit}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, epochs, learning_rate, training_limit
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    epochs: int,
    learning_rate: Optional[float],
    training_limit: Optional[int]
) -> None:
    """
    Background task that trains a network one example at a time, then tests
    it on the full test set.

    Emits ``training_update`` every PROGRESS_INTERVAL examples,
    ``training_epoch`` after every epoch and finally ``training_complete``
    or ``training_error``.
    """
    net: Network = active_networks[network_id]['network']
    if learning_rate is not None:
        net.learning_rate = float(learning_rate)

    examples = training_data[:training_limit] if training_limit else training_data
    job = training_jobs[job_id]
    job['epoch'] = 1

    def on_progress(progress: Progress) -> None:
        if progress.index % PROGRESS_INTERVAL and progress.index != progress.total:
            return

        percent = 100 * ((job['epoch'] - 1) + progress.index / progress.total) / epochs
        job['status'] = 'training'
        job['progress'] = percent

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': job['epoch'],
            'total_epochs': epochs,
            'processed': progress.index,
            'total': progress.total,
            'correct': progress.correct,
            'accuracy': progress.accuracy,
            'progress': percent
        })
        gevent.sleep(0)

    def on_epoch(epoch: int, train_result: RunResult, _) -> None:
        socketio.emit('training_epoch', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': epoch,
            'total_epochs': epochs,
            'training_accuracy': train_result.accuracy,
            'elapsed_time': train_result.elapsed_time
        })
        job['epoch'] = epoch + 1
        gevent.sleep(0)

    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        results = train_epochs(
            net, examples, epochs,
            epoch_callback=on_epoch,
            callback=on_progress,
            yield_func=yield_to_other_tasks
        )
        accuracy = test_network(net, test_data, yield_func=yield_to_other_tasks).accuracy

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['accuracy'] = accuracy
        job.update(status='completed', accuracy=accuracy, progress=100)

        save_network(net, network_id, trained=True, accuracy=accuracy)
        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'training_accuracy': results[-1].accuracy,
            'accuracy': accuracy,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        job.update(status='failed', error=str(e))

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """
    List in-memory networks followed by networks that are only saved.

    Every entry carries per-layer node and weight counts.
    """
    networks = []
    for network_id, info in active_networks.items():
        entry = {
            'network_id': network_id,
            'architecture': info['architecture'],
            'learning_rate': info['network'].learning_rate,
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        entry.update(describe_architecture(info['architecture']))
        networks.append(entry)

    saved_count = 0
    for entry in list_saved_networks():
        if entry['network_id'] in active_networks:
            continue
        entry['status'] = 'saved'
        networks.append(entry)
        saved_count += 1

    logger.debug(f"Listing networks: {len(active_networks)} in memory, {saved_count} saved only")
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    saved_ids = [net['network_id'] for net in list_saved_networks()]
    all_network_ids = set(active_networks) | set(saved_ids)

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0
    for network_id in all_network_ids:
        if active_networks.pop(network_id, None) is not None:
            deleted_from_memory_count += 1
        if delete_network(network_id):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Expire networks older than the given number of days.

    Request body (optional):
        {'days': 2}
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', NETWORK_RETENTION_DAYS)

    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        return jsonify({'error': 'days must be a non-negative integer'}), 400

    deleted_count = expire_networks(days)
    if deleted_count < 0:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    logger.info(f"Manual cleanup: {deleted_count} network(s) older than {days} day(s) expired")
    return jsonify({'deleted_count': deleted_count, 'days': days}), 200


# ============================================================================
# INSPECTION ENDPOINTS
# ============================================================================

def describe_layers(net: Network) -> List[Dict[str, Any]]:
    """Per-layer geometry of a network, as shown by the definition table."""
    return [
        {
            'layer_id': layout.id,
            'type': layout.definition.layer_type.value,
            'activation': layout.definition.activation.value
                if layout.definition.activation else None,
            'columns': layout.column_count,
            'depth': layout.nodes_per_column,
            'nodes': layout.node_count,
            'backward_connections': layout.backward_conn_count,
            'forward_connections': layout.forward_conn_count,
            'weights': layout.weight_count,
            'bytes': layout.size,
        }
        for layout in net.layout.layers
    ]


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network_endpoint(network_id: str):
    """Describe one in-memory network layer by layer."""
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    net: Network = info['network']
    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'layers': describe_layers(net),
        'learning_rate': net.learning_rate,
        'weight_count': net.weight_count,
        'size': net.size,
        'trained': info['trained'],
        'accuracy': info['accuracy']
    }), 200


@app.route('/api/networks/<network_id>/classify', methods=['POST'])
def classify_endpoint(network_id: str):
    """
    Classify one image.

    Request body:
        {'pixels': [784 raw pixel values, 0 to 255]}

    Returns:
        JSON with the chosen digit and the output layer's values
    """
    info = active_networks.get(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    pixels = data.get('pixels')
    if not isinstance(pixels, list):
        return jsonify({'error': 'pixels must be a list of numbers'}), 400

    net: Network = info['network']
    try:
        net.feed_input(mnist_loader.image_to_vector(np.asarray(pixels, dtype=np.float64)))
    except (ValueError, TypeError) as e:
        return jsonify({'error': f'Invalid image: {e}'}), 400

    net.feed_forward()
    return jsonify({
        'network_id': network_id,
        'digit': net.classify(),
        'network_output': array_to_float_list(net.outputs())
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def create_digit_image(image_data: np.ndarray, predicted: int, actual: int) -> str:
    """
    Render a digit as a base64-encoded PNG.

    Args:
        image_data: 784 input values of a 28x28 digit
        predicted: The digit the network chose
        actual: The correct digit
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(np.asarray(image_data).reshape(28, 28), cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def find_example(net: Network, want_correct: bool, max_attempts: int) -> Optional[Dict[str, Any]]:
    """
    Classify random test digits until one is (or is not) classified
    correctly.

    Returns:
        Response payload, or None if none was found within max_attempts
    """
    for attempt in range(max_attempts):
        index = int(np.random.randint(0, len(test_data)))
        x, y = test_data[index]

        net.feed_input(x)
        net.feed_forward()
        predicted_digit = net.classify()
        actual_digit = int(y)

        if (predicted_digit == actual_digit) == want_correct:
            logger.debug(f"Found example on attempt {attempt + 1}")
            return {
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': actual_digit,
                'image_data': create_digit_image(x, predicted_digit, actual_digit),
                'output_weights': array_to_float_list(net.layer_weights(net.layer_count - 1)),
                'network_output': array_to_float_list(net.outputs())
            }
    return None


def _example_response(network_id: str, want_correct: bool, max_attempts: int):
    kind = 'successful' if want_correct else 'unsuccessful'

    if network_id not in active_networks:
        logger.warning(f"{kind.capitalize()} example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if test_data is None:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 500

    net = active_networks[network_id]['network']
    payload = find_example(net, want_correct, max_attempts)
    if payload is None:
        logger.warning(f"No {kind} example found after {max_attempts} attempts")
        return jsonify({
            'error': f'No {kind} example found after {max_attempts} attempts'
        }), 404

    payload['network_id'] = network_id
    return jsonify(payload), 200


# ============================================================================
# EXAMPLE ENDPOINTS
# ============================================================================

@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Return a random test digit the network classifies correctly."""
    return _example_response(network_id, want_correct=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Return a random test digit the network gets wrong."""
    return _example_response(network_id, want_correct=False, max_attempts=200)


# ============================================================================
# STATIC FILE SERVING
# ============================================================================

@app.route('/')
def index():
    """Serve the main frontend page."""
    return send_from_directory(app.static_folder, 'index.html')


@app.route('/<path:path>')
def serve_static(path: str):
    """Serve static files (CSS, JS, images, etc.)."""
    return send_from_directory(app.static_folder, path)


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    static_dir = os.path.join(os.path.dirname(__file__), 'static')
    if not os.path.exists(static_dir):
        os.makedirs(static_dir)
        logger.info(f"Created static directory: {static_dir}")

    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server on port {port}")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        raise
