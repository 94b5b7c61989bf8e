"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Predicting digits with the served model or any registered network
- Creating, training and deleting networks, with real-time progress
  updates via WebSockets
- Downloading encoded weights and browsing test-set examples
- Persisting networks to/from SQLite database

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks (in production)
- SQLite for network persistence

``create_app`` receives everything the server needs (served model, data,
database directory), so each app owns its own networks.
"""

import os
import sys
import uuid
import base64
import logging
import threading
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from flask import Flask, Response, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet import mnist_loader
from digitnet.activation import ActivationFunction
from digitnet.exceptions import DecodeError, ShapeError, StateError
from digitnet.layer import DenseLayer
from digitnet.loss import LossFunction
from digitnet.network import Network
from digitnet.serialization import encode, load_weights
from digitnet.train import calculate_accuracy, configure_logging, train
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

logger = logging.getLogger(__name__)

DEFAULT_LAYER_SIZES = [784, 128, 64, 10]


# ============================================================================
# NETWORK REGISTRY
# ============================================================================

class NetworkEntry:
    """
    A network held by the server, plus the lock that guards it.

    Every training step and every prediction takes the lock, so a request
    never sees a half-applied update. The lock is released between
    batches, which lets predictions run while a network trains.
    """

    def __init__(
        self,
        network: Network,
        trained: bool = False,
        accuracy: Optional[float] = None
    ):
        self.network = network
        self.lock = threading.Lock()
        self.trained = trained
        self.accuracy = accuracy

    def train_batch(self, inputs, targets, learning_rate: float) -> float:
        with self.lock:
            return self.network.train_batch(inputs, targets, learning_rate)

    def infer(self, inputs) -> np.ndarray:
        with self.lock:
            return self.network.infer(inputs)

    def encode(self) -> bytes:
        with self.lock:
            return encode(self.network)

    def to_dict(self, network_id: str) -> Dict[str, Any]:
        return {
            'network_id': network_id,
            'architecture': self.network.architecture(),
            'loss_function': self.network.loss_fn.name.lower(),
            'trained': self.trained,
            'accuracy': self.accuracy
        }


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def parse_pixels(data: Dict[str, Any], expected_length: int) -> np.ndarray:
    """
    Turn the 'pixels' field of a request into a (1, n) matrix.

    Raises:
        ShapeError: If the pixel count differs from the network input width
        ValueError: If the field is missing or not a flat list of numbers
    """
    pixels = data.get('pixels')
    if not isinstance(pixels, list):
        raise ValueError("'pixels' must be a flat list of numbers")

    try:
        values = np.asarray(pixels, dtype=np.float32)
    except (TypeError, ValueError):
        raise ValueError("'pixels' must be a flat list of numbers") from None

    if values.ndim != 1:
        raise ValueError("'pixels' must be a flat list of numbers")
    if values.shape[0] != expected_length:
        raise ShapeError(
            f"Invalid input length. Expected {expected_length}, "
            f"got {values.shape[0]}"
        )
    return values.reshape(1, expected_length)


def parse_layers(data: Dict[str, Any]) -> List[Tuple[int, int, ActivationFunction]]:
    """
    Read a network definition from a request body.

    Accepts either explicit layers::

        {'layers': [{'input_size': 784, 'output_size': 30,
                     'activation': 'relu'}, ...]}

    or plain widths, which get ReLU hidden layers and a softmax output::

        {'layer_sizes': [784, 30, 10]}

    Raises:
        ValueError: If the definition is malformed or widths do not chain
    """
    if 'layers' in data:
        raw_layers = data['layers']
        if not isinstance(raw_layers, list) or not raw_layers:
            raise ValueError("'layers' must be a non-empty list")

        layers = []
        for layer_def in raw_layers:
            if isinstance(layer_def, dict):
                layer_def = [
                    layer_def.get('input_size'),
                    layer_def.get('output_size'),
                    layer_def.get('activation')
                ]
            if not isinstance(layer_def, (list, tuple)) or len(layer_def) != 3:
                raise ValueError(
                    "Each layer needs input_size, output_size and activation"
                )
            input_size, output_size, activation = layer_def
            layers.append((input_size, output_size,
                           ActivationFunction.from_name(activation)))
    else:
        sizes = data.get('layer_sizes', DEFAULT_LAYER_SIZES)
        if not isinstance(sizes, list) or len(sizes) < 2:
            raise ValueError(
                'Invalid architecture. Must have at least 2 layers.'
            )
        layers = [
            (sizes[i], sizes[i + 1],
             ActivationFunction.SOFTMAX if i == len(sizes) - 2
             else ActivationFunction.RELU)
            for i in range(len(sizes) - 1)
        ]

    for input_size, output_size, _ in layers:
        for size in (input_size, output_size):
            if isinstance(size, bool) or not isinstance(size, int) or size < 1:
                raise ValueError('Layer sizes must be positive integers')

    for (_, prev_out, _), (next_in, _, _) in zip(layers, layers[1:]):
        if prev_out != next_in:
            raise ValueError(
                f"Layer widths do not chain: output {prev_out} "
                f"feeds input {next_in}"
            )
    return layers


def create_digit_image(image_data: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        image_data: 784-element array representing the 28x28 digit image
        predicted: The digit the network predicted (0-9)
        actual: The correct digit (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(
        image_data.reshape(mnist_loader.IMAGE_HEIGHT, mnist_loader.IMAGE_WIDTH),
        cmap='gray'
    )
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    served_network: Optional[Network] = None,
    data: Optional[mnist_loader.MnistData] = None,
    model_dir: str = 'models',
    async_mode: Optional[str] = None,
    reload_saved: bool = True
) -> Tuple[Flask, SocketIO]:
    """
    Build the Flask app and its SocketIO server.

    Args:
        served_network: Model answering /api/predict, or None
        data: MNIST data used for training jobs and examples, or None
        model_dir: Directory holding the SQLite database
        async_mode: SocketIO async mode ('gevent' in production,
            'threading' in tests); None lets Flask-SocketIO choose
        reload_saved: Load networks saved by a previous run

    Returns:
        (app, socketio)
    """
    is_production = os.getenv('FLASK_ENV') == 'production'

    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

    # SocketIO enables real-time communication (WebSockets) for training updates
    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode=async_mode,
        logger=not is_production,
        engineio_logger=not is_production,
        ping_timeout=60,
        ping_interval=25
    )

    served = NetworkEntry(served_network, trained=True) if served_network else None

    # Networks currently loaded in memory: {network_id: NetworkEntry}
    active_networks: Dict[str, NetworkEntry] = {}

    # Training jobs being tracked: {job_id: job_info}
    training_jobs: Dict[str, Dict[str, Any]] = {}

    rng = np.random.default_rng()

    app.extensions['digitnet'] = {
        'served': served,
        'active_networks': active_networks,
        'training_jobs': training_jobs,
        'model_dir': model_dir
    }

    def reload_saved_networks() -> None:
        """Load every network saved in the database into memory."""
        saved_networks = list_saved_networks(model_dir)

        if not saved_networks:
            logger.info("No saved networks to reload")
            return

        loaded_count = 0
        for net_info in saved_networks:
            network_id = net_info['network_id']
            net = load_network(network_id, model_dir)
            if net is None:
                logger.warning(f"Failed to load network {network_id}")
                continue
            active_networks[network_id] = NetworkEntry(
                net, trained=net_info['trained'], accuracy=net_info['accuracy']
            )
            loaded_count += 1

        logger.info(f"Reloaded {loaded_count} network(s) from database")

    if reload_saved:
        reload_saved_networks()

    def cleanup_finished_training_jobs() -> int:
        """Remove completed or failed training jobs from memory."""
        finished_statuses = {'completed', 'failed'}
        jobs_to_remove = [
            job_id for job_id, job_info in training_jobs.items()
            if job_info.get('status') in finished_statuses
        ]

        for job_id in jobs_to_remove:
            del training_jobs[job_id]

        if jobs_to_remove:
            logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")
        return len(jobs_to_remove)

    def sync_with_database() -> None:
        """Drop in-memory networks whose database rows were deleted."""
        saved_ids = {net['network_id'] for net in list_saved_networks(model_dir)}
        training_ids = {
            job['network_id'] for job in training_jobs.values()
            if job.get('status') in ('pending', 'training')
        }
        networks_to_remove = [
            nid for nid, entry in active_networks.items()
            if entry.trained and nid not in saved_ids and nid not in training_ids
        ]
        for nid in networks_to_remove:
            del active_networks[nid]
            logger.info(f"Removed network {nid} from memory (deleted from database)")

    def cleanup_old_networks_task(days: float = 2, interval: int = 86400) -> None:
        """
        Background task: delete networks older than ``days`` immediately,
        then every ``interval`` seconds, and drop finished training jobs.
        """
        logger.info("Cleanup task started")
        while True:
            try:
                deleted_count = delete_old_networks(days=days, model_dir=model_dir)
                if deleted_count > 0:
                    logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")
                    sync_with_database()
                elif deleted_count == 0:
                    logger.info("Cleanup completed: no old networks found to delete")
                else:
                    logger.error("Cleanup returned error code")

                cleanup_finished_training_jobs()
                socketio.sleep(interval)

            except Exception as e:
                logger.exception(f"Error during network cleanup: {e}")
                # Wait a bit before retrying on error
                socketio.sleep(3600)

    app.extensions['digitnet']['start_cleanup_task'] = (
        lambda: socketio.start_background_task(cleanup_old_networks_task)
    )

    def get_entry(network_id: str) -> Optional[NetworkEntry]:
        return active_networks.get(network_id)

    def remove_entry(network_id: str) -> bool:
        """Drop a network from memory; a training step in progress finishes first."""
        entry = active_networks.get(network_id)
        if entry is None:
            return False
        with entry.lock:
            return active_networks.pop(network_id, None) is not None

    # ------------------------------------------------------------------------
    # Status and served model
    # ------------------------------------------------------------------------

    @app.route('/api/status', methods=['GET'])
    def get_status():
        """Return server status and statistics."""
        active_statuses = ('pending', 'training')
        active_training = sum(
            1 for job in training_jobs.values()
            if job.get('status') in active_statuses
        )

        return jsonify({
            'status': 'online',
            'active_networks': len(active_networks),
            'training_jobs': active_training,
            'model_loaded': served is not None,
            'data_loaded': data is not None
        }), 200

    @app.route('/api/model', methods=['GET'])
    def get_model_info():
        """Input and output width of the served model."""
        if served is None:
            return jsonify({'error': 'No model loaded'}), 503

        return jsonify({
            'input_size': served.network.input_size,
            'output_size': served.network.output_size,
            'architecture': served.network.architecture()
        }), 200

    def predict_with(entry: NetworkEntry):
        body = request.get_json(silent=True) or {}
        try:
            pixels = parse_pixels(body, entry.network.input_size)
        except (ShapeError, ValueError) as e:
            logger.warning(f"Rejected prediction request: {e}")
            return jsonify({'error': str(e)}), 400

        output = entry.infer(pixels)
        return jsonify({
            'predicted_digit': int(np.argmax(output)),
            'probabilities': array_to_float_list(output)
        }), 200

    @app.route('/api/predict', methods=['POST'])
    def predict_served():
        """
        Predict a digit with the served model.

        Request body:
            {'pixels': [784 floats in [0, 1]]}
        """
        if served is None:
            return jsonify({'error': 'No model loaded'}), 503
        return predict_with(served)

    # ------------------------------------------------------------------------
    # Network management
    # ------------------------------------------------------------------------

    @app.route('/api/networks', methods=['POST'])
    def create_network():
        """
        Create a new neural network.

        Request body (optional):
            {'layer_sizes': [784, 128, 64, 10]} or {'layers': [...]},
            plus {'loss': 'cross_entropy'}

        Returns:
            JSON with network_id, architecture, and status
        """
        body = request.get_json(silent=True) or {}

        try:
            layers = parse_layers(body)
            loss_fn = LossFunction.from_name(body.get('loss', 'cross_entropy'))
        except ValueError as e:
            logger.warning(f"Invalid architecture requested: {e}")
            return jsonify({'error': str(e)}), 400

        net = Network(loss_fn)
        for input_size, output_size, activation in layers:
            net.add_layer(DenseLayer(input_size, output_size, activation, rng=rng))

        network_id = str(uuid.uuid4())
        active_networks[network_id] = NetworkEntry(net)

        logger.info(f"Created network {network_id} with architecture {net.architecture()}")

        return jsonify({
            'network_id': network_id,
            'architecture': net.architecture(),
            'loss_function': loss_fn.name.lower(),
            'status': 'created'
        }), 201

    @app.route('/api/networks', methods=['GET'])
    def list_networks():
        """List all available networks (both in-memory and saved to disk)."""
        in_memory = []
        for nid, entry in active_networks.items():
            info = entry.to_dict(nid)
            info['status'] = 'in_memory'
            in_memory.append(info)

        saved_only = []
        for net in list_saved_networks(model_dir):
            if net['network_id'] not in active_networks:
                net['status'] = 'saved'
                saved_only.append(net)

        logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

        return jsonify({'networks': in_memory + saved_only}), 200

    @app.route('/api/networks/<network_id>', methods=['DELETE'])
    def delete_network_endpoint(network_id: str):
        """Delete a network from both memory and disk."""
        deleted_from_memory = remove_entry(network_id)
        deleted_from_disk = delete_network(network_id, model_dir)

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
        saved_ids = [net['network_id'] for net in list_saved_networks(model_dir)]
        all_network_ids = set(active_networks) | set(saved_ids)

        deleted_from_memory_count = 0
        deleted_from_disk_count = 0

        for network_id in all_network_ids:
            if remove_entry(network_id):
                deleted_from_memory_count += 1
            # A training job may have saved it since the listing above
            if delete_network(network_id, model_dir):
                deleted_from_disk_count += 1

        logger.info(
            f"Deleted all networks: {len(all_network_ids)} total, "
            f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
        )

        return jsonify({
            'deleted_count': len(all_network_ids),
            'deleted_from_memory': deleted_from_memory_count,
            'deleted_from_disk': deleted_from_disk_count,
            'message': f'Successfully deleted {len(all_network_ids)} network(s)'
        }), 200

    @app.route('/api/networks/cleanup', methods=['POST'])
    def cleanup_old_networks_endpoint():
        """
        Manually trigger cleanup of networks older than specified days.

        Request body (optional):
            {'days': 2}  # defaults to 2
        """
        body = request.get_json(silent=True) or {}
        days = body.get('days', 2)

        if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
            return jsonify({'error': 'days must be a non-negative number'}), 400

        deleted_count = delete_old_networks(days=days, model_dir=model_dir)
        if deleted_count == -1:
            return jsonify({'error': 'Error occurred during cleanup'}), 500

        sync_with_database()
        cleanup_finished_training_jobs()
        logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

        return jsonify({
            'deleted_count': deleted_count,
            'days': days,
            'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
        }), 200

    @app.route('/api/networks/<network_id>/predict', methods=['POST'])
    def predict_network(network_id: str):
        """Predict a digit with a registered network."""
        entry = get_entry(network_id)
        if entry is None:
            return jsonify({'error': 'Network not found'}), 404
        return predict_with(entry)

    @app.route('/api/networks/<network_id>/weights', methods=['GET'])
    def download_weights(network_id: str):
        """Download a network's encoded weights."""
        entry = get_entry(network_id)
        if entry is None:
            return jsonify({'error': 'Network not found'}), 404

        return Response(
            entry.encode(),
            mimetype='application/octet-stream',
            headers={
                'Content-Disposition': f'attachment; filename={network_id}.bin'
            }
        )

    # ------------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------------

    def train_network_task(
        network_id: str,
        job_id: str,
        epochs: int,
        mini_batch_size: int,
        learning_rate: float
    ) -> None:
        """
        Background task that trains a neural network.

        Sends progress updates via WebSocket as training progresses. The job
        fails, and nothing is saved, if the network is deleted before or
        during training.
        """
        entry = active_networks.get(network_id)

        def check_not_deleted() -> None:
            if entry is None or active_networks.get(network_id) is not entry:
                raise StateError(f"Network {network_id} was deleted")

        def yield_to_other_tasks() -> None:
            socketio.sleep(0)
            check_not_deleted()

        def on_epoch_complete(stats: Dict[str, Any]) -> None:
            """Called after each training epoch to send progress updates."""
            progress = (stats['epoch'] / stats['total_epochs']) * 100

            training_jobs[job_id]['status'] = 'training'
            training_jobs[job_id]['progress'] = progress
            training_jobs[job_id]['loss'] = stats['loss']

            socketio.emit('training_update', {
                'job_id': job_id,
                'network_id': network_id,
                'epoch': stats['epoch'],
                'total_epochs': stats['total_epochs'],
                'loss': stats['loss'],
                'accuracy': stats['accuracy'],
                'elapsed_time': stats['elapsed_time'],
                'progress': progress,
                'correct': stats['correct'],
                'total': stats['total']
            })
            socketio.sleep(0)

        try:
            check_not_deleted()
            logger.info(f"Starting training for job {job_id}")
            training_jobs[job_id]['status'] = 'training'

            # The entry takes its lock once per batch
            train(
                entry,
                data.train_images,
                data.train_labels,
                epochs,
                learning_rate,
                mini_batch_size,
                test_images=data.test_images,
                test_labels=data.test_labels,
                callback=on_epoch_complete,
                yield_func=yield_to_other_tasks
            )

            accuracy, _ = calculate_accuracy(entry, data.test_images, data.test_labels)

            with entry.lock:
                check_not_deleted()
                entry.trained = True
                entry.accuracy = accuracy
                save_network(entry.network, network_id, model_dir=model_dir,
                             trained=True, accuracy=accuracy)

            # Saved before the job is reported complete
            training_jobs[job_id]['status'] = 'completed'
            training_jobs[job_id]['accuracy'] = accuracy
            training_jobs[job_id]['progress'] = 100

            logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

            socketio.emit('training_complete', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'completed',
                'accuracy': float(accuracy),
                'progress': 100
            })

        except Exception as e:
            logger.exception(f"Training failed for job {job_id}: {e}")

            training_jobs[job_id]['status'] = 'failed'
            training_jobs[job_id]['error'] = str(e)

            socketio.emit('training_error', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'failed',
                'error': str(e)
            })

    @app.route('/api/networks/<network_id>/train', methods=['POST'])
    def train_network(network_id: str):
        """
        Start training a network in the background.

        Request body (all optional):
            {
                'epochs': 5,
                'mini_batch_size': 64,
                'learning_rate': 0.1
            }

        Returns:
            JSON with job_id, network_id, and status
        """
        entry = get_entry(network_id)
        if entry is None:
            logger.warning(f"Training requested for non-existent network: {network_id}")
            return jsonify({'error': 'Network not found'}), 404

        if data is None:
            return jsonify({'error': 'Training data not available'}), 503

        body = request.get_json(silent=True) or {}
        epochs = body.get('epochs', 5)
        mini_batch_size = body.get('mini_batch_size', 64)
        learning_rate = body.get('learning_rate', 0.1)

        if isinstance(epochs, bool) or not isinstance(epochs, int) or epochs < 1:
            return jsonify({'error': 'epochs must be a positive integer'}), 400
        if isinstance(mini_batch_size, bool) or not isinstance(mini_batch_size, int) or mini_batch_size < 1:
            return jsonify({'error': 'mini_batch_size must be a positive integer'}), 400
        if isinstance(learning_rate, bool) or not isinstance(learning_rate, (int, float)) or learning_rate <= 0:
            return jsonify({'error': 'learning_rate must be a positive number'}), 400

        net = entry.network
        if (net.input_size != data.train_images.shape[1] or
                net.output_size != data.train_labels.shape[1]):
            return jsonify({
                'error': (
                    f"Network maps {net.input_size} inputs to {net.output_size} "
                    f"outputs, training data has {data.train_images.shape[1]} "
                    f"features and {data.train_labels.shape[1]} classes"
                )
            }), 400

        if any(job['network_id'] == network_id and job['status'] in ('pending', 'training')
               for job in training_jobs.values()):
            return jsonify({'error': 'Network is already training'}), 409

        job_id = str(uuid.uuid4())
        training_jobs[job_id] = {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'pending',
            'progress': 0,
            'epochs': epochs
        }

        logger.info(
            f"Created training job {job_id} for network {network_id}: "
            f"epochs={epochs}, batch_size={mini_batch_size}, lr={learning_rate}"
        )

        # Run training in background so we can return immediately
        socketio.start_background_task(
            train_network_task,
            network_id, job_id, epochs, mini_batch_size, float(learning_rate)
        )

        return jsonify({
            'job_id': job_id,
            'network_id': network_id,
            'status': 'training_started'
        }), 202

    @app.route('/api/training/<job_id>', methods=['GET'])
    def get_training_status(job_id: str):
        """Get the current status of a training job."""
        if job_id in training_jobs:
            return jsonify(training_jobs[job_id]), 200

        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404

    # ------------------------------------------------------------------------
    # Examples
    # ------------------------------------------------------------------------

    def find_example(network_id: str, want_correct: bool, max_attempts: int):
        entry = get_entry(network_id)
        if entry is None:
            logger.warning(f"Example requested for non-existent network: {network_id}")
            return jsonify({'error': 'Network not found'}), 404

        if data is None or data.test_images.shape[0] == 0:
            logger.error("Test data not loaded")
            return jsonify({'error': 'Test data not available'}), 503

        if entry.network.input_size != data.test_images.shape[1]:
            return jsonify({'error': 'Network does not accept MNIST images'}), 400

        for attempt in range(max_attempts):
            index = int(rng.integers(0, data.test_images.shape[0]))
            x = data.test_images[index:index + 1]
            actual_digit = int(data.test_labels[index, 0])

            output = entry.infer(x)
            predicted_digit = int(np.argmax(output))

            if (predicted_digit == actual_digit) == want_correct:
                logger.debug(f"Found example on attempt {attempt + 1}")

                return jsonify({
                    'network_id': network_id,
                    'example_index': index,
                    'predicted_digit': predicted_digit,
                    'actual_digit': actual_digit,
                    'image_data': create_digit_image(x, predicted_digit, actual_digit),
                    'network_output': array_to_float_list(output)
                }), 200

        kind = 'successful' if want_correct else 'unsuccessful'
        logger.warning(f"No {kind} example found after {max_attempts} attempts")
        return jsonify({
            'error': f'No {kind} example found after {max_attempts} attempts'
        }), 404

    @app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
    def get_successful_example(network_id: str):
        """A random test image the network classifies correctly."""
        return find_example(network_id, want_correct=True, max_attempts=100)

    @app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
    def get_unsuccessful_example(network_id: str):
        """A random test image the network gets wrong."""
        return find_example(network_id, want_correct=False, max_attempts=200)

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if hasattr(e, 'code') and hasattr(e, 'description'):
            return jsonify({'error': e.description}), e.code
        logger.exception(f"Unhandled error: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return app, socketio


# ============================================================================
# SERVER STARTUP
# ============================================================================

def load_served_network(model_path: str) -> Optional[Network]:
    """Load the default model, or None if the weight file is missing."""
    if not os.path.exists(model_path):
        logger.warning(f"No model file at {model_path}; /api/predict disabled")
        return None
    return load_weights(model_path, LossFunction.CROSS_ENTROPY)


def load_training_data(data_dir: str) -> Optional[mnist_loader.MnistData]:
    """Load MNIST for training jobs, or None if it is unavailable."""
    try:
        return mnist_loader.load_data(data_dir)
    except (OSError, DecodeError) as e:
        logger.warning(f"MNIST data not loaded from {data_dir}: {e}")
        return None


def main() -> None:
    configure_logging()

    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    try:
        served_network = load_served_network(
            os.getenv('DIGITNET_MODEL_PATH', 'mnist_model.bin')
        )
    except DecodeError as e:
        logger.error(f"Could not decode model file {e.source}: {e}")
        sys.exit(1)

    app, socketio = create_app(
        served_network=served_network,
        data=load_training_data(os.getenv('DIGITNET_DATA_DIR', 'data')),
        model_dir=os.getenv('DIGITNET_MODEL_DIR', 'models'),
        async_mode=os.getenv('DIGITNET_ASYNC_MODE', 'gevent')
    )

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    app.extensions['digitnet']['start_cleanup_task']()

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
        else:
            raise


if __name__ == '__main__':
    main()
