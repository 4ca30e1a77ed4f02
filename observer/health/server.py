import logging
import threading
from flask import Flask, jsonify

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

_ready = threading.Event()
_registry = None


def bind_registry(registry) -> None:
    """Expose the controller registry on /controllers."""
    global _registry
    _registry = registry


def mark_ready() -> None:
    _ready.set()


def mark_not_ready() -> None:
    _ready.clear()


def start_health_server(port: int) -> None:
    """Serve the health endpoints; blocks, so run it on a daemon thread."""
    try:
        logger.info(f"Starting health server on port {port}")
        app.run(host="0.0.0.0", port=port, threaded=True)
    except Exception as e:
        logger.error(f"Failed to start health server: {str(e)}")
        raise


@app.route("/healthz", methods=["GET"])
def health_check():
    """Liveness endpoint."""
    return jsonify({"status": "healthy"}), 200


@app.route("/readyz", methods=["GET"])
def readiness_check():
    """Readiness endpoint; ready once operator startup completed."""
    if not _ready.is_set():
        return jsonify({"status": "starting"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/controllers", methods=["GET"])
def list_controllers():
    """Running sub-controllers, one entry per target namespace."""
    if _registry is None:
        return jsonify({"controllers": []}), 200
    return jsonify({"controllers": _registry.describe()}), 200
