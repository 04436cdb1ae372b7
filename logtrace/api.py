"""Request-serving application with log capture attached."""

import threading

from flask import Flask, jsonify, request

from logtrace.capture import LogCapture, attach_error
from logtrace.config import Config


def create_app(config: Config | None = None, publisher=None,
               tracer_provider=None, propagator=None) -> Flask:
    """Flask application factory."""
    app = Flask(__name__)
    if config is None:
        config = Config()

    capture = LogCapture(
        app,
        publisher=publisher,
        service_name=config.service_name,
        environment=config.environment,
        tracer_provider=tracer_provider,
        propagator=propagator,
    )

    users: dict[int, dict] = {
        1: {"id": 1, "name": "Alice"},
        2: {"id": 2, "name": "Bob"},
    }
    lock = threading.Lock()

    app.config["components"] = {"config": config, "capture": capture, "users": users}

    # --- Routes ---

    @app.route("/ping")
    def ping():
        return "pong", 200, {"Content-Type": "text/plain; charset=utf-8"}

    @app.route("/api/v1/users")
    def list_users():
        with lock:
            return jsonify(list(users.values()))

    @app.route("/api/v1/users/<int:user_id>")
    def get_user(user_id):
        with lock:
            user = users.get(user_id)
        if user is None:
            return jsonify({"error": "user not found"}), 404
        return jsonify(user)

    @app.route("/api/v1/users", methods=["POST"])
    def create_user():
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data.get("name"):
            attach_error("invalid user payload")
            return jsonify({"error": "name is required"}), 400
        with lock:
            user_id = max(users, default=0) + 1
            user = {"id": user_id, "name": str(data["name"])}
            users[user_id] = user
        return jsonify(user), 201

    @app.route("/api/v1/error")
    def error():
        attach_error("example failure for error logging")
        return jsonify({"error": "something went wrong"}), 500

    return app
