"""Entry point for the request-serving process."""

import logging
import signal
import sys
import threading

from werkzeug.serving import make_server

from logtrace.api import create_app
from logtrace.broker import LogQueue, QueueError
from logtrace.config import load_config
from logtrace.tracing import build_propagator, build_tracer_provider, shutdown_tracer_provider


def main():
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    try:
        queue = LogQueue.connect(
            config.queue_url,
            config.stream_name,
            timeout=config.queue_timeout,
            client_name=config.service_name,
        )
        queue.ensure_topic(
            config.stream_name,
            [config.subject],
            retention=config.retention,
            storage=config.storage_type,
            max_age=config.max_age,
            replicas=config.replicas,
        )
    except QueueError as exc:
        logger.critical("Failed to set up durable queue: %s", exc)
        sys.exit(1)
    logger.info("Connected to broker at %s", config.queue_url)

    tracer_provider = None
    if config.tracing_enabled:
        tracer_provider = build_tracer_provider(config.service_name, config.tracing_endpoint)

    app = create_app(
        config,
        publisher=queue,
        tracer_provider=tracer_provider,
        propagator=build_propagator(),
    )
    server = make_server(config.host, config.port, app, threaded=True)
    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("Starting %s server on port %d", config.service_name, config.port)

    try:
        shutdown_event.wait()
    finally:
        server.shutdown()
        thread.join(timeout=5)
        shutdown_tracer_provider(tracer_provider)
        queue.close()
        logger.info("Server exiting")


if __name__ == "__main__":
    main()
