"""Entry point for the consumer process that forwards logs to Loki."""

import logging
import signal
import sys
import threading

from logtrace.broker import LogQueue, QueueError
from logtrace.config import load_config
from logtrace.forwarder import Forwarder
from logtrace.loki import LokiClient, SinkError


def main():
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    # Blocking fetches must outlive the socket timeout.
    try:
        queue = LogQueue.connect(
            config.queue_url,
            config.stream_name,
            timeout=config.fetch_wait + config.queue_timeout,
            client_name="log-consumer",
        )
        queue.ensure_topic(
            config.stream_name,
            [config.subject],
            retention=config.retention,
            storage=config.storage_type,
            max_age=config.max_age,
            replicas=config.replicas,
        )
        subscription = queue.ensure_consumer(config.consumer_name, config.subject)
    except QueueError as exc:
        logger.critical("Failed to set up durable queue: %s", exc)
        sys.exit(1)
    logger.info("Connected to broker at %s", config.queue_url)

    sink = LokiClient(config.loki_url)
    try:
        sink.check_ready()
    except SinkError as exc:
        logger.critical("Log store unavailable: %s", exc)
        sys.exit(1)

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    forwarder = Forwarder(subscription, sink, config, shutdown_event)
    logger.info("Pull subscription %s ready, waiting for logs", config.consumer_name)

    try:
        forwarder.run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        sink.close()
        queue.close()
        logger.info("Consumer exiting")


if __name__ == "__main__":
    main()
