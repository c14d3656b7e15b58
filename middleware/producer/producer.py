#!/usr/bin/env python3
"""
Sequential producer.

Declares a durable exchange and publishes messages to it, waiting for the
broker's publisher confirmation of each message before sending the next.
With --continuous it keeps publishing at a fixed interval until SIGINT or
SIGTERM is received.
"""
import argparse
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from app_config.config_loader import Config, ConfigError
from middleware.middleware_client import (
    BrokerSession,
    Confirmation,
    MessageMiddlewareError,
    OutboundMessage,
    mask_uri,
)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

log = logging.getLogger("sequential-producer")


@dataclass
class ProducerReport:
    published: int = 0
    acked: int = 0
    nacked: int = 0
    last_delivery_tag: Optional[int] = None
    stopped_by_signal: bool = False

    def record(self, confirmation: Confirmation) -> None:
        self.published += 1
        self.last_delivery_tag = confirmation.delivery_tag
        if confirmation.acked:
            self.acked += 1
        else:
            self.nacked += 1


class SequentialProducer:
    """
    Publish loop with at most one unconfirmed message in flight.

    The stop event is only looked at between cycles, so a publish that
    is waiting for its confirmation always runs to completion.
    """

    def __init__(
        self,
        cfg: Config,
        stop_event: threading.Event,
        session_factory: Callable[..., BrokerSession] = BrokerSession,
        logger: Optional[logging.Logger] = None,
    ):
        self._cfg = cfg
        self._stop_event = stop_event
        self._session_factory = session_factory
        self._log = logger or log

    def run(self) -> ProducerReport:
        report = ProducerReport()
        broker = self._cfg.broker

        self._log.info("dialing %s", mask_uri(broker.uri))
        with self._session_factory(
            broker.uri, vhost=broker.vhost, client_name=broker.client_name
        ) as session:
            self._setup(session)

            while True:
                confirmation = self._publish_once(session)
                report.record(confirmation)

                if not self._cfg.publisher.continuous:
                    break
                if self._should_stop():
                    self._log.info("producer is stopping")
                    report.stopped_by_signal = True
                    break

        return report

    def _setup(self, session):
        exchange = self._cfg.exchange

        session.open()
        self._log.info("got Connection, getting Channel")

        self._log.info("declaring exchange '%s' (%s)", exchange.name, exchange.kind)
        session.declare_exchange(exchange.name, exchange.kind, durable=exchange.durable)

        self._log.info("enabling publisher confirms.")
        session.enable_confirmations()

    def _build_message(self) -> OutboundMessage:
        return OutboundMessage(
            routing_key=self._cfg.publisher.routing_key,
            body=self._cfg.body_bytes,
            persistent=self._cfg.exchange.durable,
            app_id=self._cfg.broker.client_name,
            headers={},
        )

    def _publish_once(self, session) -> Confirmation:
        message = self._build_message()
        self._log.info(
            "publishing %dB body (%r)", len(message.body), self._cfg.publisher.body
        )
        deferred = session.publish(self._cfg.exchange.name, message)

        confirmation = deferred.wait()
        if confirmation.acked:
            self._log.info("confirmed delivery with tag: %d", confirmation.delivery_tag)
        else:
            self._log.warning(
                "broker rejected delivery with tag: %d", confirmation.delivery_tag
            )
        return confirmation

    def _should_stop(self) -> bool:
        # A stop requested during the last confirmation wins over the delay.
        if self._stop_event.is_set():
            return True
        return self._stop_event.wait(self._cfg.publisher.interval)


def register_signal_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    def shutdown_handler(*_a):
        if stop_event.is_set():
            return
        stop_event.set()
        logger.info("Shutdown signal received. Stopping after the current publish...")

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Publish to a durable exchange, waiting for each confirmation."
    )
    parser.add_argument("-c", "--config", default=os.environ.get("CONFIG_PATH"),
                        help="Path to config.ini")
    parser.add_argument("--uri", help="AMQP URI")
    parser.add_argument("--vhost", help="Virtual host, overrides the one in the URI")
    parser.add_argument("--client-name", help="Connection name shown by the broker")
    parser.add_argument("--exchange", help="Durable AMQP exchange name")
    parser.add_argument("--exchange-type",
                        help="Exchange type - direct|fanout|topic|headers|x-custom")
    parser.add_argument("--key", help="AMQP routing key")
    parser.add_argument("--body", help="Body of message")
    parser.add_argument("--continuous", action=argparse.BooleanOptionalAction, default=None,
                        help="Keep publishing messages at a 1msg/interval rate")
    parser.add_argument("--interval", type=float,
                        help="Seconds between publishes in continuous mode")
    parser.add_argument("--fail-on-nack", action=argparse.BooleanOptionalAction, default=None,
                        help="Exit with an error status if any message was nacked")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    return parser.parse_args(argv)


def _configure_logging(log_level: str) -> logging.Logger:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    return log


def _overrides_from_args(args: argparse.Namespace) -> dict:
    return {
        "uri": args.uri,
        "vhost": args.vhost,
        "client-name": args.client_name,
        "exchange": args.exchange,
        "exchange-type": args.exchange_type,
        "key": args.key,
        "body": args.body,
        "continuous": args.continuous,
        "interval": args.interval,
        "fail-on-nack": args.fail_on_nack,
    }


def main(argv=None) -> int:
    args = _parse_args(argv)
    logger = _configure_logging(args.log_level)

    try:
        cfg = Config(args.config, overrides=_overrides_from_args(args))
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    stop_event = threading.Event()
    register_signal_handlers(stop_event, logger)

    try:
        report = SequentialProducer(cfg, stop_event, logger=logger).run()
    except MessageMiddlewareError as e:
        cause = f" ({e.__cause__})" if e.__cause__ else ""
        logger.error("%s%s", e, cause)
        return EXIT_FATAL

    logger.info(
        "published %d message(s): %d acked, %d nacked",
        report.published,
        report.acked,
        report.nacked,
    )
    if report.nacked and cfg.publisher.fail_on_nack:
        logger.error("%d message(s) were rejected by the broker", report.nacked)
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
