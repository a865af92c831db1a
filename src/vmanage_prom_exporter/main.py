from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Iterable
from wsgiref.simple_server import WSGIRequestHandler, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

from vmanage_prom_exporter.cache import SnapshotCache
from vmanage_prom_exporter.client import AuthError, Deadline, VManageClient, VManageError
from vmanage_prom_exporter.exporter import build_registry
from vmanage_prom_exporter.service import DEFAULT_WORKERS, ErrorCounter, ScrapeScheduler, VManageScraper


LOGGER = logging.getLogger("vmanage_prom_exporter")

USER_ENV = "VMANAGE_USER"
PASSWORD_ENV = "VMANAGE_PASSWORD"

_INDEX_PAGE = """<html>
<head><title>vManage Exporter Metrics</title></head>
<body>
<h1>Metrics</h1>
<p><a href='{metrics_path}'>Metrics</a></p>
</body>
</html>
"""


@dataclass(frozen=True)
class AppConfig:
    endpoint: str
    username: str
    password: str
    verify_tls: bool
    listen_address: str
    listen_port: int
    metrics_path: str
    scrape_interval_seconds: float
    scrape_max_errors: int
    workers: int
    request_timeout_seconds: float
    exclusive_scrapes: bool
    run_once: bool
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Prometheus exporter for Cisco vManage",
        epilog=f"credentials are read from the {USER_ENV} and {PASSWORD_ENV} environment variables",
    )
    parser.add_argument(
        "--vmanage-endpoint",
        default=os.getenv("VMANAGE_ENDPOINT"),
        required=os.getenv("VMANAGE_ENDPOINT") is None,
        help="URL of the vManage API, for example https://vmanage.example.com",
    )
    parser.add_argument(
        "--tls-verify",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("VMANAGE_TLS_VERIFY", True),
        help="verify the vManage TLS certificate",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("VMANAGE_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for the metrics and health endpoints",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("VMANAGE_LISTEN_PORT", 9910),
        help="http bind port for the metrics and health endpoints",
    )
    parser.add_argument(
        "--metrics-path",
        default=os.getenv("VMANAGE_METRICS_PATH", "/metrics"),
        help="path under which to expose metrics",
    )
    parser.add_argument(
        "--scrape-interval-seconds",
        type=float,
        default=_float_env("VMANAGE_SCRAPE_INTERVAL_SECONDS", 15.0),
        help="polling interval; also the deadline of each scrape cycle",
    )
    parser.add_argument(
        "--scrape-max-errors",
        type=int,
        default=_int_env("VMANAGE_SCRAPE_MAX_ERRORS", 100),
        help="max scrape errors before reporting the exporter as unhealthy",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=_int_env("VMANAGE_WORKERS", DEFAULT_WORKERS),
        help="number of concurrent per-device fetch workers",
    )
    parser.add_argument(
        "--request-timeout-seconds",
        type=float,
        default=_float_env("VMANAGE_REQUEST_TIMEOUT_SECONDS", 30.0),
        help="upper bound for a single vManage API request",
    )
    parser.add_argument(
        "--exclusive-scrapes",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("VMANAGE_EXCLUSIVE_SCRAPES", False),
        help="skip a scheduled scrape while the previous one is still running",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single scrape cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("VMANAGE_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    username = os.getenv(USER_ENV, "")
    password = os.getenv(PASSWORD_ENV, "")
    if not username or not password:
        parser.error(f"please provide vManage credentials in environment variables {USER_ENV} and {PASSWORD_ENV}")
    if args.scrape_interval_seconds <= 0:
        parser.error("--scrape-interval-seconds must be positive")
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    return AppConfig(
        endpoint=args.vmanage_endpoint,
        username=username,
        password=password,
        verify_tls=bool(args.tls_verify),
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        metrics_path=args.metrics_path,
        scrape_interval_seconds=args.scrape_interval_seconds,
        scrape_max_errors=args.scrape_max_errors,
        workers=args.workers,
        request_timeout_seconds=args.request_timeout_seconds,
        exclusive_scrapes=bool(args.exclusive_scrapes),
        run_once=bool(args.once),
        log_level=args.log_level,
    )


def health_status(errors: int, max_errors: int) -> tuple[str, bytes]:
    if errors > max_errors:
        return "500 Internal Server Error", b"Unhealthy"
    return "200 OK", b"OK"


def build_app(
    registry: CollectorRegistry,
    errors: ErrorCounter,
    *,
    metrics_path: str = "/metrics",
    max_errors: int = 100,
) -> Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]:
    metrics_app = make_wsgi_app(registry)
    index_page = _INDEX_PAGE.format(metrics_path=metrics_path).encode("utf-8")

    def app(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        if path == metrics_path:
            return metrics_app(environ, start_response)
        if path == "/health":
            status, body = health_status(errors.value, max_errors)
            start_response(status, [("Content-Type", "text/plain; charset=utf-8")])
            return [body]
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [index_page]
        start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
        return [b"Not Found"]

    return app


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug("http %s - %s", self.address_string(), format % args)


def _logout_quietly(client: VManageClient) -> None:
    try:
        client.logout()
    except VManageError as error:
        LOGGER.warning("logout failed: %s", error)
    finally:
        client.close()


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    client = VManageClient(
        config.endpoint,
        config.username,
        config.password,
        verify_tls=config.verify_tls,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    if not config.verify_tls:
        LOGGER.warning("TLS certificate verification is disabled")

    LOGGER.info("validating login on %s", config.endpoint)
    try:
        client.login()
    except AuthError as error:
        LOGGER.error("initial login to %s failed: %s", config.endpoint, error)
        client.close()
        raise SystemExit(1) from error

    cache = SnapshotCache.for_scrape_interval(config.scrape_interval_seconds)
    errors = ErrorCounter()
    scraper = VManageScraper(client, cache, errors, workers=config.workers)
    registry = build_registry(cache, errors, scraper)

    if config.run_once:
        result = scraper.run(Deadline(config.scrape_interval_seconds))
        _logout_quietly(client)
        if not result.success:
            raise SystemExit(1)
        return

    cache.start()
    scheduler = ScrapeScheduler(
        scraper.run,
        interval_seconds=config.scrape_interval_seconds,
        exclusive=config.exclusive_scrapes,
    )
    LOGGER.info("starting initial data collection")
    scheduler.start()

    app = build_app(
        registry,
        errors,
        metrics_path=config.metrics_path,
        max_errors=config.scrape_max_errors,
    )
    server = make_server(
        config.listen_address,
        config.listen_port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=_QuietHandler,
    )
    LOGGER.info(
        "metrics server listening on http://%s:%d%s",
        config.listen_address,
        config.listen_port,
        config.metrics_path,
    )

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        scheduler.stop(timeout=5.0)
        cache.close()
        server.server_close()
        _logout_quietly(client)


if __name__ == "__main__":
    main()
