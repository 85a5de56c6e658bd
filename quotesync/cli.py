"""
Command line entry points for the publisher and the client.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from werkzeug.serving import WSGIRequestHandler

from .client import SyncSession, SyncTransportClient
from .client.pipeline import DEFAULT_PERMITS, DEFAULT_RETRY_TIMES
from .client.session import DEFAULT_TTL_SECONDS, EXIT_FAILURE
from .config import ConfigError, load_server_config
from .logging_config import setup_logging
from .publisher import (
    ExternalPuller,
    ManifestStore,
    RealtimePublications,
    SingleAccountAuthenticator,
    SyncScheduler,
    SyncService,
    create_app,
)
from .trading_calendar import ChinaEquityTradingCalendar

logger = logging.getLogger(__name__)

DEFAULT_PORT = 31256
DEFAULT_ACCOUNT = 'quotesync'
DEFAULT_PASSWORD = 'quotesync'


class SyncRequestHandler(WSGIRequestHandler):
    """Keep-alive connections with a bounded socket timeout."""

    protocol_version = 'HTTP/1.1'
    timeout = 360


def build_server_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='quotesync-server', description='Publish market-data archives over HTTP.')
    parser.add_argument('--ip', default='0.0.0.0', help='address to listen on')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='port to listen on')
    parser.add_argument('--cfg', default='./cfg.xml', help='path of cfg.xml')
    parser.add_argument('--syncdir', default=None, help='override the archive root set in cfg.xml')
    parser.add_argument('--account', default=DEFAULT_ACCOUNT, help='account clients log in with')
    parser.add_argument('--password', default=DEFAULT_PASSWORD, help='password clients log in with')
    parser.add_argument('--logpath', default='./logs/quotesync-server.log', help='log file path')
    parser.add_argument('--dumplog', action='store_true', help='write logs to --logpath')
    return parser


def build_client_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='quotesync-client', description='Download and apply market-data archives.')
    parser.add_argument('--ip', default='127.0.0.1', help='server address')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='server port')
    parser.add_argument('--account', default=DEFAULT_ACCOUNT)
    parser.add_argument('--password', default=DEFAULT_PASSWORD)
    parser.add_argument('--dir', default='./Data', help='target data root')
    parser.add_argument('--cachedir', default='./Cache', help='downloaded archive cache')
    parser.add_argument('--progress', default=None, help='progress XML file')
    parser.add_argument('--stopflagfile', default=None, help='file whose presence stops the run')
    parser.add_argument('--ttl', type=float, default=DEFAULT_TTL_SECONDS, help='run time limit in seconds')
    parser.add_argument('--permits', type=int, default=DEFAULT_PERMITS, help='concurrent downloads per category')
    parser.add_argument('--retry', type=int, default=DEFAULT_RETRY_TIMES, help='download attempts per archive')
    parser.add_argument('--logpath', default='./logs/quotesync-client.log', help='log file path')
    parser.add_argument('--dumplog', action='store_true', help='write logs to --logpath')
    return parser


def server_main(argv: Optional[List[str]] = None) -> int:
    args = build_server_parser().parse_args(argv)
    setup_logging(args.logpath, args.dumplog)

    try:
        config = load_server_config(Path(args.cfg))
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE
    if args.syncdir:
        config.sync_folder = Path(args.syncdir)

    store = ManifestStore()
    store.load()
    realtime = RealtimePublications(config.grace_seconds)
    service = SyncService(config, store=store, realtime=realtime)
    service.restore_realtime()
    puller = ExternalPuller(config.ftp_command) if config.ftp_command else None
    scheduler = SyncScheduler(
        service,
        build_time=config.build_time,
        puller=puller,
        calendar=ChinaEquityTradingCalendar(),
        realtime_ticks=config.realtime_ticks,
    )

    app = create_app(store, realtime, config.sync_folder, SingleAccountAuthenticator(args.account, args.password))
    scheduler.start()
    logger.info("serving %s on http://%s:%d", config.sync_folder, args.ip, args.port)
    try:
        app.run(
            debug=False,
            host=args.ip,
            port=args.port,
            threaded=True,
            use_reloader=False,
            request_handler=SyncRequestHandler,
        )
    finally:
        scheduler.stop(timeout=30)
        realtime.shutdown()
    return 0


def client_main(argv: Optional[List[str]] = None) -> int:
    args = build_client_parser().parse_args(argv)
    setup_logging(args.logpath, args.dumplog)

    transport = SyncTransportClient(f'http://{args.ip}:{args.port}')
    session = SyncSession(
        transport,
        account=args.account,
        password=args.password,
        target_root=Path(args.dir),
        cache_root=Path(args.cachedir),
        progress_file=Path(args.progress) if args.progress else None,
        stop_flag_file=Path(args.stopflagfile) if args.stopflagfile else None,
        ttl_seconds=args.ttl,
        permits=max(1, args.permits),
        retry_times=max(1, args.retry),
    )
    return session.run()


def run_server() -> None:
    sys.exit(server_main())


def run_client() -> None:
    sys.exit(client_main())
