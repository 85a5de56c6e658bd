"""
HTTP surface of the publisher
Flask app serving login, the manifest and archive downloads
"""

import hmac
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Optional, Protocol
from xml.sax.saxutils import quoteattr

from flask import Flask, Response, request, send_file, session
from flask_cors import CORS

from ..logging_config import REQUEST_LOGGER_NAME
from .manifest_store import ManifestStore
from .realtime import RealtimePublications, is_realtime_uri

request_logger = logging.getLogger(REQUEST_LOGGER_NAME)
logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = 'FileSyncSSID'
SESSION_LIFETIME = timedelta(hours=10)
XML_MIMETYPE = 'text/xml'


class Authenticator(Protocol):
    def verify(self, account: str, password: str) -> bool:
        ...


class SingleAccountAuthenticator:
    """Accepts exactly one account/password pair."""

    def __init__(self, account: str, password: str):
        self._account = account
        self._password = password

    def verify(self, account: str, password: str) -> bool:
        account_ok = hmac.compare_digest(account.encode('utf-8'), self._account.encode('utf-8'))
        password_ok = hmac.compare_digest(password.encode('utf-8'), self._password.encode('utf-8'))
        return account_ok and password_ok


def xml_result(root_tag: str, status: str, desc: str, http_status: int = 200) -> Response:
    body = (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<{root_tag}><result status={quoteattr(status)} desc={quoteattr(desc)}/></{root_tag}>'
    )
    return Response(body, status=http_status, mimetype=XML_MIMETYPE)


def resolve_archive(sync_root: Path, uri: str) -> Optional[Path]:
    """Map a manifest uri to a file inside ``sync_root``; anything escaping the root is refused."""

    root = Path(sync_root).resolve()
    candidate = (root / uri.replace('\\', '/').lstrip('/')).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate


def create_app(
    store: ManifestStore,
    realtime: RealtimePublications,
    sync_root: Path,
    authenticator: Authenticator,
    secret_key: Optional[bytes] = None,
) -> Flask:
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=secret_key or os.urandom(32),
        SESSION_COOKIE_NAME=SESSION_COOKIE_NAME,
        SESSION_COOKIE_HTTPONLY=True,
        PERMANENT_SESSION_LIFETIME=SESSION_LIFETIME,
    )
    CORS(app)

    @app.before_request
    def log_request_info():
        request_logger.info(f"REQUEST START: {request.method} {request.url}")
        request_logger.info(f"Remote addr: {request.remote_addr}")
        request_logger.info(f"User agent: {request.headers.get('User-Agent', 'Unknown')}")

    @app.after_request
    def log_response_info(response):
        request_logger.info(f"RESPONSE: {response.status_code} - {response.status}")
        if response.content_length is not None:
            request_logger.info(f"Response size: {response.content_length} bytes")
        return response

    def authenticated() -> bool:
        return bool(session.get('authenticated'))

    def unauthenticated() -> Response:
        return xml_result('authenticate', 'failure', 'login required', 401)

    @app.route('/', methods=['GET'])
    def index():
        return Response('quotesync file sync service\n', mimetype='text/plain')

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        account = request.values.get('account', '')
        password = request.values.get('password', '')
        if not account or not authenticator.verify(account, password):
            logger.warning("login rejected for account %r from %s", account, request.remote_addr)
            return xml_result('login', 'failure', 'invalid account or password')

        session.clear()
        session.permanent = True
        session['authenticated'] = True
        session['account'] = account
        logger.info("login accepted for account %r from %s", account, request.remote_addr)
        return xml_result('login', 'success', 'login succeeded')

    @app.route('/list', methods=['GET', 'POST'])
    def list_resources():
        if not authenticated():
            return unauthenticated()
        return Response(store.snapshot(), mimetype=XML_MIMETYPE)

    @app.route('/get', methods=['GET', 'POST'])
    def get_resource():
        if not authenticated():
            return unauthenticated()

        uri = request.values.get('uri', '').strip()
        if not uri:
            return xml_result('download', 'failure', 'uri parameter is required', 400)

        if is_realtime_uri(uri):
            path = realtime.resolve(uri)
        else:
            path = resolve_archive(sync_root, uri)

        if path is None or not path.is_file():
            logger.warning("requested archive not found: %s", uri)
            return xml_result('download', 'failure', f'resource not found: {uri}', 404)

        response = send_file(path, mimetype='application/zip', conditional=False, max_age=0)
        response.headers['Content-Encoding'] = 'zip'
        response.headers['Content-Disposition'] = f'attachment; filename="{uri}"'
        return response

    return app
