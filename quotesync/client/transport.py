from __future__ import annotations

import logging
import os
import random
import tempfile
import time
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional

import requests

from ..archive_codec import CHUNK_SIZE
from ..manifest import ManifestEntry, parse_manifest

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when the sync server cannot be reached or answers unexpectedly."""


class AuthenticationError(TransportError):
    """Raised when the server rejects the account or password."""


class SyncTransportClient:
    """
    HTTP client for the publisher's ``/login``, ``/list`` and ``/get``.

    A single ``requests.Session`` carries the session cookie between calls.
    ``login`` and ``list_manifest`` retry transient failures (connection
    errors, 429 and 5xx) with exponential backoff and jitter; ``download`` makes a
    single attempt and leaves retrying to the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        backoff_factor: float = 1.5,
        connect_timeout: float = 30,
        read_timeout: float = 360,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._timeout = (connect_timeout, read_timeout)
        self._request_count = 0

    # ------------------------------------------------------------------ calls
    def login(self, account: str, password: str) -> None:
        response = self._request_with_retries("GET", "/login", {"account": account, "password": password})
        status, desc = _result_status(response.content)
        if status != "success":
            raise AuthenticationError(f"login rejected: {desc or status or 'no result'}")
        logger.info("logged in to %s as %s", self.base_url, account)

    def list_manifest(self) -> List[ManifestEntry]:
        response = self._request_with_retries("GET", "/list")
        entries = parse_manifest(response.content)
        logger.info("manifest lists %d archives", len(entries))
        return entries

    def download(self, uri: str, destination: Path) -> Path:
        """Fetch ``uri`` into ``destination``, replacing it only once the body is complete."""

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            response = self._session.get(
                f"{self.base_url}/get",
                params={"uri": uri},
                timeout=self._timeout,
                stream=True,
            )
            self._request_count += 1
        except requests.RequestException as exc:
            raise TransportError(f"download of {uri} failed: {exc}") from exc

        with response:
            if response.status_code != 200:
                raise TransportError(f"download of {uri} failed with status {response.status_code}")

            fd, temp_path = tempfile.mkstemp(dir=destination.parent, suffix=".part", prefix=".tmp-get-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        handle.write(chunk)
                os.replace(temp_path, destination)
            except requests.RequestException as exc:
                raise TransportError(f"download of {uri} interrupted: {exc}") from exc
            finally:
                if os.path.exists(temp_path):
                    os.remove(temp_path)

        return destination

    # ------------------------------------------------------------------ utils
    def _request_with_retries(self, method: str, path: str, params: Optional[Dict[str, str]] = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        attempt = 0
        last_exception: Optional[Exception] = None

        while attempt <= self._max_retries:
            try:
                response = self._session.request(method, url, params=params, timeout=self._timeout)
                self._request_count += 1
            except requests.RequestException as exc:
                last_exception = exc
                response = None

            if response is not None and response.status_code in (200, 401):
                return response

            attempt += 1

            status = response.status_code if response is not None else None
            if response is not None and status not in (429, 500, 502, 503, 504):
                raise TransportError(f"request to {path} failed with status {status}")
            if attempt > self._max_retries:
                break

            sleep_seconds = self._backoff_factor ** attempt
            sleep_seconds *= random.uniform(0.8, 1.2)
            logger.warning("request to %s failed (%s), retrying in %.1fs", path, status or last_exception, sleep_seconds)
            time.sleep(min(sleep_seconds, 30))

        if last_exception:
            raise TransportError(f"request to {path} failed: {last_exception}") from last_exception
        raise TransportError(f"request to {path} failed after {self._max_retries} retries")

    @property
    def request_count(self) -> int:
        return self._request_count


def _result_status(payload: bytes):
    try:
        root = ET.fromstring(payload)
    except ET.ParseError:
        return None, "unreadable response"
    result = root.find("result")
    if result is None:
        return None, f"unexpected <{root.tag}> response"
    return result.get("status"), result.get("desc", "")
