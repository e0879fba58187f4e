import json
import logging
import os
import random
import tempfile
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

import requests

DEFAULT_INDEX_URL = "https://api.census.gov/data.json"


def cache_path_for(url: str, cache_dir: Path) -> Path:
    """
    Maps a URL to a file under `cache_dir` that mirrors the URL's path, e.g.
    https://api.census.gov/data/2020/acs/acs5/variables.json ->
    <cache_dir>/data/2020/acs/acs5/variables.json

    The host and any query string are ignored. The last path segment must look
    like a file name (contain a period). Percent-encoded separators and relative
    segments are rejected, and the result always lies inside `cache_dir`.
    """
    segments = [unquote(s) for s in urlparse(url).path.split("/") if s]
    if not segments or "." not in segments[-1]:
        raise ValueError(
            "Expected the last element in the URL to contain a period (file extension), "
            f"e.g. '.json' or '.html' but got: '{url}'"
        )
    if any(s in (".", "..") or "/" in s or "\\" in s or Path(s).is_absolute() for s in segments):
        raise ValueError(f"URL path must not contain relative segments or encoded separators: '{url}'")
    path = cache_dir.joinpath(*segments)
    if cache_dir.resolve() not in path.resolve().parents:
        raise ValueError(f"URL '{url}' maps outside the cache directory {cache_dir}")
    return path


class CensusExtractor:
    """
    Fetches JSON metadata from the Census API with retries, backing every
    response with an on-disk cache so repeated runs do not hit the network.
    """

    def __init__(
        self,
        cache_dir: str = "./cache",
        use_cache: bool = True,
        retries: int = 3,
        backoff_factor: float = 0.5,
        rate_limit_seconds: float = 1.0,
        timeout: float = 30,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.use_cache = use_cache
        self.retries = retries
        self.backoff_factor = backoff_factor
        self.rate_limit_seconds = rate_limit_seconds
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "py-load-census/0.1.0"})

    def _send_request(self, url: str) -> requests.Response:
        """
        Sends an HTTP GET request with retries and exponential backoff using a session.
        """
        for attempt in range(self.retries):
            try:
                if self.rate_limit_seconds:
                    time.sleep(self.rate_limit_seconds)
                response = self.session.get(url, timeout=self.timeout)
                response.raise_for_status()
                return response
            except requests.RequestException as e:
                if attempt < self.retries - 1:
                    wait_time = self.backoff_factor * (2 ** attempt) + random.uniform(0, 1)
                    logging.warning(f"Request to {url} failed ({e}). Retrying in {wait_time:.2f} seconds...")
                    time.sleep(wait_time)
                else:
                    logging.error(f"Request to {url} failed after {self.retries} attempts.")
                    raise
        raise requests.RequestException(f"Request to {url} failed after {self.retries} attempts.")

    def _read_cache(self, path: Path) -> Optional[str]:
        """Returns the cached body, or None on a miss or an unreadable file."""
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logging.warning(f"Ignoring unreadable cache file '{path}': {e}")
            return None

    def _write_cache(self, path: Path, body: str) -> None:
        """
        Writes to a temporary file in the target directory and renames it over
        the target, so readers never observe a partial file.
        """
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(body)
            os.replace(tmp_name, path)
            logging.debug(f"Cached response at '{path}'.")
        except OSError as e:
            logging.warning(f"Could not write cache file '{path}': {e}")
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def fetch_text(self, url: str) -> str:
        """
        Returns the body of `url`, from the cache when present. A successful
        network response is written to the cache.
        """
        cache_path = cache_path_for(url, self.cache_dir) if self.use_cache else None
        if cache_path is not None:
            cached = self._read_cache(cache_path)
            if cached is not None:
                logging.debug(f"Cache hit for {url}")
                return cached

        logging.info(f"Fetching {url}")
        response = self._send_request(url)
        body = response.text
        if cache_path is not None:
            self._write_cache(cache_path, body)
        return body

    def fetch_json(self, url: str) -> Any:
        """Returns the decoded JSON body of `url`. Invalid JSON raises `ValueError`."""
        return json.loads(self.fetch_text(url))

    def close(self) -> None:
        self.session.close()
