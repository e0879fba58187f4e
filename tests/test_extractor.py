import json
from pathlib import Path
from typing import Any

import pytest
import requests

from py_load_census.extractor import CensusExtractor, cache_path_for

VARIABLES_URL = "https://api.census.gov/data/2020/acs/acs5/variables.json"


@pytest.fixture
def extractor(tmp_path: Path, mocker: Any) -> CensusExtractor:
    """Fixture to create a CensusExtractor with a temporary cache directory and no waiting."""
    mocker.patch("py_load_census.extractor.time.sleep")
    return CensusExtractor(cache_dir=str(tmp_path / "cache"), rate_limit_seconds=0, backoff_factor=0)


def test_cache_path_mirrors_url_path(tmp_path: Path) -> None:
    assert cache_path_for(VARIABLES_URL, tmp_path) == tmp_path / "data" / "2020" / "acs" / "acs5" / "variables.json"
    assert cache_path_for("https://api.census.gov/data.json", tmp_path) == tmp_path / "data.json"


def test_cache_path_ignores_query_string(tmp_path: Path) -> None:
    assert cache_path_for(VARIABLES_URL + "?key=secret", tmp_path) == cache_path_for(VARIABLES_URL, tmp_path)


@pytest.mark.parametrize(
    "url",
    [
        "https://api.census.gov/data/2020/acs/acs5/variables",
        "https://api.census.gov/",
        "https://api.census.gov",
    ],
)
def test_cache_path_requires_file_extension(tmp_path: Path, url: str) -> None:
    with pytest.raises(ValueError, match="period"):
        cache_path_for(url, tmp_path)


@pytest.mark.parametrize(
    "url",
    [
        "https://api.census.gov/data/../../etc/passwd.json",
        "https://api.census.gov/data/%2E%2E/secret.json",
        "https://api.census.gov/data/%2Ftmp/evil.json",
        "https://api.census.gov/%2Fetc/passwd.json",
        "https://api.census.gov/data/..%5C..%5Cevil.json",
        "https://api.census.gov/data/%2E%2E%2F%2E%2E%2Fevil.json",
    ],
)
def test_cache_path_rejects_relative_segments(tmp_path: Path, url: str) -> None:
    with pytest.raises(ValueError):
        cache_path_for(url, tmp_path / "cache")


def test_cache_path_stays_inside_cache_dir(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    path = cache_path_for("https://api.census.gov/data/2020/acs/acs5/variables.json", cache_dir)
    assert cache_dir.resolve() in path.resolve().parents


def test_fetch_with_encoded_separator_never_leaves_cache_dir(
    extractor: CensusExtractor, requests_mock: Any, tmp_path: Path
) -> None:
    evil = requests_mock.get("https://api.census.gov/data/%2Ftmp/evil.json", text="{}")

    with pytest.raises(ValueError, match="encoded separators"):
        extractor.fetch_json("https://api.census.gov/data/%2Ftmp/evil.json")

    assert not evil.called
    assert not extractor.cache_dir.exists()


def test_fetch_json_downloads_and_caches(extractor: CensusExtractor, requests_mock: Any) -> None:
    payload = {"variables": {"for": {"label": "Census API FIPS 'for' clause"}}}
    requests_mock.get(VARIABLES_URL, text=json.dumps(payload))

    assert extractor.fetch_json(VARIABLES_URL) == payload

    cached = cache_path_for(VARIABLES_URL, extractor.cache_dir)
    assert cached.is_file()
    assert json.loads(cached.read_text(encoding="utf-8")) == payload
    assert requests_mock.last_request.headers["User-Agent"] == "py-load-census/0.1.0"
    # No temporary files are left next to the cached file.
    assert [p.name for p in cached.parent.iterdir()] == ["variables.json"]


def test_cache_hit_skips_network(extractor: CensusExtractor, requests_mock: Any) -> None:
    cached = cache_path_for(VARIABLES_URL, extractor.cache_dir)
    cached.parent.mkdir(parents=True)
    cached.write_text('{"variables": {}}', encoding="utf-8")
    requests_mock.get(VARIABLES_URL, status_code=500)

    assert extractor.fetch_json(VARIABLES_URL) == {"variables": {}}
    assert requests_mock.call_count == 0


def test_second_fetch_is_served_from_cache(extractor: CensusExtractor, requests_mock: Any) -> None:
    requests_mock.get(VARIABLES_URL, text='{"variables": {}}')

    extractor.fetch_text(VARIABLES_URL)
    extractor.fetch_text(VARIABLES_URL)

    assert requests_mock.call_count == 1


def test_cache_disabled_always_fetches(tmp_path: Path, requests_mock: Any) -> None:
    extractor = CensusExtractor(cache_dir=str(tmp_path / "cache"), use_cache=False, rate_limit_seconds=0)
    requests_mock.get("https://api.census.gov/data/timeseries", text="{}")

    # Without a cache the URL needs no file extension.
    extractor.fetch_text("https://api.census.gov/data/timeseries")
    extractor.fetch_text("https://api.census.gov/data/timeseries")

    assert requests_mock.call_count == 2
    assert not (tmp_path / "cache").exists()


def test_unreadable_cache_falls_back_to_network(extractor: CensusExtractor, requests_mock: Any) -> None:
    cached = cache_path_for(VARIABLES_URL, extractor.cache_dir)
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"\xff\xfe\xfa not utf-8")
    requests_mock.get(VARIABLES_URL, text='{"variables": {}}')

    assert extractor.fetch_json(VARIABLES_URL) == {"variables": {}}
    assert requests_mock.call_count == 1
    assert cached.read_text(encoding="utf-8") == '{"variables": {}}'


def test_cache_write_failure_is_not_fatal(extractor: CensusExtractor, requests_mock: Any, mocker: Any) -> None:
    requests_mock.get(VARIABLES_URL, text='{"variables": {}}')
    mocker.patch("py_load_census.extractor.os.replace", side_effect=OSError("disk full"))

    assert extractor.fetch_json(VARIABLES_URL) == {"variables": {}}

    cached = cache_path_for(VARIABLES_URL, extractor.cache_dir)
    assert not cached.exists()
    assert list(cached.parent.iterdir()) == []


def test_retries_then_succeeds(extractor: CensusExtractor, requests_mock: Any) -> None:
    requests_mock.get(
        VARIABLES_URL,
        [{"status_code": 503}, {"exc": requests.exceptions.ConnectTimeout}, {"text": "{}"}],
    )

    assert extractor.fetch_json(VARIABLES_URL) == {}
    assert requests_mock.call_count == 3


def test_gives_up_after_retries(extractor: CensusExtractor, requests_mock: Any) -> None:
    requests_mock.get(VARIABLES_URL, status_code=500)

    with pytest.raises(requests.HTTPError):
        extractor.fetch_json(VARIABLES_URL)

    assert requests_mock.call_count == extractor.retries
    assert not cache_path_for(VARIABLES_URL, extractor.cache_dir).exists()


def test_invalid_json_raises_value_error(extractor: CensusExtractor, requests_mock: Any) -> None:
    requests_mock.get(VARIABLES_URL, text="<html>Service Unavailable</html>")

    with pytest.raises(ValueError):
        extractor.fetch_json(VARIABLES_URL)
