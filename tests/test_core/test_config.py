# tests/test_core/test_config.py
import pytest
from pydantic import ValidationError

from vidgate.core.config import MiB, Settings, normalize_pem
from tests.fixtures.settings import make_settings


def test_defaults():
    s = make_settings()
    assert s.DIRECT_UPLOAD_THRESHOLD_BYTES == 200 * MiB
    assert s.CHUNK_SIZE_BYTES == 50 * MiB
    assert s.CONFIRM_POLL_DELAYS_SECONDS == [5, 10, 15, 15, 15]
    assert s.UPLOAD_RATE_LIMIT_PER_HOUR == 10
    assert s.PLAYBACK_RATE_LIMIT_PER_HOUR == 100
    assert s.RETENTION_DAYS == 0


def test_poll_delays_from_env(monkeypatch):
    monkeypatch.setenv("CONFIRM_POLL_DELAYS_SECONDS", "1, 2,3")
    assert Settings(_env_file=None).CONFIRM_POLL_DELAYS_SECONDS == [1.0, 2.0, 3.0]


@pytest.mark.parametrize("delays", ["", "5,-1"])
def test_bad_poll_delays(delays):
    with pytest.raises(ValidationError):
        make_settings(CONFIRM_POLL_DELAYS_SECONDS=delays)


def test_threshold_above_max_is_rejected():
    with pytest.raises(ValidationError):
        make_settings(DIRECT_UPLOAD_THRESHOLD_BYTES=10 * MiB, MAX_UPLOAD_BYTES=MiB)


def test_domains_are_bare_hosts():
    s = make_settings(CLOUDFRONT_DOMAIN="https://cdn.example.test/", STREAM_CUSTOMER_DOMAIN="  ")
    assert s.CLOUDFRONT_DOMAIN == "cdn.example.test"
    assert s.cdn_base_url == "https://cdn.example.test"
    assert s.STREAM_CUSTOMER_DOMAIN is None


def test_escaped_pem_is_normalized(rsa_private_pem):
    escaped = rsa_private_pem.strip().replace("\n", "\\n")
    s = make_settings(CLOUDFRONT_PRIVATE_KEY_PEM=escaped)
    assert s.CLOUDFRONT_PRIVATE_KEY_PEM.get_secret_value() == rsa_private_pem.strip()
    assert normalize_pem("  ") == ""


def test_database_urls():
    s = make_settings(DATABASE_URL_OVERRIDE=None, POSTGRES_SERVER="db", POSTGRES_DB="vg")
    assert s.ASYNC_DATABASE_URL == "postgresql+asyncpg://postgres:postgres@db:5432/vg"


def test_backend_configuration_flags():
    assert not make_settings().stream_configured
    assert make_settings(STREAM_ACCOUNT_ID="a", STREAM_API_TOKEN="t").stream_configured
    assert not make_settings(CLOUDFRONT_DOMAIN="cdn.example.test").cloudfront_configured
