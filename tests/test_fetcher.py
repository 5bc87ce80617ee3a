"""
Tests for the HTTP fetcher, rate limiter and settings.
"""

from unittest.mock import MagicMock

import pytest
import requests

from oppscraper.config import DEFAULT_USER_AGENT, Settings, get_env_var
from oppscraper.errors import FetchFailed
from oppscraper.fetcher import DomainRateLimiter, Fetcher


def mock_session(status_code=200, text="<html></html>", side_effect=None):
    session = MagicMock()
    session.headers = {}
    if side_effect is not None:
        session.get.side_effect = side_effect
    else:
        session.get.return_value = MagicMock(status_code=status_code, text=text)
    return session


class TestFetcher:
    """Tests for Fetcher.get."""

    def test_success(self):
        """Test that a 200 response is returned with the bot user agent set."""
        session = mock_session(text="<p>hi</p>")
        fetcher = Fetcher(session=session, timeout=7)

        response = fetcher.get("https://example.org/a")

        assert response.ok
        assert response.text == "<p>hi</p>"
        assert session.headers["User-Agent"] == DEFAULT_USER_AGENT
        session.get.assert_called_once_with("https://example.org/a", timeout=7)

    def test_http_error(self):
        """Test that non-2xx responses raise with the status code."""
        fetcher = Fetcher(session=mock_session(status_code=500))

        with pytest.raises(FetchFailed) as exc_info:
            fetcher.get("https://example.org/a")

        assert str(exc_info.value) == "HTTP error! status: 500"
        assert exc_info.value.status_code == 500

    def test_network_error(self):
        """Test that request exceptions become FetchFailed."""
        fetcher = Fetcher(session=mock_session(side_effect=requests.ConnectionError("refused")))

        with pytest.raises(FetchFailed, match="refused"):
            fetcher.get("https://example.org/a")

    def test_timeout(self):
        """Test that timeouts become FetchFailed."""
        fetcher = Fetcher(session=mock_session(side_effect=requests.Timeout("slow")))

        with pytest.raises(FetchFailed, match="Timed out"):
            fetcher.get("https://example.org/a")


class TestDomainRateLimiter:
    """Tests for per-domain spacing."""

    def test_same_domain_waits(self):
        """Test that back-to-back hits on one domain are spaced out."""
        sleeps = []
        limiter = DomainRateLimiter(1.0, clock=lambda: 100.0, sleep=sleeps.append)

        assert limiter.acquire("https://example.org/a") == 0
        assert limiter.acquire("https://EXAMPLE.org/b") == 1.0
        assert limiter.acquire("https://other.org/a") == 0
        assert sleeps == [1.0]

    def test_disabled(self):
        """Test that a zero interval never waits."""
        limiter = DomainRateLimiter(0, sleep=MagicMock(side_effect=AssertionError))

        assert limiter.acquire("https://example.org") == 0.0
        assert limiter.acquire("https://example.org") == 0.0


class TestSettings:
    """Tests for environment configuration."""

    def test_defaults(self, monkeypatch):
        """Test defaults when nothing is set."""
        for name in ("DATABASE_URL", "GOOGLE_API_KEY", "GEMINI_API_KEY", "MAX_WORKERS", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.database_url == "sqlite:///oppscraper.db"
        assert settings.gemini_api_key is None
        assert settings.confidence_threshold == 0.1
        assert settings.log_level == "INFO"

    def test_overrides(self, monkeypatch):
        """Test that environment values are parsed."""
        monkeypatch.setenv("GOOGLE_API_KEY", "your_api_key_here")
        monkeypatch.setenv("GEMINI_API_KEY", "real-key")
        monkeypatch.setenv("MAX_WORKERS", "12")
        monkeypatch.setenv("FETCH_TIMEOUT", "not-a-number")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.gemini_api_key == "real-key"
        assert settings.max_workers == 12
        assert settings.fetch_timeout == 15.0
        assert settings.log_level == "DEBUG"

    def test_blank_is_unset(self, monkeypatch):
        """Test that blank variables fall back to the default."""
        monkeypatch.setenv("SOME_SETTING", "   ")

        assert get_env_var("SOME_SETTING", "fallback") == "fallback"
