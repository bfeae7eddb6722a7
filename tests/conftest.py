import pytest

_ENVIRONMENT_SETTINGS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
    "no_proxy",
    "REQUESTS_CA_BUNDLE",
    "CURL_CA_BUNDLE",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host proxy and CA settings out of request settings."""
    for name in _ENVIRONMENT_SETTINGS:
        monkeypatch.delenv(name, raising=False)
