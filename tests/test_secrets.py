import hashlib
import hmac
import json

import pytest

from perp_trading.secrets import AsterCredentials, load_credentials, save_config, validate_credentials


def test_load_credentials_from_env(monkeypatch):
    """Load credentials from environment variables."""
    monkeypatch.setenv("ASTER_API_KEY", "test_key")
    monkeypatch.setenv("ASTER_API_SECRET", "test_secret")

    creds = load_credentials()
    assert creds.api_key == "test_key"
    assert creds.api_secret == "test_secret"


def test_load_credentials_from_config_file(tmp_path, monkeypatch):
    """Load credentials from config file."""
    monkeypatch.delenv("ASTER_API_KEY", raising=False)
    monkeypatch.delenv("ASTER_API_SECRET", raising=False)
    monkeypatch.delenv("ASTER_CONFIG_PATH", raising=False)

    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "api_key": "file_key",
        "api_secret": "file_secret",
    }))

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "file_key"
    assert creds.api_secret == "file_secret"


def test_config_path_from_env(tmp_path, monkeypatch):
    """ASTER_CONFIG_PATH points at the config file."""
    monkeypatch.delenv("ASTER_API_KEY", raising=False)
    monkeypatch.delenv("ASTER_API_SECRET", raising=False)
    config_file = tmp_path / "aster.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s"}))
    monkeypatch.setenv("ASTER_CONFIG_PATH", str(config_file))

    assert load_credentials() == AsterCredentials("k", "s")


def test_env_overrides_config_file(tmp_path, monkeypatch):
    """Environment variables take precedence over config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "api_key": "file_key",
        "api_secret": "file_secret",
    }))

    monkeypatch.setenv("ASTER_API_KEY", "env_key")
    monkeypatch.setenv("ASTER_API_SECRET", "env_secret")

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "env_key"
    assert creds.api_secret == "env_secret"


def test_load_credentials_missing_raises(monkeypatch):
    """Raise ValueError if credentials are missing."""
    monkeypatch.delenv("ASTER_API_KEY", raising=False)
    monkeypatch.delenv("ASTER_API_SECRET", raising=False)
    monkeypatch.delenv("ASTER_CONFIG_PATH", raising=False)

    with pytest.raises(ValueError, match="Missing Aster credentials"):
        load_credentials(config_path="/nonexistent/path.json")


def test_corrupt_config_file_raises(tmp_path, monkeypatch):
    monkeypatch.delenv("ASTER_API_KEY", raising=False)
    monkeypatch.delenv("ASTER_API_SECRET", raising=False)
    config_file = tmp_path / "broken.json"
    config_file.write_text("{not json")

    with pytest.raises(ValueError, match="Failed to load config"):
        load_credentials(config_path=str(config_file))


def test_save_and_load_config(tmp_path, monkeypatch):
    """Save config and load it back."""
    monkeypatch.delenv("ASTER_API_KEY", raising=False)
    monkeypatch.delenv("ASTER_API_SECRET", raising=False)
    config_file = tmp_path / "saved.json"

    save_config(
        config_path=str(config_file),
        api_key="saved_key",
        api_secret="saved_secret",
    )

    assert config_file.exists()
    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "saved_key"
    assert creds.api_secret == "saved_secret"


def test_loaded_credentials_are_stripped(tmp_path, monkeypatch):
    """Trailing newlines from copy-pasted keys would break the header and the HMAC."""
    monkeypatch.delenv("ASTER_API_KEY", raising=False)
    monkeypatch.delenv("ASTER_API_SECRET", raising=False)
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": " file_key\n", "api_secret": "file_secret\n"}))

    assert load_credentials(config_path=str(config_file)) == AsterCredentials("file_key", "file_secret")


@pytest.mark.parametrize("api_key, api_secret, match", [
    ("   ", "secret", "API key is empty"),
    ("key with space", "secret", "API key contains unsupported characters"),
    ("key", "sécret", "API secret contains unsupported characters"),
])
def test_validate_credentials_rejects_unusable_values(api_key, api_secret, match):
    with pytest.raises(ValueError, match=match):
        validate_credentials(api_key, api_secret)


def test_save_config_refuses_malformed_secret(tmp_path):
    config_file = tmp_path / "saved.json"
    with pytest.raises(ValueError, match="API secret"):
        save_config(str(config_file), api_key="key", api_secret="")
    assert not config_file.exists()


def test_sign_adds_timestamp_window_and_signature():
    creds = AsterCredentials("key", "secret")
    signed = creds.sign({"symbol": "BTCUSDT", "orderId": 7}, recv_window=5000, timestamp_ms=1_700_000_000_000)

    assert list(signed) == ["symbol", "orderId", "timestamp", "recvWindow", "signature"]
    query = "symbol=BTCUSDT&orderId=7&timestamp=1700000000000&recvWindow=5000"
    assert signed["signature"] == hmac.new(b"secret", query.encode(), hashlib.sha256).hexdigest()
    assert creds.headers() == {"X-MBX-APIKEY": "key"}


def test_repr_hides_secret():
    text = repr(AsterCredentials("abcdefgh1234", "topsecret"))
    assert "topsecret" not in text
    assert "abcdefgh" not in text
    assert "1234" in text
