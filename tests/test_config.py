import pytest

from metabase_mcp import DEFAULT_TIMEOUT, ConfigurationError, load_config


def test_load_config_with_api_key() -> None:
    config = load_config(
        {"METABASE_URL": "https://metabase.example.com/", "METABASE_API_KEY": "mb_key"}
    )

    assert config.url == "https://metabase.example.com"
    assert config.api_key == "mb_key"
    assert config.uses_api_key
    assert config.timeout == DEFAULT_TIMEOUT


def test_load_config_with_username_and_password() -> None:
    config = load_config(
        {
            "METABASE_URL": "https://metabase.example.com",
            "METABASE_USERNAME": "analyst@example.com",
            "METABASE_PASSWORD": "s3cret",
        }
    )

    assert not config.uses_api_key
    assert config.username == "analyst@example.com"
    assert config.password == "s3cret"


def test_api_key_wins_over_partial_password_pair() -> None:
    config = load_config(
        {
            "METABASE_URL": "https://metabase.example.com",
            "METABASE_API_KEY": "mb_key",
            "METABASE_USERNAME": "analyst@example.com",
        }
    )

    assert config.uses_api_key


@pytest.mark.parametrize(
    "environ",
    [
        {"METABASE_URL": "https://metabase.example.com"},
        {"METABASE_URL": "https://metabase.example.com", "METABASE_USERNAME": "analyst"},
        {"METABASE_URL": "https://metabase.example.com", "METABASE_PASSWORD": "s3cret"},
        {"METABASE_URL": "https://metabase.example.com", "METABASE_API_KEY": ""},
    ],
)
def test_load_config_rejects_incomplete_credentials(environ) -> None:
    with pytest.raises(ConfigurationError, match="METABASE_API_KEY"):
        load_config(environ)


def test_load_config_requires_url() -> None:
    with pytest.raises(ConfigurationError, match="METABASE_URL"):
        load_config({"METABASE_API_KEY": "mb_key"})


def test_load_config_reads_timeout() -> None:
    config = load_config(
        {
            "METABASE_URL": "https://metabase.example.com",
            "METABASE_API_KEY": "mb_key",
            "METABASE_TIMEOUT": "90",
        }
    )

    assert config.timeout == 90.0


def test_load_config_rejects_bad_timeout() -> None:
    with pytest.raises(ConfigurationError, match="METABASE_TIMEOUT"):
        load_config(
            {
                "METABASE_URL": "https://metabase.example.com",
                "METABASE_API_KEY": "mb_key",
                "METABASE_TIMEOUT": "soon",
            }
        )


def test_load_config_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METABASE_URL", "https://bi.internal")
    monkeypatch.setenv("METABASE_API_KEY", "mb_env_key")
    monkeypatch.delenv("METABASE_TIMEOUT", raising=False)

    config = load_config()

    assert config.url == "https://bi.internal"
    assert config.api_key == "mb_env_key"
