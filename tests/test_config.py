from mcsm.config import load_settings


def test_defaults(monkeypatch):
    for name in ("PORT", "MEMORY_SPLIT", "USE_TUNING_FLAGS", "RCON_TIMEOUT", "JAVA_PATH", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.port == 7767
    assert settings.memory_split == 3
    assert settings.use_tuning_flags is True
    assert settings.rcon_timeout == 10.0
    assert settings.java_path is None
    assert settings.log_level == "INFO"
    assert settings.config_path.endswith("config.json")


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("USE_TUNING_FLAGS", "off")
    monkeypatch.setenv("RESTART_TIMEOUT", "30.5")
    monkeypatch.setenv("SERVERS_ROOT", str(tmp_path / "servers"))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.port == 8080
    assert settings.use_tuning_flags is False
    assert settings.restart_timeout == 30.5
    assert settings.servers_root == str(tmp_path / "servers")
    assert settings.log_level == "DEBUG"


def test_malformed_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("PORT", "not-a-port")
    monkeypatch.setenv("MEMORY_SPLIT", "0")
    monkeypatch.setenv("QUERY_TIMEOUT", "soon")

    settings = load_settings()

    assert settings.port == 7767
    assert settings.memory_split == 1
    assert settings.query_timeout == 3.0
