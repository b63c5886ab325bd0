import main


def test_load_settings_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("ATN_CONFIG", str(tmp_path / "missing.ini"))
    for name in ("ATN_DB_PATH", "ATN_API_TOKEN", "ATN_POLL_INTERVAL", "ATN_COUNTRY_CODE"):
        monkeypatch.delenv(name, raising=False)

    settings = main.load_settings()

    assert settings["db_path"] == "/data/attendance_notifier.db"
    assert settings["http_port"] == 8000
    assert settings["api_token"] is None
    assert settings["country_code"] == "62"
    assert settings["min_delay"] == 1.0
    assert settings["max_delay"] == 3.0
    assert settings["stuck_timeout"] == 300
    assert settings["monthly_recap_hour"] == 20
    assert settings["log_delivery_activity"] is False


def test_ini_values_override_environment(monkeypatch, tmp_path):
    config = tmp_path / "config.ini"
    config.write_text(
        "[storage]\n"
        "db_path = ~/notifier.db\n"
        "[server]\n"
        "port = 9000\n"
        "api_token =   \n"
        "[whatsapp]\n"
        "bridge_url = ws://bridge:9000\n"
        "[delivery]\n"
        "max_delay_seconds = 5\n"
        "[logging]\n"
        "delivery_activity = yes\n"
    )
    monkeypatch.setenv("ATN_CONFIG", str(config))
    monkeypatch.setenv("ATN_PORT", "7000")
    monkeypatch.setenv("ATN_TIMEZONE", "Asia/Makassar")

    settings = main.load_settings()

    assert settings["http_port"] == 9000
    assert not str(settings["db_path"]).startswith("~")
    assert settings["api_token"] is None
    assert settings["bridge_url"] == "ws://bridge:9000"
    assert settings["max_delay"] == 5.0
    assert settings["timezone"] == "Asia/Makassar"
    assert settings["log_delivery_activity"] is True


def test_build_service_wires_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("ATN_CONFIG", str(tmp_path / "missing.ini"))
    monkeypatch.setenv("ATN_DB_PATH", str(tmp_path / "svc.db"))
    monkeypatch.setenv("ATN_AUTH_DIR", str(tmp_path / "auth"))

    service = main.build_service(main.load_settings())

    assert service.persistence.db_path == str(tmp_path / "svc.db")
    assert service.session.auth_state.directory == tmp_path / "auth"
    assert service.pacer.min_delay == 1.0
