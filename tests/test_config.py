import logging
from dataclasses import replace

from rrcgw.config import GatewayConfig, apply_config_data, load_config
from rrcgw.logging_config import configure_logging, parse_level


def test_defaults() -> None:
    cfg = GatewayConfig()
    assert cfg.dest_name == "rrc.gateway"
    assert cfg.connect_timeout_s == 30.0
    assert cfg.recheck_bans_on_send is False
    assert cfg.token_algorithms == ("HS256",)


def test_gateway_and_logging_tables_are_applied() -> None:
    data = {
        "gateway": {
            "token_secret": "s3cret",
            "token_algorithms": ["HS256", "HS384"],
            "token_issuer": "",
            "connect_timeout_s": 5.0,
            "recheck_bans_on_send": True,
            "config_path": "/should/not/apply",
            "unknown_key": 1,
        },
        "logging": {"level": "DEBUG", "file": ""},
    }
    cfg = apply_config_data(GatewayConfig(config_path="/etc/rrcgw.toml"), data)

    assert cfg.token_secret == "s3cret"
    assert cfg.token_algorithms == ("HS256", "HS384")
    assert cfg.token_issuer is None
    assert cfg.connect_timeout_s == 5.0
    assert cfg.recheck_bans_on_send is True
    assert cfg.config_path == "/etc/rrcgw.toml"
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None


def test_legacy_announce_key() -> None:
    cfg = apply_config_data(GatewayConfig(), {"announce": False})
    assert cfg.announce_on_start is False


def test_load_config_from_file(tmp_path) -> None:
    path = tmp_path / "rrcgw.toml"
    path.write_text(
        '[gateway]\ntoken_secret = "abc"\nmax_message_chars = 50\n\n[logging]\nrns_level = "ERROR"\n',
        encoding="utf-8",
    )

    cfg = load_config(str(path), GatewayConfig(users_path="/tmp/users.toml"))

    assert cfg.config_path == str(path)
    assert cfg.token_secret == "abc"
    assert cfg.max_message_chars == 50
    assert cfg.log_rns_level == "ERROR"
    assert cfg.users_path == "/tmp/users.toml"


def test_parse_level() -> None:
    assert parse_level("debug", logging.INFO) == logging.DEBUG
    assert parse_level("WARN", logging.INFO) == logging.WARNING
    assert parse_level(None, logging.INFO) == logging.INFO
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("nonsense", logging.ERROR) == logging.ERROR


def test_configure_logging_installs_handlers(tmp_path) -> None:
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    log_file = tmp_path / "logs" / "rrcgw.log"
    try:
        cfg = replace(GatewayConfig(), log_console=False, log_file=str(log_file), log_rns_level="ERROR")
        configure_logging(cfg, override_level="DEBUG")

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("RNS").level == logging.ERROR

        logging.getLogger("rrcgw.test").info("hello conn=%s", "c1")
        for h in root.handlers:
            h.flush()
        assert "hello conn=c1" in log_file.read_text(encoding="utf-8")

        configure_logging(cfg, override_file="")
        assert root.handlers == []
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved[0]:
            root.addHandler(h)
        root.setLevel(saved[1])
