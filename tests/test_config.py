import logging

import pytest

from rdmd.config import (
    HubRuntimeConfig,
    apply_config_data,
    load_config_file,
    persist_config_updates,
    validate_config,
)
from rdmd.logging_config import parse_level


def test_hub_table_and_top_level_keys_apply() -> None:
    cfg = apply_config_data(
        HubRuntimeConfig(),
        {"max_content_bytes": 100, "hub": {"dest_name": "dm.test", "mark_delivered": False}},
    )

    assert cfg.max_content_bytes == 100
    assert cfg.dest_name == "dm.test"
    assert cfg.mark_delivered is False


def test_logging_table_maps_onto_log_fields() -> None:
    cfg = apply_config_data(
        HubRuntimeConfig(),
        {"logging": {"level": "DEBUG", "rns_level": "ERROR", "file": "", "datefmt": ""}},
    )

    assert cfg.log_level == "DEBUG"
    assert cfg.log_rns_level == "ERROR"
    assert cfg.log_file is None
    assert cfg.log_datefmt is None


def test_empty_strings_unset_optional_paths() -> None:
    cfg = apply_config_data(HubRuntimeConfig(configdir="/x"), {"hub": {"configdir": ""}})
    assert cfg.configdir is None


def test_unknown_keys_and_config_path_are_ignored() -> None:
    base = HubRuntimeConfig(config_path="/etc/rdmd.toml")
    cfg = apply_config_data(base, {"hub": {"config_path": "/tmp/other", "bogus": 1}})
    assert cfg == base


def test_legacy_announce_key() -> None:
    cfg = apply_config_data(HubRuntimeConfig(), {"announce": False})
    assert cfg.announce_on_start is False


def test_load_config_file(tmp_path) -> None:
    path = tmp_path / "rdmd.toml"
    path.write_text(
        '[hub]\nhub_name = "test"\nping_interval_s = 30.0\n\n[logging]\nlevel = "WARNING"\n',
        encoding="utf-8",
    )

    cfg = load_config_file(HubRuntimeConfig(), str(path))

    assert cfg.hub_name == "test"
    assert cfg.ping_interval_s == 30.0
    assert cfg.log_level == "WARNING"


def test_persist_updates_keeps_comments(tmp_path) -> None:
    path = tmp_path / "rdmd.toml"
    path.write_text(
        '[hub]\n# keep me\nhub_name = "old"\n\n[logging]\nlevel = "INFO"\n',
        encoding="utf-8",
    )

    persist_config_updates(str(path), {"hub_name": "new", "ping_interval_s": 15.0})

    text = path.read_text(encoding="utf-8")
    assert "# keep me" in text
    cfg = load_config_file(HubRuntimeConfig(), str(path))
    assert cfg.hub_name == "new"
    assert cfg.ping_interval_s == 15.0
    assert cfg.log_level == "INFO"


def test_parse_level() -> None:
    assert parse_level("debug", logging.INFO) == logging.DEBUG
    assert parse_level("warn", logging.INFO) == logging.WARNING
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("", logging.INFO) == logging.INFO
    assert parse_level("nonsense", logging.ERROR) == logging.ERROR
    assert parse_level(None, logging.INFO) == logging.INFO


def test_file_handler_uses_override_before_config(tmp_path) -> None:
    from rdmd.logging_config import _build_handlers

    cfg = HubRuntimeConfig(log_console=False, log_file=str(tmp_path / "cfg.log"))

    (handler,) = _build_handlers(cfg, str(tmp_path / "cli.log"))
    try:
        assert handler.baseFilename == str(tmp_path / "cli.log")
    finally:
        handler.close()

    assert _build_handlers(cfg, "") == []


def test_validate_accepts_defaults_and_largest_content() -> None:
    validate_config(HubRuntimeConfig())
    validate_config(HubRuntimeConfig(max_content_bytes=290))


def test_validate_rejects_content_that_cannot_fit_the_mdu() -> None:
    with pytest.raises(ValueError, match="does not fit the link MDU"):
        validate_config(HubRuntimeConfig(max_content_bytes=291))
    with pytest.raises(ValueError, match="must be positive"):
        validate_config(HubRuntimeConfig(max_content_bytes=0))

    # A larger link MDU makes room for more content.
    validate_config(HubRuntimeConfig(max_content_bytes=400), mdu=600)
