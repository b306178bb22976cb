from distributor.config import load_config
from distributor.logging_config import QUIET, build_logging_config


def test_console_only_by_default():
    conf = build_logging_config()

    assert list(conf["handlers"]) == ["console"]
    assert conf["loggers"]["distributor"]["level"] == "INFO"
    assert conf["loggers"]["distributor"]["handlers"] == ["console"]


def test_file_handler_added_when_configured(tmp_path):
    path = tmp_path / "d.log"

    conf = build_logging_config("debug", str(path))

    assert conf["handlers"]["file"]["filename"] == str(path)
    assert conf["handlers"]["file"]["delay"] is True
    assert conf["loggers"]["distributor"]["level"] == "DEBUG"
    assert all(conf["loggers"][name]["handlers"] == ["console", "file"] for name in QUIET)


def test_third_party_loggers_stay_quiet_at_debug():
    conf = build_logging_config("DEBUG")

    for name in QUIET:
        assert conf["loggers"][name]["level"] == "WARNING"
    assert conf["root"]["level"] == "WARNING"


def test_level_and_file_come_from_environment():
    conf = load_config(env={"LOG_LEVEL": "debug", "LOG_FILE": "/var/log/distributor.log"})

    assert conf["logging"] == {"level": "debug", "file": "/var/log/distributor.log"}
    assert load_config(env={})["logging"]["file"] == ""
