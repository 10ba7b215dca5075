import io
import json
import logging

import pytest

from patchwright.config import Config, RiskThresholds, load_config
from patchwright.errors import ConfigError
from patchwright.events import Event, EventChannel, EventKind, QueueSubscriber
from patchwright.logging_utils import configure_logging, log_progress


def test_event_channel_delivers_in_order():
    channel = EventChannel()
    seen = []
    channel.subscribe(seen.append)

    channel.publish(EventKind.UNPACKING)
    channel.publish(EventKind.FILE_APPLIED, path="src/a.js", index=0, total=1)

    assert [e.kind for e in seen] == [EventKind.UNPACKING, EventKind.FILE_APPLIED]
    assert seen[1].data == {"path": "src/a.js", "index": 0, "total": 1}


def test_failing_subscriber_does_not_break_publish(caplog):
    channel = EventChannel()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    channel.subscribe(broken)
    channel.subscribe(received.append)

    with caplog.at_level(logging.ERROR, logger="patchwright.events"):
        event = channel.publish(EventKind.COMPLETE)

    assert received == [event]
    assert "subscriber failed" in caplog.text


def test_unsubscribe_stops_delivery():
    channel = EventChannel()
    seen = []
    unsubscribe = channel.subscribe(seen.append)

    unsubscribe()
    channel.publish(EventKind.VERIFYING)

    assert seen == []


def test_queue_subscriber_drops_when_full():
    channel = EventChannel()
    subscriber = QueueSubscriber(maxsize=2)
    channel.subscribe(subscriber)

    for _ in range(5):
        channel.publish(EventKind.COMMAND_START)

    assert len(subscriber.drain()) == 2
    assert subscriber.dropped == 3


def test_config_defaults_and_thresholds():
    config = Config()

    assert config.risk_thresholds == RiskThresholds(auto_apply=30, critical=70, high=50, medium=30)
    assert config.key_id == "local-dev"
    assert config.metadata_dir == ".patchwright"


def test_config_from_mapping_accepts_camel_case():
    config = Config.from_mapping({"autoApplyThreshold": 20, "maxSteps": 10, "key_id": "ci"})

    assert config.auto_apply_threshold == 20
    assert config.max_steps == 10
    assert config.key_id == "ci"


@pytest.mark.parametrize(
    "values",
    [
        {"unknownOption": 1},
        {"high_threshold": 80, "critical_threshold": 70},
        {"auto_apply_threshold": 101},
        {"max_steps": 0},
        {"command_timeout": 0},
    ],
)
def test_config_rejects_invalid_values(values):
    with pytest.raises(ConfigError):
        Config.from_mapping(values)


def test_config_merged_ignores_none():
    config = Config(key_id="a").merged(key_id=None, verbosity=2)

    assert config.key_id == "a"
    assert config.verbosity == 2


def test_load_config(tmp_path):
    path = tmp_path / "patchwright.json"
    path.write_text(json.dumps({"criticalThreshold": 80, "tokenBudget": 5000}))

    config = load_config(str(path))

    assert config.critical_threshold == 80
    assert config.token_budget == 5000


def test_load_config_errors(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    listing = tmp_path / "list.json"
    listing.write_text("[]")

    with pytest.raises(ConfigError):
        load_config(str(bad))
    with pytest.raises(ConfigError):
        load_config(str(listing))
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.json"))


def test_configure_logging_sets_levels_and_format(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    stream = io.StringIO()
    logger = logging.getLogger("patchwright")

    try:
        configure_logging(verbosity=1, stream=stream)
        assert logger.level == logging.INFO
        configure_logging(verbosity=2)
        assert logger.level == logging.DEBUG
    finally:
        logger.setLevel(logging.NOTSET)

    assert calls[0] == {"level": logging.INFO, "format": "%(levelname)s %(name)s: %(message)s", "stream": stream}
    assert calls[1]["stream"] is None


def test_log_progress_levels(caplog):
    with caplog.at_level(logging.DEBUG, logger="patchwright.progress"):
        log_progress(Event(EventKind.SNAPSHOT_CREATED, {"snapshot_id": "snapshot-1"}))
        log_progress(Event(EventKind.FILE_APPLIED, {"path": "src/a.js"}))
        log_progress(Event(EventKind.ROLLBACK_FAILED))

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels == [
        (logging.INFO, "snapshot_created snapshot_id=snapshot-1"),
        (logging.DEBUG, "file_applied path=src/a.js"),
        (logging.ERROR, "rollback_failed"),
    ]
