from pathlib import Path

import pytest

from job_monitor.config import load_settings
from job_monitor.errors import ConfigurationError
from job_monitor.models import PriorityBucket, Severity


def test_defaults_without_file():
    settings = load_settings(env={})
    assert settings.batch_limit == 50
    assert settings.max_batch_limit == 100
    assert settings.default_frequency_hours == 24
    assert settings.max_run_seconds is None
    assert settings.priority_policy().default_bucket == PriorityBucket.MEDIUM


def test_yaml_and_env_overrides(tmp_path):
    path = tmp_path / "monitor.yaml"
    path.write_text(
        "db_path: from_file.db\n"
        "concurrency: 2\n"
        "priority:\n"
        "  staleness_weight: 3.5\n"
        "subscribers:\n"
        "  - id: ops\n"
        "    channel: email\n"
        "    address: ops@example.com\n"
        "    min_severity: high\n"
        "    job_statuses: [active]\n",
        encoding="utf-8",
    )

    settings = load_settings(path, env={"DB_PATH": "from_env.db", "MONITOR_BATCH_LIMIT": "10"})

    assert settings.db_path == Path("from_env.db")
    assert settings.batch_limit == 10
    assert settings.concurrency == 2
    assert settings.priority_policy().staleness_weight == 3.5
    subscriber = settings.subscriber_records()[0]
    assert subscriber.subscriber_id == "ops"
    assert subscriber.min_severity == Severity.HIGH
    assert subscriber.job_statuses == frozenset({"active"})


def test_config_path_from_environment(tmp_path):
    path = tmp_path / "monitor.yaml"
    path.write_text("batch_limit: 7\n", encoding="utf-8")
    assert load_settings(env={"MONITOR_CONFIG": str(path)}).batch_limit == 7


@pytest.mark.parametrize(
    "content",
    [
        "batch_limit: 0\n",
        "batch_limit: 200\n",
        "diff:\n  description_noise_ratio: 1.5\n",
        "subscribers:\n  - id: x\n    channel: carrier-pigeon\n",
        "- just\n- a list\n",
        "key: [unclosed\n",
    ],
)
def test_invalid_settings_raise_configuration_error(tmp_path, content):
    path = tmp_path / "monitor.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_settings(path, env={})


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "nope.yaml", env={})
