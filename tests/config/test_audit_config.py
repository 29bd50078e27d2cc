"""
Tests for YAML configuration loading and kernel wiring (audit_config).
"""

import importlib.util
import json
from pathlib import Path

import pytest
import yaml

from audit_config import (
    CONFIG_PATH_ENV,
    DATABASE_URL_ENV,
    get_active_config,
    load_config,
    load_default_config,
    reset_active_config,
)
from audit_config.bridges import build_auditor, build_query_service, build_store
from audit_config.loader import compute_checksum, parse_config
from audit_kernel.db.engine import get_engine, reset_engine
from audit_kernel.domain.policies import (
    AnomalyThresholds,
    FailureMode,
    FailurePolicy,
    MiddlewareSettings,
    QueryLimits,
    RedactionPolicy,
)
from audit_kernel.exceptions import InvalidQueryError

ROOT = Path(__file__).resolve().parents[2]


def _minimal(**overrides) -> dict:
    data = {"config_id": "test", "database": {"url": "sqlite:///:memory:"}}
    data.update(overrides)
    return data


@pytest.fixture(autouse=True)
def _fresh_config():
    reset_active_config()
    yield
    reset_active_config()


@pytest.fixture
def config_file(tmp_path):
    def _write(data: dict) -> Path:
        path = tmp_path / "audit.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


class TestDefaults:
    def test_packaged_defaults_match_policy_defaults(self):
        config = load_default_config()

        assert config.config_id == "audit-defaults"
        assert config.database.url == "sqlite:///./audit_log.db"
        assert config.database.install_triggers is True
        assert config.redaction == RedactionPolicy()
        assert config.query == QueryLimits()
        assert config.anomaly == AnomalyThresholds()
        assert config.failure_policy == FailurePolicy()
        assert config.middleware == MiddlewareSettings()
        assert config.source.endswith("defaults.yaml")
        assert len(config.checksum) == 64

    def test_minimal_document_falls_back_to_policy_defaults(self):
        config = parse_config(_minimal())
        assert config.query == QueryLimits()
        assert config.failure_policy.mode is FailureMode.ALERT
        assert config.source is None


class TestValidation:
    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="retention"):
            parse_config(_minimal(retention={"days": 30}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="max_pagesize"):
            parse_config(_minimal(query={"max_pagesize": 10}))

    def test_missing_config_id(self):
        data = _minimal()
        del data["config_id"]
        with pytest.raises(KeyError):
            parse_config(data)

    def test_missing_database_url(self):
        with pytest.raises(KeyError):
            parse_config(_minimal(database={"echo": True}))

    def test_bad_failure_mode(self):
        with pytest.raises(ValueError, match="log, alert"):
            parse_config(_minimal(failure_policy={"mode": "page"}))

    def test_non_integer_limit(self):
        with pytest.raises(ValueError, match="query.max_page_size"):
            parse_config(_minimal(query={"max_page_size": "lots"}))

    def test_boolean_is_not_an_integer(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(snapshot={"max_depth": True}))

    def test_zero_threshold_allowed_but_zero_lookback_rejected(self):
        config = parse_config(_minimal(anomaly={"max_deletes_per_hour": 0}))
        assert config.anomaly.max_deletes_per_hour == 0
        with pytest.raises(ValueError, match="lookback_days"):
            parse_config(_minimal(anomaly={"lookback_days": 0}))

    def test_policy_invariants_still_apply(self):
        with pytest.raises(ValueError):
            parse_config(_minimal(query={"default_page_size": 600, "max_page_size": 500}))

    def test_document_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)


class TestSections:
    def test_overrides_parsed_into_policies(self, config_file):
        path = config_file(
            _minimal(
                redaction={"sensitive_fields": ["ssn"], "marker": "***"},
                failure_policy={"mode": "log", "append_timeout_seconds": 2},
                middleware={"excluded_tables": ["sessions"], "include_request_info": False},
                anomaly={"suspicious_patterns": ["sudo"]},
            )
        )
        config = load_config(path)

        assert config.redaction.sensitive_fields == frozenset({"ssn"})
        assert config.redaction.marker == "***"
        assert config.failure_policy.mode is FailureMode.LOG
        assert config.failure_policy.append_timeout_seconds == 2.0
        assert config.middleware.excluded_tables == frozenset({"sessions"})
        assert config.middleware.include_request_info is False
        assert config.anomaly.suspicious_patterns == ("sudo",)
        assert config.source == str(path)

    def test_checksum_tracks_content(self):
        a = parse_config(_minimal())
        b = parse_config(_minimal())
        c = parse_config(_minimal(snapshot={"max_depth": 8}))
        assert a.checksum == b.checksum
        assert a.checksum != c.checksum

    def test_checksum_ignores_key_order(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


class TestActiveConfig:
    def test_cached_until_reset(self, monkeypatch):
        monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)
        monkeypatch.delenv(DATABASE_URL_ENV, raising=False)
        first = get_active_config()
        assert get_active_config() is first
        reset_active_config()
        assert get_active_config() is not first

    def test_path_and_url_overrides(self, monkeypatch, config_file, captured_logs):
        path = config_file(_minimal(config_id="from-file"))
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))
        monkeypatch.setenv(DATABASE_URL_ENV, "postgresql://audit@db/audit")

        config = get_active_config()

        assert config.config_id == "from-file"
        assert config.database.url == "postgresql://audit@db/audit"
        loaded = [r for r in captured_logs() if r["message"] == "audit_config_loaded"]
        assert loaded[0]["config_id"] == "from-file"
        assert loaded[0]["database_url_overridden"] is True

    def test_missing_config_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv(CONFIG_PATH_ENV, str(tmp_path / "nope.yaml"))
        with pytest.raises(FileNotFoundError):
            get_active_config()


class TestBridges:
    def test_auditor_and_query_service_use_configured_policies(
        self, session_factory, deterministic_clock, bound_context
    ):
        config = parse_config(
            _minimal(
                redaction={"sensitive_fields": ["ssn"]},
                query={"max_history_entries": 2},
            )
        )
        store = build_store(config, session_factory=session_factory, clock=deterministic_clock)
        auditor = build_auditor(config, store, clock=deterministic_clock)
        queries = build_query_service(config, store, clock=deterministic_clock)

        auditor.audited("people", "create")(lambda data: {"id": "p1", **data})(
            {"name": "A", "ssn": "123-45-6789", "password": "kept"}
        )

        (entry,) = queries.get_record_history("people", "p1")
        assert entry.after_state["ssn"] == "[REDACTED]"
        assert entry.after_state["password"] == "kept"

        with pytest.raises(InvalidQueryError):
            queries.get_record_history("people", "p1", limit=3)

    def test_store_without_factory_uses_configured_database(
        self, tmp_path, record_factory, deterministic_clock
    ):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        config = parse_config(_minimal(database={"url": url, "install_triggers": False}))
        try:
            store = build_store(config, clock=deterministic_clock)
            record = record_factory("people", "p1", "create")
            store.append(record)

            assert str(get_engine().url) == url
            assert store.get(record.id).checksum == record.checksum
            # a second store shares the already initialized engine
            assert build_store(config).get(record.id) is not None
        finally:
            reset_engine()


class TestMaintenanceScript:
    @pytest.fixture
    def cli(self, monkeypatch):
        monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)
        monkeypatch.setenv(DATABASE_URL_ENV, "sqlite:///:memory:")
        spec = importlib.util.spec_from_file_location(
            "audit_maintenance", ROOT / "scripts" / "audit_maintenance.py"
        )
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        yield module
        reset_engine()

    def test_verify_on_empty_log(self, cli, capsys):
        assert cli.main(["verify"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out == {"checked": 0, "clean": True, "invalid_ids": []}

    def test_purge_and_anomalies(self, cli, capsys):
        assert cli.main(["purge", "--older-than-days", "30"]) == 0
        assert json.loads(capsys.readouterr().out)["removed"] == 0

        reset_active_config()
        assert cli.main(["anomalies"]) == 0
        assert json.loads(capsys.readouterr().out) == {"anomalies": []}

    def test_bad_attempted_pair_exits(self, cli):
        with pytest.raises(SystemExit):
            cli.main(["coverage", "--attempted", "users"])
