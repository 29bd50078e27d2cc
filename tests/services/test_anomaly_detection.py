"""
Suspicious-activity detection: deterministic threshold rules.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from audit_kernel.domain.dtos import AnomalyRule, AuditContext
from audit_kernel.domain.policies import AnomalyThresholds
from audit_kernel.exceptions import InvalidQueryError


@pytest.fixture
def actor_b():
    return AuditContext(actor_id=uuid4(), actor_email="b@example.com")


def _append_deletes(store, record_factory, clock, count, spacing_seconds, context=None, prefix="d"):
    records = []
    for i in range(count):
        record = record_factory(
            "users", f"{prefix}{i}", "delete",
            before={"name": f"user {i}"},
            context=context,
            occurred_at=clock.now(),
        )
        store.append(record)
        records.append(record)
        clock.advance(spacing_seconds)
    return records


class TestExcessiveDeletes:
    def test_burst_of_25_deletes_in_10_minutes(
        self, store, record_factory, query_service, deterministic_clock, test_actor_id
    ):
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 25, 24)

        anomalies = query_service.detect_suspicious_activity()

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.rule is AnomalyRule.EXCESSIVE_DELETES
        assert anomaly.actor_id == test_actor_id
        assert anomaly.observed_count == 25
        assert anomaly.threshold == 10
        assert anomaly.window_end - anomaly.window_start == timedelta(seconds=24 * 24)

    def test_at_threshold_is_not_anomalous(self, store, record_factory, query_service, deterministic_clock):
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 10, 60)
        assert query_service.detect_suspicious_activity() == ()

    def test_spread_out_deletes_are_not_a_burst(self, store, record_factory, query_service, deterministic_clock):
        deterministic_clock.advance(-6 * 24 * 3600)
        # 30 deletes, 8 per hour at most
        _append_deletes(store, record_factory, deterministic_clock, 30, 450)
        assert query_service.detect_suspicious_activity() == ()

    def test_window_is_a_sliding_hour(self, store, record_factory, query_service, deterministic_clock):
        deterministic_clock.advance(-(5 * 3600 + 30 * 60))
        # 6 deletes late in one clock hour and 6 early in the next: 12 within 60 minutes
        _append_deletes(store, record_factory, deterministic_clock, 12, 5 * 60)
        anomalies = query_service.detect_suspicious_activity()
        assert [a.rule for a in anomalies] == [AnomalyRule.EXCESSIVE_DELETES]
        assert anomalies[0].observed_count == 12

    def test_soft_deletes_count(self, store, record_factory, query_service, deterministic_clock):
        deterministic_clock.advance(-3600)
        for i in range(11):
            store.append(
                record_factory(
                    "users", f"s{i}", "soft_delete",
                    before={"deleted": False},
                    after={"deleted": True},
                    occurred_at=deterministic_clock.now(),
                )
            )
            deterministic_clock.advance(10)
        anomalies = query_service.detect_suspicious_activity()
        assert [a.rule for a in anomalies] == [AnomalyRule.EXCESSIVE_DELETES]

    def test_per_actor(self, store, record_factory, query_service, deterministic_clock, actor_b):
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 6, 10)
        _append_deletes(store, record_factory, deterministic_clock, 6, 10, context=actor_b, prefix="b")
        assert query_service.detect_suspicious_activity() == ()

    def test_outside_lookback_ignored(self, store, record_factory, query_service, deterministic_clock):
        deterministic_clock.advance(-8 * 24 * 3600)
        _append_deletes(store, record_factory, deterministic_clock, 25, 10)
        deterministic_clock.advance(8 * 24 * 3600)
        assert query_service.detect_suspicious_activity() == ()


class TestOtherRules:
    def test_excessive_operations(self, store, record_factory, query_service, deterministic_clock, test_actor_id):
        thresholds = AnomalyThresholds(max_operations_per_user=5)
        deterministic_clock.advance(-3600)
        for i in range(6):
            store.append(record_factory("users", f"u{i}", "create", occurred_at=deterministic_clock.now()))
            deterministic_clock.advance(60)

        anomalies = query_service.detect_suspicious_activity(thresholds)

        assert len(anomalies) == 1
        assert anomalies[0].rule is AnomalyRule.EXCESSIVE_OPERATIONS
        assert anomalies[0].observed_count == 6
        assert anomalies[0].window_end == deterministic_clock.now()
        assert anomalies[0].window_start == deterministic_clock.now() - timedelta(days=7)

    def test_suspicious_reason(self, store, record_factory, query_service, deterministic_clock, actor_b):
        flagged = AuditContext(actor_id=actor_b.actor_id, reason="Admin OVERRIDE of limits")
        first = record_factory(
            "users", "u1", "create", context=flagged,
            occurred_at=deterministic_clock.now() - timedelta(hours=2),
        )
        second = record_factory(
            "users", "u2", "create", context=flagged,
            occurred_at=deterministic_clock.now() - timedelta(hours=1),
        )
        clean = record_factory(
            "users", "u3", "create", context=AuditContext(actor_id=uuid4(), reason="routine"),
            occurred_at=deterministic_clock.now() - timedelta(hours=1),
        )
        for record in (first, second, clean):
            store.append(record)

        anomalies = query_service.detect_suspicious_activity()

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.rule is AnomalyRule.SUSPICIOUS_REASON
        assert anomaly.actor_id == actor_b.actor_id
        assert anomaly.observed_count == 2
        assert anomaly.threshold == 0
        assert (anomaly.window_start, anomaly.window_end) == (first.occurred_at, second.occurred_at)

    def test_ordered_by_rule_then_actor(self, store, record_factory, query_service, deterministic_clock, actor_b):
        thresholds = AnomalyThresholds(max_deletes_per_hour=1, max_operations_per_user=1)
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 2, 10)
        _append_deletes(store, record_factory, deterministic_clock, 2, 10, context=actor_b, prefix="b")

        anomalies = query_service.detect_suspicious_activity(thresholds)

        keys = [(a.rule.value, str(a.actor_id)) for a in anomalies]
        assert keys == sorted(keys)
        assert len(anomalies) == 4

    def test_deterministic(self, store, record_factory, query_service, deterministic_clock):
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 15, 5)
        assert query_service.detect_suspicious_activity() == query_service.detect_suspicious_activity()

    def test_detection_is_logged(self, store, record_factory, query_service, deterministic_clock, captured_logs):
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 11, 5)
        query_service.detect_suspicious_activity()
        detected = [r for r in captured_logs() if r["message"] == "suspicious_activity_detected"]
        assert detected[0]["rules"] == ["excessive_deletes"]

    @pytest.mark.parametrize(
        "thresholds",
        [
            AnomalyThresholds(lookback_days=0),
            AnomalyThresholds(max_deletes_per_hour=-1),
            AnomalyThresholds(scan_limit=0),
        ],
    )
    def test_invalid_thresholds(self, query_service, thresholds):
        with pytest.raises(InvalidQueryError):
            query_service.detect_suspicious_activity(thresholds)

    def test_scan_limit_truncation_logged(self, store, record_factory, query_service, deterministic_clock, captured_logs):
        deterministic_clock.advance(-3600)
        _append_deletes(store, record_factory, deterministic_clock, 3, 5)
        query_service.detect_suspicious_activity(AnomalyThresholds(scan_limit=2))
        assert any(r["message"] == "anomaly_scan_truncated" for r in captured_logs())

    def test_truncated_scan_keeps_the_newest_entries(
        self, store, record_factory, query_service, deterministic_clock, test_actor_id, actor_b, captured_logs
    ):
        deterministic_clock.advance(-4 * 24 * 3600)
        for i in range(30):
            store.append(
                record_factory("users", f"old{i}", "create", context=actor_b, occurred_at=deterministic_clock.now())
            )
            deterministic_clock.advance(60)
        deterministic_clock.advance(2 * 24 * 3600)
        _append_deletes(store, record_factory, deterministic_clock, 25, 24)

        anomalies = query_service.detect_suspicious_activity(
            AnomalyThresholds(scan_limit=30, suspicious_patterns=())
        )

        assert [(a.rule, a.actor_id, a.observed_count) for a in anomalies] == [
            (AnomalyRule.EXCESSIVE_DELETES, test_actor_id, 25)
        ]
        assert any(r["message"] == "anomaly_scan_truncated" for r in captured_logs())
