from observability.alerts import Alert, AlertManager, AlertSeverity, AlertType


class TestAlertManager:
    def test_completed_alert_carries_winner(self):
        manager = AlertManager(throttle_minutes=15)

        assert manager.emit_test_completed("t1", "Checkout", "treatment", total_events=2400)

        (alert,) = manager.emitted
        assert alert.alert_type == AlertType.TEST_COMPLETED
        assert alert.severity == AlertSeverity.INFO
        assert alert.details["winner"] == "treatment"
        assert alert.details["total_events"] == 2400
        assert "winner: treatment" in alert.message

    def test_repeated_failures_are_throttled(self):
        manager = AlertManager(throttle_minutes=15)

        assert manager.emit_test_evaluation_failure("t1", "boom") is True
        assert manager.emit_test_evaluation_failure("t1", "boom") is False
        assert manager.emit_test_evaluation_failure("t2", "boom") is True
        assert len(manager.emitted) == 2

    def test_lifecycle_alerts_are_never_throttled(self):
        manager = AlertManager(throttle_minutes=15)

        manager.emit_monitor_failure("db down")
        manager.emit_monitor_failure("db down")

        assert len(manager.emitted) == 2

    def test_zero_throttle_disables_deduplication(self):
        manager = AlertManager(throttle_minutes=0)

        manager.emit_storage_failure("save_test", "locked")
        manager.emit_storage_failure("save_test", "locked")

        assert len(manager.emitted) == 2

    def test_history_is_bounded(self):
        manager = AlertManager(throttle_minutes=0)

        for i in range(150):
            manager.emit_test_timed_out(f"t{i}", "Test", 72)

        assert len(manager.emitted) == 100
        assert manager.emitted[-1].source == "t149"

    def test_alert_id_groups_by_type_source_and_hour(self):
        alert = Alert(
            alert_type=AlertType.STORAGE_FAILURE,
            severity=AlertSeverity.CRITICAL,
            source="save_test",
            message="failed",
        )

        assert alert.alert_id.startswith("storage_failure_save_test_")
        assert alert.to_dict()["severity"] == "critical"
