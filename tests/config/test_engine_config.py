"""Tests for loading and validating the engine configuration document."""

import copy
from datetime import timedelta
from decimal import Decimal

import pytest
import yaml

from bypass_config import (
    DEFAULT_CONFIG_PATH,
    get_active_config,
    load_config_from_dict,
    validate_configuration,
)
from bypass_config.loader import compute_checksum, load_yaml_file
from bypass_config.schema import RetryConfig
from bypass_kernel.domain.approval import FinalAction, MessageKind, NotificationChannel
from bypass_kernel.exceptions import ConfigurationError


@pytest.fixture
def document():
    return copy.deepcopy(load_yaml_file(DEFAULT_CONFIG_PATH))


class TestDefaults:

    def test_packaged_document_loads(self, captured_logs):
        config = get_active_config()

        assert config.version == 1
        assert len(config.checksum) == 64
        loaded = next(r for r in captured_logs() if r["message"] == "bypass_config_loaded")
        assert loaded["checksum"] == config.checksum

    def test_policy_values_are_typed(self):
        policy = get_active_config().approval_policy

        assert policy.financial_impact.high.threshold == Decimal("5000")
        assert policy.risk_score.critical.threshold == Decimal("80")
        assert [lvl.role for lvl in policy.financial_impact.critical.levels] == [
            "manager",
            "director",
            "owner",
        ]
        assert policy.timeouts.critical == timedelta(minutes=15)
        assert policy.auto_approval.max_financial == Decimal("100")

    def test_escalation_chain(self):
        escalation = get_active_config().escalation

        assert escalation.max_level == 3
        assert escalation.final_action == FinalAction.MANUAL_REVIEW
        assert escalation.chain[0].escalate_to_role is None
        assert escalation.chain[2].escalate_to_role == "owner"
        assert escalation.chain[2].timeout == timedelta(minutes=60)
        assert NotificationChannel.CHAT in escalation.chain[2].channels

    def test_disabled_channels_leave_the_enabled_routes(self):
        notification = get_active_config().notification

        assert NotificationChannel.WEBHOOK not in notification.enabled_channels
        assert notification.channel(NotificationChannel.SMS).max_concurrency == 2
        assert notification.enabled_routes()[MessageKind.ESCALATED] == (
            NotificationChannel.EMAIL,
            NotificationChannel.SMS,
            NotificationChannel.PUSH,
        )

    def test_default_is_valid_without_warnings(self):
        result = validate_configuration(get_active_config())

        assert result.is_valid
        assert result.warnings == []


class TestParsing:

    def test_lease_defaults_to_twice_the_poll_interval(self, document):
        document["scheduler"] = {"poll_interval_seconds": 10}

        config = load_config_from_dict(document)

        assert config.scheduler.lease_ttl_seconds == 20

    def test_tenant_timezones(self, document):
        document["clock"] = {"default_timezone": "UTC", "tenant_timezones": {"hotel-9": "Asia/Tokyo"}}

        config = load_config_from_dict(document)

        assert config.clock.timezone_for("hotel-9") == "Asia/Tokyo"
        assert config.clock.timezone_for("hotel-1") == "UTC"

    def test_database_url(self, document):
        assert load_config_from_dict(document).store.database_url is None

        document["store"]["database_url"] = "sqlite:///bypass.db"
        assert load_config_from_dict(document).store.database_url == "sqlite:///bypass.db"

    def test_checksum_tracks_content(self, document):
        before = compute_checksum(document)
        assert compute_checksum(copy.deepcopy(document)) == before

        document["reminders"]["max_reminders"] = 5
        assert compute_checksum(document) != before

    def test_missing_section(self, document):
        del document["auth"]

        with pytest.raises(ConfigurationError) as exc_info:
            load_config_from_dict(document)
        assert "missing required key" in exc_info.value.errors[0]

    def test_unknown_channel(self, document):
        document["notification"]["routes"]["cancelled"] = ["fax"]

        with pytest.raises(ConfigurationError):
            load_config_from_dict(document)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("identity: [unclosed\n")

        with pytest.raises(ConfigurationError) as exc_info:
            get_active_config(path)
        assert "invalid YAML" in exc_info.value.errors[0]

    def test_round_trips_through_a_file(self, tmp_path, document):
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump(document))

        assert get_active_config(path).checksum == get_active_config().checksum


class TestValidation:
    """Each invalid document is a startup failure naming the offending key."""

    @pytest.mark.parametrize(
        "mutate, fragment",
        [
            (
                lambda d: d["approval_policy"]["risk_score"]["high"].update(threshold=90),
                "high < critical",
            ),
            (
                lambda d: d["approval_policy"]["financial_impact"]["medium"].update(threshold="6000"),
                "medium < high < critical",
            ),
            (
                lambda d: d["approval_policy"]["timing"]["night"]["levels"].append(
                    {"role": "concierge", "timeout_minutes": 30}
                ),
                "role 'concierge' not in role hierarchy",
            ),
            (
                lambda d: d["approval_policy"]["risk_score"]["high"].update(priority=4),
                "priority 4 outside 1..3",
            ),
            (
                lambda d: d["approval_policy"]["auto_approval"].update(
                    forbid_with_critical_flags=False
                ),
                "forbid_with_critical_flags",
            ),
            (
                lambda d: d["approval_policy"]["business_hours"].update(start_hour=20),
                "business_hours",
            ),
            (
                lambda d: d["escalation"]["chain"][1].update(escalate_to_user="o1"),
                "not both",
            ),
            (
                lambda d: d["scheduler"].update(lease_ttl_seconds=5),
                "lease_ttl_seconds",
            ),
            (
                lambda d: d["notification"]["retry"].update(max_delay_seconds=1),
                "max_delay_seconds",
            ),
            (
                lambda d: d["clock"].update(tenant_timezones={"hotel-9": "Mars/Olympus"}),
                "unknown timezone 'Mars/Olympus'",
            ),
            (
                lambda d: d["store"].update(cas_attempts=0),
                "cas_attempts",
            ),
        ],
    )
    def test_rejected(self, document, mutate, fragment):
        mutate(document)

        with pytest.raises(ConfigurationError) as exc_info:
            load_config_from_dict(document)
        assert any(fragment in error for error in exc_info.value.errors)
        assert exc_info.value.code == "CONFIGURATION_INVALID"

    def test_route_to_unconfigured_channel(self, document):
        del document["notification"]["channels"]["sms"]

        with pytest.raises(ConfigurationError) as exc_info:
            load_config_from_dict(document)
        assert any("channel 'sms' is not configured" in e for e in exc_info.value.errors)

    def test_route_to_disabled_channel_is_a_warning(self, document, captured_logs):
        document["notification"]["routes"]["cancelled"] = ["email", "webhook"]

        config = load_config_from_dict(document)

        assert config.notification.enabled_routes()[MessageKind.CANCELLED] == (
            NotificationChannel.EMAIL,
        )
        warnings = [r for r in captured_logs() if r["message"] == "bypass_config_warning"]
        assert any("'webhook' is disabled" in w["detail"] for w in warnings)

    def test_missing_route_is_a_warning(self, document):
        del document["notification"]["routes"]["delegated"]

        result = validate_configuration(load_config_from_dict(document))

        assert result.is_valid
        assert any("'delegated'" in w for w in result.warnings)


class TestRetryConfig:

    def test_capped_exponential_delay(self):
        retry = RetryConfig(max_attempts=5, base_delay_seconds=30, max_delay_seconds=100)

        assert [retry.delay_for(n) for n in (1, 2, 3, 4)] == [30, 60, 100, 100]
        assert retry.delay_for(0) == 30
