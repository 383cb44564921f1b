"""Tests for experiment variation resolution."""

import logging

import pytest
from unittest.mock import MagicMock

from src.core.decisioning import (
    BUCKETING_ID_ATTRIBUTE,
    DecisionService,
    InMemoryUserProfileService,
    MurmurBucketer,
)
from src.core.errors import DecisionErrorCode
from src.utils.metrics import decision_evaluations_total

CHROME = {"browser": "chrome"}
FIREFOX = {"browser": "firefox"}


def _stub_bucketer(variation):
    bucketer = MagicMock()
    bucketer.bucket.return_value = variation
    return bucketer


class TestExperimentStatus:
    """Tests for the running check."""

    def test_not_running_returns_none(self, config):
        """Test paused experiment short-circuits everything."""
        bucketer = _stub_bucketer(None)
        service = DecisionService(bucketer=bucketer)
        experiment = config.get_experiment_from_key("paused_test")

        assert service.get_variation(config, experiment, "user1") is None
        bucketer.bucket.assert_not_called()

    def test_not_running_ignores_forced_variation(self, config):
        """Test forced variations do not apply to paused experiments."""
        service = DecisionService()
        assert service.set_forced_variation(config, "paused_test", "user1", "paused_on") is True

        experiment = config.get_experiment_from_key("paused_test")
        assert service.get_variation(config, experiment, "user1") is None


class TestPrecedence:
    """Tests for the forced > whitelist > sticky > audience > bucket order."""

    def test_forced_beats_everything(self, config):
        """Test forced entry wins over whitelist, audience failure and hashing."""
        experiment = config.get_experiment_from_key("checkout_test")
        treatment = config.get_variation_from_key("checkout_test", "treatment")
        service = DecisionService(bucketer=_stub_bucketer(treatment))

        assert service.set_forced_variation(config, "checkout_test", "whitelisted_user", "control")
        variation = service.get_variation(config, experiment, "whitelisted_user", FIREFOX)

        assert variation.key == "control"

    def test_whitelist_beats_audience_and_bucketing(self, config):
        """Test whitelisted user gets their variation despite failing audience."""
        experiment = config.get_experiment_from_key("checkout_test")
        bucketer = _stub_bucketer(config.get_variation_from_key("checkout_test", "control"))
        service = DecisionService(bucketer=bucketer)

        variation = service.get_variation(config, experiment, "whitelisted_user", FIREFOX)

        assert variation.key == "treatment"
        bucketer.bucket.assert_not_called()

    def test_unresolvable_whitelist_entry_is_ignored(self, config):
        """Test whitelist entry naming a missing variation falls through."""
        experiment = config.get_experiment_from_key("checkout_test")
        control = config.get_variation_from_key("checkout_test", "control")
        service = DecisionService(bucketer=_stub_bucketer(control))

        variation = service.get_variation(config, experiment, "stale_user", CHROME)

        assert variation == control

    def test_sticky_bypasses_audience(self, config):
        """Test stored decision is returned even when audience now fails."""
        profiles = InMemoryUserProfileService()
        profiles.save({
            "user_id": "user1",
            "experiment_bucket_map": {"exp_1": {"variation_id": "v2"}},
        })
        bucketer = _stub_bucketer(None)
        service = DecisionService(user_profile_service=profiles, bucketer=bucketer)
        experiment = config.get_experiment_from_key("checkout_test")

        variation = service.get_variation(config, experiment, "user1", FIREFOX)

        assert variation.key == "treatment"
        bucketer.bucket.assert_not_called()

    def test_stale_sticky_decision_rebuckets(self, config):
        """Test stored variation id that no longer exists is re-bucketed and overwritten."""
        profiles = InMemoryUserProfileService()
        profiles.save({
            "user_id": "user1",
            "experiment_bucket_map": {
                "exp_1": {"variation_id": "deleted"},
                "exp_4": {"variation_id": "v41"},
            },
        })
        control = config.get_variation_from_key("checkout_test", "control")
        service = DecisionService(user_profile_service=profiles, bucketer=_stub_bucketer(control))
        experiment = config.get_experiment_from_key("checkout_test")

        assert service.get_variation(config, experiment, "user1", CHROME) == control
        stored = profiles.lookup("user1")
        assert stored["experiment_bucket_map"]["exp_1"] == {"variation_id": "v1"}
        assert stored["experiment_bucket_map"]["exp_4"] == {"variation_id": "v41"}

    def test_audience_failure_returns_none(self, config):
        """Test user outside the audience is not bucketed."""
        bucketer = _stub_bucketer(None)
        service = DecisionService(bucketer=bucketer)
        experiment = config.get_experiment_from_key("checkout_test")

        assert service.get_variation(config, experiment, "user1", FIREFOX) is None
        bucketer.bucket.assert_not_called()

    def test_audience_failure_without_attributes(self, config):
        """Test missing attributes fail an audience that needs them."""
        service = DecisionService()
        experiment = config.get_experiment_from_key("checkout_test")
        assert service.get_variation(config, experiment, "user1") is None


class TestBucketing:
    """Tests for the hash bucketing step."""

    def test_deterministic(self, config):
        """Test same inputs give the same variation."""
        service = DecisionService()
        experiment = config.get_experiment_from_key("checkout_test")

        first = service.get_variation(config, experiment, "user42", CHROME)
        second = service.get_variation(config, experiment, "user42", CHROME)

        assert first is not None
        assert first == second

    def test_no_traffic_returns_none(self, config):
        """Test empty traffic allocation buckets nobody."""
        service = DecisionService()
        experiment = config.get_experiment_from_key("empty_test")
        assert service.get_variation(config, experiment, "user1") is None

    def test_bucketing_id_attribute_used(self, config):
        """Test string bucketing id replaces the user id as hash input."""
        bucketer = _stub_bucketer(None)
        service = DecisionService(bucketer=bucketer)
        experiment = config.get_experiment_from_key("checkout_test")

        service.get_variation(config, experiment, "user1", {**CHROME, BUCKETING_ID_ATTRIBUTE: "device-9"})

        bucketer.bucket.assert_called_once_with("device-9", experiment, "user1")

    def test_non_string_bucketing_id_falls_back(self, config, caplog):
        """Test non-string bucketing id logs a warning and uses the user id."""
        bucketer = _stub_bucketer(None)
        service = DecisionService(bucketer=bucketer)
        experiment = config.get_experiment_from_key("checkout_test")

        with caplog.at_level(logging.WARNING):
            service.get_variation(config, experiment, "user1", {**CHROME, BUCKETING_ID_ATTRIBUTE: 5})

        bucketer.bucket.assert_called_once_with("user1", experiment, "user1")
        assert "Bucketing ID attribute is not a string" in caplog.text

    def test_bucketed_variation_is_persisted(self, config):
        """Test fresh bucketing decision is saved for the user."""
        profiles = InMemoryUserProfileService()
        service = DecisionService(user_profile_service=profiles)
        experiment = config.get_experiment_from_key("feature_test_b")

        variation = service.get_variation(config, experiment, "user1")

        assert variation.key == "b_on"
        assert profiles.lookup("user1") == {
            "user_id": "user1",
            "experiment_bucket_map": {"exp_4": {"variation_id": "v41"}},
        }

    def test_save_failure_still_returns_variation(self, config):
        """Test persistence failure does not change the result."""
        profiles = MagicMock()
        profiles.lookup.return_value = None
        profiles.save.side_effect = RuntimeError("disk full")
        service = DecisionService(user_profile_service=profiles)
        experiment = config.get_experiment_from_key("feature_test_b")

        variation = service.get_variation(config, experiment, "user1")

        assert variation.key == "b_on"
        profiles.save.assert_called_once()

    def test_lookup_failure_degrades_to_bucketing(self, config):
        """Test profile store lookup error is absorbed."""
        profiles = MagicMock()
        profiles.lookup.side_effect = ConnectionError("redis down")
        service = DecisionService(user_profile_service=profiles)
        experiment = config.get_experiment_from_key("feature_test_b")

        assert service.get_variation(config, experiment, "user1").key == "b_on"

    def test_no_profile_service_skips_persistence(self, config):
        """Test bucketing works with sticky bucketing disabled."""
        service = DecisionService(bucketer=MurmurBucketer())
        experiment = config.get_experiment_from_key("feature_test_b")
        assert service.get_variation(config, experiment, "user1").key == "b_on"


@pytest.mark.parametrize("user_id", ["alice", "bob", "carol"])
def test_hash_bucketing_lands_in_declared_variation(config, user_id):
    """Test every bucketed user gets one of the experiment's variations."""
    service = DecisionService()
    experiment = config.get_experiment_from_key("checkout_test")

    variation = service.get_variation(config, experiment, user_id, CHROME)

    assert variation.key in {"control", "treatment"}


class TestCollaboratorFailures:
    """Tests for failures raised by the bucketer and audience evaluator."""

    def test_bucketer_error_returns_none(self, config, caplog):
        """Test a raising bucketer yields no decision and an error log."""
        bucketer = MagicMock()
        bucketer.bucket.side_effect = RuntimeError("boom")
        service = DecisionService(bucketer=bucketer)
        experiment = config.get_experiment_from_key("feature_test_b")
        before = decision_evaluations_total.labels(operation="bucketing", outcome="error")._value.get()

        with caplog.at_level(logging.ERROR):
            assert service.get_variation(config, experiment, "u1") is None

        after = decision_evaluations_total.labels(operation="bucketing", outcome="error")._value.get()
        assert after == before + 1
        assert caplog.records[-1].error_code == DecisionErrorCode.BUCKETING_FAILED

    def test_bucketer_error_skips_persistence(self, config):
        profiles = InMemoryUserProfileService()
        bucketer = MagicMock()
        bucketer.bucket.side_effect = RuntimeError("boom")
        service = DecisionService(user_profile_service=profiles, bucketer=bucketer)

        service.get_variation(config, config.get_experiment_from_key("feature_test_b"), "u1")

        assert len(profiles) == 0

    def test_audience_error_counts_as_not_matching(self, config, caplog):
        """Test a raising audience evaluator fails the audience check."""
        evaluator = MagicMock()
        evaluator.meets_conditions.side_effect = ValueError("bad condition")
        bucketer = _stub_bucketer(None)
        service = DecisionService(bucketer=bucketer, audience_evaluator=evaluator)
        experiment = config.get_experiment_from_key("checkout_test")
        before = decision_evaluations_total.labels(operation="audience", outcome="error")._value.get()

        with caplog.at_level(logging.ERROR):
            assert service.get_variation(config, experiment, "u1", CHROME) is None

        after = decision_evaluations_total.labels(operation="audience", outcome="error")._value.get()
        assert after == before + 1
        assert caplog.records[-1].error_code == DecisionErrorCode.AUDIENCE_EVALUATION_FAILED
        bucketer.bucket.assert_not_called()


class TestBucketingIdAttribute:
    """Tests for the bucketing id attribute lookup."""

    def test_none_bucketing_id_is_absent(self, config, caplog):
        """Test a None bucketing id uses the user id without a warning."""
        bucketer = _stub_bucketer(None)
        service = DecisionService(bucketer=bucketer)
        experiment = config.get_experiment_from_key("checkout_test")

        with caplog.at_level(logging.WARNING):
            service.get_variation(config, experiment, "user1", {**CHROME, BUCKETING_ID_ATTRIBUTE: None})

        bucketer.bucket.assert_called_once_with("user1", experiment, "user1")
        assert "Bucketing ID attribute is not a string" not in caplog.text

    def test_get_bucketing_id(self):
        service = DecisionService()
        assert service.get_bucketing_id("user1", None) == "user1"
        assert service.get_bucketing_id("user1", {BUCKETING_ID_ATTRIBUTE: None}) == "user1"
        assert service.get_bucketing_id("user1", {BUCKETING_ID_ATTRIBUTE: "device-9"}) == "device-9"
