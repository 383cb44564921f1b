"""Shared fixtures for decisioning tests."""

import copy
import json

import pytest

from src.core.decisioning import DatafileProjectConfig


_CHROME = ["and", ["or", ["or", {"type": "custom_attribute", "name": "browser", "match": "exact", "value": "chrome"}]]]
_BETA = ["and", ["or", {"type": "custom_attribute", "name": "beta", "value": True}]]
_ADULT = ["and", ["or", {"type": "custom_attribute", "name": "age", "match": "ge", "value": 18}]]


def _rule(rule_id, key, variations, allocation, audience_ids=(), status="Running", **extra):
    data = {
        "id": rule_id,
        "key": key,
        "status": status,
        "layerId": f"layer_{rule_id}",
        "variations": [{"id": vid, "key": vkey} for vid, vkey in variations],
        "trafficAllocation": [
            {"entityId": entity_id, "endOfRange": end} for entity_id, end in allocation
        ],
        "forcedVariations": {},
        "audienceIds": list(audience_ids),
    }
    data.update(extra)
    return data


DATAFILE = {
    "revision": "42",
    "audiences": [
        {"id": "11", "name": "chrome users", "conditions": json.dumps(_CHROME)},
        {"id": "12", "name": "beta testers", "conditions": json.dumps(_BETA)},
        {"id": "13", "name": "adults", "conditions": json.dumps(_ADULT)},
    ],
    "experiments": [
        _rule(
            "exp_1",
            "checkout_test",
            [("v1", "control"), ("v2", "treatment")],
            [("v1", 5000), ("v2", 10000)],
            audience_ids=["11"],
            forcedVariations={"whitelisted_user": "treatment", "stale_user": "missing"},
        ),
        _rule("exp_2", "paused_test", [("v21", "paused_on")], [("v21", 10000)], status="Paused"),
        _rule("exp_3", "feature_test_a", [("v31", "a_on")], [("v31", 10000)], audience_ids=["12"]),
        _rule("exp_4", "feature_test_b", [("v41", "b_on")], [("v41", 10000)]),
        _rule("exp_5", "empty_test", [("v51", "never")], []),
    ],
    "rollouts": [
        {
            "id": "rollout_1",
            "experiments": [
                _rule("rule_1", "rule_1", [("rv1", "r1_on")], [("rv1", 10000)], audience_ids=["11"]),
                _rule("rule_2", "rule_2", [("rv2", "r2_on")], [("rv2", 10000)], audience_ids=["13"]),
                _rule("rule_3", "rule_everyone", [("rv3", "everyone_on")], [("rv3", 10000)]),
            ],
        },
        {
            "id": "rollout_2",
            "experiments": [
                _rule("excl_1", "excl_rule_1", [("ev1", "excl_1_on")], []),
                _rule("excl_2", "excl_rule_2", [("ev2", "excl_2_on")], [("ev2", 10000)]),
                _rule("excl_3", "excl_everyone", [("ev3", "excl_everyone_on")], [("ev3", 10000)]),
            ],
        },
        {
            "id": "rollout_3",
            "experiments": [
                _rule("beta_only", "beta_everyone", [("bv1", "beta_on")], [("bv1", 10000)], audience_ids=["12"]),
            ],
        },
        {"id": "rollout_empty", "experiments": []},
    ],
    "featureFlags": [
        {
            "id": "ff_1",
            "key": "new_checkout",
            "experimentIds": ["exp_missing", "exp_5", "exp_4"],
            "rolloutId": "rollout_1",
        },
        {"id": "ff_2", "key": "rollout_only", "experimentIds": [], "rolloutId": "rollout_1"},
        {"id": "ff_3", "key": "nothing", "experimentIds": [], "rolloutId": ""},
        {"id": "ff_4", "key": "exclusion", "experimentIds": [], "rolloutId": "rollout_2"},
        {"id": "ff_5", "key": "beta_rollout", "experimentIds": [], "rolloutId": "rollout_3"},
        {"id": "ff_6", "key": "empty_rollout", "experimentIds": [], "rolloutId": "rollout_empty"},
        {"id": "ff_7", "key": "beta_experiment", "experimentIds": ["exp_3"], "rolloutId": "rollout_1"},
    ],
}


@pytest.fixture
def datafile():
    """Fresh copy of the test datafile."""
    return copy.deepcopy(DATAFILE)


@pytest.fixture
def config(datafile):
    return DatafileProjectConfig(datafile)
