import pytest

from orderflow import config
from orderflow.config import AssignmentConfig, ConfigHolder, ScoringWeights
from orderflow.errors import ValidationError


def test_defaults_match_module_constants():
    cfg = AssignmentConfig()
    assert cfg.max_orders_per_rider == config.MAX_ORDERS_PER_RIDER == 3
    assert cfg.assignment_radius_km == 10.0
    assert cfg.weights == ScoringWeights(0.4, 0.3, 0.3)


def test_merged_accepts_admin_client_keys_and_partial_weights():
    cfg = AssignmentConfig().merged({
        "maxOrdersPerRider": 5,
        "assignmentRadius": 7.5,
        "priorityWeight": {"riderAvailability": 0.6},
    })
    assert cfg.max_orders_per_rider == 5
    assert cfg.assignment_radius_km == 7.5
    assert cfg.weights == ScoringWeights(distance=0.4, availability=0.6, urgency=0.3)


def test_merged_returns_new_instance():
    original = AssignmentConfig()
    updated = original.merged({"max_orders_per_rider": 4})
    assert original.max_orders_per_rider == 3
    assert updated.max_orders_per_rider == 4


def test_weights_are_not_normalized():
    cfg = AssignmentConfig().merged({"weights": {"distance": 2.0, "availability": 2.0, "urgency": 2.0}})
    assert cfg.weights.distance == 2.0


@pytest.mark.parametrize("updates", [
    {"max_orders_per_rider": 0},
    {"assignment_radius_km": 0},
    {"weights": {"urgency": -0.1}},
    {"colour": "blue"},
    {"weights": {"speed": 1.0}},
])
def test_merged_rejects_invalid_updates(updates):
    with pytest.raises(ValidationError):
        AssignmentConfig().merged(updates)


def test_dict_form_restores_same_config():
    cfg = AssignmentConfig().merged({"assignment_radius_km": 4.0, "weights": {"distance": 0.7}})
    assert AssignmentConfig.from_dict(cfg.to_dict()) == cfg


def test_holder_update_replaces_live_config():
    holder = ConfigHolder()
    holder.update({"max_orders_per_rider": 2})
    assert holder.get().max_orders_per_rider == 2


def test_holder_keeps_old_config_when_update_is_invalid():
    holder = ConfigHolder()
    with pytest.raises(ValidationError):
        holder.update({"assignment_radius_km": -1})
    assert holder.get() == AssignmentConfig()
