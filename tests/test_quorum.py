"""Tests for quorum validation."""

from itertools import product

import pytest

from replyguard.detection.quorum import validate_quorum
from replyguard.models import LayerResult

LAYERS = ["thread", "exact_address", "domain", "display_name", "subject"]


def _results(states):
    """states: per layer one of 'found', 'ok', 'down'."""
    return [
        LayerResult(layer=name, found=state == "found", healthy=state != "down")
        for name, state in zip(LAYERS, states)
    ]


def test_single_found_layer_confirms_even_with_failures():
    result = validate_quorum(_results(["found", "down", "down", "down", "down"]))
    assert result.found
    assert result.quorum_met
    assert not result.pending_review
    assert result.found_layers == ["thread"]
    assert result.failed_layers == ["exact_address", "domain", "display_name", "subject"]


def test_three_healthy_negative_layers_deny():
    result = validate_quorum(_results(["ok", "ok", "ok", "down", "down"]))
    assert not result.found
    assert result.quorum_met
    assert not result.pending_review


def test_two_healthy_layers_go_to_review():
    result = validate_quorum(_results(["ok", "ok", "down", "down", "down"]))
    assert not result.found
    assert not result.quorum_met
    assert result.pending_review


def test_unhealthy_found_layer_does_not_count():
    results = _results(["down", "ok", "ok", "down", "down"])
    results[0].found = True
    result = validate_quorum(results)
    assert not result.found
    assert result.pending_review


def test_threshold_is_configurable():
    assert validate_quorum(_results(["ok", "ok", "down", "down", "down"]), min_healthy_layers=2).quorum_met
    assert validate_quorum(_results(["ok", "ok", "ok", "ok", "down"]), min_healthy_layers=5).pending_review


@pytest.mark.parametrize("states", list(product(["ok", "down"], repeat=5)))
def test_any_healthy_found_layer_confirms(states):
    assert not validate_quorum(_results(states)).found
    for i, state in enumerate(states):
        if state == "ok":
            upgraded = list(states)
            upgraded[i] = "found"
            result = validate_quorum(_results(upgraded))
            assert result.found
            assert not result.pending_review
