"""Tests for arena/selection.py."""

import random

import pytest

from arena.models import Constraints, ParticipantCapability, TaskCategory
from arena.requirements import normalize
from arena.selection import passes_constraints, pick_challenger, rank, seed_score, select


def _cap(pid: str, rating: float = 1500, group: str = "", **overrides) -> ParticipantCapability:
    fields = dict(
        id=pid,
        context_tokens=128000,
        avg_latency_ms=1000.0,
        cost_per_1k_tokens=0.0005,
        tool_use=True,
        structured_output=True,
        skill={"reasoning": rating},
        freshness=0.5,
        diversity_key=group or pid,
    )
    fields.update(overrides)
    return ParticipantCapability(**fields)


@pytest.fixture
def spec():
    return normalize("Why is the sky blue?")


def test_constraint_filter(spec):
    assert passes_constraints(_cap("ok"), spec)
    assert not passes_constraints(_cap("small", context_tokens=4096), spec)
    assert not passes_constraints(_cap("slow", avg_latency_ms=9000), spec)
    assert not passes_constraints(_cap("pricey", cost_per_1k_tokens=0.9), spec)


def test_tool_requirements():
    spec = normalize("Search the web for the latest release notes")
    assert not passes_constraints(_cap("plain", tool_use=False), spec)
    assert passes_constraints(_cap("tools", tool_use=True), spec)


def test_seed_score_penalizes_cost_and_latency(spec):
    cheap = _cap("cheap", cost_per_1k_tokens=0.0001, avg_latency_ms=500)
    dear = _cap("dear", cost_per_1k_tokens=0.01, avg_latency_ms=4000)
    assert seed_score(cheap, spec) > seed_score(dear, spec)
    assert seed_score(_cap("x", freshness=1.0), spec) - seed_score(_cap("x", freshness=0.0), spec) == pytest.approx(0.2)


def test_select_top_two_by_seed_score(spec):
    catalog = [_cap("a", 1400), _cap("b", 1600), _cap("c", 1550)]
    roster = select(spec, catalog, rng=random.Random(0), explore_probability=0.0)
    assert roster == ["b", "c"]


def test_select_keeps_one_per_diversity_group(spec):
    catalog = [_cap("big", 1600, group="llama"), _cap("small", 1590, group="llama"), _cap("other", 1500)]
    roster = select(spec, catalog, rng=random.Random(0), explore_probability=0.0)
    assert roster == ["big", "other"]


def test_select_refills_from_duplicates_when_groups_run_out(spec):
    catalog = [_cap("big", 1600, group="llama"), _cap("small", 1590, group="llama")]
    roster = select(spec, catalog, rng=random.Random(0), explore_probability=0.0)
    assert roster == ["big", "small"]


def test_explorer_adds_third_participant(spec):
    catalog = [_cap("a", 1600), _cap("b", 1550), _cap("c", 1500), _cap("d", 1450)]
    roster = select(spec, catalog, rng=random.Random(0), explore_probability=1.0)
    assert roster[:2] == ["a", "b"]
    assert len(roster) == 3
    assert roster[2] in {"c", "d"}


def test_roster_cap_two_disables_explorer(spec):
    catalog = [_cap("a", 1600), _cap("b", 1550), _cap("c", 1500)]
    roster = select(spec, catalog, rng=random.Random(0), roster_cap=2, explore_probability=1.0)
    assert roster == ["a", "b"]


def test_fallback_when_too_few_survive():
    spec = normalize("Why?", constraints=Constraints(max_latency_ms=100))
    catalog = [_cap("a"), _cap("b")]
    assert select(spec, catalog, fallback_roster=["x", "y"]) == ["x", "y"]
    assert select(spec, catalog) == ["a", "b"]


def test_selection_is_reproducible_with_seed(spec):
    catalog = [_cap(f"p{i}", 1500 + i) for i in range(6)]
    first = select(spec, catalog, rng=random.Random(42), explore_probability=0.5)
    second = select(spec, catalog, rng=random.Random(42), explore_probability=0.5)
    assert first == second


def test_rank_breaks_ties_by_id(spec):
    assert [c.id for c in rank([_cap("b"), _cap("a")], spec)] == ["a", "b"]


def test_pick_challenger_excludes_fielded(spec):
    catalog = [_cap("a"), _cap("b"), _cap("c")]
    assert pick_challenger(spec, catalog, exclude=["a", "b"], rng=random.Random(0)) == "c"
    assert pick_challenger(spec, catalog, exclude=["a", "b", "c"]) is None


def test_category_specific_skill_is_used():
    spec = normalize("Debug this code")
    assert spec.category == TaskCategory.TECHNICAL
    strong = _cap("strong", skill={"technical": 1700})
    weak = _cap("weak", skill={"technical": 1300})
    assert select(spec, [weak, strong], explore_probability=0.0) == ["strong", "weak"]
