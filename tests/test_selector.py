import random

from persona_sim.models import PersonaProfile
from persona_sim.personas.selector import select_personas

CATALOG = [
    PersonaProfile(user_id=f"{i:03d}", name=f"Persona {i}", system_prompt=f"prompt {i}")
    for i in range(1, 31)
]


def test_full_count_returns_catalog_in_order():
    for _ in range(5):
        assert select_personas(CATALOG, 30) == CATALOG


def test_count_above_catalog_size_returns_whole_catalog():
    assert select_personas(CATALOG, 100) == CATALOG


def test_full_count_returns_a_copy():
    selected = select_personas(CATALOG, 30)
    selected.pop()
    assert len(CATALOG) == 30


def test_partial_count_returns_distinct_catalog_members():
    selected = select_personas(CATALOG, 10)
    assert len(selected) == 10
    assert len({p.user_id for p in selected}) == 10
    assert all(p in CATALOG for p in selected)


def test_partial_count_varies_between_calls():
    orders = {tuple(p.user_id for p in select_personas(CATALOG, 5)) for _ in range(20)}
    assert len(orders) > 1


def test_seeded_rng_is_reproducible():
    a = select_personas(CATALOG, 5, rng=random.Random(42))
    b = select_personas(CATALOG, 5, rng=random.Random(42))
    assert a == b


def test_zero_or_negative_count_selects_nothing():
    assert select_personas(CATALOG, 0) == []
    assert select_personas(CATALOG, -3) == []


def test_empty_catalog():
    assert select_personas([], 5) == []
