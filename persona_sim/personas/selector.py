import random
from typing import Sequence

from persona_sim.models import PersonaProfile


def select_personas(
    catalog: Sequence[PersonaProfile],
    count: int,
    rng: random.Random | None = None,
) -> list[PersonaProfile]:
    """Pick `count` personas from the catalog.

    A request for the whole catalog (or more) returns it unchanged and in order.
    Smaller requests are a uniform sample without replacement: Fisher-Yates
    shuffle of a copy, truncated. count <= 0 selects nothing.
    """
    if count <= 0:
        return []
    if count >= len(catalog):
        return list(catalog)

    rng = rng or random
    shuffled = list(catalog)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled[:count]
