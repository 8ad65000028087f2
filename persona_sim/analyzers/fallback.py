"""Synthesized behavior for personas whose model call or parse failed.

Values are random but conservative and internally consistent: each deeper
stage can only be reached from the one before it, so the funnel built from
fallback records never increases.
"""
import random

from persona_sim.models import STAGES, PersonaBehaviorRecord, PersonaProfile, TimelineStep


def fallback_behavior(
    persona: PersonaProfile,
    error: str | None = None,
    rng: random.Random | None = None,
) -> PersonaBehaviorRecord:
    rng = rng or random
    opened = rng.random() > 0.5
    liked = opened and rng.random() > 0.7
    commented = liked and rng.random() > 0.85
    purchased = commented and rng.random() > 0.9

    flags = {"opened": opened, "liked": liked, "commented": commented, "purchased": purchased}
    status = next((stage for stage in STAGES if flags[stage]), "viewed")

    timeline = [
        TimelineStep(time="0s", action="saw cover", active=True),
        TimelineStep(time="2s", action="opened detail" if opened else "scrolled past", active=opened),
    ]
    if opened:
        timeline.append(TimelineStep(time="30s", action="browsed content", active=True))

    interest_word = "some interest in" if opened else "little interest in"
    return PersonaBehaviorRecord(
        user_id=persona.user_id,
        name=persona.name,
        opened=opened,
        liked=liked,
        commented=commented,
        purchased=purchased,
        browse_time=rng.randrange(30, 230) if opened else rng.randrange(0, 10),
        interest=rng.randrange(40, 80) if opened else rng.randrange(0, 40),
        price_range=persona.price_range or "unknown",
        status=status,
        inner_monologue=(
            "Looks decent, worth a closer look." if opened
            else "Not really interested in this."
        ),
        timeline=timeline,
        insights=f"{persona.name} showed {interest_word} the content. (AI analysis failed, default values used)",
        used_fallback=True,
        error=error,
    )
