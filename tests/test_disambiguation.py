import asyncio
import time

import pytest

from fakes import FakeCatalog, FakeExtractor
from voiceturn.collaborators import AppInfo
from voiceturn.disambiguation import (
    Candidate,
    DisambiguationDetector,
    DisambiguationState,
    infer_action,
    looks_like_choice_question,
    match_candidate,
    quoted_candidates,
    slugify,
)


class Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cands(*names: str) -> list[Candidate]:
    return [Candidate(name=n, identifier=slugify(n)) for n in names]


NOTES = _cands("Notes", "Notes [Dev]", "Notes [Beta]")


def _pick(utterance: str, candidates=NOTES):
    hit = match_candidate(utterance, candidates)
    return (hit[0].name, hit[1]) if hit else None


def test_dev_one_resolves_to_dev_candidate():
    assert _pick("the dev one") == ("Notes [Dev]", "qualifier")
    assert _pick("The DEV one, please.") == ("Notes [Dev]", "qualifier")


def test_first_one_resolves_by_index():
    stream = _cands("Mentra Stream", "Mentra Stream [DEV]")
    assert _pick("first one", stream) == ("Mentra Stream", "ordinal")
    assert _pick("the 2nd", stream) == ("Mentra Stream [DEV]", "ordinal")


def test_ordinal_out_of_range_falls_through():
    assert _pick("the fourth one") is None


def test_regular_picks_unqualified_name():
    assert _pick("the regular one") == ("Notes", "regular")
    assert _pick("regular", _cands("Notes [Dev]", "Notes [Beta]")) == ("Notes [Dev]", "regular")


def test_qualifier_keywords():
    cands = _cands("Notes", "Notes [development build]", "Notes [test]")
    assert _pick("the development version", cands) == ("Notes [development build]", "dev keyword")
    assert _pick("beta", cands) == ("Notes [test]", "beta keyword")


def test_exact_and_contained_names():
    assert _pick("notes") == ("Notes", "exact name")
    assert _pick("open notes [beta] please") == ("Notes [Beta]", "qualifier")
    assert _pick("launch mentra notes now", _cands("Mentra Notes", "Mentra Stream")) == (
        "Mentra Notes",
        "name contains",
    )


def test_no_match():
    assert _pick("something else entirely") is None
    assert _pick("") is None
    assert match_candidate("first", []) is None


def test_resolution_clears_pending():
    state = DisambiguationState(ttl_s=120, clock=Clock())
    state.offer("start stream", _cands("Mentra Stream", "Mentra Stream [DEV]"), "start")
    res = state.resolve("first one")
    assert res is not None
    assert res.candidate.name == "Mentra Stream"
    assert res.action == "start"
    assert res.original_request == "start stream"
    assert state.pending is None
    assert state.resolve("first one") is None


def test_unmatched_leaves_pending_intact():
    state = DisambiguationState(ttl_s=120, clock=Clock())
    state.offer("open notes", NOTES, "start")
    assert state.resolve("hmm let me think") is None
    assert state.has_pending()


def test_pending_expires_at_ttl():
    clock = Clock(100.0)
    state = DisambiguationState(ttl_s=120, clock=clock)
    state.offer("open notes", NOTES, "start")
    clock.now = 219.9
    assert state.has_pending()
    clock.now = 220.0
    assert state.resolve("the dev one") is None
    assert state.pending is None


def test_default_ttl_clock_is_monotonic():
    state = DisambiguationState(ttl_s=120)
    offer = state.offer("open notes", NOTES, "start")
    assert abs(offer.created_at - time.monotonic()) < 5.0
    assert state.has_pending()


def test_new_offer_replaces_old():
    state = DisambiguationState(clock=Clock())
    state.offer("open notes", NOTES, "start")
    state.offer("close stream", _cands("Stream", "Stream [Dev]"), "stop")
    assert state.pending.original_request == "close stream"
    assert state.resolve("notes") is None


@pytest.mark.parametrize(
    "request_text,action",
    [
        ("close the notes app", "stop"),
        ("please turn off stream", "stop"),
        ("shut down mentra notes", "stop"),
        ("open notes", "start"),
        ("start the recorder", "start"),
        ("recommend an app", "start"),
    ],
)
def test_infer_action(request_text, action):
    assert infer_action(request_text) == action


def test_choice_question_precheck():
    assert not looks_like_choice_question("Which one?")
    assert not looks_like_choice_question("The weather in Paris is sunny and warm today.")
    assert looks_like_choice_question("There are two apps called Notes, which do you mean")


def test_quoted_candidates_requires_indicator():
    answer = "I found multiple apps. Which one would you like: 'Mentra Notes' or 'Mentra Notes [Dev]'?"
    assert quoted_candidates(answer) == ["Mentra Notes", "Mentra Notes [Dev]"]
    assert quoted_candidates("He said 'hello' and 'goodbye' to everyone in the room?") == []


def test_detector_uses_extractor_result():
    async def scenario():
        extractor = FakeExtractor(["Mentra Notes", "Mentra Notes [Dev]"])
        detector = DisambiguationDetector(extractor)
        found = await detector.detect("There are two Notes apps installed. Which would you like to open?")
        skipped = await detector.detect("It is sunny.")
        return found, skipped, extractor.calls

    found, skipped, calls = asyncio.run(scenario())
    assert found == ["Mentra Notes", "Mentra Notes [Dev]"]
    assert skipped == []
    assert len(calls) == 1


def test_detector_falls_back_when_extractor_fails():
    class Broken:
        async def extract_candidates(self, answer):
            raise RuntimeError("boom")

    answer = "Did you mean 'Mentra Stream' or 'Mentra Stream [DEV]'? Both are installed."
    found = asyncio.run(DisambiguationDetector(Broken()).detect(answer))
    assert found == ["Mentra Stream", "Mentra Stream [DEV]"]


def test_register_resolves_identifiers_through_catalog():
    catalog = FakeCatalog(
        [
            AppInfo(name="Mentra Notes", identifier="com.mentra.notes"),
            AppInfo(name="Mentra Notes [Dev]", identifier="com.mentra.notes.dev"),
            AppInfo(name="Camera", identifier="com.mentra.camera"),
        ]
    )
    answer = "I found multiple apps. Which one would you like: 'mentra notes' or 'Mentra Notes [dev]'?"

    async def scenario():
        state = DisambiguationState(clock=Clock())
        pending = await DisambiguationDetector(catalog=catalog).register(state, "close notes", answer)
        return pending

    pending = asyncio.run(scenario())
    assert pending is not None
    assert pending.action == "stop"
    assert [c.identifier for c in pending.candidates] == ["com.mentra.notes", "com.mentra.notes.dev"]


def test_register_needs_two_resolvable_candidates():
    catalog = FakeCatalog([AppInfo(name="Mentra Notes", identifier="com.mentra.notes")])
    answer = "Which one would you like: 'Mentra Notes' or 'Some Other App'? Let me know."

    async def scenario():
        state = DisambiguationState(clock=Clock())
        await DisambiguationDetector(catalog=catalog).register(state, "open notes", answer)
        return state.has_pending()

    assert asyncio.run(scenario()) is False


def test_register_without_catalog_uses_slugs():
    answer = "Which one would you like: 'Mentra Notes' or 'Mentra Notes [Dev]'? Both are installed."

    async def scenario():
        state = DisambiguationState(clock=Clock())
        await DisambiguationDetector().register(state, "open notes", answer)
        return state.pending

    pending = asyncio.run(scenario())
    assert [c.identifier for c in pending.candidates] == ["mentra-notes", "mentra-notes-dev"]
    assert pending.action == "start"
