import asyncio

import pytest

from fakes import StaticClassifier
from voiceturn.deciders import (
    FollowUpDecider,
    FollowUpDecision,
    MemoryDecider,
    MemoryDecision,
    ToolDecider,
    ToolDecision,
    VisionDecider,
    VisionDecision,
    is_current_state_query,
    parse_yes_no,
)


APP_HISTORY = [
    {"role": "user", "content": "what apps do I have"},
    {"role": "assistant", "content": "You have Mentra Notes and Mentra Stream installed."},
]


@pytest.mark.parametrize(
    "query,expected",
    [
        ("what did I just ask you", MemoryDecision.RECALL),
        ("what was my last question", MemoryDecision.RECALL),
        ("can you repeat that", MemoryDecision.RECALL),
        ("go back to the recipe we discussed", MemoryDecision.RECALL),
        ("try again", MemoryDecision.RETRY),
        ("please try that again", MemoryDecision.RETRY),
        ("what is this", MemoryDecision.CONTINUE),
        ("what am I looking at", MemoryDecision.CONTINUE),
        ("what apps am I running", MemoryDecision.CONTINUE),
    ],
)
def test_memory_fast_check(query, expected):
    assert MemoryDecider(None).fast_check(query) == expected


def test_current_state_query_with_history_skips_classifier():
    classifier = StaticClassifier("recall")
    decider = MemoryDecider(classifier)
    decision = asyncio.run(decider.decide("what apps am I running", APP_HISTORY))
    assert decision is MemoryDecision.CONTINUE
    assert classifier.calls == []
    assert is_current_state_query("Which apps are running?")


def test_memory_classifier_used_when_inconclusive():
    classifier = StaticClassifier("recall")
    decision = asyncio.run(MemoryDecider(classifier).decide("and the second app?", APP_HISTORY))
    assert decision is MemoryDecision.RECALL
    assert "Mentra Notes" in classifier.calls[0][1]["conversation"]


def test_memory_without_history_skips_classifier():
    classifier = StaticClassifier("recall")
    decision = asyncio.run(MemoryDecider(classifier).decide("and the second app?", []))
    assert decision is MemoryDecision.CONTINUE
    assert classifier.calls == []


def test_memory_classifier_timeout_continues():
    classifier = StaticClassifier("recall", delay=1.0)
    decision = asyncio.run(MemoryDecider(classifier, timeout_s=0.02).decide("and the second app?", APP_HISTORY))
    assert decision is MemoryDecision.CONTINUE


@pytest.mark.parametrize(
    "query,expected",
    [
        ("start recording", ToolDecision.TOOL),
        ("take a note that the meeting moved", ToolDecision.TOOL),
        ("remind me to call mom", ToolDecision.TOOL),
        ("show my notes", ToolDecision.TOOL),
        ("what apps am I running", ToolDecision.TOOL),
        ("hello there", ToolDecision.NO_TOOL),
        ("what time is it", ToolDecision.NO_TOOL),
        ("what is photosynthesis", ToolDecision.NO_TOOL),
        ("thanks", ToolDecision.NO_TOOL),
    ],
)
def test_tool_fast_check(query, expected):
    assert ToolDecider(None).fast_check(query) == expected


def test_tool_classifier_and_fallback():
    assert asyncio.run(ToolDecider(StaticClassifier("tool")).decide("ping the stream app", [])) is ToolDecision.TOOL
    assert asyncio.run(ToolDecider(StaticClassifier("unsure")).decide("ping the stream", [])) is ToolDecision.NO_TOOL

    broken = StaticClassifier(exc=RuntimeError("down"))
    assert asyncio.run(ToolDecider(broken).decide("are there updates on my reminders", [])) is ToolDecision.TOOL
    assert asyncio.run(ToolDecider(broken).decide("how far is the moon", [])) is ToolDecision.NO_TOOL


def test_tool_classifier_sees_tool_names():
    classifier = StaticClassifier("no_tool")
    asyncio.run(ToolDecider(classifier).decide("ping the stream", [], ["Mentra Notes", "Mentra Stream"]))
    assert "- Mentra Stream" in classifier.calls[0][1]["tools"]


@pytest.mark.parametrize(
    "query,expected",
    [
        ("look at this and tell me the price", VisionDecision.YES),
        ("read this for me", VisionDecision.YES),
        ("how do I fix this", VisionDecision.YES),
        ("what is this", VisionDecision.UNSURE),
        ("what is the capital of France", VisionDecision.NO),
    ],
)
def test_vision_fallback(query, expected):
    assert asyncio.run(VisionDecider(None).decide(query, [])) is expected


def test_vision_classifier_labels():
    assert asyncio.run(VisionDecider(StaticClassifier("yes")).decide("q", [])) is VisionDecision.YES
    assert asyncio.run(VisionDecider(StaticClassifier("Unsure")).decide("q", [])) is VisionDecision.UNSURE
    assert asyncio.run(VisionDecider(StaticClassifier("no")).decide("q", [])) is VisionDecision.NO


@pytest.mark.parametrize(
    "text,expected",
    [
        ("ok thanks", FollowUpDecision.AFFIRMATIVE),
        ("Got it!", FollowUpDecision.AFFIRMATIVE),
        ("no thanks", FollowUpDecision.CONTINUE),
        ("stop", FollowUpDecision.CANCEL),
        ("never mind, forget it", FollowUpDecision.CANCEL),
        ("forget it", FollowUpDecision.CANCEL),
        ("how do I cancel my subscription", FollowUpDecision.CONTINUE),
        ("stop the timer", FollowUpDecision.CONTINUE),
        ("and what about Germany", FollowUpDecision.CONTINUE),
    ],
)
def test_follow_up_local_checks(text, expected):
    assert asyncio.run(FollowUpDecider(None).decide(text)) is expected


def test_follow_up_negation_guard_skips_classifier():
    classifier = StaticClassifier("yes")
    assert asyncio.run(FollowUpDecider(classifier).decide("nope, thanks")) is FollowUpDecision.CONTINUE
    assert classifier.calls == []


def test_follow_up_classifier_overrides_phrase_list():
    assert asyncio.run(FollowUpDecider(StaticClassifier("yes")).decide("brilliant")) is FollowUpDecision.AFFIRMATIVE
    assert asyncio.run(FollowUpDecider(StaticClassifier("no")).decide("ok thanks")) is FollowUpDecision.CONTINUE


@pytest.mark.parametrize(
    "text,expected",
    [("Yes please", True), ("yeah", True), ("go ahead", True), ("no", False), ("nope", False), ("maybe", None)],
)
def test_parse_yes_no(text, expected):
    assert parse_yes_no(text) is expected
