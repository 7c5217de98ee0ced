from voiceturn.wake import WakePhraseMatcher, clean_text


def test_clean_text_basic():
    assert clean_text("  Hey,   Mentra!! ") == "hey mentra"


def test_has_wake_phrase_with_punctuation():
    m = WakePhraseMatcher()
    assert m.has_wake_phrase("Hey, Mentra. What time is it?")
    assert m.has_wake_phrase("so hey mentra")
    assert not m.has_wake_phrase("hey mentor what time is it")


def test_strip_wake_phrase():
    m = WakePhraseMatcher()
    assert m.strip_wake_phrase("Hey Mentra, what time is it?") == "what time is it?"
    assert m.strip_wake_phrase("um hey mentra... turn on notes") == "turn on notes"
    assert m.strip_wake_phrase("hey mentra") == ""


def test_strip_without_wake_phrase_returns_trimmed_text():
    m = WakePhraseMatcher()
    assert m.strip_wake_phrase("  and what about Germany ") == "and what about Germany"


def test_ends_with_wake_phrase():
    m = WakePhraseMatcher()
    assert m.ends_with_wake_phrase("okay hey mentra.")
    assert not m.ends_with_wake_phrase("hey mentra what is that")


def test_cancellation_phrases():
    m = WakePhraseMatcher()
    assert m.is_cancellation("never mind")
    assert m.is_cancellation("Cancel.")
    assert m.is_cancellation("sorry, false alarm")
    assert not m.is_cancellation("stop recording")
    assert not m.is_cancellation("how do I cancel my subscription")
    assert not m.is_cancellation("")


def test_custom_wake_phrases():
    m = WakePhraseMatcher(wake_phrases=("ok glasses", "hey mentra"))
    assert m.has_wake_phrase("OK glasses, take a note")
    assert m.strip_wake_phrase("OK glasses, take a note") == "take a note"
