from voiceturn.history import ConversationHistory


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_history_keeps_most_recent_turns():
    h = ConversationHistory(max_turns=3, max_age_s=3600, clock=Clock())
    for i in range(5):
        h.add(f"q{i}", f"a{i}")
    assert [t.query for t in h.turns()] == ["q2", "q3", "q4"]
    assert len(h) == 3


def test_history_evicts_old_turns():
    clock = Clock()
    h = ConversationHistory(max_turns=30, max_age_s=60, clock=clock)
    h.add("old", "answer")
    clock.now += 30
    h.add("new", "answer")
    clock.now += 40
    assert [t.query for t in h.turns()] == ["new"]


def test_messages_pairs_and_limit():
    h = ConversationHistory(clock=Clock())
    h.add("what apps do I have", "You have Notes and Stream.")
    h.add("thanks", "You're welcome.")
    msgs = h.messages()
    assert msgs[0] == {"role": "user", "content": "what apps do I have"}
    assert msgs[1]["role"] == "assistant"
    assert len(msgs) == 4
    assert h.messages(2) == msgs[-2:]


def test_last_visual_query():
    h = ConversationHistory(clock=Clock())
    assert h.last_visual_query() is None
    h.add("what is this plant", "A fern.", visual=True, photo_timestamp=999.0)
    h.add("how tall do they grow", "Up to a meter.")
    assert h.last_visual_query() == "what is this plant"
    h.clear()
    assert h.turns() == []
