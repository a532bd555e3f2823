from bridge_module.history import ConversationHistory, ConversationTurn


def test_append_keeps_insertion_order():
    history = ConversationHistory()
    history.append(("one", "1"))
    history.append(ConversationTurn("two", "2"))
    assert history.snapshot() == (("one", "1"), ("two", "2"))
    assert len(history) == 2


def test_replace_all_discards_local_turns():
    history = ConversationHistory([("local", "turn")])
    remote = [("a", "b"), ("c", "d")]
    history.replace_all(remote)
    assert history.snapshot() == tuple(remote)


def test_snapshot_is_a_copy():
    history = ConversationHistory()
    snapshot = history.snapshot()
    history.append(("q", "a"))
    assert snapshot == ()
    assert history.snapshot()[0].assistant_text == "a"


def test_to_wire_uses_nested_lists():
    history = ConversationHistory([("q", "a")])
    assert history.to_wire() == [["q", "a"]]
