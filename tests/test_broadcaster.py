"""Tests for the state broadcaster."""

from shared.models import AgentState, MessageEvent, MessageKind


class TestStateBroadcaster:
    """Tests for StateBroadcaster."""

    def test_observers_called_in_registration_order(self):
        from orchestrator.broadcaster import StateBroadcaster

        broadcaster = StateBroadcaster()
        calls = []
        broadcaster.subscribe(on_state=lambda s: calls.append("first"))
        broadcaster.subscribe(on_state=lambda s: calls.append("second"))

        broadcaster.publish_state(AgentState(is_processing=True))

        assert calls == ["first", "second"]

    def test_failing_observer_does_not_block_others(self):
        from orchestrator.broadcaster import StateBroadcaster

        broadcaster = StateBroadcaster()
        received = []

        def broken(state):
            raise RuntimeError("UI went away")

        broadcaster.subscribe(on_state=broken, on_message=broken)
        broadcaster.subscribe(on_state=received.append, on_message=received.append)

        broadcaster.publish_state(AgentState())
        broadcaster.publish_message(MessageEvent(kind=MessageKind.FINAL, text="Done"))

        assert len(received) == 2

    def test_observers_receive_copies(self):
        from orchestrator.broadcaster import StateBroadcaster

        broadcaster = StateBroadcaster()
        received = []
        broadcaster.subscribe(on_state=received.append)
        broadcaster.subscribe(on_state=received.append)

        state = AgentState(is_processing=True, current_task="check calendar")
        broadcaster.publish_state(state)
        received[0].current_task = "tampered"

        assert received[1].current_task == "check calendar"
        assert state.current_task == "check calendar"

    def test_unsubscribe_is_idempotent(self):
        from orchestrator.broadcaster import StateBroadcaster

        broadcaster = StateBroadcaster()
        received = []
        unsubscribe = broadcaster.subscribe(on_message=received.append)

        unsubscribe()
        unsubscribe()
        broadcaster.publish_message(MessageEvent(kind=MessageKind.INTERMEDIATE, text="Working"))

        assert received == []
        assert broadcaster.subscriber_count == 0

    def test_state_only_observer_ignores_messages(self):
        from orchestrator.broadcaster import StateBroadcaster

        broadcaster = StateBroadcaster()
        states = []
        broadcaster.subscribe(on_state=states.append)

        broadcaster.publish_message(MessageEvent(kind=MessageKind.FINAL, text="Done"))

        assert states == []
