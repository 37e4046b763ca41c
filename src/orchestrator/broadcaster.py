"""State Broadcaster.

Keeps observers (chat UIs, WebSocket connections) in sync with a session.
"""

from typing import Callable, Optional

from shared.logging import get_logger
from shared.models import AgentState, MessageEvent

logger = get_logger(__name__)

StateObserver = Callable[[AgentState], None]
MessageObserver = Callable[[MessageEvent], None]


class _Subscription:
    __slots__ = ("on_state", "on_message")

    def __init__(self, on_state: Optional[StateObserver], on_message: Optional[MessageObserver]) -> None:
        self.on_state = on_state
        self.on_message = on_message


class StateBroadcaster:
    """
    Fan-out of state snapshots and chat messages.

    Observers are called synchronously in registration order. An observer
    that raises is logged and skipped; the others still receive the event.
    """

    def __init__(self, session_id: Optional[str] = None) -> None:
        self.session_id = session_id
        self._subscriptions: list[_Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        on_state: Optional[StateObserver] = None,
        on_message: Optional[MessageObserver] = None
    ) -> Callable[[], None]:
        """
        Register an observer.

        Returns:
            A callable that removes the observer; calling it again is a no-op
        """
        subscription = _Subscription(on_state, on_message)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def publish_state(self, state: AgentState) -> None:
        """Send every observer its own copy of the state."""
        for subscription in list(self._subscriptions):
            if subscription.on_state is None:
                continue
            try:
                subscription.on_state(state.model_copy(deep=True))
            except Exception as e:
                logger.warning(
                    "State observer failed",
                    session_id=self.session_id,
                    error=str(e),
                )

    def publish_message(self, event: MessageEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.on_message is None:
                continue
            try:
                subscription.on_message(event.model_copy())
            except Exception as e:
                logger.warning(
                    "Message observer failed",
                    session_id=self.session_id,
                    kind=event.kind.value,
                    error=str(e),
                )
