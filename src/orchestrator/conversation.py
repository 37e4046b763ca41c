"""Conversation history for the Orchestrator.

Append-only record of the turns of one session, plus the bounded window
that is forwarded to a provider.
"""

from typing import Iterator, Optional

from shared.models import ConversationTurn, TurnRole


class ConversationHistory:
    """
    Turns of a single conversation.

    Turns are never rewritten; ``clear`` is the only way to drop them.
    """

    def __init__(self, window: int = 20) -> None:
        """
        Initialize conversation history.

        Args:
            window: Number of recent turns included in prompts
        """
        self.window_size = window
        self._turns: list[ConversationTurn] = []

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    def add(self, role: TurnRole, content: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content)
        self._turns.append(turn)
        return turn

    def add_user_message(self, content: str) -> ConversationTurn:
        """Add a user message to the conversation."""
        return self.add(TurnRole.USER, content)

    def add_assistant_message(self, content: str) -> ConversationTurn:
        """Add an assistant message to the conversation."""
        return self.add(TurnRole.ASSISTANT, content)

    def add_system_note(self, content: str) -> ConversationTurn:
        """Add a tool result or rejection notice to the conversation."""
        return self.add(TurnRole.SYSTEM, content)

    def recent(self, limit: Optional[int] = None) -> list[ConversationTurn]:
        """
        Most recent turns, oldest first.

        Args:
            limit: Override of the configured window

        Returns:
            Copies of at most ``limit`` turns
        """
        limit = self.window_size if limit is None else limit
        if limit <= 0:
            return []
        return [turn.model_copy() for turn in self._turns[-limit:]]

    def turns(self) -> list[ConversationTurn]:
        return [turn.model_copy() for turn in self._turns]

    def clear(self) -> None:
        self._turns.clear()
