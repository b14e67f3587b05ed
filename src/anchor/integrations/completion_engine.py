"""
Completion engine integration for Anchor.

The session layer consumes the engine as an opaque capability: start a turn
(yielding response fragments lazily), cancel a turn, release per-session
resources, and shut down. ``OpenAICompletionEngine`` implements it on top of
streamed chat completions from OpenAI or Azure OpenAI.
"""

from __future__ import annotations

import contextlib

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import openai

from anchor.api.websocket.task_manager import CancellationToken
from anchor.utils.client_factory import create_client_from_settings
from anchor.utils.logger import logger, preview

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from anchor.core.constants import Settings


class CompletionEngineError(Exception):
    """A turn or lifecycle operation of the completion engine failed."""


class EngineNotInitializedError(CompletionEngineError):
    """The engine was used before ``initialize()`` succeeded (or after shutdown)."""


class CompletionEngine(ABC):
    """Boundary of the AI completion engine as seen by the session layer."""

    @property
    @abstractmethod
    def is_initialized(self) -> bool: ...

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to the backend. Raises CompletionEngineError on failure."""

    @abstractmethod
    def start_turn(
        self,
        session_id: str,
        conversation_id: str,
        text: str,
        token: CancellationToken | None = None,
    ) -> AsyncGenerator[str, None]:
        """Start a turn and return a lazy stream of response fragments."""

    @abstractmethod
    async def cancel_turn(self, session_id: str) -> bool:
        """Request cancellation of the session's active turn. Returns True if one was active."""

    @abstractmethod
    async def release_session(self, session_id: str) -> None:
        """Release any resources held for the session."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Cancel everything in flight and release all resources."""

    def get_stats(self) -> dict[str, Any]:
        return {"initialized": self.is_initialized}


@dataclass
class _ActiveTurn:
    conversation_id: str
    token: CancellationToken
    stream: Any = None


class OpenAICompletionEngine(CompletionEngine):
    """Streams chat completions and keeps bounded per-conversation history.

    History holds the last ``max_history_messages`` user/assistant messages of
    each conversation; an assistant reply is only appended when its turn
    completes naturally, so cancelled and failed turns leave no partial reply.
    """

    def __init__(
        self,
        settings: Settings,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._model = settings.default_model
        self._max_history = settings.engine_max_history_messages
        self._histories: dict[str, deque[dict[str, str]]] = {}
        self._active_turns: dict[str, _ActiveTurn] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def provider(self) -> str:
        return self._settings.engine_provider

    async def initialize(self) -> None:
        if self._client is None:
            self._client = create_client_from_settings(self._settings)

        logger.info(f"Connecting to completion engine ({self.provider})...")
        try:
            await self._client.models.list()
        except openai.OpenAIError as e:
            self._initialized = False
            raise CompletionEngineError(f"Completion engine unreachable: {e}") from e

        self._initialized = True
        logger.info(f"Completion engine ready (provider={self.provider}, model={self._model})")

    def _history_for(self, conversation_id: str) -> deque[dict[str, str]]:
        history = self._histories.get(conversation_id)
        if history is None:
            history = deque(maxlen=self._max_history)
            self._histories[conversation_id] = history
        return history

    async def start_turn(
        self,
        session_id: str,
        conversation_id: str,
        text: str,
        token: CancellationToken | None = None,
    ) -> AsyncGenerator[str, None]:
        if not self._initialized or self._client is None:
            raise EngineNotInitializedError("Completion engine not initialized")

        token = token or CancellationToken()
        history = self._history_for(conversation_id)
        user_message = {"role": "user", "content": text}
        turn = _ActiveTurn(conversation_id=conversation_id, token=token)
        self._active_turns[session_id] = turn
        reply_parts: list[str] = []

        logger.debug(
            f"Turn started: {preview(text)}",
            session_id=session_id,
            conversation_id=conversation_id,
            history_messages=len(history),
        )

        try:
            try:
                turn.stream = await self._client.chat.completions.create(
                    model=self._model,
                    messages=[*history, user_message],
                    stream=True,
                )
            except openai.OpenAIError as e:
                raise CompletionEngineError(f"Failed to start turn: {e}") from e

            try:
                async for chunk in turn.stream:
                    if token.is_cancelled:
                        break
                    if not chunk.choices:
                        continue
                    content = chunk.choices[0].delta.content
                    if content:
                        reply_parts.append(content)
                        yield content
            except Exception as e:
                # Closing the stream from cancel_turn surfaces as a transport error
                if token.is_cancelled:
                    return
                raise CompletionEngineError(f"Stream failed: {e}") from e

            if not token.is_cancelled:
                history.append(user_message)
                history.append({"role": "assistant", "content": "".join(reply_parts)})
        finally:
            if self._active_turns.get(session_id) is turn:
                del self._active_turns[session_id]
            if turn.stream is not None:
                with contextlib.suppress(Exception):
                    await turn.stream.close()

    async def cancel_turn(self, session_id: str) -> bool:
        turn = self._active_turns.get(session_id)
        if turn is None:
            return False

        turn.token.cancel(reason="Turn cancelled")
        if turn.stream is not None:
            try:
                await turn.stream.close()
            except Exception as e:
                logger.warning(f"Error closing completion stream: {e}", session_id=session_id)

        logger.info("Turn cancelled", session_id=session_id, conversation_id=turn.conversation_id)
        return True

    async def release_session(self, session_id: str) -> None:
        if await self.cancel_turn(session_id):
            logger.debug("Released in-flight turn for session", session_id=session_id)

    async def shutdown(self) -> None:
        logger.info(f"Shutting down completion engine ({len(self._active_turns)} active turns)")
        for session_id in list(self._active_turns):
            await self.cancel_turn(session_id)

        if self._client is not None:
            try:
                await self._client.close()
            except Exception as e:
                logger.warning(f"Error closing completion client: {e}")

        self._initialized = False
        logger.info("Completion engine shut down")

    def get_stats(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "provider": self.provider,
            "model": self._model,
            "active_turns": len(self._active_turns),
            "conversations": len(self._histories),
        }


__all__ = [
    "CompletionEngine",
    "CompletionEngineError",
    "EngineNotInitializedError",
    "OpenAICompletionEngine",
]
