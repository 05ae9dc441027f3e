"""
chat/llm.py -- Outbound chat-completion call (OpenAI-compatible HTTP API).

Builds the request from a conversation's recent history and returns the
assistant's reply text. Any OpenAI-compatible server works by pointing
OPENAI_BASE_URL at it.

Role mapping is an explicit table over the closed MessageRole enum. A role
with no entry in the table is a programming error (KeyError), not something
to default around at request time.

Errors: transport failures, non-2xx responses, and responses without a
reply all raise ChatCompletionError. The messages route treats that as
"no assistant reply this time" -- the user's own message is already stored.
"""

import logging
from collections.abc import Sequence
from typing import Any, Optional

import requests

from chat.models import Message, MessageRole

logger = logging.getLogger("ragchat.llm")

SYSTEM_PROMPT = "You are a helpful and polite chatbot assistant."
_CONTEXT_PREAMBLE = "\n\nPlease use the following context from documents to answer the user's question:\n"
_DOCUMENT_SEPARATOR = "\n---\n"

_WIRE_ROLES: dict[MessageRole, str] = {
    MessageRole.user: "user",
    MessageRole.assistant: "assistant",
    MessageRole.system: "system",
}


class ChatCompletionError(Exception):
    """The chat-completion endpoint could not produce a reply."""


def build_chat_messages(history: Sequence[Message], documents: Sequence[str] = ()) -> list[dict[str, str]]:
    """Return the wire-format message list: system prompt first, then history in order."""
    system_prompt = SYSTEM_PROMPT
    if documents:
        system_prompt += _CONTEXT_PREAMBLE + _DOCUMENT_SEPARATOR.join(documents)

    messages = [{"role": _WIRE_ROLES[MessageRole.system], "content": system_prompt}]
    for message in history:
        messages.append({"role": _WIRE_ROLES[MessageRole(message.role)], "content": message.content})
    return messages


class ChatCompletionClient:
    """Thin client for POST {base_url}/chat/completions.

    Usage:
        client = ChatCompletionClient(api_key, base_url="https://api.openai.com/v1")
        reply = client.complete(store.recent_messages(conv_id))
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("ChatCompletionClient requires an API key.")
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self.model = model
        self._timeout = timeout
        self._session = session or requests.Session()
        # Known endpoint; no reason to follow long redirect chains.
        self._session.max_redirects = 3

    def complete(self, history: Sequence[Message], documents: Sequence[str] = ()) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": build_chat_messages(history, documents),
        }
        try:
            resp = self._session.post(
                self._url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            logger.warning("Chat completion request failed: %s", exc)
            raise ChatCompletionError(str(exc)) from exc
        except ValueError as exc:
            raise ChatCompletionError("Chat completion response was not JSON") from exc

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ChatCompletionError("Chat completion response had no choices") from exc
        if not content:
            raise ChatCompletionError("Chat completion returned an empty reply")
        return content

    def close(self) -> None:
        self._session.close()
