"""Response producers: the services that turn conversation history into text chunks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

import anthropic

from .config import ANTHROPIC_API_KEY, DEFAULT_MAX_TOKENS, DEFAULT_MODEL, MOCK_DELAY
from .errors import CollaboratorFailure, FailureKind

logger = logging.getLogger(__name__)


@dataclass
class StreamChunk:
    """A chunk of streamed response; ``is_final`` marks the end of output."""

    text: str
    is_final: bool = False
    usage: dict[str, int] | None = None


class ResponseProducer(ABC):
    """Stateless text producer consumed by the response stream controller.

    Producers receive the ordered history and optional system instructions
    and yield chunks, finishing with a chunk whose ``is_final`` is set.
    Failures are raised as :class:`CollaboratorFailure`.
    """

    @abstractmethod
    def stream(
        self,
        history: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...


class AnthropicProducer(ResponseProducer):
    """Streams from the Anthropic Messages API."""

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL,
        api_key: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        api_key = api_key or ANTHROPIC_API_KEY
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY environment variable is not set. "
                "Please set it to your Anthropic API key."
            )
        self._model_id = model_id
        self._max_tokens = max_tokens
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    @property
    def model_id(self) -> str:
        return self._model_id

    async def stream(
        self,
        history: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        try:
            async with self._client.messages.stream(
                model=self._model_id,
                max_tokens=self._max_tokens,
                system=system if system else anthropic.NOT_GIVEN,
                messages=history,
            ) as stream:
                async for text in stream.text_stream:
                    yield StreamChunk(text=text)

                final_message = await stream.get_final_message()
                yield StreamChunk(
                    text="",
                    is_final=True,
                    usage={
                        "input_tokens": final_message.usage.input_tokens,
                        "output_tokens": final_message.usage.output_tokens,
                    },
                )
        except anthropic.APIError as e:
            raise classify_api_error(e) from e


def classify_api_error(error: anthropic.APIError) -> CollaboratorFailure:
    if isinstance(error, anthropic.RateLimitError):
        kind = FailureKind.RATE_LIMITED
    elif isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        kind = FailureKind.UNAUTHENTICATED
    elif isinstance(error, anthropic.APIConnectionError):
        kind = FailureKind.NETWORK
    elif isinstance(error, anthropic.APIStatusError) and error.status_code >= 500:
        kind = FailureKind.NETWORK
    else:
        kind = FailureKind.INVALID
    return CollaboratorFailure(kind, f"Anthropic API error: {error}")


class ScriptedProducer(ResponseProducer):
    """Replays a fixed chunk sequence.

    ``fail_after`` raises ``failure`` once that many chunks went out.
    ``hold_after`` parks the stream after that many chunks until
    :meth:`release` is called.
    """

    def __init__(
        self,
        chunks: list[str],
        fail_after: int | None = None,
        failure: Exception | None = None,
        hold_after: int | None = None,
        delay: float = 0.0,
        usage: dict[str, int] | None = None,
    ):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.failure = failure or CollaboratorFailure(FailureKind.NETWORK, "scripted failure")
        self.hold_after = hold_after
        self.delay = delay
        self.usage = usage
        self.calls: list[tuple[list[dict[str, Any]], str | None]] = []
        self._released = asyncio.Event()

    @property
    def model_id(self) -> str:
        return "scripted"

    def release(self):
        self._released.set()

    async def stream(
        self,
        history: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append((history, system))
        for sent, text in enumerate(self.chunks):
            if sent == self.fail_after:
                raise self.failure
            if sent == self.hold_after:
                await self._released.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamChunk(text=text)
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise self.failure
        yield StreamChunk(text="", is_final=True, usage=self.usage)


MOCK_RESPONSES: dict[str, str] = {
    "html": (
        "Here's an HTML page with a red button:\n\n"
        "```html\n"
        "<!DOCTYPE html>\n"
        "<html lang=\"en\">\n"
        "<head>\n"
        "  <meta charset=\"UTF-8\">\n"
        "  <title>Red Button</title>\n"
        "  <style>\n"
        "    .red-button { background: #e74c3c; color: white; padding: 12px 24px; border: none; border-radius: 6px; }\n"
        "  </style>\n"
        "</head>\n"
        "<body>\n"
        "  <button class=\"red-button\" onclick=\"alert('Clicked!')\">Click Me</button>\n"
        "</body>\n"
        "</html>\n"
        "```\n\n"
        "The button turns the page's only control red and shows an alert when clicked."
    ),
    "svg": (
        "Here's an SVG circle icon:\n\n"
        "```svg\n"
        "<svg width=\"100\" height=\"100\" viewBox=\"0 0 100 100\" xmlns=\"http://www.w3.org/2000/svg\">\n"
        "  <circle cx=\"50\" cy=\"50\" r=\"40\" fill=\"#3498db\" stroke=\"#2c3e50\" stroke-width=\"3\"/>\n"
        "</svg>\n"
        "```\n\n"
        "A blue circle with a dark outline."
    ),
    "mermaid": (
        "Here's a simple flowchart:\n\n"
        "```mermaid\n"
        "graph TD\n"
        "    A[Start] --> B{Valid input?}\n"
        "    B -->|Yes| C[Process]\n"
        "    B -->|No| D[Reject]\n"
        "    C --> E[End]\n"
        "    D --> E\n"
        "```\n\n"
        "The diagram has a single decision point."
    ),
    "react": (
        "Here's a React counter component:\n\n"
        "```jsx\n"
        "function Counter() {\n"
        "  const [count, setCount] = React.useState(0);\n"
        "  return (\n"
        "    <div>\n"
        "      <button onClick={() => setCount(count - 1)}>-</button>\n"
        "      <span>{count}</span>\n"
        "      <button onClick={() => setCount(count + 1)}>+</button>\n"
        "    </div>\n"
        "  );\n"
        "}\n"
        "```\n\n"
        "It keeps the count in component state."
    ),
    "document": (
        "Here's a short policy document:\n\n"
        "```markdown\n"
        "# Remote Work Guidelines\n\n"
        "## Purpose\n\n"
        "These guidelines describe how remote work is arranged and reviewed.\n\n"
        "## Expectations\n\n"
        "- Be reachable during core hours\n"
        "- Attend scheduled meetings by video\n"
        "```\n\n"
        "Adjust the sections to your organization."
    ),
    "code": (
        "Here's a simple Python hello world function:\n\n"
        "```python\n"
        "def hello_world():\n"
        "    print('Hello, World!')\n"
        "    return 'Hello, World!'\n"
        "```\n\n"
        "It prints the greeting and returns it."
    ),
    "default": "I'm a mock response. Set ANTHROPIC_API_KEY to get real responses.",
}

# Checked in order; the first keyword group found in the prompt wins
MOCK_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("html", ("html", "webpage", "web page", "red button")),
    ("svg", ("svg", "icon")),
    ("mermaid", ("mermaid", "diagram", "flowchart")),
    ("react", ("react", "counter")),
    ("document", ("document", "business letter", "policy")),
    ("code", ("code", "function", "python", "javascript")),
]


def pick_mock_response(prompt: str) -> str:
    lowered = prompt.lower()
    for key, keywords in MOCK_KEYWORDS:
        if any(k in lowered for k in keywords):
            return MOCK_RESPONSES[key]
    return MOCK_RESPONSES["default"]


class MockProducer(ResponseProducer):
    """Offline stand-in: answers the last user message with a canned reply, word by word."""

    def __init__(self, delay: float = MOCK_DELAY):
        self.delay = delay

    @property
    def model_id(self) -> str:
        return "mock"

    async def stream(
        self,
        history: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        prompt = next(
            (m["content"] for m in reversed(history) if m["role"] == "user"), ""
        )
        response = pick_mock_response(prompt)
        words = response.split(" ")
        for i, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamChunk(text=word + (" " if i < len(words) - 1 else ""))

        output_tokens = len(response) // 4
        input_tokens = sum(len(m["content"]) for m in history) // 4
        yield StreamChunk(
            text="",
            is_final=True,
            usage={"input_tokens": input_tokens, "output_tokens": output_tokens},
        )


def build_producer(model: str = DEFAULT_MODEL) -> ResponseProducer:
    """Use the Anthropic API when a key is configured, the mock otherwise."""
    if ANTHROPIC_API_KEY:
        return AnthropicProducer(model_id=model)
    logger.warning("ANTHROPIC_API_KEY not set; using the mock response producer")
    return MockProducer()
