"""
Shared test doubles: a controllable clock and a scripted completion provider.
"""

import pytest

from callsheet.extract.llm_provider import CompletionProvider, CompletionResponse


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedProvider(CompletionProvider):
    """
    Returns scripted responses in order.

    Each script entry is either a response string or an exception instance
    to raise. Once the script runs out, every call returns no contacts.
    """

    model = "scripted"

    def __init__(self, responses=None, clock=None, prompt_tokens=100, completion_tokens=50):
        self.responses = list(responses or [])
        self.clock = clock
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls: list[dict] = []

    def complete(self, system_prompt, user_prompt, max_output_tokens, temperature):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "max_output_tokens": max_output_tokens,
            "temperature": temperature,
            "time": self.clock() if self.clock else None,
        })
        item = self.responses.pop(0) if self.responses else '{"contacts": []}'
        if isinstance(item, BaseException):
            raise item
        return CompletionResponse(
            content=item,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )

    @property
    def call_times(self) -> list[float]:
        return [c["time"] for c in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_provider(clock):
    """Factory for ScriptedProvider bound to the test clock."""
    def _make(responses=None, **kwargs):
        return ScriptedProvider(responses, clock=clock, **kwargs)
    return _make
