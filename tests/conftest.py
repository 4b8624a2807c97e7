"""Shared fixtures: scripted oracles and a deterministic clock."""

import itertools
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


def step_json(title, content, next_action=None):
    data = {"title": title, "content": content}
    if next_action is not None:
        data["next_action"] = next_action
    return json.dumps(data)


class ScriptedOracle:
    """Returns the scripted replies in order, then keeps repeating the last one.

    A reply that is an exception instance is raised instead of returned.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, messages, options):
        self.calls.append((messages, options))
        reply = self.replies[min(len(self.calls), len(self.replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self, tick=0.5):
        self.ticks = itertools.count(step=tick)

    def __call__(self):
        return next(self.ticks)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_engine(sleeps):
    from reasoning import ReasoningEngine

    def _make(oracle, config=None, tick=0.5):
        kwargs = {} if config is None else {"config": config}
        return ReasoningEngine(oracle, sleep=sleeps.append, clock=FakeClock(tick), **kwargs)
    return _make
