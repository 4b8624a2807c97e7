"""Step-by-step reasoning chain on top of a chat model.

The model is asked for one JSON step at a time (`title`, `content`, `next_action`).
Every step is fed back as an assistant turn, so the model sees its own chain on the
next call. When it says `final_answer` (or the step ceiling is hit) we ask once more
for the final answer.

`ReasoningEngine.run_session` is a generator of `SessionSnapshot`s. Each snapshot holds
the whole chain so far; the last one has `total_thinking_time` set.
"""

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert AI assistant that explains your reasoning step by step. "
    "For each step, provide a title that describes what you're doing in that step, "
    "along with the content. Decide if you need another step or if you're ready to give "
    "the final answer. Respond in JSON format with 'title', 'content', and 'next_action' "
    "(either 'continue' or 'final_answer') keys."
)

ASSISTANT_ACK = (
    "Thank you! I will now think step by step following my instructions, "
    "starting at the beginning after decomposing the problem."
)

FINAL_ANSWER_REQUEST = "Please provide the final answer based on your reasoning above."

FINAL_ANSWER_TITLE = "Final Answer"

Message = dict
Oracle = Callable[[List[Message], "OracleOptions"], str]


def _env_number(name: str, default, cast=float):
    value = os.getenv(name)
    return default if value in (None, "") else cast(value)


@dataclass
class ReasoningConfig:
    temperature: float = 0.2
    step_max_new_tokens: int = 300
    final_max_new_tokens: int = 200
    max_length: int = 300
    max_steps: int = 25
    max_attempts: int = 3
    retry_delay: float = 1.0  # seconds, constant between attempts

    @classmethod
    def from_env(cls) -> "ReasoningConfig":
        d = cls()
        return cls(
            temperature=_env_number("REASONING_TEMPERATURE", d.temperature),
            step_max_new_tokens=_env_number("REASONING_STEP_TOKENS", d.step_max_new_tokens, int),
            final_max_new_tokens=_env_number("REASONING_FINAL_TOKENS", d.final_max_new_tokens, int),
            max_length=_env_number("REASONING_MAX_LENGTH", d.max_length, int),
            max_steps=_env_number("REASONING_MAX_STEPS", d.max_steps, int),
            max_attempts=_env_number("REASONING_MAX_ATTEMPTS", d.max_attempts, int),
            retry_delay=_env_number("REASONING_RETRY_DELAY", d.retry_delay),
        )


@dataclass(frozen=True)
class OracleOptions:
    """What the engine asks of one generation call."""
    max_new_tokens: int
    temperature: float
    max_length: int


@dataclass(frozen=True)
class ReasoningStep:
    title: str
    content: str
    thinking_time: float


@dataclass(frozen=True)
class SessionSnapshot:
    steps: tuple
    total_thinking_time: Optional[float] = None

    @property
    def finished(self) -> bool:
        return self.total_thinking_time is not None


class MalformedStepError(ValueError):
    """Oracle output could not be read as a reasoning step."""


class OracleStepResult(BaseModel):
    title: str
    content: str
    next_action: Literal["continue", "final_answer"] = "continue"


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_step(text: str) -> OracleStepResult:
    """Read one step out of raw model text.

    Small models like to wrap JSON in code fences or chat around it,
    so we look for the outermost `{...}` before validating.
    """
    text = (text or "").strip()
    m = _FENCE.search(text)
    if m:
        text = m.group(1).strip()
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise MalformedStepError(f"no JSON object in model output: {text[:80]!r}")
    try:
        return OracleStepResult.model_validate_json(text[start:end + 1])
    except ValidationError as exc:
        raise MalformedStepError(str(exc)) from exc


@dataclass(frozen=True)
class StepOk:
    result: OracleStepResult
    attempts: int = 1


@dataclass(frozen=True)
class StepFailed:
    reason: str
    attempts: int

    def as_result(self, final: bool) -> OracleStepResult:
        """The visible "Error" record that stands in for a failed call."""
        if final:
            return OracleStepResult(
                title="Error",
                content=f"Failed to generate final answer after {self.attempts} attempts. Error: {self.reason}",
            )
        return OracleStepResult(
            title="Error",
            content=f"Failed to generate step after {self.attempts} attempts. Error: {self.reason}",
            next_action="final_answer",
        )


StepOutcome = Union[StepOk, StepFailed]


def seed_messages(prompt: str) -> List[Message]:
    return [{"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
            {"role": "assistant", "content": ASSISTANT_ACK}]


@dataclass
class ReasoningEngine:
    oracle: Oracle
    config: ReasoningConfig = field(default_factory=ReasoningConfig)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.perf_counter

    def call_oracle(self, messages: List[Message], max_new_tokens: int, final: bool = False) -> StepOutcome:
        """One oracle round trip, retried on exceptions and unreadable output."""
        cfg = self.config
        options = OracleOptions(max_new_tokens=max_new_tokens,
                                temperature=cfg.temperature,
                                max_length=cfg.max_length)
        what = "final answer" if final else "step"
        reason = "no attempts made"
        for attempt in range(1, cfg.max_attempts + 1):
            try:
                return StepOk(parse_step(self.oracle(list(messages), options)), attempt)
            except Exception as exc:
                reason = str(exc) or type(exc).__name__
                if attempt == cfg.max_attempts:
                    break
                logger.warning(f"call_oracle: {what}: attempt {attempt}/{cfg.max_attempts} failed ({type(exc).__name__}: {reason}); retrying in {cfg.retry_delay}s")
                self.sleep(cfg.retry_delay)
        logger.error(f"call_oracle: {what}: giving up after {cfg.max_attempts} attempts: {reason}")
        return StepFailed(reason=reason, attempts=cfg.max_attempts)

    def _timed_call(self, messages, max_new_tokens, final=False):
        start = self.clock()
        outcome = self.call_oracle(messages, max_new_tokens, final)
        elapsed = self.clock() - start
        if isinstance(outcome, StepFailed):
            return outcome.as_result(final), elapsed
        return outcome.result, elapsed

    def run_session(self, prompt: str) -> Iterator[SessionSnapshot]:
        """Reason about `prompt`, yielding the cumulative chain after every step.

        The caller filters out empty prompts.
        """
        cfg = self.config
        messages = seed_messages(prompt)
        steps: List[ReasoningStep] = []
        total = 0.0
        step_count = 1
        logger.info(f"run_session: starting, prompt of {len(prompt)} chars")

        while True:
            result, elapsed = self._timed_call(messages, cfg.step_max_new_tokens)
            total += elapsed
            steps.append(ReasoningStep(title=f"Step {step_count}: {result.title}",
                                       content=result.content,
                                       thinking_time=elapsed))
            messages.append({"role": "assistant", "content": result.model_dump_json()})
            yield SessionSnapshot(steps=tuple(steps))
            if result.next_action == "final_answer" or step_count >= cfg.max_steps:
                break
            step_count += 1

        messages.append({"role": "user", "content": FINAL_ANSWER_REQUEST})
        result, elapsed = self._timed_call(messages, cfg.final_max_new_tokens, final=True)
        total += elapsed
        steps.append(ReasoningStep(title=FINAL_ANSWER_TITLE,
                                   content=result.content,
                                   thinking_time=elapsed))
        logger.info(f"run_session: done, {len(steps)} steps in {total:0.2f}s")
        yield SessionSnapshot(steps=tuple(steps), total_thinking_time=total)


def run_to_completion(engine: ReasoningEngine, prompt: str) -> SessionSnapshot:
    """Drain a session, returning the finished snapshot."""
    snapshot = None
    for snapshot in engine.run_session(prompt):
        pass
    return snapshot


def format_steps(snapshot: SessionSnapshot) -> str:
    """Markdown for the whole chain in `snapshot`."""
    parts = []
    for step in snapshot.steps:
        if step.title == FINAL_ANSWER_TITLE:
            parts.append(f"### {step.title}\n{step.content}")
        else:
            parts.append(f"\n**{step.title}**\n{step.content}")
    return "\n".join(parts)


def snapshot_to_dict(snapshot: SessionSnapshot) -> dict:
    return {"steps": [{"title": s.title, "content": s.content, "thinking_time": s.thinking_time}
                      for s in snapshot.steps],
            "total_thinking_time": snapshot.total_thinking_time}
