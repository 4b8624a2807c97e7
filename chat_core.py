import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import torch
from transformers import AutoTokenizer, AutoModelForCausalLM

from settings import DEFAULT_MODEL, get_device

MODEL_NAME = DEFAULT_MODEL

SYSTEM_PROMPT = "You are a helpful assistant with knowledge of many things."


@dataclass
class GenerationOptions:
    max_new_tokens: Optional[int] = 128
    temperature: float = 1.0
    max_length: Optional[int] = None
    top_p: float = 1.0
    repetition_penalty: float = 1.0
    do_sample: bool = False


def load(model_name: Optional[str] = None, device: Optional[str] = None):
    tokenizer = AutoTokenizer.from_pretrained(model_name or MODEL_NAME)
    model = AutoModelForCausalLM.from_pretrained(
        model_name or MODEL_NAME,
        device_map=get_device(device),
        dtype=torch.float32,
    )
    model.eval()
    return tokenizer, model


def init_history(system_prompt: Optional[str] = None):
    return [{"role": "system", "content": system_prompt or SYSTEM_PROMPT}]


def describe_directory(root=".", limit: int = 1000) -> str:
    """Text outline of `root`, for giving the model some context about where it runs."""
    root = Path(root)
    lines = ["Here is the structure of the user's current directory:"]
    size = len(lines[0])

    def add(line):
        nonlocal size
        lines.append(line)
        size += len(line) + 1

    def walk(path: Path, indent: str):
        try:
            entries = sorted(path.iterdir(), key=lambda p: p.name)
        except OSError:
            return
        for entry in entries:
            if size > limit:
                return
            try:
                if entry.is_symlink():
                    add(f"{indent}Symlink: {entry.name}")
                elif entry.is_dir():
                    add(f"{indent}Directory: {entry.name}")
                    walk(entry, indent + "  ")
                elif entry.is_file():
                    add(f"{indent}File: {entry.name}")
                    if entry.name == "README.md":
                        add(f"{indent}Contents: {entry.read_text(encoding='utf-8', errors='replace')}")
            except OSError:
                continue

    walk(root, "")
    output = "\n".join(lines) + "\n\n"
    if len(output) > limit:
        output = output[:limit] + "\n...output truncated..."
    return output


class ChatSession:
    """Conversation history for one chat. Owned by the caller, passed to `chat`."""

    def __init__(self, system_prompt: Optional[str] = None, context: Optional[str] = None):
        self.system_prompt = system_prompt
        self.context = context
        self.reset()

    def reset(self):
        self.messages = init_history(self.system_prompt)
        if self.context:
            self.messages.append({"role": "system", "content": self.context})

    def add_user(self, text: str):
        self.messages.append({"role": "user", "content": text})

    def add_assistant(self, text: str):
        self.messages.append({"role": "assistant", "content": text})

    def save(self, path):
        Path(path).write_text(
            json.dumps(self.messages, ensure_ascii=False, indent=2),
            encoding="utf-8"
        )

    def load(self, path) -> int:
        """Append the turns stored in `path`. Return how many were added."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list) or not all(
                isinstance(m, dict) and isinstance(m.get("role"), str) and isinstance(m.get("content"), str)
                for m in data):
            raise ValueError(f"{path}: expected a list of {{role, content}} messages")
        self.messages.extend({"role": m["role"], "content": m["content"]} for m in data)
        return len(data)


def generate(tokenizer, model, messages, options: GenerationOptions) -> str:
    prompt = tokenizer.apply_chat_template(
        messages,
        tokenize=False,
        add_generation_prompt=True,
    )
    inputs = tokenizer(prompt, return_tensors="pt").to(model.device)

    gen_kwargs = dict(
        eos_token_id=tokenizer.eos_token_id,
        repetition_penalty=options.repetition_penalty,
        do_sample=options.do_sample,
    )
    # Same precedence as transformers: max_length only applies without max_new_tokens.
    if options.max_new_tokens is not None:
        gen_kwargs["max_new_tokens"] = options.max_new_tokens
    elif options.max_length is not None:
        gen_kwargs["max_length"] = options.max_length
    if options.do_sample:
        gen_kwargs.update(dict(temperature=options.temperature, top_p=options.top_p))

    with torch.no_grad():
        output = model.generate(**inputs, **gen_kwargs)

    gen_ids = output[0][inputs["input_ids"].shape[-1]:]
    return "" if gen_ids.numel() == 0 else tokenizer.decode(gen_ids, skip_special_tokens=True).strip()


class TransformersOracle:
    """Adapts a loaded model to the `(messages, options) -> text` call the reasoning engine makes."""

    def __init__(self, tokenizer, model, do_sample: bool = False):
        self.tokenizer = tokenizer
        self.model = model
        self.do_sample = do_sample

    def __call__(self, messages, options) -> str:
        return generate(self.tokenizer, self.model, messages, GenerationOptions(
            max_new_tokens=options.max_new_tokens,
            temperature=options.temperature,
            max_length=options.max_length,
            do_sample=self.do_sample,
        ))


def chat(tokenizer, model, session: ChatSession, user_text: str, options: GenerationOptions) -> str:
    session.add_user(user_text)
    answer = generate(tokenizer, model, session.messages, options)
    session.add_assistant(answer)
    return answer


def options_from_config(config) -> GenerationOptions:
    return GenerationOptions(
        max_new_tokens=config.max_new_tokens,
        temperature=config.temperature,
        max_length=config.max_length,
        top_p=config.top_p,
        repetition_penalty=config.repetition_penalty,
        do_sample=config.temperature != 1.0 or config.top_p != 1.0,
    )
