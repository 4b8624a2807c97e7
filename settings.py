# settings.py
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_MODEL = "Qwen/Qwen2-1.5B-Instruct"
CONFIG_FILE = "chat-config.toml"


@dataclass
class ChatConfig:
    """Contents of the `[config]` table in chat-config.toml."""
    model: Optional[str] = None
    system: List[str] = field(default_factory=list)
    max_new_tokens: int = 128
    temperature: float = 1.0
    max_length: int = 20
    top_p: float = 1.0
    repetition_penalty: float = 1.0
    source: Optional[Path] = None

    @property
    def system_prompt(self) -> Optional[str]:
        return "\n".join(self.system) if self.system else None


def config_path(path=None) -> Path:
    return Path(path or os.getenv("CHAT_CONFIG", CONFIG_FILE))


def load_config(path=None) -> ChatConfig:
    p = config_path(path)
    if not p.exists():
        return ChatConfig()
    try:
        data = tomllib.loads(p.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"{p}: invalid TOML: {exc}") from exc

    table = data.get("config", {})
    system = table.get("system", [])
    if isinstance(system, str):
        system = [system]
    return ChatConfig(
        model=table.get("model"),
        system=list(system),
        max_new_tokens=int(table.get("max_new_tokens", 128)),
        temperature=float(table.get("temperature", 1.0)),
        max_length=int(table.get("max_length", 20)),
        top_p=float(table.get("top_p", 1.0)),
        repetition_penalty=float(table.get("repetition_penalty", 1.0)),
        source=p,
    )


def resolve_model(cli_model: Optional[str], config: ChatConfig) -> str:
    return cli_model or config.model or os.getenv("LLM_MODEL") or DEFAULT_MODEL


def get_device(cli_device: Optional[str] = None) -> str:
    return cli_device or os.getenv("LLM_DEVICE", "cpu")
