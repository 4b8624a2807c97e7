import argparse
import logging
from pathlib import Path

from chat_core import ChatSession, chat, describe_directory, load, options_from_config
from settings import load_config, resolve_model

logger = logging.getLogger(__name__)

HELP = """
    /help        - Show this help message.
    /exit        - Exit the chat.
    /save [file] - Save the chat history to a file.
    /load [file] - Load a chat history from a file."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="An LLM in your terminal, running on transformers.")
    parser.add_argument("-m", "--model", help="model to use (default: from chat-config.toml, LLM_MODEL, or Qwen2-1.5B-Instruct)")
    parser.add_argument("-d", "--device", help="device to load the model on (default: LLM_DEVICE or cpu)")
    parser.add_argument("--config", help="path to chat-config.toml")
    parser.add_argument("--no-cwd", action="store_true", help="do not tell the model about the current directory")
    return parser


def handle_command(session: ChatSession, command: str) -> bool:
    """Run a slash command. Return False when the chat should end."""
    name, _, arg = command.partition(" ")
    arg = arg.strip()
    if name == "/exit":
        return False
    if name == "/help":
        print(HELP)
    elif name in ("/save", "/load"):
        if not arg:
            print("Please provide a file name.")
        elif name == "/save":
            try:
                session.save(arg)
            except OSError as exc:
                logger.error(f"handle_command: could not save '{arg}': {exc}")
                print(f"Could not save {arg}: {exc}")
            else:
                print(f"Chat history saved to {arg}.")
        else:
            try:
                n = session.load(arg)
            except (OSError, ValueError) as exc:
                logger.error(f"handle_command: could not load '{arg}': {exc}")
                print(f"Could not load {arg}: {exc}")
            else:
                print(f"Chat history loaded from {arg} ({n} messages).")
    else:
        print(f"Unknown command {name}. Type /help for a list of commands.")
    return True


def main(argv=None):
    logging.basicConfig(level=logging.INFO)
    args = build_parser().parse_args(argv)

    config = load_config(args.config)
    if config.source:
        print(f"Loading configuration from {config.source}...\n")
    model_name = resolve_model(args.model, config)

    print(f"🔻 Loading {model_name}...")
    tokenizer, model = load(model_name, args.device)
    print("✅ Model loaded!")

    context = None if args.no_cwd else describe_directory(Path.cwd())
    session = ChatSession(system_prompt=config.system_prompt, context=context)
    options = options_from_config(config)

    print("Chat ready. Type '/exit' to quit, '/help' for a list of commands.\n")

    while True:
        try:
            user_text = input(">>> ").strip()
        except EOFError:
            break
        if user_text.lower() in {"exit", "quit"}:
            break
        if not user_text:
            continue
        if user_text.startswith("/"):
            if not handle_command(session, user_text):
                break
            continue

        answer = chat(tokenizer, model, session, user_text, options)
        print(answer)
        print("-" * 40)

if __name__ == "__main__":
    main()
