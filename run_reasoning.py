import argparse
import logging

from chat_core import TransformersOracle, load
from reasoning import ReasoningConfig, ReasoningEngine, format_steps
from settings import load_config, resolve_model


def render_session(engine: ReasoningEngine, prompt: str, out=print, clear=None):
    """Print the chain again after every snapshot. Return the finished snapshot."""
    snapshot = None
    for snapshot in engine.run_session(prompt):
        if clear is not None:
            clear()
        out(format_steps(snapshot))
        if snapshot.finished:
            out(f"\nTotal thinking time: {snapshot.total_thinking_time:.2f} seconds")
    return snapshot


def _clear_screen():
    print("\033[2J\033[H", end="")


def main(argv=None):
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Step-by-step reasoning chains from a local model.")
    parser.add_argument("-m", "--model", help="model to use")
    parser.add_argument("-d", "--device", help="device to load the model on")
    parser.add_argument("--config", help="path to chat-config.toml (only its model is used)")
    args = parser.parse_args(argv)

    model_name = resolve_model(args.model, load_config(args.config))
    print(f"🔻 Loading {model_name}...")
    tokenizer, model = load(model_name, args.device)
    print("✅ Model loaded!")

    engine = ReasoningEngine(TransformersOracle(tokenizer, model), ReasoningConfig.from_env())

    while True:
        print("\n\n════════════════")
        try:
            res = input("Enter a message ▪ ").strip()
        except EOFError:
            break
        if not res:
            continue
        if res == "/exit":
            break
        print("Generating response...")
        render_session(engine, res, clear=_clear_screen)

if __name__ == "__main__":
    main()
