"""
Interactive chat demo for the turnkv engine with a Hugging Face model.
"""

import os
import sys
import codecs
import signal
import asyncio
import argparse
import logging
import threading
import traceback
from typing import Optional

# --- Fix for UnicodeEncodeError on Windows ---
# Reconfigure stdout/stderr to use UTF-8 encoding if they don't already.
if sys.stdout.encoding.lower() not in ('utf-8', 'utf8'):
    try:
        sys.stdout.reconfigure(encoding='utf-8')
        sys.stderr.reconfigure(encoding='utf-8')
    except (TypeError, AttributeError):
        sys.stdout = codecs.getwriter('utf-8')(sys.stdout.buffer, 'strict')
        sys.stderr = codecs.getwriter('utf-8')(sys.stderr.buffer, 'strict')

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
src_root = os.path.join(project_root, "src")
if src_root not in sys.path:
    sys.path.insert(0, src_root)

from turnkv_engine import logger, initialize_backend, shutdown_backend
from turnkv_engine.turnkv_config import ModelConfiguration, load_model_configuration, save_model_configuration
from turnkv_engine.turnkv_engine import TurnKVEngine
from turnkv_engine.turnkv_state import TurnKVError
from app.engine_session import Colors, EngineSession

HELP_TEXT = """Commands:
  /new [title]     start a new conversation
  /list            list conversations
  /switch N        switch to conversation N
  /rename TITLE    rename the active conversation
  /history         show the active conversation
  /remove N        remove message N
  /purge N         remove message N and everything after it
  /clear           remove all messages
  /continue        continue the last reply
  /tokens          show the prompt size of the next turn
  /save PATH       save the model configuration
  /quit            exit
Press Ctrl+C while a reply is streaming to stop it."""


def parse_k_notation(k_string: Optional[str]) -> Optional[int]:
    """Converts K notation (e.g., '2K') or plain integer string to an int."""
    if k_string is None:
        return None
    k_string = k_string.strip().upper()
    try:
        if k_string.endswith('K'):
            return int(float(k_string[:-1]) * 1024)
        return int(k_string)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid size '{k_string}'. Expected a number or K notation like '4K'.")


def build_config(args: argparse.Namespace) -> ModelConfiguration:
    config = load_model_configuration(args.config) if args.config else None
    if args.config and config is None:
        print(f"[DEMO] Warning: Config not found at {args.config}; continuing with defaults.")
    config = config or ModelConfiguration()
    updates = {
        "model_path": args.model,
        "context_length": args.ctx,
        "max_generation_length": args.max_gen,
        "system_message": args.system,
        "device_map": args.device_map,
        "torch_dtype": args.dtype,
    }
    data = config.model_dump()
    data.update({key: value for key, value in updates.items() if value is not None})
    if args.no_thinking:
        data["enable_thinking"] = False
    if args.temperature is not None:
        data["sampler"]["temperature"] = args.temperature
    return ModelConfiguration.model_validate(data)


def print_metrics(outcome) -> None:
    m = outcome.metrics
    flags = []
    if outcome.was_cancelled:
        flags.append("cancelled")
    if outcome.was_truncated:
        flags.append(f"truncated: {outcome.stop_reason.value}")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    print(f"{Colors.METRICS}  prompt {m.get('prompt_tokens')} tokens ({m.get('new_prompt_tokens')} new), "
          f"generated {m.get('generated_tokens')}, ttft {m.get('time_to_first_token_sec')}s, "
          f"{m.get('generation_tokens_per_sec')} t/s{suffix}{Colors.RESET}")


async def run_turn(session: EngineSession, continuing: bool) -> None:
    loop = asyncio.get_running_loop()
    cancel_event = threading.Event()
    signal_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        signal_installed = True
    except NotImplementedError:
        logger.debug("[demo] SIGINT handler unavailable on this event loop; Ctrl+C ends the demo.")

    def on_progress(fraction, label):
        if fraction is None:
            sys.stdout.write("\r\033[K")
        else:
            sys.stdout.write(f"\r{Colors.DIM}{label} {int(fraction * 100)}%{Colors.RESET}")
        sys.stdout.flush()

    def on_text(text):
        sys.stdout.write(f"{Colors.LLM_CONTENT}{text}{Colors.RESET}")
        sys.stdout.flush()

    if not continuing:
        print(f"{Colors.LLM_HEADER}AI:{Colors.RESET}")
    try:
        outcome = await session.generate(continuing=continuing, on_progress=on_progress,
                                         on_text_delta=on_text, cancel_flag=cancel_event)
        sys.stdout.write("\n")
        print_metrics(outcome)
    finally:
        if signal_installed:
            loop.remove_signal_handler(signal.SIGINT)


def print_history(session: EngineSession) -> None:
    chat = session.active
    anchor_index = chat.anchor.resolve(chat.log)
    for i, turn in enumerate(chat.log):
        marker = ">" if i == anchor_index else " "
        header = Colors.YOU_HEADER if turn.role.value == "user" else Colors.LLM_HEADER
        print(f"{marker}{i:3d} {header}{turn.role.value}{Colors.RESET}: {turn.response_text}")
        if turn.thinking_text:
            print(f"      {Colors.THINKING}(thinking: {turn.thinking_text[:80]}){Colors.RESET}")


async def handle_command(session: EngineSession, line: str) -> bool:
    """Returns False when the demo should exit."""
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()
    chat = session.active

    if cmd in ("/quit", "/exit"):
        return False
    if cmd == "/help":
        print(HELP_TEXT)
    elif cmd == "/new":
        session.add_conversation(title=arg or None)
        await session.select_conversation(session.get_conversations_count() - 1)
        print(f"{Colors.SYSTEM}Started conversation {session.active_index}.{Colors.RESET}")
    elif cmd == "/list":
        for i, c in enumerate(session.conversations):
            marker = "*" if i == session.active_index else " "
            print(f"{marker}{i:3d} {c.title or c.id[:8]} ({len(c.log)} messages)")
    elif cmd == "/switch":
        await session.select_conversation(int(arg))
        print(f"{Colors.SYSTEM}Switched to conversation {arg}.{Colors.RESET}")
    elif cmd == "/rename":
        session.rename_conversation(session.active_index, arg)
        print(f"{Colors.SYSTEM}Renamed conversation {session.active_index} to '{arg}'.{Colors.RESET}")
    elif cmd == "/history":
        print_history(session)
    elif cmd == "/remove":
        await session.remove_turn(chat.log[int(arg)].turn_id)
    elif cmd == "/purge":
        removed = await session.purge_from(chat.log[int(arg)].turn_id)
        print(f"{Colors.SYSTEM}Removed {removed} messages.{Colors.RESET}")
    elif cmd == "/clear":
        await session.clear_all()
    elif cmd == "/continue":
        await run_turn(session, continuing=True)
    elif cmd == "/tokens":
        count = await session.recount_prompt_tokens()
        print(f"{Colors.SYSTEM}Next prompt: {count} tokens (context {session.config.context_length}).{Colors.RESET}")
    elif cmd == "/save":
        save_model_configuration(session.config, arg)
        print(f"{Colors.SYSTEM}Saved configuration to {arg}.{Colors.RESET}")
    else:
        print(f"{Colors.ERROR}Unknown command '{cmd}'. Type /help.{Colors.RESET}")
    return True


async def main_logic():
    parser = argparse.ArgumentParser(description="Chat with a model through the turnkv engine")
    parser.add_argument("--config", type=str, default=None, help="Path to a model configuration JSON file.")
    parser.add_argument("--model", type=str, default=None, help="Path or Hub ID of the model.")
    parser.add_argument("--ctx", type=parse_k_notation, default=None, help="Context length (e.g., '2K', '4096').")
    parser.add_argument("--max-gen", type=int, default=None, help="Maximum reply length in tokens. 0 means unbounded.")
    parser.add_argument("--system", type=str, default=None, help="System message.")
    parser.add_argument("--temperature", type=float, default=None, help="Sampling temperature. 0 selects greedy decoding.")
    parser.add_argument("--device-map", type=str, default=None, help="Device map for model loading (e.g., 'auto', 'cpu').")
    parser.add_argument("--dtype", type=str, default=None, choices=["auto", "float16", "bfloat16", "float32"], help="Torch dtype for the model.")
    parser.add_argument("--no-thinking", action="store_true", help="Ask templates that support it to skip reasoning.")
    parser.add_argument("--threads", type=int, default=None, help="CPU threads for the backend.")
    parser.add_argument("--log", type=str, default="warning", choices=["error", "warning", "info", "debug"], help="Console logging level.")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log.upper()))
    logger.setLevel(getattr(logging, args.log.upper()))

    config = build_config(args)
    if not config.model_path:
        config.model_path = input("Enter model path or Hub ID (or press Enter to quit): ").strip()
        if not config.model_path:
            print("[DEMO] No model path provided. Exiting.")
            return

    initialize_backend(args.threads)
    engine = TurnKVEngine(instance_id="demo", log_with_instance_id=True)
    session = EngineSession(engine, config, name="demo")
    print(f"[DEMO] Loading {config.model_path} ...")
    await session.load_model()
    session.add_conversation(title="chat")
    await session.select_conversation(0)
    print(HELP_TEXT)

    while True:
        try:
            line = (await asyncio.to_thread(input, f"{Colors.YOU_HEADER}You:{Colors.RESET} ")).strip()
        except EOFError:
            break
        if not line:
            continue
        try:
            if line.startswith("/"):
                if not await handle_command(session, line):
                    break
                continue
            session.add_user(line)
            await run_turn(session, continuing=False)
        except (TurnKVError, ValueError, IndexError) as e:
            print(f"{Colors.ERROR}{e}{Colors.RESET}")

    await engine.unload_model()


async def main_wrapper():
    try:
        await main_logic()
    except (asyncio.CancelledError, KeyboardInterrupt) as e:
        print(f"[DEMO] Interrupted ({type(e).__name__}).")
    except Exception as e:
        print(f"[DEMO] An unhandled exception occurred: {type(e).__name__} - {e}")
        traceback.print_exc()
    finally:
        shutdown_backend()

if __name__ == "__main__":
    asyncio.run(main_wrapper())
