"""One-shot command-line entry point.

Sends a single prompt through the engine and streams the answer to stdout:

    python -m conduit "Explain this stack trace" < trace.txt
    python -m conduit --model deepseek-chat "Hello"

Configuration comes from Settings (CONDUIT_* env vars and .env); the flags
only override the most common fields.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

import httpx

from conduit.config import Settings
from conduit.engine import Engine
from conduit.errors import ConduitError, RequestCancelledError
from conduit.messages import Message
from conduit.providers import create_provider
from conduit.providers.base import AbortSignal, StreamOptions
from conduit.retry import format_error_message

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conduit",
        description="Send one prompt to the configured LLM and stream the reply.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text (read from stdin when omitted)")
    parser.add_argument("--model", "-m", help="Model name (provider is detected from it)")
    parser.add_argument(
        "--provider",
        "-p",
        choices=["anthropic", "deepseek", "lmstudio"],
        help="Force a provider",
    )
    parser.add_argument("--system", "-s", help="System prompt")
    parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {
        "model": args.model,
        "provider": args.provider,
        "system_prompt": args.system,
        "max_tokens": args.max_tokens,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


async def run(settings: Settings, prompt: str) -> int:
    provider = create_provider(None, settings)
    engine = Engine(settings, provider)
    abort_signal = AbortSignal()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort_signal.abort)
    except NotImplementedError:
        pass  # Windows: Ctrl-C raises KeyboardInterrupt instead

    def on_retry(attempt: int, error: BaseException, delay: float) -> None:
        print(
            f"\n[retry {attempt}] {format_error_message(error)}; waiting {delay:.1f}s",
            file=sys.stderr,
        )

    options = StreamOptions(
        on_text_delta=lambda text: print(text, end="", flush=True),
        abort_signal=abort_signal,
    )
    try:
        result = await engine.complete([Message.user(prompt)], options=options, on_retry=on_retry)
    except RequestCancelledError:
        print("\n[cancelled]", file=sys.stderr)
        return 130
    except (ConduitError, httpx.HTTPError, OSError) as e:
        logger.debug("Request failed", exc_info=True)
        print(f"\n{format_error_message(e)}", file=sys.stderr)
        return 1
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        await engine.aclose()

    print()
    if result.stop_reason == "max_tokens":
        print("[output truncated at max_tokens]", file=sys.stderr)
    return 0


def main() -> None:
    """Entry point: parse flags, configure logging, run one turn."""
    args = build_parser().parse_args()
    settings = _settings_from_args(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    prompt = " ".join(args.prompt) if args.prompt else sys.stdin.read()
    if not prompt.strip():
        print("conduit: empty prompt", file=sys.stderr)
        sys.exit(2)

    logger.info("Provider: %s, model: %s", settings.provider, settings.model)
    if not settings.api_key and settings.provider != "lmstudio":
        logger.warning("No API key configured for %s; requests will fail", settings.provider)

    sys.exit(asyncio.run(run(settings, prompt)))


if __name__ == "__main__":
    main()
