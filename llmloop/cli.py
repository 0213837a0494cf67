"""
llmloop CLI - Command-line interface for the agent runtime.

Commands:
    llmloop profiles                         List compatibility profiles
    llmloop probe [--endpoint URL]           Probe a local model server
    llmloop run --config FILE "prompt"       Run one agent conversation
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from .adapters.base import AdapterConfig
from .adapters.local_probe import DEFAULT_LOCAL_ENDPOINT, LocalProbeService, ProbeConfig
from .adapters.profiles import list_profiles, resolve_profile
from .agent import AgentLoop, StopReason
from .config import RuntimeConfig
from .exceptions import ConfigError
from .observability import configure_logging
from .tools import ToolRegistry


def cmd_profiles(args: argparse.Namespace) -> None:
    """List registered compatibility profiles and their quirks."""
    for name in list_profiles():
        profile = resolve_profile(name)
        print(f"  {profile.name}")
        print(f"    max tokens field: {profile.max_tokens_field.value}")
        print(f"    reasoning: {profile.reasoning_mode.value}")
        print(f"    tool calls: {profile.tool_call_format.value}")
        print(f"    streaming: {'yes' if profile.supports_streaming else 'no'}")
        print(f"    path: {profile.api_path}")
        print()


def cmd_probe(args: argparse.Namespace) -> None:
    """Check that a local endpoint is up and list its models."""
    config = ProbeConfig(endpoint_url=args.endpoint, timeout=args.timeout)
    status = asyncio.run(LocalProbeService(config).probe())
    print(status)
    for model in status.models:
        print(f"  - {model.display_name}")
    if not status.is_available:
        sys.exit(1)


def cmd_run(args: argparse.Namespace) -> None:
    """Run one conversation with the configured provider."""
    try:
        config = (
            RuntimeConfig.from_yaml(args.config) if args.config else RuntimeConfig.from_env()
        )
        configure_logging(config.log_level)
        adapter_config = AdapterConfig(
            on_token=(lambda token, request_id: print(token, end="", flush=True))
            if args.stream
            else None
        )
        provider = config.build_provider(args.provider, adapter_config)
    except ConfigError as e:
        print(f"Config Error: {e}", file=sys.stderr)
        sys.exit(2)

    loop = AgentLoop(
        provider,
        ToolRegistry(config.tool_mode),
        config.agent,
        breakers=config.create_breakers(),
        retry_policy=config.retry,
    )

    try:
        result = asyncio.run(_run_and_close(loop, provider, args.prompt))
    except KeyboardInterrupt:
        print("\nRun cancelled", file=sys.stderr)
        sys.exit(130)

    if args.stream:
        print()
    else:
        print(result.final_text)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))

    usage = result.total_usage
    print(
        f"\n[{result.stop_reason.value if result.stop_reason else 'unknown'}] "
        f"{len(result.turns)} turn(s), {usage.prompt_tokens} prompt + "
        f"{usage.completion_tokens} completion tokens",
        file=sys.stderr,
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    if result.stop_reason != StopReason.COMPLETE:
        sys.exit(1)


async def _run_and_close(loop: AgentLoop, provider, prompt: str):
    try:
        return await loop.run(prompt)
    finally:
        await provider.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmloop",
        description="llmloop - Provider-agnostic LLM agent runtime",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Profiles command
    profiles_parser = subparsers.add_parser(
        "profiles", help="List vendor compatibility profiles"
    )
    profiles_parser.set_defaults(func=cmd_profiles)

    # Probe command
    probe_parser = subparsers.add_parser("probe", help="Probe a local model server")
    probe_parser.add_argument(
        "--endpoint",
        default=DEFAULT_LOCAL_ENDPOINT,
        help=f"Endpoint URL (default: {DEFAULT_LOCAL_ENDPOINT})",
    )
    probe_parser.add_argument(
        "--timeout", type=float, default=5.0, help="Per-request timeout in seconds"
    )
    probe_parser.set_defaults(func=cmd_probe)

    # Run command
    run_parser = subparsers.add_parser("run", help="Run one agent conversation")
    run_parser.add_argument("prompt", help="User message")
    run_parser.add_argument(
        "--config", "-c", help="YAML config file (default: LLMLOOP_* environment)"
    )
    run_parser.add_argument("--provider", "-p", help="Provider name from the config")
    run_parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        help="Print the answer only when the run finishes",
    )
    run_parser.add_argument(
        "--json", action="store_true", help="Also print the full result as JSON"
    )
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    args.func(args)


if __name__ == "__main__":
    main()
