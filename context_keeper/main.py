"""CLI entry point for context-keeper."""

import argparse
import json
import logging
import sys

from context_keeper.api.server import start_server
from context_keeper.config import KeeperConfig
from context_keeper.manager import ContextWindowManager
from context_keeper.models import Conversation, MessageRecord, ModelCapacity


def fit_conversation(config: KeeperConfig, args: argparse.Namespace) -> None:
    """Fit a conversation file into a model window and print the result."""
    with open(args.file, "r") as f:
        data = json.load(f)

    messages = [MessageRecord.from_dict(item) for item in data.get("messages", [])]
    conversation = Conversation(id=data.get("id", args.file), messages=messages)
    manager = ContextWindowManager.from_config(config)
    result = manager.preserve_context_for_switch(
        conversation,
        ModelCapacity(context_length=args.window, provider_id=args.provider),
        strategy=args.strategy,
        ratio=args.ratio,
    )
    print(json.dumps(result.to_dict(), indent=2, default=str))


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Context Keeper - context window management for long conversations"
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "fit", "strategies"],
        help="Command to run: serve (default, start API server), fit (fit a conversation file "
        "into a window), or strategies (list retention strategies)",
    )
    parser.add_argument("--config", help="Path to a config file (JSON or YAML)")
    parser.add_argument("--file", help="Conversation JSON file for the fit command")
    parser.add_argument("--window", type=int, default=4096, help="Target model context length")
    parser.add_argument("--provider", help="Target provider id")
    parser.add_argument("--strategy", help="Retention strategy override")
    parser.add_argument("--ratio", type=float, help="Context ratio override")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = KeeperConfig.load(args.config)
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "strategies":
        manager = ContextWindowManager.from_config(config)
        for name, info in manager.resolver.available_strategies().items():
            print(f"{name}: {info['description']}")
    elif args.command == "fit":
        if not args.file:
            parser.error("fit requires --file")
        try:
            fit_conversation(config, args)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        start_server(config)


if __name__ == "__main__":
    main()
